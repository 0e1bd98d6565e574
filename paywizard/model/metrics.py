from __future__ import annotations
from datetime import datetime, timezone
from typing import Dict, List, Optional

from ..helpers import parse_iso
from .runs import RUN_COMPLETED, RUN_ERROR, SavedRun


def summarize_runs(
    runs: List[SavedRun],
    today: Optional[datetime] = None,
    active_flows: int = 0,
) -> Dict[str, int]:
    today_date = (today or datetime.now(tz=timezone.utc)).date()

    durations = []
    for run in runs:
        start = parse_iso(run.data.startTime)
        end = parse_iso(run.data.endTime)
        if start and end:
            durations.append((end - start).total_seconds() * 1000)

    def saved_today(run: SavedRun) -> bool:
        saved = parse_iso(run.savedAt)
        return saved is not None and saved.date() == today_date

    return {
        "totalRuns": len(runs),
        "successfulRuns": sum(
            1 for r in runs if r.data.status == RUN_COMPLETED
        ),
        "failedRuns": sum(1 for r in runs if r.data.status == RUN_ERROR),
        "totalRequests": sum(len(r.data.steps) for r in runs),
        "avgResponseTime": (
            round(sum(durations) / len(durations)) if durations else 0
        ),
        "todayRuns": sum(1 for r in runs if saved_today(r)),
        "activeFlows": active_flows,
    }
