from datetime import datetime, timezone

from paywizard.model.metrics import summarize_runs
from paywizard.model.runs import RunStep


def test_empty_history():
    assert summarize_runs([]) == {
        "totalRuns": 0,
        "successfulRuns": 0,
        "failedRuns": 0,
        "totalRequests": 0,
        "avgResponseTime": 0,
        "todayRuns": 0,
        "activeFlows": 0,
    }


def test_counts_and_averages(saved_run_factory):
    ok = saved_run_factory(run_key="a")
    ok.data.steps = [
        RunStep(seq=1, time="t", name="get token", status="success"),
        RunStep(seq=2, time="t", name="pay", status="success"),
    ]
    failed = saved_run_factory(
        run_key="b", status="error", saved_at="2026-10-18T23:00:00+00:00",
    )
    failed.data.endTime = "2026-10-19T10:00:02+00:00"
    failed.data.steps = [
        RunStep(seq=1, time="t", name="get token", status="error"),
    ]
    unfinished = saved_run_factory(run_key="c", status="running")
    unfinished.data.endTime = None

    summary = summarize_runs(
        [ok, failed, unfinished],
        today=datetime(2026, 10, 19, 12, tzinfo=timezone.utc),
        active_flows=2,
    )

    assert summary["totalRuns"] == 3
    assert summary["successfulRuns"] == 1
    assert summary["failedRuns"] == 1
    assert summary["totalRequests"] == 3
    # 1000 ms and 3000 ms
    assert summary["avgResponseTime"] == 2000
    assert summary["todayRuns"] == 2
    assert summary["activeFlows"] == 2
