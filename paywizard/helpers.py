import time
import uuid
from datetime import datetime, timezone
from typing import Any, Optional


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def now_ms() -> int:
    return int(time.time() * 1000)


def now_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def new_run_key() -> str:
    return f"run_{uuid.uuid4().hex}"


def clean_run_key(run_key: str) -> str:
    # n8n expressions sometimes leak a leading "=" into the key
    return run_key.lstrip("=")


def is_success(value: Any) -> bool:
    # candidates report success as a bool or as the string "true"
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true"


def is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    return False
