from __future__ import annotations
import json
from abc import ABC, abstractmethod
from typing import List, Optional

from ...errors import StorageError
from ..runs import SavedRun

MAX_RUNS = 5
DEFAULT_KEY = "__kkb_last_runs__"


def decode_runs(raw: Optional[str]) -> List[SavedRun]:
    """Parse the persisted record; anything unreadable counts as empty."""
    if not raw:
        return []
    try:
        items = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return []
    if not isinstance(items, list):
        return []
    runs: List[SavedRun] = []
    for item in items:
        try:
            runs.append(SavedRun.from_dict(item))
        except (AttributeError, KeyError, TypeError, ValueError):
            continue
    return runs[:MAX_RUNS]


def encode_runs(runs: List[SavedRun]) -> str:
    return json.dumps([r.to_dict() for r in runs], ensure_ascii=False)


class RunStore(ABC):
    """Bounded, best-effort history of the last finished runs.

    Backends only move one opaque string in and out; ordering, capping and
    the never-raise policy live here.
    """

    def __init__(self, key: str = DEFAULT_KEY) -> None:
        self.key = key

    # raise StorageError when the medium is unavailable
    @abstractmethod
    async def _read(self) -> Optional[str]: ...

    @abstractmethod
    async def _write(self, raw: str) -> None: ...

    async def load_all(self) -> List[SavedRun]:
        try:
            raw = await self._read()
        except StorageError as e:
            print("run history unreadable, treating as empty:", e)
            return []
        return decode_runs(raw)

    async def append(self, run: SavedRun) -> None:
        # read-modify-write, last writer wins on the truncation
        current = await self.load_all()
        runs = [run, *current][:MAX_RUNS]
        try:
            await self._write(encode_runs(runs))
        except StorageError as e:
            print("run history not saved:", e)
