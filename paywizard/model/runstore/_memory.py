from __future__ import annotations
from typing import Dict, Optional

from ._base import DEFAULT_KEY, RunStore


class MemoryRunStore(RunStore):
    def __init__(
        self, data: Optional[Dict[str, str]] = None, key: str = DEFAULT_KEY
    ) -> None:
        super().__init__(key=key)
        # shared dict lets several stores act like one storage medium
        self.data: Dict[str, str] = data if data is not None else {}

    async def _read(self) -> Optional[str]:
        return self.data.get(self.key)

    async def _write(self, raw: str) -> None:
        self.data[self.key] = raw
