from __future__ import annotations
from typing import Optional
import redis.asyncio as redis

from ...errors import StorageError
from ._base import DEFAULT_KEY, RunStore


# ---- keys
def k_runs(key: str) -> str: return f"runs:{key}"


class RedisRunStore(RunStore):
    def __init__(self, r: redis.Redis, key: str = DEFAULT_KEY) -> None:
        super().__init__(key=key)
        self.r = r

    async def _read(self) -> Optional[str]:
        try:
            raw = await self.r.get(k_runs(self.key))
        except redis.RedisError as e:
            raise StorageError(str(e)) from e
        if isinstance(raw, bytes):
            # clients without decode_responses=True
            raw = raw.decode("utf-8", errors="replace")
        return raw

    async def _write(self, raw: str) -> None:
        try:
            await self.r.set(k_runs(self.key), raw)
        except redis.RedisError as e:
            raise StorageError(str(e)) from e
