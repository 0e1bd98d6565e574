# model/runstore/__init__.py
import os
from typing import Dict, Optional
from sqlalchemy.ext.asyncio import async_sessionmaker
import redis.asyncio as redis

from ...infra.sql import Gated
from ._base import RunStore, MAX_RUNS, DEFAULT_KEY
from ._memory import MemoryRunStore

BACKEND = os.getenv("RUNSTORE_BACKEND", "sql").lower()  # sql | redis | memory


# Factory keeps server.py simple and constructor-agnostic:
def new_store(*, sessions: Optional[async_sessionmaker] = None,
              gated: Optional[Gated] = None,
              r: Optional[redis.Redis] = None,
              data: Optional[Dict[str, str]] = None,
              key: str = DEFAULT_KEY) -> RunStore:
    if BACKEND == "sql":
        from ._sql import SqlRunStore
        if sessions is None or gated is None:
            raise RuntimeError(
                "RunStore(sql) requires sessions=async_sessionmaker and gated"
            )
        return SqlRunStore(sessions=sessions, gated=gated, key=key)
    if BACKEND == "redis":
        from ._redis import RedisRunStore
        if r is None:
            raise RuntimeError("RunStore(redis) requires r=redis.Redis")
        return RedisRunStore(r=r, key=key)
    return MemoryRunStore(data=data, key=key)


__all__ = [
    "RunStore", "MemoryRunStore", "new_store", "BACKEND", "MAX_RUNS",
    "DEFAULT_KEY",
]
