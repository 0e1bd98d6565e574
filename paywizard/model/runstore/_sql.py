from __future__ import annotations
from typing import Optional
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncConnection, AsyncSession, async_sessionmaker
)

from ...errors import StorageError
from ...helpers import now_ts
from ...infra.sql import Gated
from ._base import DEFAULT_KEY, RunStore


# ------------------------------------------------------------------------------
# DDL (idempotent)
# ------------------------------------------------------------------------------
SQL_CREATE_RUN_HISTORY = r"""
-- one row per history key, payload is the JSON array of saved runs
CREATE TABLE IF NOT EXISTS run_history (
  key         TEXT PRIMARY KEY,
  payload     TEXT NOT NULL,
  updated_at  DOUBLE PRECISION NOT NULL
);
"""


async def create_schema(db_or_conn: AsyncSession | AsyncConnection):
    await db_or_conn.execute(text(SQL_CREATE_RUN_HISTORY))


class SqlRunStore(RunStore):
    def __init__(
        self, *, sessions: async_sessionmaker, gated: Gated,
        key: str = DEFAULT_KEY,
    ) -> None:
        super().__init__(key=key)
        self.sessions = sessions
        self.gated = gated

    async def _read(self) -> Optional[str]:
        try:
            async with self.gated():
                async with self.sessions() as db:
                    row = (await db.execute(text("""
                      SELECT payload FROM run_history WHERE key = :key
                    """), {"key": self.key})).first()
        except SQLAlchemyError as e:
            raise StorageError(str(e)) from e
        return row[0] if row else None

    async def _write(self, raw: str) -> None:
        try:
            async with self.gated():
                async with self.sessions() as db:
                    async with db.begin():
                        await db.execute(text("""
                          INSERT INTO run_history(key, payload, updated_at)
                          VALUES (:key, :payload, :updated_at)
                          ON CONFLICT (key) DO UPDATE SET
                            payload = EXCLUDED.payload,
                            updated_at = EXCLUDED.updated_at
                        """), {
                            "key": self.key,
                            "payload": raw,
                            "updated_at": now_ts(),
                        })
        except SQLAlchemyError as e:
            raise StorageError(str(e)) from e
