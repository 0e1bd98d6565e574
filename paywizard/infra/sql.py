import os
import asyncio
from typing import AsyncContextManager, Callable
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    create_async_engine, async_sessionmaker, AsyncSession
)
from contextlib import asynccontextmanager

# async context factory guarding one unit of run history I/O
Gated = Callable[[], AsyncContextManager[None]]


def normalize_async_url(url: str) -> str:
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


@asynccontextmanager
async def _gated(sem: asyncio.Semaphore):
    await sem.acquire()
    try:
        yield
    finally:
        sem.release()


def make_gate(limit: int) -> Gated:
    sem = asyncio.Semaphore(max(1, limit))

    def gated():
        return _gated(sem)
    return gated


def make_async_engine(database_url: str):
    """Open the run history database.

    Returns (engine, SessionAsync, gated). SqlRunStore wraps every read and
    upsert of the history row in the gate:
        async with gated():
            async with SessionAsync() as db: ...
    """
    db_url = normalize_async_url(database_url)
    kw = dict(future=True, pool_pre_ping=True)

    pool_size = None
    if db_url.startswith("postgresql+asyncpg://"):
        pool_size = int(os.getenv("DB_POOL_SIZE", "5"))
        kw.update(
            pool_size=pool_size,
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "5")),
            pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
        )

    engine = create_async_engine(db_url, **kw)

    if db_url.startswith("sqlite+aiosqlite://"):
        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _):
            cur = dbapi_connection.cursor()
            cur.execute("PRAGMA journal_mode=WAL;")
            cur.execute("PRAGMA busy_timeout=5000;")
            cur.close()

    SessionAsync = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    # history writes are one row per run; sqlite has a single writer
    default_gate = pool_size if pool_size is not None else 4
    gated = make_gate(int(os.getenv("DB_GATE_LIMIT", default_gate)))
    return engine, SessionAsync, gated
