import asyncio
from contextlib import asynccontextmanager
from typing import AsyncContextManager, Awaitable, Callable, TypeVar

from sqlalchemy import event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    create_async_engine, async_sessionmaker, AsyncSession
)

from .. import config
from ..errors import UpstreamError
from .timings import timeit

T = TypeVar("T")
Gated = Callable[[], AsyncContextManager[None]]

ASYNC_DRIVERS = (
    ("sqlite://", "sqlite+aiosqlite://"),
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
)


def _async_url(url: str) -> str:
    for plain, driver in ASYNC_DRIVERS:
        if url.startswith(plain):
            return driver + url[len(plain):]
    return url


def _install_sqlite_pragmas(engine) -> None:
    # WAL lets readers run next to the single writer; busy_timeout makes
    # the second writer wait instead of failing with SQLITE_BUSY
    @event.listens_for(engine.sync_engine, "connect")
    def _pragmas(dbapi_connection, _):
        cur = dbapi_connection.cursor()
        cur.execute("PRAGMA journal_mode=WAL;")
        cur.execute("PRAGMA busy_timeout=5000;")
        cur.execute("PRAGMA synchronous=NORMAL;")
        cur.close()


def make_async_engine(database_url: str):
    """
    Returns ``(engine, session_factory, gated)``. ``gated()`` is an async
    context manager that admits at most ``DB_GATE_LIMIT`` concurrent units of
    DB work per engine, so callers queue on the gate instead of the pool.
    """
    url = _async_url(database_url)
    kw = dict(future=True, pool_pre_ping=True)

    gate_limit = config.DB_GATE_LIMIT or config.DB_POOL_SIZE
    if url.startswith("postgresql+asyncpg://"):
        kw.update(
            pool_size=config.DB_POOL_SIZE,
            max_overflow=config.DB_MAX_OVERFLOW,
            pool_timeout=config.DB_POOL_TIMEOUT,
        )

    engine = create_async_engine(url, **kw)
    if url.startswith("sqlite+aiosqlite://"):
        _install_sqlite_pragmas(engine)

    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    sem = asyncio.Semaphore(max(1, gate_limit))

    @asynccontextmanager
    async def gated():
        async with sem:
            yield

    return engine, session_factory, gated


async def bounded_db(
    kind: str, aw: Awaitable[T], timeout: float = config.DB_TIMEOUT_SECONDS
) -> T:
    """Await a persistence call under ``timeout``; failures become retryable."""
    try:
        async with timeit(kind):
            return await asyncio.wait_for(aw, timeout)
    except asyncio.TimeoutError as e:
        raise UpstreamError(f"{kind} timed out after {timeout}s") from e
    except SQLAlchemyError as e:
        raise UpstreamError(f"{kind} failed: {e}") from e
