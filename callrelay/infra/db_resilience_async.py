# callrelay/infra/db_resilience_async.py
"""
Retry for transient asyncpg failures: dropped connections, pool exhaustion
on the server side, deadlocks.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from functools import wraps
from typing import AsyncIterator, Callable

import asyncpg

from callrelay.infra.db_async import get_pool
from callrelay.infra.logging_config import get_logger

logger = get_logger(__name__)

_TRANSIENT_TYPES = (
    asyncpg.PostgresConnectionError,
    asyncpg.TooManyConnectionsError,
    asyncpg.DeadlockDetectedError,
    ConnectionError,
    asyncio.TimeoutError,
)
_TRANSIENT_MARKERS = (
    "connection",
    "timeout",
    "closed",
    "network",
    "deadlock",
    "too many connections",
)


def is_transient_error(exc: Exception) -> bool:
    if isinstance(exc, _TRANSIENT_TYPES):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


def retry_on_transient_error(
    max_retries: int = 3,
    initial_delay: float = 0.1,
    backoff_factor: float = 2.0,
    max_delay: float = 5.0,
):
    """
    Retry an async callable on transient errors with exponential backoff.

    Wrap reads and idempotent writes only. Anything else raises immediately.

        @retry_on_transient_error(max_retries=2)
        async def fetch_call(self, call_sid): ...
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            delay = initial_delay
            attempt = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except Exception as exc:
                    if not is_transient_error(exc):
                        raise
                    if attempt >= max_retries:
                        logger.error(f"{func.__name__}: giving up after {attempt + 1} attempts: {exc}")
                        raise
                    attempt += 1
                    logger.warning(
                        f"{func.__name__}: transient error ({exc}), "
                        f"retry {attempt}/{max_retries} in {delay:.2f}s"
                    )
                    await asyncio.sleep(delay)
                    delay = min(delay * backoff_factor, max_delay)

        return wrapper
    return decorator


@retry_on_transient_error(max_retries=3)
async def _acquire(pool: asyncpg.Pool) -> asyncpg.Connection:
    return await pool.acquire()


@asynccontextmanager
async def safe_db_conn() -> AsyncIterator[asyncpg.Connection]:
    """
    Pooled connection; acquiring it is retried, the body is not.

        async with safe_db_conn() as conn:
            rows = await conn.fetch("SELECT ... LIMIT $1", 50)
    """
    pool = get_pool()
    conn = await _acquire(pool)
    try:
        yield conn
    finally:
        await pool.release(conn)
