# callrelay/infra/db_async.py
"""
asyncpg pool for the calls database.

The call and notification tables belong to the voice pipeline; this service
reads calls and drains ``call_notifications``. Connections are handed out by
``db_resilience_async.safe_db_conn``.
"""
from __future__ import annotations

import asyncpg

from callrelay.config import settings
from callrelay.infra.logging_config import get_logger

logger = get_logger(__name__)

_pool: asyncpg.Pool | None = None


async def init_pool() -> None:
    """Create the pool once; later calls are no-ops."""
    global _pool
    if _pool is not None:
        return

    _pool = await asyncpg.create_pool(
        dsn=settings.database_dsn,
        min_size=settings.pg_pool_min,
        max_size=settings.pg_pool_max,
        timeout=settings.pg_connect_timeout,
        command_timeout=30,
        server_settings={"application_name": "callrelay"},
    )
    logger.info(f"Postgres pool ready (min={settings.pg_pool_min}, max={settings.pg_pool_max})")


async def close_pool() -> None:
    global _pool
    if _pool is None:
        return
    pool, _pool = _pool, None
    await pool.close()
    logger.info("Postgres pool closed")


def is_pool_ready() -> bool:
    return _pool is not None and not _pool.is_closing()


def get_pool() -> asyncpg.Pool:
    if _pool is None:
        raise RuntimeError("Postgres pool not initialized, call init_pool() first")
    return _pool
