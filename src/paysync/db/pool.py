"""Shared asyncpg pool for the catalog cache and member tables."""

import asyncio
import json
import logging
from typing import Optional

import asyncpg

from paysync.config import get_config

logger = logging.getLogger(__name__)

_CONNECT_TIMEOUT_SECONDS = 5.0

_pool: Optional[asyncpg.Pool] = None


async def _init_connection(conn: asyncpg.Connection) -> None:
    """Decode json/jsonb columns (settings values, webhook metadata) as Python objects."""
    for type_name in ("json", "jsonb"):
        await conn.set_type_codec(
            type_name,
            encoder=json.dumps,
            decoder=json.loads,
            schema="pg_catalog",
        )


async def get_pool() -> asyncpg.Pool:
    """
    Return the process-wide connection pool, creating it on first use.

    The first call opens the pool and verifies the server answers a trivial
    query. A failed check closes the half-open pool so the next call retries.

    Raises:
        asyncio.TimeoutError: If the server does not accept connections in time
        RuntimeError: If the health check fails
    """
    global _pool

    if _pool is not None:
        return _pool

    config = get_config()

    try:
        pool = await asyncio.wait_for(
            asyncpg.create_pool(
                str(config.db_dsn),
                min_size=config.db_pool_min,
                max_size=config.db_pool_max,
                init=_init_connection,
            ),
            timeout=_CONNECT_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError:
        raise asyncio.TimeoutError(
            f"Database connection timed out after {_CONNECT_TIMEOUT_SECONDS:.0f} seconds"
        )

    try:
        async with pool.acquire() as conn:
            result = await conn.fetchval("SELECT 1")
        if result != 1:
            raise RuntimeError(f"expected 1, got {result}")
    except Exception as e:
        await pool.close()
        raise RuntimeError(f"Database health check failed: {e}") from e

    _pool = pool
    logger.info(
        f"Database pool ready: min={config.db_pool_min}, max={config.db_pool_max}"
    )
    return _pool


async def close_pool() -> None:
    """
    Close the pool if open.

    Falls back to terminate() when a graceful close hangs, which happens when a
    connection was never released.
    """
    global _pool
    if _pool is None:
        return

    pool, _pool = _pool, None
    try:
        await asyncio.wait_for(pool.close(), timeout=_CONNECT_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.warning("Pool close timed out, terminating remaining connections")
        pool.terminate()


async def open_connection() -> asyncpg.Connection:
    """
    Open a standalone connection outside the pool.

    For session state held while other queries run, such as advisory locks.
    The caller closes it.
    """
    config = get_config()
    return await asyncpg.connect(str(config.db_dsn), timeout=_CONNECT_TIMEOUT_SECONDS)
