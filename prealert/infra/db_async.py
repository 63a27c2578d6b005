# prealert/infra/db_async.py
"""
asyncpg connection pool shared by the web routes and the workflow worker.

    await init_pool()            # lifespan startup
    async with db_conn() as conn:
        ...
    await close_pool()           # lifespan shutdown
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

import asyncpg

from prealert.config import settings
from prealert.infra.logging_config import get_logger

logger = get_logger(__name__)

_pool: asyncpg.Pool | None = None


async def init_pool() -> None:
    """Create the pool once. Raises RuntimeError when DATABASE_URL is unset."""
    global _pool

    if _pool is not None:
        return
    if not settings.database_url:
        raise RuntimeError("DATABASE_URL is not set")

    _pool = await asyncpg.create_pool(
        dsn=settings.database_url,
        min_size=settings.pg_pool_min,
        max_size=settings.pg_pool_max,
        command_timeout=60,
        server_settings={"application_name": f"prealert-{settings.run_mode}"},
    )
    logger.info(f"asyncpg pool ready: min={settings.pg_pool_min}, max={settings.pg_pool_max}")


async def close_pool() -> None:
    global _pool

    if _pool is None:
        return
    await _pool.close()
    _pool = None
    logger.info("asyncpg pool closed")


async def ping() -> bool:
    """True when the pool exists and answers ``SELECT 1``."""
    if _pool is None:
        return False
    try:
        async with _pool.acquire() as conn:
            return await conn.fetchval("SELECT 1") == 1
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
        logger.warning(f"Database ping failed: {exc}")
        return False


@asynccontextmanager
async def db_conn(autocommit: bool = True) -> AsyncIterator[asyncpg.Connection]:
    """
    Borrow a pooled connection.

    With ``autocommit=False`` the whole block is one transaction
    (batch claims, migrations).
    """
    if _pool is None:
        raise RuntimeError("Connection pool not initialized. Call init_pool() first.")

    conn = await _pool.acquire()
    try:
        if autocommit:
            yield conn
        else:
            async with conn.transaction():
                yield conn
    finally:
        await _pool.release(conn)
