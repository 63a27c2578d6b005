# prealert/infra/db_resilience_async.py
"""
Async database resilience utilities.
Retry on transient asyncpg connection errors.
"""
from __future__ import annotations
import asyncio
from contextlib import asynccontextmanager

import asyncpg
from prealert.infra.db_async import db_conn
from prealert.infra.logging_config import get_logger

logger = get_logger(__name__)


def is_transient_error(exc: Exception) -> bool:
    """
    Check if database error is transient (should retry).

    Transient errors:
    - Connection errors
    - Server closed connection
    - Too many connections
    - Deadlock
    """
    if isinstance(exc, asyncpg.PostgresConnectionError):
        return True

    if isinstance(exc, asyncpg.TooManyConnectionsError):
        return True

    if isinstance(exc, asyncpg.DeadlockDetectedError):
        return True

    if isinstance(exc, (ConnectionError, OSError)):
        return True

    error_message = str(exc).lower()
    transient_patterns = [
        "connection reset",
        "connection was closed",  # pooled connection dropped by the server
        "server closed",
        "too many connections",
        "deadlock",
    ]
    return any(pattern in error_message for pattern in transient_patterns)


@asynccontextmanager
async def safe_db_conn(autocommit: bool = True):
    """
    Database connection with retry on transient errors while acquiring it.

    Usage:
        async with safe_db_conn() as conn:
            await conn.execute("...")

    Only connection acquisition is retried. Errors raised by the body of
    the ``async with`` block propagate unchanged; the caller decides
    whether the statement is safe to repeat.
    """
    max_retries = 3
    delay = 0.1

    for attempt in range(max_retries + 1):
        try:
            cm = db_conn(autocommit=autocommit)
            conn = await cm.__aenter__()
        except Exception as exc:
            if not is_transient_error(exc) or attempt >= max_retries:
                if attempt >= max_retries:
                    logger.error(f"Max retries ({max_retries}) exceeded getting connection")
                raise

            logger.warning(
                f"Transient error getting connection (attempt {attempt + 1}/{max_retries}): {exc}. "
                f"Retrying in {delay:.2f}s..."
            )
            await asyncio.sleep(delay)
            delay = min(delay * 2.0, 5.0)
            continue

        try:
            yield conn
        except BaseException as exc:
            if not await cm.__aexit__(type(exc), exc, exc.__traceback__):
                raise
        else:
            await cm.__aexit__(None, None, None)
        return
