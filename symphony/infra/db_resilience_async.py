# symphony/infra/db_resilience_async.py
"""
Retry on transient asyncpg errors.

Only connection acquisition is retried automatically. Statements inside
an ``async with safe_db_conn()`` block run once: replaying a claim or a
status transition after an ambiguous failure is the store's decision,
not the connection helper's.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from functools import wraps
from typing import AsyncIterator, Callable

import asyncpg

from symphony.infra import db_async
from symphony.infra.logging_config import get_logger

logger = get_logger(__name__)


def is_transient_error(exc: BaseException) -> bool:
    """
    Check if database error is transient (should retry).

    Transient errors:
    - Connection errors
    - Too many connections
    - Deadlock / serialization failure
    - Timeouts
    """
    if isinstance(exc, (
        asyncpg.PostgresConnectionError,
        asyncpg.TooManyConnectionsError,
        asyncpg.DeadlockDetectedError,
        asyncpg.SerializationError,
        ConnectionError,
        asyncio.TimeoutError,
        OSError,
    )):
        return True

    if isinstance(exc, asyncpg.PostgresError):
        # Anything else the server reported (constraint, syntax, ...) is permanent.
        return False

    error_message = str(exc).lower()
    transient_patterns = [
        "connection reset",
        "server closed",
        "too many connections",
        "timeout",
        "deadlock",
    ]
    return any(pattern in error_message for pattern in transient_patterns)


def retry_on_transient_error(
    max_retries: int = 3,
    initial_delay: float = 0.1,
    backoff_factor: float = 2.0,
    max_delay: float = 5.0
):
    """
    Decorator to retry an async function on transient database errors.

    Example:
        @retry_on_transient_error(max_retries=3)
        async def count_pending():
            async with safe_db_conn() as conn:
                return await conn.fetchval("SELECT count(*) FROM messenger_messages")
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            delay = initial_delay

            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except Exception as exc:
                    if not is_transient_error(exc):
                        raise

                    if attempt >= max_retries:
                        logger.error(f"Max retries ({max_retries}) exceeded in {func.__name__}: {exc}")
                        raise

                    logger.warning(
                        f"Transient error in {func.__name__} (attempt {attempt + 1}/{max_retries}): {exc}. "
                        f"Retrying in {delay:.2f}s..."
                    )
                    await asyncio.sleep(delay)
                    delay = min(delay * backoff_factor, max_delay)

        return wrapper
    return decorator


@retry_on_transient_error(max_retries=3)
async def _acquire() -> asyncpg.Connection:
    return await db_async.get_pool().acquire()


@asynccontextmanager
async def safe_db_conn(autocommit: bool = True) -> AsyncIterator[asyncpg.Connection]:
    """
    Pool connection with retried acquisition.

    Usage:
        async with safe_db_conn(autocommit=False) as conn:
            await conn.execute("INSERT ...")
            await conn.execute("UPDATE ...")
    """
    pool = db_async.get_pool()
    conn = await _acquire()
    try:
        if autocommit:
            yield conn
        else:
            async with conn.transaction():
                yield conn
    finally:
        await pool.release(conn)
