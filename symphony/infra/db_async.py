# symphony/infra/db_async.py
"""
asyncpg connection pool for the envelope store.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

import asyncpg

from symphony.config import Settings, get_settings
from symphony.infra.logging_config import get_logger

logger = get_logger(__name__)

# Global connection pool
_pool: asyncpg.Pool | None = None


def _connect_kwargs(settings: Settings) -> dict:
    if settings.database_url:
        return {"dsn": settings.database_url}
    return {
        "host": settings.pghost,
        "port": settings.pgport,
        "user": settings.pguser,
        "password": settings.pgpassword,
        "database": settings.pgdatabase,
        "timeout": settings.pg_connect_timeout,
    }


async def init_pool(settings: Settings | None = None) -> asyncpg.Pool:
    """Initialize connection pool on startup"""
    global _pool

    if _pool is not None:
        return _pool

    settings = settings or get_settings()
    logger.info("Initializing asyncpg connection pool")

    _pool = await asyncpg.create_pool(
        min_size=settings.pg_pool_min,
        max_size=settings.pg_pool_max,
        command_timeout=60,
        server_settings={
            "application_name": "symphony",
            "statement_timeout": str(settings.pg_statement_timeout_ms),
            "idle_in_transaction_session_timeout": str(settings.pg_idle_in_tx_timeout_ms),
        },
        **_connect_kwargs(settings),
    )

    logger.info(f"Connection pool created: min={settings.pg_pool_min}, max={settings.pg_pool_max}")
    return _pool


async def close_pool() -> None:
    """Close connection pool on shutdown"""
    global _pool

    if _pool is None:
        return

    logger.info("Closing connection pool")
    await _pool.close()
    _pool = None
    logger.info("Connection pool closed")


def get_pool() -> asyncpg.Pool:
    if _pool is None:
        raise RuntimeError("Connection pool not initialized. Call init_pool() first.")
    return _pool


@asynccontextmanager
async def db_conn(autocommit: bool = True) -> AsyncIterator[asyncpg.Connection]:
    """
    Get a connection from the pool.

    Usage:
        async with db_conn(autocommit=False) as conn:
            await conn.execute("UPDATE ...")

    Args:
        autocommit: when False the block runs in one transaction, committed
            on success and rolled back on any exception.
    """
    pool = get_pool()
    conn = await pool.acquire()
    try:
        if autocommit:
            yield conn
        else:
            async with conn.transaction():
                yield conn
    finally:
        await pool.release(conn)
