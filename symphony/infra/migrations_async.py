# symphony/infra/migrations_async.py
"""
Async database migrations runner (asyncpg).
"""
from __future__ import annotations

from pathlib import Path

from symphony.infra.db_async import db_conn
from symphony.infra.logging_config import get_logger

logger = get_logger(__name__)


def _sql_dir() -> Path:
    # Next to this file: symphony/infra/sql
    return Path(__file__).resolve().parent / "sql"


def list_migrations() -> list[str]:
    return sorted(p.name for p in _sql_dir().glob("*.sql") if p.is_file())


async def apply_migrations() -> dict:
    """
    Apply SQL migrations from symphony/infra/sql in filename order.

    Already applied migrations are tracked in schema_migrations, and the
    whole run is one transaction.

    Returns:
        {"ok": bool, "applied": [filenames applied now], "count": int}
    """
    sql_dir = _sql_dir()

    async with db_conn(autocommit=False) as conn:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations(
              version text PRIMARY KEY,
              applied_at timestamptz NOT NULL DEFAULT now()
            )
            """
        )

        rows = await conn.fetch("SELECT version FROM schema_migrations")
        applied = {row["version"] for row in rows}

        applied_now = []
        for version in list_migrations():
            if version in applied:
                logger.debug(f"Migration {version} already applied, skipping")
                continue

            logger.info(f"Applying migration: {version}")
            await conn.execute((sql_dir / version).read_text(encoding="utf-8"))
            await conn.execute("INSERT INTO schema_migrations(version) VALUES ($1)", version)
            applied_now.append(version)

    logger.info(f"Migrations complete: {len(applied_now)} applied")
    return {"ok": True, "applied": applied_now, "count": len(applied_now)}
