#!/usr/bin/env python3
# symphony/infra/migrate.py
"""
Standalone migration runner.

    python -m symphony.infra.migrate

Run it in CI/CD before deployment or as an init container; workers never
migrate on startup.
"""
from __future__ import annotations

import asyncio
import sys

from symphony.config import get_settings
from symphony.infra.db_async import close_pool, init_pool
from symphony.infra.logging_config import get_logger, setup_logging
from symphony.infra.migrations_async import apply_migrations

logger = get_logger(__name__)


async def main() -> int:
    settings = get_settings()
    logger.info("=" * 60)
    logger.info("Database Migration Runner")
    logger.info("=" * 60)
    logger.info(f"Environment: {settings.app_env}")
    if not settings.database_url:
        logger.info(f"Database: {settings.pghost}:{settings.pgport}/{settings.pgdatabase}")

    try:
        await init_pool(settings)
        result = await apply_migrations()
    except Exception as exc:
        logger.critical(f"MIGRATION FAILED: {exc}", exc_info=True)
        return 1
    finally:
        await close_pool()

    if result["applied"]:
        for migration in result["applied"]:
            logger.info(f"  applied {migration}")
    else:
        logger.info("No new migrations to apply")
    return 0 if result["ok"] else 1


if __name__ == "__main__":
    setup_logging(level="INFO", use_json=False)
    sys.exit(asyncio.run(main()))
