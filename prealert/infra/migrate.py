#!/usr/bin/env python3
# prealert/infra/migrate.py
"""
Apply database migrations outside application startup.

    python -m prealert.infra.migrate            # apply pending
    python -m prealert.infra.migrate --dry-run  # list pending only
"""
import asyncio
import sys

from prealert.config import settings
from prealert.infra.db_async import close_pool, init_pool
from prealert.infra.logging_config import get_logger, setup_logging
from prealert.infra.migrations_async import apply_migrations

setup_logging(level="INFO", use_json=settings.is_production)
logger = get_logger(__name__)


async def main(dry_run: bool = False) -> int:
    logger.info(f"Migration run: env={settings.app_env}, dry_run={dry_run}")

    try:
        await init_pool()
        result = await apply_migrations(dry_run=dry_run)
    except Exception as exc:
        logger.critical(f"Migration failed: {exc}", exc_info=True)
        return 1
    finally:
        await close_pool()

    verb = "pending" if dry_run else "applied"
    logger.info(f"{result['count']} migration(s) {verb}: {', '.join(result['applied']) or '-'}")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main(dry_run="--dry-run" in sys.argv[1:])))
