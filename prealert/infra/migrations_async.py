# prealert/infra/migrations_async.py
"""
SQL migrations for the alert and workflow tables.

Files in ``prealert/infra/sql`` run once each, in filename order, and are
recorded in ``schema_migrations``. The web and worker processes may both
start at deploy time, so the run holds a transaction-scoped advisory lock.
"""
from __future__ import annotations

from pathlib import Path

from prealert.infra.db_async import db_conn
from prealert.infra.logging_config import get_logger

logger = get_logger(__name__)

SQL_DIR = Path(__file__).resolve().parent / "sql"

# Arbitrary constant shared by every process of this service
MIGRATION_LOCK_ID = 0x70726561


def migration_files(sql_dir: Path = SQL_DIR) -> list[Path]:
    return sorted(p for p in sql_dir.glob("*.sql") if p.is_file())


async def apply_migrations(*, dry_run: bool = False, sql_dir: Path = SQL_DIR) -> dict:
    """
    Apply pending migrations in one transaction.

    Returns:
        ``{"ok": True, "applied": [...], "count": n}``. With ``dry_run``
        the pending files are listed under ``applied`` but not executed.
    """
    files = migration_files(sql_dir)

    async with db_conn(autocommit=False) as conn:
        await conn.execute("SELECT pg_advisory_xact_lock($1)", MIGRATION_LOCK_ID)
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations(
              version text PRIMARY KEY,
              applied_at timestamptz NOT NULL DEFAULT now()
            )
            """
        )
        done = {row["version"] for row in await conn.fetch("SELECT version FROM schema_migrations")}
        pending = [p for p in files if p.name not in done]

        if dry_run:
            for p in pending:
                logger.info(f"Pending migration: {p.name}")
            return {"ok": True, "applied": [p.name for p in pending], "count": len(pending)}

        for p in pending:
            logger.info(f"Applying migration: {p.name}")
            await conn.execute(p.read_text(encoding="utf-8"))
            await conn.execute("INSERT INTO schema_migrations(version) VALUES ($1)", p.name)

    logger.info(f"Migrations complete: {len(pending)} applied, {len(done)} already present")
    return {"ok": True, "applied": [p.name for p in pending], "count": len(pending)}
