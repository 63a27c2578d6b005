# prealert/infra/pg_alert_repo_async.py
"""
Async PostgreSQL repositories for organizations (read-only) and alerts.

Organizations are provisioned outside this service. Alerts are written
once per completed workflow instance; ``alert_id`` is the instance id and
the primary key turns a replayed insert into a no-op.
"""
from __future__ import annotations

import asyncpg

from prealert.core.domain import Alert, Organization
from prealert.core.errors import StorageError
from prealert.infra.db_resilience_async import safe_db_conn
from prealert.infra.logging_config import get_logger
from prealert.infra.metrics import AppMetrics

logger = get_logger(__name__)

_ALERT_COLUMNS = (
    "a.alert_id, a.organization, a.body, a.audio_url, a.timestamp, a.source, "
    "a.nature, a.address, a.city, a.latitude, a.longitude"
)


def _row_to_org(row) -> Organization:
    return Organization(
        org_id=row["org_id"],
        org_key=row["org_key"],
        access_key=row["access_key"],
        name=row["name"],
    )


def _row_to_alert(row) -> Alert:
    return Alert(
        alert_id=row["alert_id"],
        organization=row["organization"],
        body=row["body"],
        audio_url=row["audio_url"],
        timestamp=row["timestamp"],
        source=row["source"],
        nature=row["nature"],
        address=row["address"],
        city=row["city"],
        latitude=row["latitude"],
        longitude=row["longitude"],
    )


class AsyncPostgresOrganizationRepository:
    """Read-only organization lookups."""

    async def get_by_key(self, org_key: str) -> Organization | None:
        """Case-sensitive exact match on org_key."""
        try:
            async with safe_db_conn() as conn:
                row = await conn.fetchrow(
                    "SELECT * FROM organizations WHERE org_key = $1",
                    org_key,
                )
        except asyncpg.PostgresError as exc:
            AppMetrics.database_error("org_get_by_key")
            raise StorageError(f"Organization lookup failed: {exc}") from exc
        return _row_to_org(row) if row else None


class AsyncPostgresAlertRepository:
    """Alert writes (idempotent) and per-organization reads."""

    async def insert(self, alert: Alert) -> bool:
        """
        Insert an alert row.

        Returns:
            True  => row created
            False => alert_id already present (replayed save), nothing written
        """
        try:
            async with safe_db_conn() as conn:
                result = await conn.execute(
                    """
                    INSERT INTO alerts (
                        alert_id, organization, body, audio_url, timestamp, source,
                        nature, address, city, latitude, longitude
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                    ON CONFLICT (alert_id) DO NOTHING
                    """,
                    alert.alert_id,
                    alert.organization,
                    alert.body,
                    alert.audio_url,
                    alert.timestamp,
                    alert.source,
                    alert.nature,
                    alert.address,
                    alert.city,
                    alert.latitude,
                    alert.longitude,
                )
        except asyncpg.PostgresError as exc:
            logger.error(f"Alert insert failed: alert_id={alert.alert_id}", exc_info=True)
            AppMetrics.database_error("alert_insert")
            raise StorageError(f"Alert insert failed: {exc}") from exc

        # "INSERT 0 1" → inserted, "INSERT 0 0" → conflict (already persisted)
        row_count = 0
        if result and result.startswith("INSERT"):
            row_count = int(result.split()[-1])
        return row_count == 1

    async def count_for_id(self, alert_id: str) -> int:
        async with safe_db_conn() as conn:
            return await conn.fetchval(
                "SELECT count(*)::int FROM alerts WHERE alert_id = $1",
                alert_id,
            )

    async def latest_for_org(self, org_key: str, limit: int = 5) -> list[Alert]:
        """Newest alerts first for the organization with this org_key."""
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_ALERT_COLUMNS}
                FROM alerts a
                JOIN organizations o ON a.organization = o.org_id
                WHERE o.org_key = $1
                ORDER BY a.timestamp DESC
                LIMIT $2
                """,
                org_key,
                limit,
            )
        return [_row_to_alert(row) for row in rows]

    async def get_for_org(self, org_key: str, alert_id: str) -> Alert | None:
        """An alert, only if it belongs to the organization with this org_key."""
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {_ALERT_COLUMNS}
                FROM alerts a
                JOIN organizations o ON a.organization = o.org_id
                WHERE o.org_key = $1 AND a.alert_id = $2
                """,
                org_key,
                alert_id,
            )
        return _row_to_alert(row) if row else None


_org_repo: AsyncPostgresOrganizationRepository | None = None
_alert_repo: AsyncPostgresAlertRepository | None = None


def get_org_repo() -> AsyncPostgresOrganizationRepository:
    global _org_repo
    if _org_repo is None:
        _org_repo = AsyncPostgresOrganizationRepository()
    return _org_repo


def get_alert_repo() -> AsyncPostgresAlertRepository:
    global _alert_repo
    if _alert_repo is None:
        _alert_repo = AsyncPostgresAlertRepository()
    return _alert_repo
