# prealert/infra/pg_workflow_repo_async.py
"""
Async PostgreSQL workflow store (asyncpg).

Two tables:

- ``workflow_instances``: one row per triggered pipeline, with the
  trigger payload, instance status, next due time and a claim lease.
- ``workflow_steps``: the step-result log, one row per (instance, step).

Instances are claimed with FOR UPDATE SKIP LOCKED so several workers can
poll the same table without running one instance twice at once.
"""
from __future__ import annotations

import json
from typing import Any

import asyncpg

from prealert.core.domain import (
    InboundEmail,
    InstanceStatus,
    StepResult,
    StepStatus,
    WorkflowInstance,
)
from prealert.core.errors import StorageError
from prealert.infra.db_resilience_async import safe_db_conn
from prealert.infra.logging_config import get_logger
from prealert.infra.metrics import AppMetrics, inc_counter

logger = get_logger(__name__)


def _loads(value: Any) -> Any:
    """asyncpg returns jsonb as str unless a codec is registered."""
    if isinstance(value, str):
        return json.loads(value)
    return value


def _row_to_instance(row, step_rows=()) -> WorkflowInstance:
    """Convert asyncpg Records to a WorkflowInstance."""
    steps: dict[str, StepResult] = {}
    for step in sorted(step_rows, key=lambda r: r["position"]):
        blob = step["output_blob"]
        output = bytes(blob) if blob is not None else _loads(step["output"])
        steps[step["step_name"]] = StepResult(
            status=StepStatus(step["status"]),
            output=output,
            error=step["error_message"],
            attempts=step["attempts"],
        )
    return WorkflowInstance(
        instance_id=row["id"],
        payload=InboundEmail.from_payload(_loads(row["payload"])),
        status=InstanceStatus(row["status"]),
        steps=steps,
        error_message=row["error_message"],
    )


class AsyncPostgresWorkflowStore:
    """Durable step-result log with claim/reschedule semantics."""

    async def create_instance(self, instance_id: str, payload: InboundEmail) -> bool:
        """Insert a new active instance. False if the id already exists."""
        try:
            async with safe_db_conn() as conn:
                result = await conn.execute(
                    """
                    INSERT INTO workflow_instances (id, payload)
                    VALUES ($1, $2::jsonb)
                    ON CONFLICT (id) DO NOTHING
                    """,
                    instance_id,
                    json.dumps(payload.to_payload()),
                )
        except asyncpg.PostgresError as exc:
            AppMetrics.database_error("workflow_create_instance")
            raise StorageError(f"Failed to create workflow instance: {exc}") from exc

        row_count = 0
        if result and result.startswith("INSERT"):
            row_count = int(result.split()[-1])
        return row_count == 1

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM workflow_instances WHERE id = $1",
                instance_id,
            )
            if row is None:
                return None
            step_rows = await conn.fetch(
                "SELECT * FROM workflow_steps WHERE instance_id = $1",
                instance_id,
            )
        return _row_to_instance(row, step_rows)

    async def claim_batch(self, batch_size: int = 5) -> list[WorkflowInstance]:
        """
        Atomically claim up to batch_size active instances that are due.

        Returns:
            Claimed instances with their step logs loaded.
        """
        async with safe_db_conn(autocommit=False) as conn:
            rows = await conn.fetch(
                """
                WITH claimed AS (
                    SELECT id FROM workflow_instances
                    WHERE status = 'active'
                      AND claimed_at IS NULL
                      AND next_run_at <= now()
                    ORDER BY next_run_at, created_at
                    LIMIT $1
                    FOR UPDATE SKIP LOCKED
                )
                UPDATE workflow_instances
                SET claimed_at = now()
                WHERE id IN (SELECT id FROM claimed)
                RETURNING *
                """,
                batch_size,
            )
            if not rows:
                return []
            step_rows = await conn.fetch(
                "SELECT * FROM workflow_steps WHERE instance_id = ANY($1::text[])",
                [row["id"] for row in rows],
            )

        by_instance: dict[str, list] = {}
        for step in step_rows:
            by_instance.setdefault(step["instance_id"], []).append(step)
        return [_row_to_instance(row, by_instance.get(row["id"], ())) for row in rows]

    async def start_step(self, instance_id: str, step_name: str, position: int) -> None:
        """Mark a step running and count the attempt before the step body runs."""
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                INSERT INTO workflow_steps (instance_id, step_name, position, status, attempts)
                VALUES ($1, $2, $3, 'running', 1)
                ON CONFLICT (instance_id, step_name)
                DO UPDATE SET status = 'running',
                              attempts = workflow_steps.attempts + 1,
                              error_message = NULL,
                              updated_at = now()
                """,
                instance_id,
                step_name,
                position,
            )

    async def complete_step(
        self,
        instance_id: str,
        step_name: str,
        output: Any,
        attempts: int,
    ) -> None:
        """Checkpoint a step's output. Bytes go to output_blob, everything else to jsonb."""
        if isinstance(output, (bytes, bytearray)):
            output_json, output_blob = None, bytes(output)
        else:
            output_json, output_blob = json.dumps(output), None

        async with safe_db_conn() as conn:
            await conn.execute(
                """
                UPDATE workflow_steps
                SET status = 'completed',
                    output = $3::jsonb,
                    output_blob = $4,
                    error_message = NULL,
                    attempts = $5,
                    updated_at = now()
                WHERE instance_id = $1 AND step_name = $2
                """,
                instance_id,
                step_name,
                output_json,
                output_blob,
                attempts,
            )

    async def fail_step(
        self,
        instance_id: str,
        step_name: str,
        error: str,
        attempts: int,
    ) -> None:
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                UPDATE workflow_steps
                SET status = 'failed',
                    error_message = $3,
                    attempts = $4,
                    updated_at = now()
                WHERE instance_id = $1 AND step_name = $2
                """,
                instance_id,
                step_name,
                error[:2000],
                attempts,
            )

    async def reschedule(self, instance_id: str, delay_seconds: float, error: str) -> None:
        """Release the claim and make the instance due again after delay_seconds."""
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                UPDATE workflow_instances
                SET claimed_at = NULL,
                    error_message = $2,
                    next_run_at = now() + make_interval(secs => $3)
                WHERE id = $1 AND status = 'active'
                """,
                instance_id,
                error[:2000],
                float(delay_seconds),
            )

    async def mark_completed(self, instance_id: str) -> None:
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                UPDATE workflow_instances
                SET status = 'completed', claimed_at = NULL,
                    error_message = NULL, completed_at = now()
                WHERE id = $1
                """,
                instance_id,
            )

    async def mark_failed(self, instance_id: str, error: str) -> None:
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                UPDATE workflow_instances
                SET status = 'terminally_failed', claimed_at = NULL,
                    error_message = $2, completed_at = now()
                WHERE id = $1
                """,
                instance_id,
                error[:2000],
            )

    async def reset_stale_claims(self, timeout_seconds: int = 300) -> int:
        """
        Release claims held longer than timeout.

        Covers worker crashes mid-instance: the instance becomes due again
        and resumes at its first non-completed step.
        """
        async with safe_db_conn() as conn:
            result = await conn.execute(
                """
                UPDATE workflow_instances
                SET claimed_at = NULL, next_run_at = now()
                WHERE status = 'active'
                  AND claimed_at < now() - make_interval(secs => $1)
                """,
                timeout_seconds,
            )
            count = int(result.split()[-1]) if result else 0
            if count > 0:
                logger.warning(f"Released {count} stale workflow claims (held > {timeout_seconds}s)")
                inc_counter("workflow_stale_claims_released")
            return count

    async def count_by_status(self) -> dict[str, int]:
        """Return {status: count} for admin visibility."""
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                "SELECT status, count(*)::int AS cnt FROM workflow_instances GROUP BY status",
            )
            return {row["status"]: row["cnt"] for row in rows}


_workflow_store: AsyncPostgresWorkflowStore | None = None


def get_workflow_store() -> AsyncPostgresWorkflowStore:
    """Get the global workflow store instance."""
    global _workflow_store
    if _workflow_store is None:
        _workflow_store = AsyncPostgresWorkflowStore()
    return _workflow_store
