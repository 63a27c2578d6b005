# prealert/core/engine.py
"""
Durable step engine.

Runs a workflow instance step by step against a persisted step-result
log. A step that already shows ``completed`` in the log is skipped and its
checkpointed output reused, so resuming after a crash never repeats
a finished step (no second model call, no second upload).

Failure handling at the step boundary:

- non-retryable error  → step ``failed``, instance ``terminally_failed``
- retryable error      → step ``failed``, instance rescheduled with
  exponential backoff ``base_delay * 2^(attempts-1)`` capped at ``max_delay``
- attempts reach ``max_attempts`` → instance ``terminally_failed``

Backoff is durable: the instance is released with a future
``next_run_at`` and picked up again by the worker.
"""
from __future__ import annotations

import uuid

from prealert.core.domain import (
    InboundEmail,
    InstanceStatus,
    StepResult,
    StepStatus,
    WorkflowInstance,
)
from prealert.core.errors import is_retryable
from prealert.core.ports import WorkflowStore
from prealert.core.workflow import AlertWorkflow
from prealert.infra.logging_config import LogContext, get_logger
from prealert.infra.metrics import AppMetrics

logger = get_logger(__name__)


class WorkflowEngine:
    """
    Create and advance workflow instances.

    Usage:
        engine = WorkflowEngine(store, workflow, max_attempts=5)
        instance_id = await engine.create(InboundEmail(...))
        ...
        status = await engine.run(instance)
    """

    def __init__(
        self,
        store: WorkflowStore,
        workflow: AlertWorkflow,
        *,
        max_attempts: int = 5,
        base_retry_delay: float = 5.0,
        max_retry_delay: float = 300.0,
    ):
        self._store = store
        self._workflow = workflow
        self._max_attempts = max(1, max_attempts)
        self._base_retry_delay = base_retry_delay
        self._max_retry_delay = max_retry_delay

    @property
    def store(self) -> WorkflowStore:
        return self._store

    def retry_delay(self, attempts: int) -> float:
        """Backoff before the next attempt, given failed attempts so far (>= 1)."""
        delay = self._base_retry_delay * (2 ** max(0, attempts - 1))
        return min(delay, self._max_retry_delay)

    async def create(self, payload: InboundEmail, instance_id: str | None = None) -> str:
        """
        Persist a new ACTIVE instance, due immediately.

        Passing an existing ``instance_id`` is a no-op, so a redelivered
        trigger with a stable id does not start a second pipeline.
        """
        instance_id = instance_id or str(uuid.uuid4())
        created = await self._store.create_instance(instance_id, payload)
        if created:
            AppMetrics.instance_created()
            logger.info(
                f"Workflow instance created: id={instance_id[:8]}",
                extra={"instance_id": instance_id},
            )
        else:
            logger.info(
                f"Workflow instance already exists: id={instance_id[:8]}",
                extra={"instance_id": instance_id},
            )
        return instance_id

    async def resume(self, instance_id: str) -> InstanceStatus:
        """Load an instance from the step log and advance it."""
        instance = await self._store.get_instance(instance_id)
        if instance is None:
            raise KeyError(f"Unknown workflow instance: {instance_id}")
        return await self.run(instance)

    async def run(self, instance: WorkflowInstance) -> InstanceStatus:
        """
        Advance ``instance`` as far as it will go in this pass.

        Returns the instance status after the pass: COMPLETED, TERMINALLY_FAILED,
        or ACTIVE when a retryable failure was rescheduled.
        """
        log = LogContext(logger, instance_id=instance.instance_id)

        if instance.status is not InstanceStatus.ACTIVE:
            log.info(f"Instance already {instance.status.value}, nothing to run")
            return instance.status

        for position, step in enumerate(self._workflow.steps):
            previous = instance.steps.get(step.name)
            if previous is not None and previous.status is StepStatus.COMPLETED:
                continue

            step_log = log.bind(step=step.name)
            attempts = previous.attempts if previous is not None else 0

            # A pass abandoned mid-step (cancel, crash, lost checkpoint) still used an attempt
            if attempts >= self._max_attempts:
                return await self._fail_terminally(
                    instance, step.name, previous.error or "abandoned while running",
                    attempts, step_log, reason="attempts exhausted",
                )

            await self._store.start_step(instance.instance_id, step.name, position)
            attempts += 1
            step_log.info(f"Step started: attempt={attempts}/{self._max_attempts}")

            try:
                with AppMetrics.track_step_time(step.name):
                    output = await step.run(instance)
            except Exception as exc:
                return await self._on_step_failure(instance, step.name, exc, attempts, step_log)

            await self._store.complete_step(instance.instance_id, step.name, output, attempts)
            instance.steps[step.name] = StepResult(
                status=StepStatus.COMPLETED, output=output, attempts=attempts,
            )
            AppMetrics.step_completed(step.name)
            step_log.info(f"Step completed: attempt={attempts}")

        await self._store.mark_completed(instance.instance_id)
        instance.status = InstanceStatus.COMPLETED
        AppMetrics.instance_completed()
        log.info("Workflow instance completed")
        return instance.status

    async def _on_step_failure(
        self,
        instance: WorkflowInstance,
        step_name: str,
        exc: Exception,
        attempts: int,
        step_log: LogContext,
    ) -> InstanceStatus:
        error_msg = f"{exc.__class__.__name__}: {exc}"[:500]
        retryable = is_retryable(exc)

        await self._store.fail_step(instance.instance_id, step_name, error_msg, attempts)
        instance.steps[step_name] = StepResult(
            status=StepStatus.FAILED, error=error_msg, attempts=attempts,
        )
        AppMetrics.step_failed(step_name, retryable)

        if retryable and attempts < self._max_attempts:
            delay = self.retry_delay(attempts)
            await self._store.reschedule(instance.instance_id, delay, error_msg)
            step_log.warning(
                f"Step failed, retrying in {delay:.1f}s: "
                f"attempt={attempts}/{self._max_attempts}, error={error_msg[:200]}"
            )
            return InstanceStatus.ACTIVE

        reason = "non-retryable error" if not retryable else "attempts exhausted"
        return await self._fail_terminally(instance, step_name, error_msg, attempts, step_log, reason=reason)

    async def _fail_terminally(
        self,
        instance: WorkflowInstance,
        step_name: str,
        error_msg: str,
        attempts: int,
        step_log: LogContext,
        *,
        reason: str,
    ) -> InstanceStatus:
        terminal_msg = f"{step_name}: {error_msg}"
        await self._store.mark_failed(instance.instance_id, terminal_msg)
        instance.status = InstanceStatus.TERMINALLY_FAILED
        instance.error_message = terminal_msg
        AppMetrics.instance_failed(step_name)
        step_log.error(
            f"Workflow instance terminally failed ({reason}): "
            f"attempt={attempts}/{self._max_attempts}, error={error_msg[:200]}"
        )
        return instance.status
