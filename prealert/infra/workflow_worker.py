# prealert/infra/workflow_worker.py
"""
In-process async workflow worker.

Polls the workflow_instances table, claims due instances and advances
each one through the workflow engine. Claimed instances in a batch run
concurrently; steps within one instance stay sequential.
"""
from __future__ import annotations

import asyncio

from prealert.core.domain import WorkflowInstance
from prealert.core.engine import WorkflowEngine
from prealert.infra.logging_config import get_logger
from prealert.infra.metrics import AppMetrics, inc_counter

logger = get_logger(__name__)


class WorkflowWorker:
    """
    Usage:
        worker = WorkflowWorker(engine)
        await worker.start()
        ...
        await worker.stop()
    """

    def __init__(
        self,
        engine: WorkflowEngine,
        *,
        poll_interval: float = 1.0,
        batch_size: int = 5,
        stale_timeout: int = 300,
        release_delay: float = 5.0,
    ):
        self._engine = engine
        self._store = engine.store
        self._poll_interval = poll_interval
        self._batch_size = batch_size
        self._stale_timeout = stale_timeout
        self._release_delay = release_delay
        self._task: asyncio.Task | None = None
        self._running = False
        self._loop_count = 0

    async def start(self) -> None:
        """Start the worker loop as an asyncio task."""
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="workflow_worker")
        self._task.add_done_callback(self._on_task_done)
        logger.info(
            f"Workflow worker started: poll={self._poll_interval}s, batch={self._batch_size}",
        )

    async def stop(self) -> None:
        """Stop polling and cancel the current batch; cancelled instances are released for immediate pickup."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Workflow worker stopped")

    async def run_once(self) -> int:
        """Claim one batch and advance it. Returns the number of instances claimed."""
        self._loop_count += 1

        # Periodically release claims left by crashed workers (~every 60 loops)
        if self._loop_count % 60 == 1:
            try:
                await self._store.reset_stale_claims(self._stale_timeout)
            except Exception as exc:
                logger.warning(f"Stale claim reset failed: {exc}")

        instances = await self._store.claim_batch(self._batch_size)
        AppMetrics.worker_batch(len(instances))
        if instances:
            await asyncio.gather(
                *(self._execute(instance) for instance in instances),
                return_exceptions=True,
            )
        return len(instances)

    async def _loop(self) -> None:
        """Main poll loop."""
        while self._running:
            try:
                claimed = await self.run_once()
                if claimed:
                    await asyncio.sleep(0.1)
                else:
                    await asyncio.sleep(self._poll_interval)

            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(f"Workflow worker loop error: {exc}", exc_info=True)
                inc_counter("workflow_worker_loop_errors")
                await asyncio.sleep(self._poll_interval * 2)

    async def _execute(self, instance: WorkflowInstance) -> None:
        """Advance one instance; release its claim if the engine itself fails."""
        try:
            await self._engine.run(instance)
        except asyncio.CancelledError:
            # Worker stopping: make the instance due now for the next process
            try:
                await self._store.reschedule(instance.instance_id, 0, "worker stopped")
            except Exception as release_exc:
                logger.warning(
                    f"Could not release claim for {instance.instance_id[:8]} on stop: {release_exc}"
                )
            raise
        except Exception as exc:
            # Step failures are handled inside the engine. Reaching here means
            # a step-log write failed; the instance resumes from its last checkpoint.
            error_msg = f"{exc.__class__.__name__}: {exc}"[:500]
            logger.error(
                f"Workflow pass aborted: id={instance.instance_id[:8]}, error={error_msg}",
                extra={"instance_id": instance.instance_id},
                exc_info=True,
            )
            inc_counter("workflow_passes_aborted")
            try:
                await self._store.reschedule(instance.instance_id, self._release_delay, error_msg)
            except Exception as release_exc:
                logger.warning(
                    f"Could not release claim for {instance.instance_id[:8]}, "
                    f"stale reset will pick it up: {release_exc}"
                )

    @staticmethod
    def _on_task_done(task: asyncio.Task) -> None:
        """Log unexpected worker death."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error(
                f"Workflow worker task died unexpectedly: {exc}",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
