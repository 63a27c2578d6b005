# tests/test_workflow_worker.py
"""
Tests for the workflow worker and the inbound email trigger.
"""
from __future__ import annotations

import asyncio
import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest

from prealert.core.domain import InboundEmail, InstanceStatus
from prealert.core.errors import StorageError
from prealert.core.trigger import handle_inbound_email, is_prealert_subject, join_recipients
from prealert.core.workflow import STEP_UPLOAD_AUDIO
from prealert.infra.workflow_worker import WorkflowWorker

from fakes import HEADACHE_TEXT


# ---------------------------------------------------------------------------
# Worker
# ---------------------------------------------------------------------------

class TestWorkflowWorker:
    @pytest.mark.asyncio
    async def test_run_once_completes_due_instances(self, engine, workflow_store, headache_email, alerts):
        first = await engine.create(headache_email)
        second = await engine.create(headache_email)
        worker = WorkflowWorker(engine, batch_size=5)

        claimed = await worker.run_once()

        assert claimed == 2
        assert workflow_store.instances[first]["status"] is InstanceStatus.COMPLETED
        assert workflow_store.instances[second]["status"] is InstanceStatus.COMPLETED
        assert {a.alert_id for a in alerts.rows} == {first, second}

    @pytest.mark.asyncio
    async def test_run_once_respects_batch_size(self, engine, headache_email):
        for _ in range(3):
            await engine.create(headache_email)
        worker = WorkflowWorker(engine, batch_size=2)

        assert await worker.run_once() == 2
        assert await worker.run_once() == 1
        assert await worker.run_once() == 0

    @pytest.mark.asyncio
    async def test_aborted_pass_releases_claim(self, engine, workflow_store, headache_email, audio_store):
        """A failed checkpoint write aborts the pass; the instance resumes later."""
        workflow_store.fail_complete_for.add(STEP_UPLOAD_AUDIO)
        instance_id = await engine.create(headache_email)
        worker = WorkflowWorker(engine, release_delay=7.0)

        assert await worker.run_once() == 1

        rec = workflow_store.instances[instance_id]
        assert rec["status"] is InstanceStatus.ACTIVE
        assert rec["claimed"] is False
        assert rec["next_run_at"] == 7.0
        assert "StorageError" in rec["error"]

        workflow_store.now = 7.0
        assert await worker.run_once() == 1
        assert workflow_store.instances[instance_id]["status"] is InstanceStatus.COMPLETED
        # The upload ran twice, both times to the same key
        assert audio_store.put_calls == 2
        assert list(audio_store.objects) == [f"{instance_id}.mp3"]

    @pytest.mark.asyncio
    async def test_cancelled_instance_is_released_for_immediate_pickup(
        self, engine, workflow_store, narrator, headache_email,
    ):
        narrator.fail_next.append(asyncio.CancelledError())
        instance_id = await engine.create(headache_email)
        worker = WorkflowWorker(engine, release_delay=7.0)

        assert await worker.run_once() == 1

        rec = workflow_store.instances[instance_id]
        assert rec["claimed"] is False
        assert rec["next_run_at"] == 0.0
        assert rec["error"] == "worker stopped"

        assert await worker.run_once() == 1
        assert rec["status"] is InstanceStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_stop_releases_in_flight_claims(self, engine, workflow_store, narrator, headache_email):
        started = asyncio.Event()

        async def hang(event):
            started.set()
            await asyncio.Event().wait()

        narrator.generate_narration = hang
        instance_id = await engine.create(headache_email)
        worker = WorkflowWorker(engine, poll_interval=0.01)

        await worker.start()
        await asyncio.wait_for(started.wait(), timeout=2)
        await worker.stop()

        rec = workflow_store.instances[instance_id]
        assert rec["status"] is InstanceStatus.ACTIVE
        assert rec["claimed"] is False
        assert rec["error"] == "worker stopped"

    @pytest.mark.asyncio
    async def test_first_loop_resets_stale_claims(self, engine, workflow_store, headache_email):
        instance_id = await engine.create(headache_email)
        # Simulate a worker that crashed while holding the claim
        await workflow_store.claim_batch(1)
        worker = WorkflowWorker(engine, stale_timeout=300)

        assert await worker.run_once() == 1
        assert workflow_store.instances[instance_id]["status"] is InstanceStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_stale_reset_failure_does_not_stop_claiming(self):
        store = MagicMock()
        store.reset_stale_claims = AsyncMock(side_effect=StorageError("db down"))
        store.claim_batch = AsyncMock(return_value=[])
        engine = MagicMock()
        engine.store = store
        worker = WorkflowWorker(engine)

        assert await worker.run_once() == 0
        store.claim_batch.assert_awaited_once_with(5)

    @pytest.mark.asyncio
    async def test_start_and_stop(self, engine):
        worker = WorkflowWorker(engine, poll_interval=0.01)

        await worker.start()
        await asyncio.sleep(0.05)
        await worker.stop()

        assert worker._task.done()


# ---------------------------------------------------------------------------
# Trigger
# ---------------------------------------------------------------------------

class TestTrigger:
    def test_subject_token_case_insensitive(self):
        assert is_prealert_subject("PRE-ALERT: medical") is True
        assert is_prealert_subject("Re: pre-alert") is True
        assert is_prealert_subject("prealert") is False
        assert is_prealert_subject(None) is False

    def test_custom_token(self):
        assert is_prealert_subject("Dispatch Notice", token="dispatch") is True

    def test_join_recipients(self):
        assert join_recipients(None) == ""
        assert join_recipients("a@x, b@x") == "a@x, b@x"
        assert join_recipients([" a@x ", "", "b@x"]) == "a@x,b@x"

    @pytest.mark.asyncio
    async def test_non_matching_subject_creates_nothing(self, engine, workflow_store):
        result = await handle_inbound_email(
            engine,
            sender="cad@county.example",
            recipients="boone@alerts.example",
            subject="Shift schedule",
            text=HEADACHE_TEXT,
        )
        assert result is None
        assert workflow_store.instances == {}

    @pytest.mark.asyncio
    async def test_matching_subject_creates_one_instance(self, engine, workflow_store):
        instance_id = await handle_inbound_email(
            engine,
            sender="cad@county.example",
            recipients=["boone@alerts.example"],
            subject="Pre-Alert",
            text=f"\n{HEADACHE_TEXT}\n\n",
        )

        assert list(workflow_store.instances) == [instance_id]
        assert workflow_store.instances[instance_id]["payload"] == InboundEmail(
            email_from="cad@county.example",
            email_to="boone@alerts.example",
            email_text=HEADACHE_TEXT,
        )

    @pytest.mark.asyncio
    async def test_message_id_gives_stable_instance_id(self, engine, workflow_store):
        kwargs = dict(
            sender="cad@county.example",
            recipients="boone@alerts.example",
            subject="pre-alert",
            text=HEADACHE_TEXT,
            message_id="<m1@mail.example>",
        )
        first = await handle_inbound_email(engine, **kwargs)
        second = await handle_inbound_email(engine, **kwargs)

        assert first == second == str(
            uuid.uuid5(uuid.NAMESPACE_URL, "<m1@mail.example>\nboone@alerts.example")
        )
        assert len(workflow_store.instances) == 1

    @pytest.mark.asyncio
    async def test_same_message_to_two_orgs_creates_two_instances(self, engine, workflow_store):
        kwargs = dict(
            sender="cad@county.example",
            subject="pre-alert",
            text=HEADACHE_TEXT,
            message_id="<m1@mail.example>",
        )
        boone = await handle_inbound_email(engine, recipients="boone@alerts.example", **kwargs)
        ames = await handle_inbound_email(engine, recipients="ames@alerts.example", **kwargs)

        assert boone != ames
        assert len(workflow_store.instances) == 2
        assert workflow_store.instances[ames]["payload"].email_to == "ames@alerts.example"
