# prealert/core/workflow.py
"""
Alert workflow: the ordered steps that turn one pre-alert email into an
Alert row plus an MP3 in the bucket.

    get_org → parse_email → generate_text → get_audio → upload_audio → save_record

Each step reads its inputs from the payload or from the checkpointed
outputs of earlier steps, and returns a value the engine checkpoints
before moving on. A step may be abandoned after its side effect and
before the checkpoint is written, so every step must be safe to run
again: the audio key and the alert id are both derived from the instance
id, and the alert insert ignores an existing row.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from prealert.core.domain import Alert, DispatchEvent, WorkflowInstance
from prealert.core.org_resolver import resolve_org_id
from prealert.core.parser import parse_dispatch_message
from prealert.core.ports import (
    AlertRepository,
    AudioStore,
    AudioSynthesizer,
    NarrationGenerator,
    OrganizationRepository,
)
from prealert.infra.logging_config import LogContext, get_logger, mask_coordinates
from prealert.infra.metrics import AppMetrics

logger = get_logger(__name__)

STEP_GET_ORG = "get_org"
STEP_PARSE_EMAIL = "parse_email"
STEP_GENERATE_TEXT = "generate_text"
STEP_GET_AUDIO = "get_audio"
STEP_UPLOAD_AUDIO = "upload_audio"
STEP_SAVE_RECORD = "save_record"

AUDIO_CONTENT_TYPE = "audio/mpeg"


def audio_key(instance_id: str) -> str:
    """Object key for an instance's audio: ``<instance_id>.mp3``."""
    return f"{instance_id}.mp3"


@dataclass(frozen=True)
class Step:
    name: str
    run: Callable[[WorkflowInstance], Awaitable[Any]]


class AlertWorkflow:
    """
    Step definitions for the pre-alert pipeline.

    Collaborators are injected so tests can swap in fakes:

        workflow = AlertWorkflow(
            orgs=orgs, alerts=alerts, audio_store=storage,
            narrator=narrator, synthesizer=synthesizer,
        )
    """

    def __init__(
        self,
        *,
        orgs: OrganizationRepository,
        alerts: AlertRepository,
        audio_store: AudioStore,
        narrator: NarrationGenerator,
        synthesizer: AudioSynthesizer,
        narration_mode: str = "structured",
        clock: Callable[[], float] = time.time,
    ):
        if narration_mode not in ("structured", "raw"):
            raise ValueError(f"Unknown narration mode: {narration_mode}")
        self._orgs = orgs
        self._alerts = alerts
        self._audio_store = audio_store
        self._narrator = narrator
        self._synthesizer = synthesizer
        self._narration_mode = narration_mode
        self._clock = clock

    @property
    def steps(self) -> list[Step]:
        return [
            Step(STEP_GET_ORG, self.get_org),
            Step(STEP_PARSE_EMAIL, self.parse_email),
            Step(STEP_GENERATE_TEXT, self.generate_text),
            Step(STEP_GET_AUDIO, self.get_audio),
            Step(STEP_UPLOAD_AUDIO, self.upload_audio),
            Step(STEP_SAVE_RECORD, self.save_record),
        ]

    async def get_org(self, instance: WorkflowInstance) -> str:
        return await resolve_org_id(self._orgs, instance.payload.email_to)

    async def parse_email(self, instance: WorkflowInstance) -> dict[str, Any]:
        log = LogContext(logger, instance_id=instance.instance_id, step=STEP_PARSE_EMAIL)
        log.info(
            f"Dispatch email received: from={instance.payload.email_from}, "
            f"to={instance.payload.email_to}"
        )
        event = parse_dispatch_message(instance.payload.email_text)
        log.debug(
            f"Dispatch parsed: nature={event.nature}, city={event.city}, "
            f"coords={mask_coordinates(event.latitude, event.longitude)}"
        )
        return event.to_dict()

    async def generate_text(self, instance: WorkflowInstance) -> str:
        if self._narration_mode == "raw":
            return await self._narrator.generate_narration(instance.payload.email_text)
        event = DispatchEvent.from_dict(instance.output_of(STEP_PARSE_EMAIL))
        return await self._narrator.generate_narration(event)

    async def get_audio(self, instance: WorkflowInstance) -> bytes:
        return await self._synthesizer.synthesize_audio(instance.output_of(STEP_GENERATE_TEXT))

    async def upload_audio(self, instance: WorkflowInstance) -> str:
        return await self._audio_store.put(
            audio_key(instance.instance_id),
            instance.output_of(STEP_GET_AUDIO),
            content_type=AUDIO_CONTENT_TYPE,
        )

    async def save_record(self, instance: WorkflowInstance) -> str:
        event = DispatchEvent.from_dict(instance.output_of(STEP_PARSE_EMAIL))
        alert = Alert(
            alert_id=instance.instance_id,
            organization=instance.output_of(STEP_GET_ORG),
            body=instance.output_of(STEP_GENERATE_TEXT),
            audio_url=instance.output_of(STEP_UPLOAD_AUDIO),
            timestamp=int(self._clock() * 1000),
            source=instance.payload.email_text,
            nature=event.nature,
            address=event.address,
            city=event.city,
            latitude=event.latitude,
            longitude=event.longitude,
        )
        created = await self._alerts.insert(alert)
        if not created:
            AppMetrics.alert_insert_duplicate()
            logger.info(
                f"Alert already persisted, insert skipped: alert_id={alert.alert_id}",
                extra={"instance_id": instance.instance_id, "step": STEP_SAVE_RECORD},
            )
        return alert.alert_id
