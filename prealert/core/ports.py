# prealert/core/ports.py
from __future__ import annotations
from typing import Any, Protocol, Optional

from prealert.core.domain import (
    Alert,
    DispatchEvent,
    InboundEmail,
    Organization,
    WorkflowInstance,
)


class OrganizationRepository(Protocol):
    async def get_by_key(self, org_key: str) -> Optional[Organization]: ...


class AlertRepository(Protocol):
    async def insert(self, alert: Alert) -> bool:
        """
        True  => row created
        False => alert_id already present, nothing written
        """
        ...

    async def count_for_id(self, alert_id: str) -> int: ...

    async def latest_for_org(self, org_key: str, limit: int) -> list[Alert]: ...

    async def get_for_org(self, org_key: str, alert_id: str) -> Optional[Alert]: ...


class AudioStore(Protocol):
    async def put(self, key: str, data: bytes, content_type: str = "audio/mpeg") -> str: ...

    async def get(self, key: str) -> Optional[bytes]: ...


class NarrationGenerator(Protocol):
    async def generate_narration(self, event: DispatchEvent | str) -> str: ...


class AudioSynthesizer(Protocol):
    async def synthesize_audio(self, text: str) -> bytes: ...


class WorkflowStore(Protocol):
    """Durable step-result log keyed by instance id."""

    async def create_instance(self, instance_id: str, payload: InboundEmail) -> bool: ...

    async def get_instance(self, instance_id: str) -> Optional[WorkflowInstance]: ...

    async def claim_batch(self, batch_size: int) -> list[WorkflowInstance]: ...

    async def start_step(self, instance_id: str, step_name: str, position: int) -> None: ...

    async def complete_step(self, instance_id: str, step_name: str, output: Any, attempts: int) -> None: ...

    async def fail_step(self, instance_id: str, step_name: str, error: str, attempts: int) -> None: ...

    async def reschedule(self, instance_id: str, delay_seconds: float, error: str) -> None: ...

    async def mark_completed(self, instance_id: str) -> None: ...

    async def mark_failed(self, instance_id: str, error: str) -> None: ...

    async def reset_stale_claims(self, timeout_seconds: int) -> int: ...

    async def count_by_status(self) -> dict[str, int]: ...
