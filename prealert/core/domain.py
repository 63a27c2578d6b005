# prealert/core/domain.py
from __future__ import annotations

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any


@dataclass(frozen=True)
class Organization:
    org_id: str
    org_key: str
    access_key: str
    name: str


@dataclass(frozen=True)
class DispatchEvent:
    """Structured fields extracted from one dispatch message."""

    nature: str
    address: str
    city: str
    latitude: float
    longitude: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DispatchEvent":
        return cls(
            nature=data["nature"],
            address=data["address"],
            city=data["city"],
            latitude=float(data["latitude"]),
            longitude=float(data["longitude"]),
        )


@dataclass(frozen=True)
class Alert:
    alert_id: str
    organization: str
    body: str
    audio_url: str | None
    timestamp: int  # ms since epoch
    source: str
    nature: str = ""
    address: str = ""
    city: str = ""
    latitude: float | None = None
    longitude: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class InboundEmail:
    """Workflow trigger payload (already decoded by the email transport)."""

    email_from: str
    email_to: str
    email_text: str

    def to_payload(self) -> dict[str, str]:
        return {
            "emailFrom": self.email_from,
            "emailTo": self.email_to,
            "emailText": self.email_text,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "InboundEmail":
        return cls(
            email_from=payload.get("emailFrom") or "",
            email_to=payload.get("emailTo") or "",
            email_text=payload.get("emailText") or "",
        )


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class InstanceStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    TERMINALLY_FAILED = "terminally_failed"


@dataclass
class StepResult:
    status: StepStatus
    output: Any = None
    error: str | None = None
    attempts: int = 0


@dataclass
class WorkflowInstance:
    instance_id: str
    payload: InboundEmail
    status: InstanceStatus = InstanceStatus.ACTIVE
    steps: dict[str, StepResult] = field(default_factory=dict)
    error_message: str | None = None

    def output_of(self, step_name: str) -> Any:
        """Checkpointed output of a completed step."""
        result = self.steps.get(step_name)
        if result is None or result.status is not StepStatus.COMPLETED:
            raise RuntimeError(f"Step {step_name!r} has not completed for instance {self.instance_id}")
        return result.output
