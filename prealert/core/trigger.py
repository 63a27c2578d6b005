# prealert/core/trigger.py
"""
Inbound email → workflow instance.

The email transport hands over an already-decoded message. Only
messages whose subject contains the trigger token (case-insensitive)
start a pipeline; everything else is acknowledged and dropped.
"""
from __future__ import annotations

import uuid

from prealert.core.domain import InboundEmail
from prealert.core.engine import WorkflowEngine
from prealert.infra.logging_config import get_logger
from prealert.infra.metrics import inc_counter

logger = get_logger(__name__)

DEFAULT_SUBJECT_TOKEN = "pre-alert"


def is_prealert_subject(subject: str | None, token: str = DEFAULT_SUBJECT_TOKEN) -> bool:
    return token.lower() in (subject or "").lower()


def join_recipients(recipients: str | list[str] | None) -> str:
    """Normalize the ``to`` field into one comma-separated string, order preserved."""
    if recipients is None:
        return ""
    if isinstance(recipients, str):
        return recipients
    return ",".join(r.strip() for r in recipients if r and r.strip())


def delivery_instance_id(message_id: str, email_to: str) -> str:
    """
    Stable instance id for one delivery.

    A redelivered message maps to the same id and is absorbed by create().
    One message sent to several org addresses arrives as separate deliveries
    sharing a Message-ID, so the recipients are part of the key.
    """
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"{message_id}\n{email_to}"))


async def handle_inbound_email(
    engine: WorkflowEngine,
    *,
    sender: str | None,
    recipients: str | list[str] | None,
    subject: str | None,
    text: str | None,
    token: str = DEFAULT_SUBJECT_TOKEN,
    message_id: str | None = None,
) -> str | None:
    """
    Create exactly one workflow instance for a pre-alert email.

    Returns:
        The instance id, or None when the subject does not match.
    """
    if not is_prealert_subject(subject, token):
        inc_counter("inbound_emails_ignored")
        logger.info(f"Inbound email ignored (subject has no '{token}'): from={sender}")
        return None

    email_to = join_recipients(recipients)
    payload = InboundEmail(
        email_from=sender or "",
        email_to=email_to,
        email_text=(text or "").strip(),
    )
    inc_counter("inbound_emails_accepted")
    instance_id = delivery_instance_id(message_id, email_to) if message_id else None
    return await engine.create(payload, instance_id=instance_id)
