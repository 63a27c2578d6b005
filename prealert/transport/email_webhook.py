# prealert/transport/email_webhook.py
"""
Inbound email webhook.

The mail transport (MIME decoding happens there) posts each received
message as JSON. Pre-alert messages start a workflow instance; the
response never waits for the pipeline.
"""
from __future__ import annotations

import hmac

from fastapi import APIRouter, HTTPException, Request

from prealert.config import settings
from prealert.core.trigger import handle_inbound_email
from prealert.infra.logging_config import get_logger
from prealert.transport.schemas import InboundEmailIn, InboundEmailOut

logger = get_logger(__name__)

router = APIRouter()


def _verify_secret(request: Request) -> bool:
    """Constant-time check of X-Webhook-Secret. Skipped when no secret is configured."""
    expected = settings.email_webhook_secret
    if not expected:
        return True
    provided = request.headers.get("X-Webhook-Secret", "")
    return hmac.compare_digest(provided.encode(), expected.encode())


@router.post("/webhooks/email", response_model=InboundEmailOut)
async def email_webhook(message: InboundEmailIn, request: Request):
    if not _verify_secret(request):
        logger.warning("Email webhook rejected: bad or missing X-Webhook-Secret")
        raise HTTPException(status_code=403, detail="Forbidden")

    instance_id = await handle_inbound_email(
        request.app.state.engine,
        sender=message.sender,
        recipients=message.to,
        subject=message.subject,
        text=message.text,
        token=settings.email_subject_token,
        message_id=message.message_id,
    )
    return InboundEmailOut(accepted=instance_id is not None, instance_id=instance_id)
