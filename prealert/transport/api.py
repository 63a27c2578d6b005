# prealert/transport/api.py
"""
Read-only query API.

    GET /api/org/{org_key}
    GET /api/org/{org_key}/alerts
    GET /api/org/{org_key}/alerts/{alert_id}/audio

The audio route has three distinct 404s: the alert does not exist for
this organization, the alert has no audio attached, or the object is
missing from the bucket.
"""
from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import Response

from prealert.config import settings
from prealert.core.errors import StorageError
from prealert.infra.logging_config import get_logger
from prealert.transport.schemas import AlertOut, OrganizationOut

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

ALERT_NOT_FOUND = "Alert not found"
AUDIO_NOT_ATTACHED = "Audio file not found for this alert"
AUDIO_NOT_IN_STORAGE = "Audio file not found in storage"


@router.get("/org/{org_key}", response_model=OrganizationOut)
async def get_organization(org_key: str, request: Request):
    org = await request.app.state.orgs.get_by_key(org_key)
    if org is None:
        raise HTTPException(status_code=404, detail="Organization not found")
    return OrganizationOut(
        org_id=org.org_id,
        org_key=org.org_key,
        access_key=org.access_key,
        name=org.name,
    )


@router.get("/org/{org_key}/alerts", response_model=list[AlertOut])
async def list_latest_alerts(org_key: str, request: Request):
    """Newest alerts first; an unknown org_key yields an empty list."""
    alerts = await request.app.state.alerts.latest_for_org(org_key, settings.alerts_latest_limit)
    return [AlertOut(**alert.to_dict()) for alert in alerts]


@router.get("/org/{org_key}/alerts/{alert_id}/audio")
async def get_alert_audio(org_key: str, alert_id: str, request: Request):
    alert = await request.app.state.alerts.get_for_org(org_key, alert_id)
    if alert is None:
        raise HTTPException(status_code=404, detail=ALERT_NOT_FOUND)

    if not alert.audio_url:
        raise HTTPException(status_code=404, detail=AUDIO_NOT_ATTACHED)

    try:
        content = await request.app.state.audio_store.get(alert.audio_url)
    except StorageError as exc:
        logger.error(f"Audio download failed: alert={alert_id[:8]}, error={exc}")
        raise HTTPException(status_code=502, detail="Storage unavailable")

    if content is None:
        logger.warning(f"Audio object missing: key={alert.audio_url}")
        raise HTTPException(status_code=404, detail=AUDIO_NOT_IN_STORAGE)

    return Response(
        content=content,
        media_type="audio/mpeg",
        headers={
            "Content-Disposition": f'inline; filename="{alert_id}.mp3"',
            "Cache-Control": "public, max-age=31536000",  # Cache for 1 year
        },
    )
