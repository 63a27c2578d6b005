# tests/test_http.py
"""
Tests for the HTTP surface:
- inbound email webhook (trigger filtering, shared secret, dedup)
- read API (organization, latest alerts, audio with its three 404s)
- health / workflow status
"""
from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from prealert.config import settings
from prealert.core.domain import Alert, InstanceStatus
from prealert.core.errors import StorageError
from prealert.transport.api import ALERT_NOT_FOUND, AUDIO_NOT_ATTACHED, AUDIO_NOT_IN_STORAGE
from prealert.transport.http_app import app

from fakes import FAKE_MP3, HEADACHE_TEXT


def _alert(alert_id: str, *, timestamp: int, audio_url: str | None = None, org: str = "org-boone") -> Alert:
    return Alert(
        alert_id=alert_id,
        organization=org,
        body="Headache. In Boone.",
        audio_url=audio_url,
        timestamp=timestamp,
        source=HEADACHE_TEXT,
        nature="HEADACHE",
        address="1116 1ST ST",
        city="BOONE",
        latitude=42.067439,
        longitude=-93.873498,
    )


@pytest.fixture
def client(engine, orgs, alerts, audio_store, workflow_store):
    """TestClient over the real app with in-memory collaborators (lifespan not run)."""
    app.state.engine = engine
    app.state.orgs = orgs
    app.state.alerts = alerts
    app.state.audio_store = audio_store
    app.state.workflow_store = workflow_store
    return TestClient(app)


def _email(**overrides) -> dict:
    body = {
        "from": "cad@county.example",
        "to": "boone@alerts.example",
        "subject": "Pre-Alert: Medical",
        "text": HEADACHE_TEXT,
    }
    body.update(overrides)
    return body


# ---------------------------------------------------------------------------
# Email webhook
# ---------------------------------------------------------------------------

class TestEmailWebhook:
    def test_prealert_email_creates_instance(self, client, workflow_store, narrator):
        resp = client.post("/webhooks/email", json=_email())

        assert resp.status_code == 200
        data = resp.json()
        assert data["accepted"] is True
        instance = workflow_store.instances[data["instance_id"]]
        assert instance["status"] is InstanceStatus.ACTIVE
        assert instance["payload"].email_to == "boone@alerts.example"
        assert instance["payload"].email_text == HEADACHE_TEXT
        # The webhook only enqueues; the worker runs the steps
        assert narrator.calls == []

    def test_subject_match_is_case_insensitive(self, client):
        resp = client.post("/webhooks/email", json=_email(subject="fwd: PRE-ALERT"))
        assert resp.json()["accepted"] is True

    def test_other_subject_is_ignored(self, client, workflow_store):
        resp = client.post("/webhooks/email", json=_email(subject="Weekly report"))

        assert resp.status_code == 200
        assert resp.json() == {"accepted": False, "instance_id": None}
        assert workflow_store.instances == {}

    def test_recipient_list_is_joined(self, client, workflow_store):
        resp = client.post(
            "/webhooks/email",
            json=_email(to=["boone@alerts.example", "ames@alerts.example"]),
        )
        instance_id = resp.json()["instance_id"]
        payload = workflow_store.instances[instance_id]["payload"]
        assert payload.email_to == "boone@alerts.example,ames@alerts.example"

    def test_redelivered_message_id_is_deduplicated(self, client, workflow_store):
        first = client.post("/webhooks/email", json=_email(message_id="<abc@mail.example>"))
        second = client.post("/webhooks/email", json=_email(message_id="<abc@mail.example>"))

        assert first.json()["instance_id"] == second.json()["instance_id"]
        assert len(workflow_store.instances) == 1

    def test_missing_to_is_rejected(self, client):
        body = _email()
        del body["to"]
        assert client.post("/webhooks/email", json=body).status_code == 422

    def test_secret_required_when_configured(self, client, workflow_store):
        with patch.object(settings, "email_webhook_secret", "s3cret"):
            bad = client.post("/webhooks/email", json=_email(), headers={"X-Webhook-Secret": "nope"})
            missing = client.post("/webhooks/email", json=_email())
            good = client.post("/webhooks/email", json=_email(), headers={"X-Webhook-Secret": "s3cret"})

        assert bad.status_code == 403
        assert bad.json() == {"error": "Forbidden"}
        assert missing.status_code == 403
        assert good.status_code == 200
        assert len(workflow_store.instances) == 1


# ---------------------------------------------------------------------------
# Read API
# ---------------------------------------------------------------------------

class TestReadApi:
    def test_get_organization(self, client):
        resp = client.get("/api/org/boone")
        assert resp.status_code == 200
        assert resp.json() == {
            "org_id": "org-boone",
            "org_key": "boone",
            "access_key": "ak-123",
            "name": "Boone Fire",
        }

    def test_unknown_organization(self, client):
        resp = client.get("/api/org/ghost")
        assert resp.status_code == 404
        assert resp.json() == {"error": "Organization not found"}

    def test_latest_alerts_newest_first_and_limited(self, client, alerts):
        for i in range(7):
            alerts.rows.append(_alert(f"a{i}", timestamp=1_000 + i))
        alerts.rows.append(_alert("other", timestamp=9_999, org="org-ames"))

        resp = client.get("/api/org/boone/alerts")

        assert resp.status_code == 200
        ids = [a["alert_id"] for a in resp.json()]
        assert ids == ["a6", "a5", "a4", "a3", "a2"]

    def test_latest_alerts_unknown_org_is_empty(self, client):
        resp = client.get("/api/org/ghost/alerts")
        assert resp.status_code == 200
        assert resp.json() == []

    def test_audio_served_with_headers(self, client, alerts, audio_store):
        alerts.rows.append(_alert("a1", timestamp=1, audio_url="a1.mp3"))
        audio_store.objects["a1.mp3"] = FAKE_MP3

        resp = client.get("/api/org/boone/alerts/a1/audio")

        assert resp.status_code == 200
        assert resp.content == FAKE_MP3
        assert resp.headers["content-type"] == "audio/mpeg"
        assert resp.headers["content-disposition"] == 'inline; filename="a1.mp3"'
        assert resp.headers["cache-control"] == "public, max-age=31536000"

    def test_audio_unknown_alert(self, client):
        resp = client.get("/api/org/boone/alerts/missing/audio")
        assert resp.status_code == 404
        assert resp.json() == {"error": ALERT_NOT_FOUND}

    def test_audio_of_other_org_is_not_found(self, client, alerts, audio_store):
        alerts.rows.append(_alert("a1", timestamp=1, audio_url="a1.mp3", org="org-ames"))
        audio_store.objects["a1.mp3"] = FAKE_MP3

        resp = client.get("/api/org/boone/alerts/a1/audio")
        assert resp.json() == {"error": ALERT_NOT_FOUND}

    def test_audio_not_attached(self, client, alerts):
        alerts.rows.append(_alert("a1", timestamp=1, audio_url=None))

        resp = client.get("/api/org/boone/alerts/a1/audio")
        assert resp.status_code == 404
        assert resp.json() == {"error": AUDIO_NOT_ATTACHED}

    def test_audio_missing_from_storage(self, client, alerts):
        alerts.rows.append(_alert("a1", timestamp=1, audio_url="a1.mp3"))

        resp = client.get("/api/org/boone/alerts/a1/audio")
        assert resp.status_code == 404
        assert resp.json() == {"error": AUDIO_NOT_IN_STORAGE}

    def test_audio_storage_failure(self, client, alerts, audio_store):
        alerts.rows.append(_alert("a1", timestamp=1, audio_url="a1.mp3"))

        async def broken_get(key):
            raise StorageError("S3 download failed")

        audio_store.get = broken_get

        resp = client.get("/api/org/boone/alerts/a1/audio")
        assert resp.status_code == 502


# ---------------------------------------------------------------------------
# Operational endpoints
# ---------------------------------------------------------------------------

class TestOperationalEndpoints:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "healthy"}
        assert "x-request-id" in resp.headers

    def test_ready_when_database_answers(self, client):
        with patch("prealert.transport.http_app.ping", new=AsyncMock(return_value=True)):
            resp = client.get("/ready")
        assert resp.status_code == 200

    def test_not_ready_without_database(self, client):
        with patch("prealert.transport.http_app.ping", new=AsyncMock(return_value=False)):
            resp = client.get("/ready")
        assert resp.status_code == 503
        assert resp.json() == {"status": "unhealthy"}

    def test_request_id_is_echoed(self, client):
        resp = client.get("/health", headers={"X-Request-ID": "req-42"})
        assert resp.headers["x-request-id"] == "req-42"

    def test_malformed_request_id_is_replaced(self, client):
        resp = client.get("/health", headers={"X-Request-ID": "bad id with spaces"})
        assert resp.headers["x-request-id"] != "bad id with spaces"
        assert len(resp.headers["x-request-id"]) == 36

    def test_workflow_status_counts(self, client):
        client.post("/webhooks/email", json=_email())
        with patch.object(settings, "admin_token", "adm1n"):
            resp = client.get("/admin/workflows", headers={"Authorization": "Bearer adm1n"})
        assert resp.status_code == 200
        assert resp.json() == {"instances": {"active": 1}}

    def test_workflow_status_requires_bearer_token(self, client):
        with patch.object(settings, "admin_token", "adm1n"):
            missing = client.get("/admin/workflows")
            wrong = client.get("/admin/workflows", headers={"Authorization": "Bearer nope"})

        assert missing.status_code == 401
        assert missing.json() == {"error": "Authentication required"}
        assert missing.headers["www-authenticate"] == "Bearer"
        assert wrong.status_code == 401

    def test_workflow_status_unavailable_without_admin_token(self, client):
        with patch.object(settings, "admin_token", None):
            resp = client.get("/admin/workflows", headers={"Authorization": "Bearer anything"})
        assert resp.status_code == 503

    def test_metrics(self, client):
        resp = client.get("/metrics")
        assert resp.status_code == 200
        assert "counters" in resp.json()
