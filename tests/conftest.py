"""Pytest configuration and shared fixtures"""
import sys
from pathlib import Path

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from prealert.core.domain import DispatchEvent, InboundEmail, Organization  # noqa: E402
from prealert.core.engine import WorkflowEngine  # noqa: E402
from prealert.core.workflow import AlertWorkflow  # noqa: E402

from fakes import (  # noqa: E402
    HEADACHE_TEXT,
    FakeAlertRepo,
    FakeAudioStore,
    FakeOrgRepo,
    InMemoryWorkflowStore,
    StubNarrator,
    StubSynthesizer,
)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def boone_org():
    return Organization(org_id="org-boone", org_key="boone", access_key="ak-123", name="Boone Fire")


@pytest.fixture
def orgs(boone_org):
    return FakeOrgRepo([boone_org])


@pytest.fixture
def alerts(orgs):
    return FakeAlertRepo(orgs)


@pytest.fixture
def audio_store():
    return FakeAudioStore()


@pytest.fixture
def narrator():
    return StubNarrator()


@pytest.fixture
def synthesizer():
    return StubSynthesizer()


@pytest.fixture
def workflow_store():
    return InMemoryWorkflowStore()


@pytest.fixture
def workflow(orgs, alerts, audio_store, narrator, synthesizer):
    return AlertWorkflow(
        orgs=orgs,
        alerts=alerts,
        audio_store=audio_store,
        narrator=narrator,
        synthesizer=synthesizer,
        clock=lambda: 1_700_000_000.5,
    )


@pytest.fixture
def engine(workflow_store, workflow):
    return WorkflowEngine(
        workflow_store,
        workflow,
        max_attempts=3,
        base_retry_delay=5.0,
        max_retry_delay=60.0,
    )


@pytest.fixture
def headache_email():
    return InboundEmail(
        email_from="cad@county.example",
        email_to="boone@alerts.example",
        email_text=HEADACHE_TEXT,
    )


@pytest.fixture
def headache_event():
    return DispatchEvent(
        nature="HEADACHE",
        address="1116 1ST ST",
        city="BOONE",
        latitude=42.067439,
        longitude=-93.873498,
    )
