# tests/test_parser.py
"""
Tests for dispatch message parsing and org resolution.
"""
from __future__ import annotations

import pytest

from prealert.core.domain import DispatchEvent
from prealert.core.errors import OrgNotFoundError, ValidationError
from prealert.core.org_resolver import org_key_from_recipients, resolve_org_id
from prealert.core.parser import parse_dispatch_message

from fakes import FakeOrgRepo, HEADACHE_TEXT


# ---------------------------------------------------------------------------
# parse_dispatch_message
# ---------------------------------------------------------------------------

class TestParseDispatchMessage:
    def test_parses_canonical_message(self):
        event = parse_dispatch_message(HEADACHE_TEXT)
        assert event == DispatchEvent(
            nature="HEADACHE",
            address="1116 1ST ST",
            city="BOONE",
            latitude=42.067439,
            longitude=-93.873498,
        )

    def test_is_deterministic(self):
        assert parse_dispatch_message(HEADACHE_TEXT) == parse_dispatch_message(HEADACHE_TEXT)

    def test_tolerates_missing_spaces_and_outer_whitespace(self):
        event = parse_dispatch_message("  FALL|22 MAIN ST:AMES|42.0,-93.6\n")
        assert event.nature == "FALL"
        assert event.address == "22 MAIN ST"
        assert event.city == "AMES"
        assert event.latitude == 42.0
        assert event.longitude == -93.6

    def test_city_follows_last_colon(self):
        event = parse_dispatch_message("FIRE | BLDG 3: UNIT 4:BOONE | 42.1,-93.8")
        assert event.address == "BLDG 3: UNIT 4"
        assert event.city == "BOONE"

    def test_pipe_inside_address_is_kept(self):
        event = parse_dispatch_message("FIRE | 100 ELM ST | JOE'S DINER:BOONE | 42.1,-93.8")
        assert event.nature == "FIRE"
        assert event.address == "100 ELM ST | JOE'S DINER"
        assert event.city == "BOONE"
        assert event.latitude == 42.1

    def test_unparseable_text_rejected(self):
        with pytest.raises(ValidationError):
            parse_dispatch_message("UNPARSEABLE")

    def test_two_segments_rejected(self):
        with pytest.raises(ValidationError, match="at least 3"):
            parse_dispatch_message("HEADACHE | 1116 1ST ST:BOONE")

    def test_missing_city_separator_rejected(self):
        with pytest.raises(ValidationError, match="no ':'"):
            parse_dispatch_message("HEADACHE | 1116 1ST ST BOONE | 42.067439,-93.873498")

    def test_non_numeric_latitude_rejected(self):
        with pytest.raises(ValidationError, match="latitude"):
            parse_dispatch_message("HEADACHE | 1116 1ST ST:BOONE | north,-93.873498")

    def test_non_finite_coordinate_rejected(self):
        with pytest.raises(ValidationError, match="finite"):
            parse_dispatch_message("HEADACHE | 1116 1ST ST:BOONE | 42.0,nan")

    def test_single_coordinate_rejected(self):
        with pytest.raises(ValidationError):
            parse_dispatch_message("HEADACHE | 1116 1ST ST:BOONE | 42.067439")

    def test_empty_nature_rejected(self):
        with pytest.raises(ValidationError, match="nature"):
            parse_dispatch_message(" | 1116 1ST ST:BOONE | 42.0,-93.8")

    def test_empty_city_rejected(self):
        with pytest.raises(ValidationError, match="city"):
            parse_dispatch_message("HEADACHE | 1116 1ST ST: | 42.0,-93.8")

    def test_validation_error_is_not_retryable(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_dispatch_message("")
        assert exc_info.value.retryable is False


# ---------------------------------------------------------------------------
# Org resolution
# ---------------------------------------------------------------------------

class TestOrgResolver:
    def test_key_is_local_part(self):
        assert org_key_from_recipients("boone@alerts.example") == "boone"

    def test_only_first_recipient_counts(self):
        assert org_key_from_recipients(" ames@alerts.example, boone@alerts.example") == "ames"

    def test_empty_recipients(self):
        assert org_key_from_recipients("") == ""

    @pytest.mark.asyncio
    async def test_resolves_org_id(self, orgs):
        org_id = await resolve_org_id(orgs, "boone@alerts.example")
        assert org_id == "org-boone"
        assert orgs.lookups == ["boone"]

    @pytest.mark.asyncio
    async def test_unknown_org_raises(self):
        with pytest.raises(OrgNotFoundError) as exc_info:
            await resolve_org_id(FakeOrgRepo(), "ghost@alerts.example")
        assert str(exc_info.value) == 'Org with key "ghost" not found'
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_empty_key_raises_without_lookup(self, orgs):
        with pytest.raises(OrgNotFoundError):
            await resolve_org_id(orgs, "@alerts.example")
        assert orgs.lookups == []
