# prealert/core/parser.py
"""
Dispatch message parser.

Layout::

    <nature> | <address>:<city> | <latitude>,<longitude>

Example::

    HEADACHE | 1116 1ST ST:BOONE | 42.067439,-93.873498

The first ``|`` segment is the nature and the last one is the coordinate
pair; everything in between is the address/city segment, so a ``|`` typed
inside a business-name clarifier stays part of the address. Within that
segment the city is whatever follows the LAST ``:``.
"""
from __future__ import annotations

import math

from prealert.core.domain import DispatchEvent
from prealert.core.errors import ValidationError

SEGMENT_SEPARATOR = "|"
CITY_SEPARATOR = ":"
COORDINATE_SEPARATOR = ","


def _parse_coordinate(raw: str, name: str) -> float:
    value = raw.strip()
    try:
        number = float(value)
    except ValueError:
        raise ValidationError(f"{name} is not a number: {value!r}") from None
    if not math.isfinite(number):
        raise ValidationError(f"{name} is not a finite number: {value!r}")
    return number


def _require_text(value: str, name: str) -> str:
    value = value.strip()
    if not value:
        raise ValidationError(f"{name} is empty")
    return value


def parse_dispatch_message(text: str) -> DispatchEvent:
    """
    Parse one dispatch message into a DispatchEvent.

    Raises:
        ValidationError: fewer than 3 segments, no ``:`` in the address
            segment, empty text fields, or a non-numeric coordinate.
    """
    if not isinstance(text, str):
        raise ValidationError("Dispatch message must be text")

    segments = text.strip().split(SEGMENT_SEPARATOR)
    if len(segments) < 3:
        raise ValidationError(
            f"Expected at least 3 '{SEGMENT_SEPARATOR}'-separated segments, got {len(segments)}"
        )

    nature = _require_text(segments[0], "nature")
    location = SEGMENT_SEPARATOR.join(segments[1:-1])
    coordinates = segments[-1]

    address, separator, city = location.rpartition(CITY_SEPARATOR)
    if not separator:
        raise ValidationError(
            f"Address segment has no '{CITY_SEPARATOR}' before the city: {location.strip()!r}"
        )

    parts = coordinates.split(COORDINATE_SEPARATOR)
    if len(parts) != 2:
        raise ValidationError(f"Expected '<latitude>,<longitude>', got {coordinates.strip()!r}")

    return DispatchEvent(
        nature=nature,
        address=_require_text(address, "address"),
        city=_require_text(city, "city"),
        latitude=_parse_coordinate(parts[0], "latitude"),
        longitude=_parse_coordinate(parts[1], "longitude"),
    )
