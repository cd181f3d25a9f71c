"""Timestamp normalization shared by both recording roles.

Primary recordings encode capture time as ``YYYYMMDD-HHMMSS`` and companion
recordings as ``YYYY-MM-DD-HH-MM-SS``. Both are normalized to the companion
shape, which sorts lexicographically in time order.

Capture times carry no zone information. They are interpreted as UTC for
both roles so that instants from the two pipelines are always comparable.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime

from errors import MalformedTimestamp
from models import Role

CANONICAL_FORMAT = "%Y-%m-%d-%H-%M-%S"

_PRIMARY_RAW = re.compile(r"^(\d{4})(\d{2})(\d{2})-(\d{2})(\d{2})(\d{2})$")
_CANONICAL_RAW = re.compile(r"^(\d{4})-(\d{2})-(\d{2})-(\d{2})-(\d{2})-(\d{2})$")


def normalize(raw_timestamp: str, role: Role) -> str:
    """Return the canonical ``YYYY-MM-DD-HH-MM-SS`` form of a raw timestamp.

    Raises MalformedTimestamp if the token has the wrong shape for its role
    or names a date/time that does not exist.
    """
    pattern = _PRIMARY_RAW if role is Role.PRIMARY else _CANONICAL_RAW
    match = pattern.match(raw_timestamp)
    if not match:
        raise MalformedTimestamp(f"Timestamp {raw_timestamp!r} is not a valid {role.value} timestamp")

    canonical = "-".join(match.groups())
    _parse_canonical(canonical)
    return canonical


def to_instant(raw_timestamp: str, role: Role) -> datetime:
    """Return the UTC instant a raw timestamp refers to."""
    return _parse_canonical(normalize(raw_timestamp, role))


def _parse_canonical(canonical: str) -> datetime:
    try:
        parsed = datetime.strptime(canonical, CANONICAL_FORMAT)
    except ValueError as exc:
        raise MalformedTimestamp(f"Timestamp {canonical!r} has out-of-range fields") from exc
    return parsed.replace(tzinfo=UTC)
