"""Object-key parsing for primary and companion recordings."""

from __future__ import annotations

import logging
import re

from models import ParsedIdentifier, Role

DEFAULT_PRIMARY_PREFIX = "main-room"
# Matches the companion pipeline's existing bucket folder name.
DEFAULT_COMPANION_PREFIX = "translater"

# test22_20250810-062738.mp4
_PRIMARY_PATTERN = re.compile(r"^(.+?)_(\d{8}-\d{6})\.mp4$")
# test22-observer_2025-08-10-07-08-49.mp4
_COMPANION_PATTERN = re.compile(r"^(.+?)-observer_(\d{4}-\d{2}-\d{2}-\d{2}-\d{2}-\d{2})\.mp4$")

_PATTERNS: dict[Role, re.Pattern[str]] = {
    Role.PRIMARY: _PRIMARY_PATTERN,
    Role.COMPANION: _COMPANION_PATTERN,
}

LOGGER = logging.getLogger(__name__)


def parse_identifier(
    identifier: str,
    primary_prefix: str = DEFAULT_PRIMARY_PREFIX,
    companion_prefix: str = DEFAULT_COMPANION_PREFIX,
) -> ParsedIdentifier | None:
    """Extract session, raw timestamp and role from an object key.

    The first path segment selects the role; the last segment must match that
    role's file-name pattern. Returns None for anything else so callers can
    ignore the event without side effects.
    """
    segments = identifier.strip("/").split("/")
    if len(segments) < 2:
        return None

    role = _role_for_prefix(segments[0], primary_prefix, companion_prefix)
    if role is None:
        return None

    match = _PATTERNS[role].match(segments[-1])
    if not match:
        LOGGER.debug("Key %s is under the %s prefix but its name does not match", identifier, role.value)
        return None

    return ParsedIdentifier(session=match.group(1), raw_timestamp=match.group(2), role=role)


def _role_for_prefix(prefix: str, primary_prefix: str, companion_prefix: str) -> Role | None:
    if prefix == primary_prefix:
        return Role.PRIMARY
    if prefix == companion_prefix:
        return Role.COMPANION
    return None
