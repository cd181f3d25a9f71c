"""Closest-in-time partner search across the two recording roles."""

from __future__ import annotations

import logging
import time
from datetime import datetime

from correlation_store import CorrelationStore
from errors import MalformedTimestamp, StoreUnavailable
from models import ArrivalRecord, Role
from timestamps import to_instant

DEFAULT_WINDOW_MINUTES = 15
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_DELAY_SECONDS = 0.2

LOGGER = logging.getLogger(__name__)


def find_match(
    store: CorrelationStore,
    session: str,
    new_instant: datetime,
    new_role: Role,
    window_minutes: float = DEFAULT_WINDOW_MINUTES,
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
) -> ArrivalRecord | None:
    """Return the opposite-role record closest to new_instant, or None.

    Only unclaimed candidates within window_minutes (inclusive) qualify.
    Equal distances resolve to the lowest canonical timestamp. A store that
    stays unavailable after max_attempts queries is reported as no match.
    """
    candidates = _query_with_retries(
        store,
        role=new_role.opposite,
        session=session,
        max_attempts=max_attempts,
        retry_delay_seconds=retry_delay_seconds,
    )
    if not candidates:
        return None

    qualifying: list[tuple[float, str, ArrivalRecord]] = []
    for candidate in candidates:
        if candidate.matched_with is not None:
            continue
        try:
            candidate_instant = to_instant(candidate.original_timestamp, candidate.role)
        except MalformedTimestamp as exc:
            LOGGER.warning("Skipping candidate %s with unreadable timestamp: %s", candidate.artifact_id, exc)
            continue

        diff_minutes = abs((new_instant - candidate_instant).total_seconds()) / 60
        if diff_minutes <= window_minutes:
            qualifying.append((diff_minutes, candidate.canonical_timestamp, candidate))

    if not qualifying:
        LOGGER.info(
            "No %s candidate for session=%s within %s minutes (checked %s)",
            new_role.opposite.value,
            session,
            window_minutes,
            len(candidates),
        )
        return None

    diff_minutes, _, best = min(qualifying, key=lambda entry: (entry[0], entry[1]))
    LOGGER.info(
        "Matched session=%s with %s (%.2f minutes apart)",
        session,
        best.artifact_id,
        diff_minutes,
    )
    return best


def _query_with_retries(
    store: CorrelationStore,
    *,
    role: Role,
    session: str,
    max_attempts: int,
    retry_delay_seconds: float,
) -> list[ArrivalRecord]:
    delay_seconds = retry_delay_seconds
    last_error: Exception | None = None

    for attempt in range(1, max_attempts + 1):
        try:
            return store.query_by_role_and_session(role, session)
        except StoreUnavailable as exc:
            last_error = exc
            LOGGER.warning(
                "Candidate query failed for session=%s on attempt %s/%s: %s",
                session,
                attempt,
                max_attempts,
                exc,
            )
            if attempt < max_attempts:
                time.sleep(delay_seconds)
                delay_seconds *= 2

    LOGGER.error("Treating session=%s as unmatched after query failures: %s", session, last_error)
    return []
