from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

from correlation_store import InMemoryCorrelationStore
from errors import StoreUnavailable
from matcher import find_match
from models import ArrivalRecord, Role
from timestamps import normalize, to_instant

NOW = datetime(2025, 8, 10, 8, 0, 0, tzinfo=UTC)


def _record(raw: str, role: Role, session: str = "test22") -> ArrivalRecord:
    return ArrivalRecord(
        session=session,
        canonical_timestamp=normalize(raw, role),
        original_timestamp=raw,
        role=role,
        artifact_id=f"{role.value}/{session}_{raw}.mp4",
        arrival_time=NOW,
        expiry=NOW + timedelta(hours=24),
    )


def _store(*records: ArrivalRecord) -> InMemoryCorrelationStore:
    store = InMemoryCorrelationStore(clock=lambda: NOW)
    for record in records:
        store.insert_if_absent(record)
    return store


PRIMARY_INSTANT = to_instant("20250810-062738", Role.PRIMARY)


def test_finds_companion_within_window() -> None:
    companion = _record("2025-08-10-06-30-00", Role.COMPANION)
    store = _store(_record("20250810-062738", Role.PRIMARY), companion)

    match = find_match(store, "test22", PRIMARY_INSTANT, Role.PRIMARY, window_minutes=15)

    assert match == companion


def test_returns_none_outside_window() -> None:
    store = _store(_record("2025-08-10-06-30-00", Role.COMPANION))

    assert find_match(store, "test22", PRIMARY_INSTANT, Role.PRIMARY, window_minutes=1) is None


def test_returns_none_when_partition_is_empty() -> None:
    store = _store(_record("20250810-062738", Role.PRIMARY))

    assert find_match(store, "test22", PRIMARY_INSTANT, Role.PRIMARY) is None


def test_selects_closest_candidate() -> None:
    base = datetime(2025, 8, 10, 6, 27, 38, tzinfo=UTC)
    candidates = [
        _record((base + timedelta(minutes=offset)).strftime("%Y-%m-%d-%H-%M-%S"), Role.COMPANION)
        for offset in (20, 3, 10)
    ]
    store = _store(*candidates)

    match = find_match(store, "test22", base, Role.PRIMARY, window_minutes=25)

    assert match == candidates[1]


def test_window_boundary_is_inclusive() -> None:
    store = _store(_record("2025-08-10-06-42-38", Role.COMPANION))

    assert find_match(store, "test22", PRIMARY_INSTANT, Role.PRIMARY, window_minutes=15) is not None


def test_tie_resolves_to_lowest_canonical_timestamp() -> None:
    earlier = _record("2025-08-10-06-22-38", Role.COMPANION)
    later = _record("2025-08-10-06-32-38", Role.COMPANION)
    store = _store(later, earlier)

    assert find_match(store, "test22", PRIMARY_INSTANT, Role.PRIMARY) == earlier


def test_companion_arrival_matches_primary() -> None:
    primary = _record("20250810-062738", Role.PRIMARY)
    store = _store(primary)

    match = find_match(store, "test22", to_instant("2025-08-10-06-30-00", Role.COMPANION), Role.COMPANION)

    assert match == primary


def test_other_sessions_are_ignored() -> None:
    store = _store(_record("2025-08-10-06-30-00", Role.COMPANION, session="room9"))

    assert find_match(store, "test22", PRIMARY_INSTANT, Role.PRIMARY) is None


def test_claimed_candidates_are_skipped() -> None:
    claimed = replace(_record("2025-08-10-06-28-00", Role.COMPANION), matched_with="main-room/x.mp4")
    free = _record("2025-08-10-06-35-00", Role.COMPANION)
    store = _store(claimed, free)

    assert find_match(store, "test22", PRIMARY_INSTANT, Role.PRIMARY) == free


def test_candidate_with_corrupt_timestamp_is_skipped() -> None:
    corrupt = replace(_record("2025-08-10-06-28-00", Role.COMPANION), original_timestamp="garbage")
    store = MagicMock()
    store.query_by_role_and_session.return_value = [corrupt]

    assert find_match(store, "test22", PRIMARY_INSTANT, Role.PRIMARY) is None


def test_query_retries_then_succeeds() -> None:
    companion = _record("2025-08-10-06-30-00", Role.COMPANION)
    store = MagicMock()
    store.query_by_role_and_session.side_effect = [StoreUnavailable("throttled"), [companion]]

    match = find_match(store, "test22", PRIMARY_INSTANT, Role.PRIMARY, retry_delay_seconds=0)

    assert match == companion
    assert store.query_by_role_and_session.call_count == 2


def test_persistent_query_failure_is_no_match() -> None:
    store = MagicMock()
    store.query_by_role_and_session.side_effect = StoreUnavailable("down")

    match = find_match(store, "test22", PRIMARY_INSTANT, Role.PRIMARY, max_attempts=3, retry_delay_seconds=0)

    assert match is None
    assert store.query_by_role_and_session.call_count == 3
    store.query_by_role_and_session.assert_called_with(Role.COMPANION, "test22")
