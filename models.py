"""Shared typed models for the correlation pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from errors import DispatchRejected


class Role(str, Enum):
    """Which upload pipeline produced an artifact."""

    PRIMARY = "primary"
    COMPANION = "companion"

    @property
    def opposite(self) -> Role:
        return Role.COMPANION if self is Role.PRIMARY else Role.PRIMARY


class InsertStatus(str, Enum):
    INSERTED = "inserted"
    ALREADY_EXISTS = "already_exists"


class IngestionStage(str, Enum):
    """Terminal or last-reached stage of one ingestion."""

    PARSING = "parsing"
    NORMALIZING = "normalizing"
    RECORDING = "recording"
    MATCHING = "matching"
    CLAIMING = "claiming"
    DISPATCHING = "dispatching"
    DONE = "done"
    IGNORED = "ignored"
    FAILED = "failed"


class IngestionOutcome(str, Enum):
    IGNORED = "ignored"
    RECORDED_AWAITING_PARTNER = "recorded_awaiting_partner"
    MATCHED_AND_DISPATCHED = "matched_and_dispatched"
    MATCHED_DISPATCH_FAILED = "matched_dispatch_failed"
    MATCH_ALREADY_CLAIMED = "match_already_claimed"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class ParsedIdentifier:
    """Fields bound by a role's file-name pattern."""

    session: str
    raw_timestamp: str
    role: Role


@dataclass(frozen=True, slots=True)
class ArrivalRecord:
    """One uploaded artifact as persisted in the correlation store."""

    session: str
    canonical_timestamp: str
    original_timestamp: str
    role: Role
    artifact_id: str
    arrival_time: datetime
    expiry: datetime
    matched_with: str | None = None

    def is_visible(self, now: datetime) -> bool:
        return now < self.expiry

    @property
    def key(self) -> tuple[str, str]:
        return (self.session, self.canonical_timestamp)


@dataclass(frozen=True, slots=True)
class DispatchResult:
    """Whether the job runner accepted an invocation request."""

    accepted: bool
    reason: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    def raise_for_status(self) -> None:
        if not self.accepted:
            raise DispatchRejected(self.reason or "merge job invocation rejected")


@dataclass(frozen=True, slots=True)
class IngestionResult:
    """Structured outcome returned for every upload notification."""

    outcome: IngestionOutcome
    stage: IngestionStage
    artifact_id: str
    session: str | None = None
    role: Role | None = None
    primary_artifact_id: str | None = None
    companion_artifact_id: str | None = None
    reason: str = ""
    dispatch_details: dict[str, Any] = field(default_factory=dict)

    @property
    def is_failure(self) -> bool:
        return self.outcome in (IngestionOutcome.FAILED, IngestionOutcome.MATCHED_DISPATCH_FAILED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "stage": self.stage.value,
            "artifactId": self.artifact_id,
            "session": self.session,
            "role": self.role.value if self.role else None,
            "primaryArtifactId": self.primary_artifact_id,
            "companionArtifactId": self.companion_artifact_id,
            "reason": self.reason,
            "dispatch": dict(self.dispatch_details),
        }
