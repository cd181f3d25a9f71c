"""Correlation store: durable arrival records keyed by (session, canonical timestamp).

Two backends share one protocol:

  InMemoryCorrelationStore  — process-local dict behind a lock; used by the
                              local replay CLI and by tests.
  DynamoDBCorrelationStore  — the deployed table.  Partition key ``session``,
                              sort key ``canonicalTimestamp``, plus a GSI on
                              ``role`` + ``canonicalTimestamp``.

Records expire ``retention_seconds`` after arrival.  Expired records are never
returned by queries and are treated as absent on insert, whether or not they
have been physically evicted yet.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, Protocol

import boto3
from boto3.dynamodb.conditions import Attr, Key
from boto3.dynamodb.types import TypeSerializer
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from errors import StoreUnavailable
from models import ArrivalRecord, InsertStatus, Role

DEFAULT_RETENTION_SECONDS = 86400
DEFAULT_ROLE_INDEX = "roleIndex"
DEFAULT_TIMEOUT_SECONDS = 5

LOGGER = logging.getLogger(__name__)

_SERIALIZER = TypeSerializer()

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


class CorrelationStore(Protocol):
    def insert_if_absent(self, record: ArrivalRecord) -> InsertStatus: ...

    def query_by_role_and_session(self, role: Role, session: str) -> list[ArrivalRecord]: ...

    def claim_pair(self, primary: ArrivalRecord, companion: ArrivalRecord) -> bool:
        """Mark both records as matched to each other, or neither.

        Fails when either record is absent, expired, or already claimed.
        """
        ...

    def release_pair(self, primary: ArrivalRecord, companion: ArrivalRecord) -> None: ...


class InMemoryCorrelationStore:
    """Thread-safe in-process store with read-time expiry."""

    def __init__(self, clock: Clock = utc_now) -> None:
        self._clock = clock
        self._records: dict[tuple[str, str], ArrivalRecord] = {}
        self._lock = threading.Lock()

    def insert_if_absent(self, record: ArrivalRecord) -> InsertStatus:
        with self._lock:
            existing = self._records.get(record.key)
            if existing is not None and existing.is_visible(self._clock()):
                return InsertStatus.ALREADY_EXISTS
            self._records[record.key] = record
            return InsertStatus.INSERTED

    def query_by_role_and_session(self, role: Role, session: str) -> list[ArrivalRecord]:
        now = self._clock()
        with self._lock:
            return [
                record
                for record in self._records.values()
                if record.role is role and record.session == session and record.is_visible(now)
            ]

    def claim_pair(self, primary: ArrivalRecord, companion: ArrivalRecord) -> bool:
        with self._lock:
            now = self._clock()
            current = [self._records.get(record.key) for record in (primary, companion)]
            if any(held is None or not held.is_visible(now) or held.matched_with is not None for held in current):
                return False
            held_primary, held_companion = current
            self._records[primary.key] = replace(held_primary, matched_with=companion.artifact_id)
            self._records[companion.key] = replace(held_companion, matched_with=primary.artifact_id)
            return True

    def release_pair(self, primary: ArrivalRecord, companion: ArrivalRecord) -> None:
        with self._lock:
            for record, partner_id in ((primary, companion.artifact_id), (companion, primary.artifact_id)):
                current = self._records.get(record.key)
                if current is not None and current.matched_with == partner_id:
                    self._records[record.key] = replace(current, matched_with=None)

    def get(self, session: str, canonical_timestamp: str) -> ArrivalRecord | None:
        with self._lock:
            return self._records.get((session, canonical_timestamp))

    def purge_expired(self) -> int:
        """Physically drop expired records; returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, record in self._records.items() if not record.is_visible(now)]
            for key in expired:
                del self._records[key]
        if expired:
            LOGGER.info("Purged %s expired arrival records", len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class DynamoDBCorrelationStore:
    """DynamoDB-backed store; physical eviction is left to the table's native TTL."""

    def __init__(
        self,
        table_name: str,
        *,
        index_name: str = DEFAULT_ROLE_INDEX,
        region_name: str | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        table: Any = None,
        clock: Clock = utc_now,
    ) -> None:
        self.table_name = table_name
        self.index_name = index_name
        self._clock = clock
        if table is None:
            resource = boto3.resource(
                "dynamodb",
                region_name=region_name,
                config=Config(
                    connect_timeout=timeout_seconds,
                    read_timeout=timeout_seconds,
                    retries={"max_attempts": 2, "mode": "standard"},
                ),
            )
            table = resource.Table(table_name)
        self._table = table

    def insert_if_absent(self, record: ArrivalRecord) -> InsertStatus:
        now_epoch = int(self._clock().timestamp())
        try:
            self._table.put_item(
                Item=record_to_item(record),
                ConditionExpression=Attr("session").not_exists() | Attr("expiryEpochSeconds").lte(now_epoch),
            )
        except ClientError as exc:
            if _is_conditional_failure(exc):
                LOGGER.info(
                    "Record already exists for %s at %s, skipping duplicate",
                    record.session,
                    record.canonical_timestamp,
                )
                return InsertStatus.ALREADY_EXISTS
            raise StoreUnavailable(f"put_item failed on {self.table_name}: {exc}") from exc
        except BotoCoreError as exc:
            raise StoreUnavailable(f"put_item failed on {self.table_name}: {exc}") from exc

        LOGGER.info(
            "Added arrival record: %s-%s at %s (original: %s)",
            record.session,
            record.role.value,
            record.canonical_timestamp,
            record.original_timestamp,
        )
        return InsertStatus.INSERTED

    def query_by_role_and_session(self, role: Role, session: str) -> list[ArrivalRecord]:
        now_epoch = int(self._clock().timestamp())
        kwargs: dict[str, Any] = {
            "IndexName": self.index_name,
            "KeyConditionExpression": Key("role").eq(role.value),
            "FilterExpression": Attr("session").eq(session) & Attr("expiryEpochSeconds").gt(now_epoch),
        }
        records: list[ArrivalRecord] = []

        while True:
            try:
                response = self._table.query(**kwargs)
            except (ClientError, BotoCoreError) as exc:
                raise StoreUnavailable(f"query failed on {self.table_name}/{self.index_name}: {exc}") from exc

            for item in response.get("Items", []):
                # GSI projections may omit attributes; an incomplete row cannot be matched.
                try:
                    records.append(item_to_record(item))
                except (KeyError, ValueError) as exc:
                    LOGGER.warning("Skipping unreadable item in %s: %s", self.table_name, exc)

            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                return records
            kwargs["ExclusiveStartKey"] = last_key

    def claim_pair(self, primary: ArrivalRecord, companion: ArrivalRecord) -> bool:
        now = self._clock()
        values = {
            ":now": _serialize(int(now.timestamp())),
            ":at": _serialize(now.isoformat()),
        }

        def claim_update(record: ArrivalRecord, partner_artifact_id: str) -> dict[str, Any]:
            return {
                "Update": {
                    "TableName": self.table_name,
                    "Key": {
                        "session": _serialize(record.session),
                        "canonicalTimestamp": _serialize(record.canonical_timestamp),
                    },
                    "UpdateExpression": "SET matchedWith = :partner, matchedAtIso8601 = :at",
                    "ConditionExpression": (
                        "attribute_exists(#session) AND attribute_not_exists(matchedWith) "
                        "AND expiryEpochSeconds > :now"
                    ),
                    "ExpressionAttributeNames": {"#session": "session"},
                    "ExpressionAttributeValues": {**values, ":partner": _serialize(partner_artifact_id)},
                }
            }

        try:
            self._table.meta.client.transact_write_items(
                TransactItems=[
                    claim_update(primary, companion.artifact_id),
                    claim_update(companion, primary.artifact_id),
                ]
            )
        except ClientError as exc:
            if _is_lost_claim(exc):
                return False
            raise StoreUnavailable(f"transact_write_items failed on {self.table_name}: {exc}") from exc
        except BotoCoreError as exc:
            raise StoreUnavailable(f"transact_write_items failed on {self.table_name}: {exc}") from exc
        return True

    def release_pair(self, primary: ArrivalRecord, companion: ArrivalRecord) -> None:
        for record, partner_artifact_id in ((primary, companion.artifact_id), (companion, primary.artifact_id)):
            self._release_claim(record, partner_artifact_id)

    def _release_claim(self, record: ArrivalRecord, partner_artifact_id: str) -> None:
        try:
            self._table.update_item(
                Key={"session": record.session, "canonicalTimestamp": record.canonical_timestamp},
                UpdateExpression="REMOVE matchedWith, matchedAtIso8601",
                ConditionExpression=Attr("matchedWith").eq(partner_artifact_id),
            )
        except ClientError as exc:
            if _is_conditional_failure(exc):
                return
            raise StoreUnavailable(f"update_item failed on {self.table_name}: {exc}") from exc
        except BotoCoreError as exc:
            raise StoreUnavailable(f"update_item failed on {self.table_name}: {exc}") from exc


def record_to_item(record: ArrivalRecord) -> dict[str, Any]:
    item: dict[str, Any] = {
        "session": record.session,
        "canonicalTimestamp": record.canonical_timestamp,
        "originalTimestamp": record.original_timestamp,
        "role": record.role.value,
        "artifactId": record.artifact_id,
        "arrivalTimeIso8601": record.arrival_time.isoformat(),
        "expiryEpochSeconds": int(record.expiry.timestamp()),
    }
    if record.matched_with is not None:
        item["matchedWith"] = record.matched_with
    return item


def item_to_record(item: dict[str, Any]) -> ArrivalRecord:
    expiry = item["expiryEpochSeconds"]
    if isinstance(expiry, Decimal):
        expiry = int(expiry)

    arrival_time = datetime.fromisoformat(item["arrivalTimeIso8601"])
    if arrival_time.tzinfo is None:
        arrival_time = arrival_time.replace(tzinfo=UTC)

    return ArrivalRecord(
        session=item["session"],
        canonical_timestamp=item["canonicalTimestamp"],
        original_timestamp=item["originalTimestamp"],
        role=Role(item["role"]),
        artifact_id=item["artifactId"],
        arrival_time=arrival_time,
        expiry=datetime.fromtimestamp(int(expiry), tz=UTC),
        matched_with=item.get("matchedWith"),
    )


def _is_conditional_failure(exc: ClientError) -> bool:
    return exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


def _is_lost_claim(exc: ClientError) -> bool:
    # Lost only when the cancelled items failed their conditions; conflicts
    # and throttling surface as StoreUnavailable.
    if exc.response.get("Error", {}).get("Code") != "TransactionCanceledException":
        return False
    codes = {
        reason.get("Code", "None")
        for reason in exc.response.get("CancellationReasons", [])
    }
    return "ConditionalCheckFailed" in codes and codes <= {"ConditionalCheckFailed", "None"}


def _serialize(value: Any) -> dict[str, Any]:
    return _SERIALIZER.serialize(value)
