"""Ingestion handler: one upload notification in, one structured outcome out.

Stages run in order:

  parsing -> normalizing -> recording -> matching -> claiming -> dispatching -> done

An unparseable key stops at ``ignored``; malformed timestamps and store or
runner failures stop at ``failed``.  The arrival record is durable as soon as
recording succeeds, so a later partner arrival or a replay can still match it
even if this invocation fails afterwards.

Racing invocations are resolved by claiming both records of the pair in one
atomic step: only the invocation whose claim succeeds dispatches the merge
job, and a record already paired with someone else cannot be claimed again.
"""

from __future__ import annotations

import json
import logging
from datetime import timedelta
from typing import Any
from urllib.parse import unquote_plus

from correlation_store import Clock, CorrelationStore, DynamoDBCorrelationStore, InMemoryCorrelationStore, utc_now
from dispatcher import Dispatcher
from errors import ConfigurationError, DispatchRejected, MalformedTimestamp, StoreUnavailable
from identifiers import parse_identifier
from job_runners import EcsJobRunner, HttpJobRunner, JobRunner, LambdaJobRunner, LoggingJobRunner
from matcher import find_match
from models import (
    ArrivalRecord,
    InsertStatus,
    IngestionOutcome,
    IngestionResult,
    IngestionStage,
    ParsedIdentifier,
    Role,
)
from settings import Settings
from timestamps import normalize, to_instant

LOGGER = logging.getLogger(__name__)


class IngestionHandler:
    def __init__(
        self,
        store: CorrelationStore,
        dispatcher: Dispatcher,
        settings: Settings | None = None,
        clock: Clock = utc_now,
        query_retry_delay_seconds: float = 0.2,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.settings = settings or Settings()
        self._clock = clock
        self._query_retry_delay_seconds = query_retry_delay_seconds

    def handle(self, bucket: str, object_key: str) -> IngestionResult:
        """Process one upload-completed notification; never raises for bad input."""
        LOGGER.info("Processing file: %s from bucket: %s", object_key, bucket)

        parsed = parse_identifier(
            object_key,
            primary_prefix=self.settings.primary_prefix,
            companion_prefix=self.settings.companion_prefix,
        )
        if parsed is None:
            LOGGER.info("Could not parse file name: %s", object_key)
            return IngestionResult(
                outcome=IngestionOutcome.IGNORED,
                stage=IngestionStage.IGNORED,
                artifact_id=object_key,
                reason="identifier matches no known role pattern",
            )

        try:
            canonical = normalize(parsed.raw_timestamp, parsed.role)
            instant = to_instant(parsed.raw_timestamp, parsed.role)
        except MalformedTimestamp as exc:
            LOGGER.error("Malformed timestamp in %s: %s", object_key, exc)
            return self._failed(parsed, object_key, IngestionStage.NORMALIZING, str(exc))

        now = self._clock()
        record = ArrivalRecord(
            session=parsed.session,
            canonical_timestamp=canonical,
            original_timestamp=parsed.raw_timestamp,
            role=parsed.role,
            artifact_id=object_key,
            arrival_time=now,
            expiry=now + timedelta(seconds=self.settings.retention_window_seconds),
        )

        try:
            status = self.store.insert_if_absent(record)
        except StoreUnavailable as exc:
            LOGGER.error("Failed to record arrival of %s: %s", object_key, exc)
            return self._failed(parsed, object_key, IngestionStage.RECORDING, str(exc))
        if status is InsertStatus.ALREADY_EXISTS:
            LOGGER.info("Duplicate notification for %s; continuing to partner search", object_key)

        partner = find_match(
            self.store,
            parsed.session,
            instant,
            parsed.role,
            self.settings.match_window_minutes,
            max_attempts=self.settings.query_max_attempts,
            retry_delay_seconds=self._query_retry_delay_seconds,
        )
        if partner is None:
            LOGGER.info(
                "No matching file for session %s within %s minutes",
                parsed.session,
                self.settings.match_window_minutes,
            )
            return IngestionResult(
                outcome=IngestionOutcome.RECORDED_AWAITING_PARTNER,
                stage=IngestionStage.DONE,
                artifact_id=object_key,
                session=parsed.session,
                role=parsed.role,
            )

        if parsed.role is Role.PRIMARY:
            primary_record, companion_record = record, partner
        else:
            primary_record, companion_record = partner, record
        pair = {
            "artifact_id": object_key,
            "session": parsed.session,
            "role": parsed.role,
            "primary_artifact_id": primary_record.artifact_id,
            "companion_artifact_id": companion_record.artifact_id,
        }

        try:
            claimed = self.store.claim_pair(primary_record, companion_record)
        except StoreUnavailable as exc:
            LOGGER.error("Failed to claim pair for session %s: %s", parsed.session, exc)
            return IngestionResult(
                outcome=IngestionOutcome.FAILED, stage=IngestionStage.FAILED, reason=str(exc), **pair
            )
        if not claimed:
            LOGGER.info(
                "Pair %s / %s already claimed by another invocation",
                primary_record.artifact_id,
                companion_record.artifact_id,
            )
            return IngestionResult(
                outcome=IngestionOutcome.MATCH_ALREADY_CLAIMED, stage=IngestionStage.DONE, **pair
            )

        result = self.dispatcher.dispatch(primary_record.artifact_id, companion_record.artifact_id, parsed.session)
        try:
            result.raise_for_status()
        except DispatchRejected as exc:
            self._release(primary_record, companion_record)
            return IngestionResult(
                outcome=IngestionOutcome.MATCHED_DISPATCH_FAILED,
                stage=IngestionStage.FAILED,
                reason=str(exc),
                dispatch_details=result.details,
                **pair,
            )
        return IngestionResult(
            outcome=IngestionOutcome.MATCHED_AND_DISPATCHED,
            stage=IngestionStage.DONE,
            dispatch_details=result.details,
            **pair,
        )

    def _release(self, primary_record: ArrivalRecord, companion_record: ArrivalRecord) -> None:
        try:
            self.store.release_pair(primary_record, companion_record)
        except StoreUnavailable as exc:
            LOGGER.warning("Could not release claim on %s: %s", primary_record.artifact_id, exc)

    @staticmethod
    def _failed(parsed: ParsedIdentifier, object_key: str, stage: IngestionStage, reason: str) -> IngestionResult:
        LOGGER.info("Ingestion of %s failed during %s", object_key, stage.value)
        return IngestionResult(
            outcome=IngestionOutcome.FAILED,
            stage=IngestionStage.FAILED,
            artifact_id=object_key,
            session=parsed.session,
            role=parsed.role,
            reason=f"{stage.value}: {reason}",
        )


def build_store(settings: Settings, backend: str = "dynamodb") -> CorrelationStore:
    if backend == "memory":
        return InMemoryCorrelationStore()
    if not settings.table_name:
        raise ConfigurationError("CORRELATION_TABLE environment variable is required")
    return DynamoDBCorrelationStore(
        settings.table_name,
        index_name=settings.role_index,
        region_name=settings.region,
        timeout_seconds=settings.store_timeout_seconds,
    )


def build_runner(settings: Settings) -> JobRunner:
    if settings.job_runner == "lambda":
        return LambdaJobRunner(
            settings.merge_job_name or "",
            region_name=settings.region,
            timeout_seconds=settings.dispatch_timeout_seconds,
        )
    if settings.job_runner == "ecs":
        return EcsJobRunner(
            cluster=settings.ecs_cluster or "",
            task_definition=settings.ecs_task_definition or "",
            subnet_ids=settings.subnet_ids,
            security_group_ids=settings.security_group_ids,
            bucket=settings.output_bucket or "",
            container_name=settings.ecs_container_name,
            region_name=settings.region,
            timeout_seconds=settings.dispatch_timeout_seconds,
        )
    if settings.job_runner == "http":
        return HttpJobRunner(settings.merge_job_url or "", timeout_seconds=settings.dispatch_timeout_seconds)
    return LoggingJobRunner()


_handler: IngestionHandler | None = None


def _get_handler() -> IngestionHandler:
    global _handler
    if _handler is None:
        settings = Settings.from_env()
        logging.getLogger().setLevel(settings.log_level)
        _handler = IngestionHandler(
            store=build_store(settings),
            dispatcher=Dispatcher(build_runner(settings)),
            settings=settings,
        )
    return _handler


def lambda_handler(event: dict[str, Any], context: Any = None) -> dict[str, Any]:
    """AWS Lambda entry point for S3 ObjectCreated notifications."""
    records = event.get("Records") if isinstance(event, dict) else None
    if not isinstance(records, list) or not records:
        LOGGER.warning("Event has no Records: %s", json.dumps(event, default=str)[:500])
        return _response(400, {"message": "Event contains no upload records"})

    try:
        handler = _get_handler()
    except ConfigurationError as exc:
        LOGGER.error("Correlator is misconfigured: %s", exc)
        return _response(500, {"message": "Correlator is misconfigured", "error": str(exc)})

    results: list[IngestionResult] = []
    for entry in records:
        try:
            bucket = entry["s3"]["bucket"]["name"]
            object_key = unquote_plus(entry["s3"]["object"]["key"])
        except (KeyError, TypeError):
            LOGGER.warning("Skipping malformed S3 record: %s", entry)
            continue
        results.append(handler.handle(bucket, object_key))

    status_code = 500 if any(result.is_failure for result in results) else 200
    return _response(status_code, {"results": [result.to_dict() for result in results]})


def _response(status_code: int, body: dict[str, Any]) -> dict[str, Any]:
    return {"statusCode": status_code, "body": json.dumps(body)}
