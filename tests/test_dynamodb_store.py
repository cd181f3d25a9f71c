"""Tests for DynamoDBCorrelationStore against a mocked Table resource."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from correlation_store import DynamoDBCorrelationStore, item_to_record, record_to_item
from errors import StoreUnavailable
from models import ArrivalRecord, InsertStatus, Role

NOW = datetime(2025, 8, 10, 7, 0, 0, tzinfo=UTC)


def _record(role: Role = Role.PRIMARY, canonical: str = "2025-08-10-06-27-38") -> ArrivalRecord:
    return ArrivalRecord(
        session="test22",
        canonical_timestamp=canonical,
        original_timestamp="20250810-062738" if role is Role.PRIMARY else canonical,
        role=role,
        artifact_id=(
            "main-room/test22_20250810-062738.mp4"
            if role is Role.PRIMARY
            else f"translater/test22-observer_{canonical}.mp4"
        ),
        arrival_time=NOW,
        expiry=NOW + timedelta(hours=24),
    )


def _client_error(code: str, operation: str = "PutItem") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


def _store(table: MagicMock) -> DynamoDBCorrelationStore:
    return DynamoDBCorrelationStore("correlations", table=table, clock=lambda: NOW)


def test_record_to_item_uses_table_schema() -> None:
    item = record_to_item(_record())

    assert item == {
        "session": "test22",
        "canonicalTimestamp": "2025-08-10-06-27-38",
        "originalTimestamp": "20250810-062738",
        "role": "primary",
        "artifactId": "main-room/test22_20250810-062738.mp4",
        "arrivalTimeIso8601": "2025-08-10T07:00:00+00:00",
        "expiryEpochSeconds": int((NOW + timedelta(hours=24)).timestamp()),
    }


def test_item_to_record_handles_decimal_expiry() -> None:
    item = record_to_item(_record())
    item["expiryEpochSeconds"] = Decimal(item["expiryEpochSeconds"])
    item["matchedWith"] = "translater/test22-observer_2025-08-10-06-30-00.mp4"

    record = item_to_record(item)

    assert record.expiry == NOW + timedelta(hours=24)
    assert record.role is Role.PRIMARY
    assert record.matched_with == "translater/test22-observer_2025-08-10-06-30-00.mp4"


def test_insert_uses_conditional_put() -> None:
    table = MagicMock()

    status = _store(table).insert_if_absent(_record())

    assert status is InsertStatus.INSERTED
    kwargs = table.put_item.call_args.kwargs
    assert kwargs["Item"]["canonicalTimestamp"] == "2025-08-10-06-27-38"
    assert "ConditionExpression" in kwargs


def test_insert_conditional_failure_is_already_exists() -> None:
    table = MagicMock()
    table.put_item.side_effect = _client_error("ConditionalCheckFailedException")

    assert _store(table).insert_if_absent(_record()) is InsertStatus.ALREADY_EXISTS


@pytest.mark.parametrize("error", [
    _client_error("ProvisionedThroughputExceededException"),
    EndpointConnectionError(endpoint_url="https://dynamodb.us-east-1.amazonaws.com"),
])
def test_insert_other_errors_raise_store_unavailable(error: Exception) -> None:
    table = MagicMock()
    table.put_item.side_effect = error

    with pytest.raises(StoreUnavailable):
        _store(table).insert_if_absent(_record())


def test_query_uses_role_index_and_follows_pagination() -> None:
    companion = _record(role=Role.COMPANION, canonical="2025-08-10-06-30-00")
    other = _record(role=Role.COMPANION, canonical="2025-08-10-06-45-00")
    table = MagicMock()
    table.query.side_effect = [
        {"Items": [record_to_item(companion)], "LastEvaluatedKey": {"session": "test22"}},
        {"Items": [record_to_item(other)]},
    ]

    records = _store(table).query_by_role_and_session(Role.COMPANION, "test22")

    assert [r.canonical_timestamp for r in records] == ["2025-08-10-06-30-00", "2025-08-10-06-45-00"]
    first_call, second_call = table.query.call_args_list
    assert first_call.kwargs["IndexName"] == "roleIndex"
    assert "ExclusiveStartKey" not in first_call.kwargs
    assert second_call.kwargs["ExclusiveStartKey"] == {"session": "test22"}


def test_query_skips_incomplete_items() -> None:
    table = MagicMock()
    table.query.return_value = {"Items": [{"session": "test22", "role": "companion"}]}

    assert _store(table).query_by_role_and_session(Role.COMPANION, "test22") == []


def test_query_failure_raises_store_unavailable() -> None:
    table = MagicMock()
    table.query.side_effect = _client_error("InternalServerError", "Query")

    with pytest.raises(StoreUnavailable):
        _store(table).query_by_role_and_session(Role.COMPANION, "test22")


def _cancelled(*codes: str) -> ClientError:
    return ClientError(
        {
            "Error": {"Code": "TransactionCanceledException", "Message": "Transaction cancelled"},
            "CancellationReasons": [{"Code": code} for code in codes],
        },
        "TransactWriteItems",
    )


def test_claim_pair_writes_both_records_in_one_transaction() -> None:
    table = MagicMock()
    primary = _record()
    companion = _record(role=Role.COMPANION, canonical="2025-08-10-06-30-00")

    assert _store(table).claim_pair(primary, companion) is True

    items = table.meta.client.transact_write_items.call_args.kwargs["TransactItems"]
    primary_update, companion_update = (item["Update"] for item in items)
    assert primary_update["TableName"] == "correlations"
    assert primary_update["Key"] == {
        "session": {"S": "test22"},
        "canonicalTimestamp": {"S": "2025-08-10-06-27-38"},
    }
    assert primary_update["ExpressionAttributeValues"][":partner"] == {"S": companion.artifact_id}
    assert companion_update["Key"]["canonicalTimestamp"] == {"S": "2025-08-10-06-30-00"}
    assert companion_update["ExpressionAttributeValues"][":partner"] == {"S": primary.artifact_id}
    assert "attribute_not_exists(matchedWith)" in companion_update["ConditionExpression"]
    assert companion_update["ExpressionAttributeValues"][":now"] == {"N": str(int(NOW.timestamp()))}


@pytest.mark.parametrize("codes", [
    ("ConditionalCheckFailed", "None"),
    ("None", "ConditionalCheckFailed"),
    ("ConditionalCheckFailed", "ConditionalCheckFailed"),
])
def test_claim_pair_condition_failure_is_lost_claim(codes: tuple[str, str]) -> None:
    table = MagicMock()
    table.meta.client.transact_write_items.side_effect = _cancelled(*codes)

    claimed = _store(table).claim_pair(_record(), _record(role=Role.COMPANION, canonical="2025-08-10-06-30-00"))

    assert claimed is False


@pytest.mark.parametrize("error", [
    _cancelled("TransactionConflict", "None"),
    _client_error("ThrottlingException", "TransactWriteItems"),
    EndpointConnectionError(endpoint_url="https://dynamodb.us-east-1.amazonaws.com"),
])
def test_claim_pair_store_error_raises(error: Exception) -> None:
    table = MagicMock()
    table.meta.client.transact_write_items.side_effect = error

    with pytest.raises(StoreUnavailable):
        _store(table).claim_pair(_record(), _record(role=Role.COMPANION, canonical="2025-08-10-06-30-00"))


def test_release_pair_clears_each_side_conditionally() -> None:
    table = MagicMock()
    table.update_item.side_effect = [
        None,
        _client_error("ConditionalCheckFailedException", "UpdateItem"),
    ]
    primary = _record()
    companion = _record(role=Role.COMPANION, canonical="2025-08-10-06-30-00")

    _store(table).release_pair(primary, companion)

    first_call, second_call = table.update_item.call_args_list
    assert first_call.kwargs["UpdateExpression"].startswith("REMOVE")
    assert first_call.kwargs["Key"]["canonicalTimestamp"] == "2025-08-10-06-27-38"
    assert second_call.kwargs["Key"]["canonicalTimestamp"] == "2025-08-10-06-30-00"


def test_builds_table_from_boto3_resource() -> None:
    with patch("correlation_store.boto3.resource") as mock_resource:
        DynamoDBCorrelationStore("correlations", region_name="eu-west-1", timeout_seconds=2)

    assert mock_resource.call_args.args == ("dynamodb",)
    assert mock_resource.call_args.kwargs["region_name"] == "eu-west-1"
    mock_resource.return_value.Table.assert_called_once_with("correlations")
