"""Tests for DynamoDB issuance ledger module."""

from collections.abc import Generator
from datetime import UTC, datetime
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError

from kube_access.lib.dynamodb_ledger import GSI_STATUS_ISSUED_AT, DynamoDBLedger
from kube_access.lib.errors import AccessError, NotFound, PermissionDenied, ServiceUnavailable
from kube_access.lib.models import CertificateMetadata

NOW = datetime(2026, 1, 1, tzinfo=UTC)


def _item(serial: str = "AB:CD", status: str = "active", **extra: str) -> dict:
    return {
        "serialNumber": serial,
        "clientName": "alice",
        "organization": "team-group",
        "status": status,
        "issuedAt": "2026-01-01T00:00:00+00:00",
        "expiry": "2026-01-31T00:00:00+00:00",
        "notBefore": "2026-01-01T00:00:00+00:00",
        "ttl": 1777593600,
        **extra,
    }


def _client_error(code: str, operation: str = "PutItem") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class TestDynamoDBLedger:
    """Tests for DynamoDBLedger class."""

    @pytest.fixture
    def mock_boto3(self) -> Generator[MagicMock]:
        """Mock boto3 for DynamoDB."""
        with patch("kube_access.lib.dynamodb_ledger.boto3") as mock:
            yield mock

    @pytest.fixture
    def mock_table(self, mock_boto3: MagicMock) -> MagicMock:
        table = MagicMock()
        mock_boto3.resource.return_value.Table.return_value = table
        return table

    def test_uses_configured_table_and_region(self, mock_boto3: MagicMock) -> None:
        """Should open the named table in the given region."""
        DynamoDBLedger("kube-access-ledger", region="eu-west-1")

        mock_boto3.resource.assert_called_once_with("dynamodb", region_name="eu-west-1")
        mock_boto3.resource.return_value.Table.assert_called_once_with("kube-access-ledger")

    def test_record_issuance_is_conditional(self, mock_table: MagicMock) -> None:
        """Should insert only when the serial is absent."""
        ledger = DynamoDBLedger("table")

        assert ledger.record_issuance(CertificateMetadata(**_item())) is True

        call_kwargs = mock_table.put_item.call_args[1]
        assert call_kwargs["ConditionExpression"] == "attribute_not_exists(serialNumber)"
        assert call_kwargs["Item"]["serialNumber"] == "AB:CD"

    def test_record_issuance_collision_returns_false(self, mock_table: MagicMock) -> None:
        """Should report a serial collision instead of raising."""
        mock_table.put_item.side_effect = _client_error("ConditionalCheckFailedException")

        assert DynamoDBLedger("table").record_issuance(CertificateMetadata(**_item())) is False

    def test_throttling_becomes_service_unavailable(self, mock_table: MagicMock) -> None:
        """Should translate throttling into a retryable error."""
        mock_table.put_item.side_effect = _client_error("ProvisionedThroughputExceededException")

        with pytest.raises(ServiceUnavailable) as exc_info:
            DynamoDBLedger("table").record_issuance(CertificateMetadata(**_item()))

        assert exc_info.value.retryable is True

    def test_access_denied_becomes_permission_denied(self, mock_table: MagicMock) -> None:
        """Should translate IAM denials."""
        mock_table.get_item.side_effect = _client_error("AccessDeniedException", "GetItem")

        with pytest.raises(PermissionDenied):
            DynamoDBLedger("table").get("AB:CD")

    def test_unknown_client_error_becomes_access_error(self, mock_table: MagicMock) -> None:
        """Should wrap ClientError codes it does not recognise, chained to the original."""
        original = _client_error("ValidationException")
        mock_table.put_item.side_effect = original

        with pytest.raises(AccessError) as exc_info:
            DynamoDBLedger("table").record_issuance(CertificateMetadata(**_item()))

        assert type(exc_info.value) is AccessError
        assert exc_info.value.retryable is False
        assert "ValidationException" in exc_info.value.message
        assert exc_info.value.cause is original
        assert exc_info.value.__cause__ is original

    def test_get_returns_none_for_missing_item(self, mock_table: MagicMock) -> None:
        """Should return None when the serial is unknown."""
        mock_table.get_item.return_value = {}

        assert DynamoDBLedger("table").get("AB:CD") is None
        assert mock_table.get_item.call_args[1]["ConsistentRead"] is True

    def test_get_keeps_optional_fields(self, mock_table: MagicMock) -> None:
        """Should carry revocation fields through."""
        mock_table.get_item.return_value = {
            "Item": _item(status="revoked", revokedAt=NOW.isoformat(), revocationReason="superseded")
        }

        item = DynamoDBLedger("table").get("AB:CD")

        assert item is not None
        assert item["revocationReason"] == "superseded"
        assert "bundleInvalidatedAt" not in item

    def test_active_certificates_query_gsi_with_filter(self, mock_table: MagicMock) -> None:
        """Should query the status index and filter by client name."""
        mock_table.query.return_value = {"Items": [_item()]}

        result = DynamoDBLedger("table").active_certificates("alice")

        assert [i["serialNumber"] for i in result] == ["AB:CD"]
        call_kwargs = mock_table.query.call_args[1]
        assert call_kwargs["IndexName"] == GSI_STATUS_ISSUED_AT
        assert "FilterExpression" in call_kwargs

    def test_active_certificates_without_identity_has_no_filter(self, mock_table: MagicMock) -> None:
        """Should list every active certificate."""
        mock_table.query.return_value = {"Items": []}

        DynamoDBLedger("table").active_certificates()

        assert "FilterExpression" not in mock_table.query.call_args[1]

    def test_query_follows_pagination(self, mock_table: MagicMock) -> None:
        """Should follow LastEvaluatedKey until exhausted."""
        mock_table.query.side_effect = [
            {"Items": [_item("AA:01")], "LastEvaluatedKey": {"serialNumber": "AA:01"}},
            {"Items": [_item("AA:02")]},
        ]

        result = DynamoDBLedger("table").active_certificates()

        assert [i["serialNumber"] for i in result] == ["AA:01", "AA:02"]
        assert mock_table.query.call_args_list[1][1]["ExclusiveStartKey"] == {"serialNumber": "AA:01"}

    def test_revoke_returns_new_record(self, mock_table: MagicMock) -> None:
        """Should conditionally mark the item revoked."""
        mock_table.update_item.return_value = {
            "Attributes": _item(status="revoked", revokedAt=NOW.isoformat(), revocationReason="key_compromise")
        }

        record = DynamoDBLedger("table").revoke("AB:CD", NOW, "key_compromise")

        assert record.serial_number == "AB:CD"
        assert record.revoked_at == NOW
        assert record.reason == "key_compromise"
        call_kwargs = mock_table.update_item.call_args[1]
        assert call_kwargs["ReturnValues"] == "ALL_NEW"
        assert call_kwargs["ExpressionAttributeValues"][":reason"] == "key_compromise"

    def test_revoke_already_revoked_returns_existing(self, mock_table: MagicMock) -> None:
        """Should return the original record when the condition fails."""
        earlier = datetime(2025, 12, 1, tzinfo=UTC)
        mock_table.update_item.side_effect = _client_error("ConditionalCheckFailedException", "UpdateItem")
        mock_table.get_item.return_value = {
            "Item": _item(status="revoked", revokedAt=earlier.isoformat(), revocationReason="superseded")
        }

        record = DynamoDBLedger("table").revoke("AB:CD", NOW, "key_compromise")

        assert record.revoked_at == earlier
        assert record.reason == "superseded"

    def test_revoke_unknown_serial_raises_not_found(self, mock_table: MagicMock) -> None:
        """Should raise NotFound when the serial was never issued."""
        mock_table.update_item.side_effect = _client_error("ConditionalCheckFailedException", "UpdateItem")
        mock_table.get_item.return_value = {}

        with pytest.raises(NotFound):
            DynamoDBLedger("table").revoke("FF:FF", NOW, "unspecified")

    def test_revocations_sorted_by_time(self, mock_table: MagicMock) -> None:
        """Should order revocation records by revocation time."""
        mock_table.query.return_value = {
            "Items": [
                _item("AA:02", status="revoked", revokedAt="2026-01-02T00:00:00+00:00"),
                _item("AA:01", status="revoked", revokedAt="2026-01-01T00:00:00+00:00"),
            ]
        }

        records = DynamoDBLedger("table").revocations()

        assert [r.serial_number for r in records] == ["AA:01", "AA:02"]

    def test_invalidate_bundles_skips_stamped_items(self, mock_table: MagicMock) -> None:
        """Should stamp only certificates without an invalidation time."""
        mock_table.query.side_effect = [
            {"Items": [_item("AA:01"), _item("AA:02", bundleInvalidatedAt=NOW.isoformat())]},
            {"Items": [_item("AA:03", status="revoked", revokedAt=NOW.isoformat())]},
        ]

        serials = DynamoDBLedger("table").invalidate_bundles("alice", NOW)

        assert serials == ["AA:01", "AA:03"]
        assert mock_table.update_item.call_count == 2

    def test_invalidate_bundles_tolerates_concurrent_stamp(self, mock_table: MagicMock) -> None:
        """Should skip items stamped by another writer."""
        mock_table.query.side_effect = [{"Items": [_item("AA:01")]}, {"Items": []}]
        mock_table.update_item.side_effect = _client_error("ConditionalCheckFailedException", "UpdateItem")

        assert DynamoDBLedger("table").invalidate_bundles("alice", NOW) == []
