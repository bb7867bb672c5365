"""DynamoDB-backed issuance ledger."""

import logging
from datetime import datetime
from typing import cast

import boto3
from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError
from mypy_boto3_dynamodb.service_resource import DynamoDBServiceResource
from mypy_boto3_dynamodb.type_defs import TableAttributeValueTypeDef

from kube_access.lib.errors import AccessError, NotFound, PermissionDenied, ServiceUnavailable
from kube_access.lib.ledger import IssuanceLedger, record_from_metadata
from kube_access.lib.models import CertificateMetadata, RevocationRecord

logger = logging.getLogger(__name__)

GSI_STATUS_ISSUED_AT = "status-issuedAt-index"

THROTTLING_CODES = frozenset(
    {
        "ProvisionedThroughputExceededException",
        "ThrottlingException",
        "RequestLimitExceeded",
        "InternalServerError",
        "ServiceUnavailable",
    }
)
ACCESS_DENIED_CODES = frozenset({"AccessDeniedException", "UnrecognizedClientException"})

_OPTIONAL_FIELDS = ("caFingerprint", "revokedAt", "revocationReason", "bundleInvalidatedAt")


def _parse_item_to_metadata(
    item: dict[str, TableAttributeValueTypeDef],
) -> CertificateMetadata:
    """Convert raw DynamoDB item to CertificateMetadata with explicit casts."""
    raw_ttl = item["ttl"]
    metadata = CertificateMetadata(
        serialNumber=str(item["serialNumber"]),
        clientName=str(item["clientName"]),
        organization=str(item.get("organization", "")),
        status=str(item["status"]),
        issuedAt=str(item["issuedAt"]),
        expiry=str(item["expiry"]),
        notBefore=str(item["notBefore"]),
        ttl=int(cast(int, raw_ttl)),
    )
    for field_name in _OPTIONAL_FIELDS:
        value = item.get(field_name)
        if value is not None:
            metadata[field_name] = str(value)  # type: ignore[literal-required]
    return metadata


def _translate_client_error(e: ClientError, action: str) -> AccessError:
    error_code = e.response.get("Error", {}).get("Code", "")
    if error_code in THROTTLING_CODES:
        return ServiceUnavailable(f"{action} throttled: {error_code}", cause=e)
    if error_code in ACCESS_DENIED_CODES:
        return PermissionDenied(f"{action} denied: {error_code}", cause=e)
    return AccessError(f"{action} failed: {error_code or e}", cause=e)


class DynamoDBLedger(IssuanceLedger):
    """Issuance ledger stored in a DynamoDB table keyed by serialNumber.

    Conditional writes provide the compare-and-set semantics: a serial is
    inserted only if absent, and revoked only if currently active.
    """

    def __init__(self, table_name: str, region: str = "eu-west-2") -> None:
        """Initialize DynamoDB ledger.

        Args:
            table_name: DynamoDB table name
            region: AWS region for DynamoDB client
        """
        self.table_name = table_name
        self.resource: DynamoDBServiceResource = boto3.resource("dynamodb", region_name=region)
        self.table = self.resource.Table(table_name)

    def record_issuance(self, metadata: CertificateMetadata) -> bool:
        try:
            self.table.put_item(
                Item=cast(dict[str, TableAttributeValueTypeDef], dict(metadata)),
                ConditionExpression="attribute_not_exists(serialNumber)",
            )
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
                logger.warning("Serial %s already recorded in ledger", metadata["serialNumber"])
                return False
            raise _translate_client_error(e, "record issuance") from e

    def get(self, serial_number: str) -> CertificateMetadata | None:
        try:
            response = self.table.get_item(Key={"serialNumber": serial_number}, ConsistentRead=True)
        except ClientError as e:
            raise _translate_client_error(e, "ledger lookup") from e

        item = response.get("Item")
        if not item:
            return None
        return _parse_item_to_metadata(item)

    def active_certificates(self, identity_name: str | None = None) -> list[CertificateMetadata]:
        return self._query_status("active", identity_name)

    def revoke(self, serial_number: str, revoked_at: datetime, reason: str) -> RevocationRecord:
        try:
            response = self.table.update_item(
                Key={"serialNumber": serial_number},
                UpdateExpression="SET #s = :revoked, revokedAt = :at, revocationReason = :reason",
                ConditionExpression="attribute_exists(serialNumber) AND #s = :active",
                ExpressionAttributeNames={"#s": "status"},
                ExpressionAttributeValues={
                    ":revoked": "revoked",
                    ":active": "active",
                    ":at": revoked_at.isoformat(),
                    ":reason": reason,
                },
                ReturnValues="ALL_NEW",
            )
            return record_from_metadata(_parse_item_to_metadata(response["Attributes"]))
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") != "ConditionalCheckFailedException":
                raise _translate_client_error(e, "revocation") from e

        # Condition failed: either never issued or already revoked
        existing = self.get(serial_number)
        if existing is None:
            raise NotFound(f"serial {serial_number} was not issued by this CA")
        logger.warning("Serial %s already revoked", serial_number)
        return record_from_metadata(existing)

    def revocations(self) -> list[RevocationRecord]:
        records = [record_from_metadata(item) for item in self._query_status("revoked")]
        return sorted(records, key=lambda r: r.revoked_at)

    def invalidate_bundles(self, identity_name: str, invalidated_at: datetime) -> list[str]:
        serials: list[str] = []
        for status in ("active", "revoked"):
            for item in self._query_status(status, identity_name):
                if "bundleInvalidatedAt" in item:
                    continue
                try:
                    self.table.update_item(
                        Key={"serialNumber": item["serialNumber"]},
                        UpdateExpression="SET bundleInvalidatedAt = :at",
                        ConditionExpression="attribute_not_exists(bundleInvalidatedAt)",
                        ExpressionAttributeValues={":at": invalidated_at.isoformat()},
                    )
                    serials.append(item["serialNumber"])
                except ClientError as e:
                    if e.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
                        continue
                    raise _translate_client_error(e, "bundle invalidation") from e
        return serials

    def _query_status(self, status: str, identity_name: str | None = None) -> list[CertificateMetadata]:
        """Query items by status using the GSI, following pagination."""
        query_kwargs: dict = {
            "IndexName": GSI_STATUS_ISSUED_AT,
            "KeyConditionExpression": Key("status").eq(status),
        }
        if identity_name is not None:
            query_kwargs["FilterExpression"] = Attr("clientName").eq(identity_name)

        items: list[CertificateMetadata] = []
        try:
            response = self.table.query(**query_kwargs)
            for item in response.get("Items", []):
                items.append(_parse_item_to_metadata(item))

            while "LastEvaluatedKey" in response:
                response = self.table.query(**query_kwargs, ExclusiveStartKey=response["LastEvaluatedKey"])
                for item in response.get("Items", []):
                    items.append(_parse_item_to_metadata(item))
        except ClientError as e:
            raise _translate_client_error(e, "ledger query") from e

        return items
