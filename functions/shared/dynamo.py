"""
DynamoDB helpers for transactional billing writes.
"""

from boto3.dynamodb.types import TypeSerializer
from botocore.exceptions import ClientError

_serializer = TypeSerializer()


def serialize_item(item: dict) -> dict:
    """Convert a Python dict to low-level AttributeValue format for TransactWriteItems."""
    return {key: _serializer.serialize(value) for key, value in item.items()}


def error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


def cancellation_reason_codes(error: ClientError) -> list[str]:
    """Per-item codes of a TransactionCanceledException ("None" for items that passed).

    Returns an empty list when the service did not report reasons.
    """
    reasons = error.response.get("CancellationReasons") or []
    return [reason.get("Code") or "None" for reason in reasons]
