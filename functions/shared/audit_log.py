"""
Ledger event audit log.

Ledger entries are only ever written as part of the same DynamoDB
transaction as the Subscription change they describe, and never updated
or deleted afterwards.
"""

import logging
import os
from typing import Optional

from boto3.dynamodb.conditions import Key

from .aws_clients import get_dynamodb
from .dynamo import serialize_item
from .models import LedgerEntry

logger = logging.getLogger(__name__)

LEDGER_EVENTS_TABLE = os.environ.get("LEDGER_EVENTS_TABLE", "ws-ledger-events")
PROVIDER_EVENT_INDEX = "provider-event-index"


def build_ledger_put(entry: LedgerEntry) -> dict:
    """TransactWriteItems element appending `entry`; fails rather than overwrite."""
    return {
        "Put": {
            "TableName": LEDGER_EVENTS_TABLE,
            "Item": serialize_item(entry.to_item()),
            "ConditionExpression": "attribute_not_exists(pk)",
        }
    }


def list_ledger_events(tenant_id: str, limit: int = 50) -> list[LedgerEntry]:
    """Ledger entries for a tenant, newest first."""
    table = get_dynamodb().Table(LEDGER_EVENTS_TABLE)
    response = table.query(
        KeyConditionExpression=Key("pk").eq(tenant_id),
        ScanIndexForward=False,
        Limit=limit,
    )
    return [LedgerEntry.from_item(item) for item in response.get("Items", [])]


def find_ledger_event(provider_event_id: str) -> Optional[LedgerEntry]:
    """Ledger entry written for a provider event, if any."""
    table = get_dynamodb().Table(LEDGER_EVENTS_TABLE)
    response = table.query(
        IndexName=PROVIDER_EVENT_INDEX,
        KeyConditionExpression=Key("provider_event_id").eq(provider_event_id),
        Limit=1,
    )
    items = response.get("Items", [])
    if not items:
        return None
    return LedgerEntry.from_item(items[0])
