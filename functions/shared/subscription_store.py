"""
Subscription repository with idempotent, transactional reconciliation writes.

Every state-changing reconciliation is one TransactWriteItems call:

1. Put the processed-event marker, conditioned on attribute_not_exists(pk)
   (the idempotency reservation for the provider event id).
2. Put the Subscription row, conditioned on the version read in the same
   attempt (or on the row not existing yet).
3. Put the ledger entry, conditioned on attribute_not_exists(pk).

Either all three land or none do. A failed version condition means another
notification for the same tenant won the race; the row is re-read and the
transition re-applied, so concurrent deliveries serialize per tenant.
"""

import logging
import os
import random
import time
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Callable, Optional

from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError

from .audit_log import build_ledger_put
from .aws_clients import get_dynamodb, get_dynamodb_client
from .constants import MAX_CONFLICT_RETRIES, PROCESSED_EVENT_TTL_DAYS
from .dynamo import cancellation_reason_codes, error_code, serialize_item
from .errors import ConcurrentUpdateError, DuplicateEventError
from .models import SUBSCRIPTION_SK, LedgerEntry, Subscription, to_iso, utc_now
from .webhook_verifier import ProviderEvent

logger = logging.getLogger(__name__)

SUBSCRIPTIONS_TABLE = os.environ.get("SUBSCRIPTIONS_TABLE", "ws-subscriptions")
BILLING_EVENTS_TABLE = os.environ.get("BILLING_EVENTS_TABLE", "ws-billing-events")
TENANT_INDEX = "tenant-index"

OUTCOME_APPLIED = "applied"
OUTCOME_IGNORED = "ignored"


@dataclass
class Mutation:
    """New Subscription state plus the ledger entry that explains it (if audited)."""

    subscription: Subscription
    ledger_entry: Optional[LedgerEntry] = None


Transition = Callable[[Optional[Subscription]], Optional[Mutation]]


def get_subscription(tenant_id: str, consistent_read: bool = False) -> Optional[Subscription]:
    """Current Subscription row for a tenant, or None if none was created yet."""
    table = get_dynamodb().Table(SUBSCRIPTIONS_TABLE)
    response = table.get_item(
        Key={"pk": tenant_id, "sk": SUBSCRIPTION_SK},
        ConsistentRead=consistent_read,
    )
    item = response.get("Item")
    return Subscription.from_item(item) if item else None


def is_event_processed(event_id: str) -> bool:
    """Whether a provider event id has already been recorded (applied or ignored)."""
    table = get_dynamodb().Table(BILLING_EVENTS_TABLE)
    response = table.query(
        KeyConditionExpression=Key("pk").eq(event_id),
        ConsistentRead=True,
        Limit=1,
    )
    return bool(response.get("Items"))


def list_processed_events(tenant_id: str, limit: int = 50) -> list[dict]:
    """Webhook deliveries recorded for a tenant, newest first (support tooling)."""
    table = get_dynamodb().Table(BILLING_EVENTS_TABLE)
    response = table.query(
        IndexName=TENANT_INDEX,
        KeyConditionExpression=Key("tenant_id").eq(tenant_id),
        ScanIndexForward=False,
        Limit=limit,
    )
    return response.get("Items", [])


def _processed_event_item(
    event: ProviderEvent,
    tenant_id: Optional[str],
    outcome: str,
    reason: Optional[str] = None,
) -> dict:
    now = utc_now()
    item = {
        "pk": event.event_id,
        "sk": event.event_type,
        "tenant_id": tenant_id,
        "outcome": outcome,
        "reason": reason,
        "processed_at": to_iso(now),
        "event_created_at": event.created,  # Stripe's event timestamp
        "livemode": event.livemode,  # Distinguish test vs production
        "ttl": int((now + timedelta(days=PROCESSED_EVENT_TTL_DAYS)).timestamp()),
    }
    return {key: value for key, value in item.items() if value is not None}


def record_ignored_event(event: ProviderEvent, tenant_id: Optional[str], reason: str) -> bool:
    """Durably mark an event as processed without any state change.

    Returns:
        True if recorded, False if the event id was already recorded
    """
    table = get_dynamodb().Table(BILLING_EVENTS_TABLE)
    try:
        table.put_item(
            Item=_processed_event_item(event, tenant_id, OUTCOME_IGNORED, reason),
            ConditionExpression="attribute_not_exists(pk)",
        )
    except ClientError as e:
        if error_code(e) == "ConditionalCheckFailedException":
            logger.info(f"Event {event.event_id} already recorded, not marking ignored")
            return False
        raise
    logger.info(f"Ignored event {event.event_id} ({event.event_type}): {reason}")
    return True


def _subscription_put(subscription: Subscription, expected_version: Optional[int]) -> dict:
    put = {
        "TableName": SUBSCRIPTIONS_TABLE,
        "Item": serialize_item(subscription.to_item()),
    }
    if expected_version is None:
        put["ConditionExpression"] = "attribute_not_exists(pk)"
    else:
        put["ConditionExpression"] = "#version = :expected_version"
        put["ExpressionAttributeNames"] = {"#version": "version"}
        put["ExpressionAttributeValues"] = {":expected_version": {"N": str(expected_version)}}
    return {"Put": put}


def _is_duplicate(event_id: str, reasons: list[str]) -> bool:
    if reasons:
        return reasons[0] == "ConditionalCheckFailed"
    # No per-item reasons reported - fall back to reading the marker
    return is_event_processed(event_id)


def _backoff(attempt: int) -> None:
    # Exponential backoff with jitter so racing deliveries spread out
    base_delay = min(0.05 * (2 ** (attempt - 1)), 1.0)
    time.sleep(base_delay + random.uniform(0, base_delay * 0.5))


def apply_reconciliation(
    event: ProviderEvent,
    tenant_id: str,
    transition: Transition,
) -> Optional[Mutation]:
    """
    Apply `transition` to the tenant's row exactly once for `event`.

    The row is read with a consistent read at the start of every attempt and
    handed to `transition`, which returns the new state (or None for no
    change). The result is committed atomically with the idempotency
    reservation and the ledger entry.

    Args:
        event: Verified provider event (its id is the idempotency key)
        tenant_id: Tenant whose Subscription row is affected
        transition: Pure function from the current row to a Mutation

    Returns:
        The committed Mutation, or None when the transition made no change

    Raises:
        DuplicateEventError: the event id was already reserved
        ConcurrentUpdateError: version conflicts persisted for every attempt
        ClientError: any other DynamoDB failure (nothing was written)
    """
    client = get_dynamodb_client()

    for attempt in range(1, MAX_CONFLICT_RETRIES + 1):
        current = get_subscription(tenant_id, consistent_read=True)
        mutation = transition(current)

        if mutation is None:
            record_ignored_event(event, tenant_id, "no_change")
            return None

        expected_version = current.version if current else None
        subscription = replace(mutation.subscription, version=(expected_version or 0) + 1)

        transact_items = [
            {
                "Put": {
                    "TableName": BILLING_EVENTS_TABLE,
                    "Item": serialize_item(_processed_event_item(event, tenant_id, OUTCOME_APPLIED)),
                    "ConditionExpression": "attribute_not_exists(pk)",
                }
            },
            _subscription_put(subscription, expected_version),
        ]
        if mutation.ledger_entry is not None:
            transact_items.append(build_ledger_put(mutation.ledger_entry))

        try:
            client.transact_write_items(TransactItems=transact_items)
        except ClientError as e:
            if error_code(e) != "TransactionCanceledException":
                raise
            reasons = cancellation_reason_codes(e)
            if _is_duplicate(event.event_id, reasons):
                raise DuplicateEventError(event.event_id) from e
            logger.warning(
                f"Conflict applying {event.event_id} for tenant {tenant_id} "
                f"(attempt {attempt}/{MAX_CONFLICT_RETRIES}): {reasons or 'no reasons'}"
            )
            if attempt < MAX_CONFLICT_RETRIES:
                _backoff(attempt)
            continue

        ledger_type = mutation.ledger_entry.type if mutation.ledger_entry else "none"
        logger.info(
            f"Applied {event.event_type} ({event.event_id}) for tenant {tenant_id}: "
            f"plan={subscription.plan_tier}, tokens_remaining={subscription.tokens_remaining}, "
            f"ledger={ledger_type}, version={subscription.version}"
        )
        return Mutation(subscription, mutation.ledger_entry)

    raise ConcurrentUpdateError(tenant_id, MAX_CONFLICT_RETRIES)


def compare_and_swap(subscription: Subscription, expected_version: int) -> Optional[Subscription]:
    """Write `subscription` only if the stored row is still at `expected_version`.

    Used by writers outside webhook reconciliation (token consumption), which
    have no provider event id to reserve.

    Returns:
        The stored Subscription (version bumped), or None on a version conflict
    """
    table = get_dynamodb().Table(SUBSCRIPTIONS_TABLE)
    updated = replace(subscription, version=expected_version + 1)
    try:
        table.put_item(
            Item=updated.to_item(),
            ConditionExpression="#version = :expected_version",
            ExpressionAttributeNames={"#version": "version"},
            ExpressionAttributeValues={":expected_version": expected_version},
        )
    except ClientError as e:
        if error_code(e) == "ConditionalCheckFailedException":
            return None
        raise
    return updated
