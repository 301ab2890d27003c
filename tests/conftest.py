"""
Shared pytest fixtures for workspace billing tests.
"""

import hashlib
import hmac
import json
import os
import sys
import time

import boto3
import pytest
from moto import mock_aws

# Add functions directory to Python path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "functions"))

WEBHOOK_SECRET = "whsec_test_secret"
STRIPE_API_KEY = "sk_test_xxx"
PRODUCT_TAG = {"type": "ws_subscription"}


def pytest_configure(config):
    """Set AWS credentials before test collection.

    This runs before test collection starts, ensuring boto3 resource
    creation during imports doesn't fail with NoRegionError.
    """
    os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
    os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
    os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")
    os.environ.setdefault("AWS_REGION", "us-east-1")


@pytest.fixture(autouse=True)
def aws_credentials():
    """Set fake AWS credentials for all tests."""
    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = "us-east-1"
    os.environ["AWS_REGION"] = "us-east-1"


@pytest.fixture(autouse=True)
def reset_aws_clients():
    """Reset shared AWS client singletons between tests."""
    yield
    from shared import metrics
    from shared.aws_clients import reset_clients

    reset_clients()
    metrics._cloudwatch = None


@pytest.fixture(autouse=True)
def reset_stripe_secret_cache():
    """Reset the Stripe secrets cache so each test controls its own secrets."""
    yield
    import shared.stripe_client as stripe_client

    stripe_client._stripe_secrets_cache = (None, None)
    stripe_client._stripe_secrets_cache_time = 0.0


@pytest.fixture(autouse=True)
def no_conflict_backoff():
    """Version-conflict retries should not sleep in tests."""
    from unittest.mock import patch

    with patch("shared.subscription_store._backoff"):
        yield


def create_dynamodb_tables(dynamodb):
    """Create all DynamoDB tables with their GSIs.

    Args:
        dynamodb: boto3 DynamoDB resource
    """
    # One Subscription row per tenant
    dynamodb.create_table(
        TableName="ws-subscriptions",
        KeySchema=[
            {"AttributeName": "pk", "KeyType": "HASH"},   # tenant_id
            {"AttributeName": "sk", "KeyType": "RANGE"},  # "SUBSCRIPTION"
        ],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "sk", "AttributeType": "S"},
        ],
        BillingMode="PAY_PER_REQUEST",
    )

    # Append-only ledger
    dynamodb.create_table(
        TableName="ws-ledger-events",
        KeySchema=[
            {"AttributeName": "pk", "KeyType": "HASH"},   # tenant_id
            {"AttributeName": "sk", "KeyType": "RANGE"},  # created_at#provider_event_id
        ],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "sk", "AttributeType": "S"},
            {"AttributeName": "provider_event_id", "AttributeType": "S"},
        ],
        GlobalSecondaryIndexes=[
            {
                "IndexName": "provider-event-index",
                "KeySchema": [{"AttributeName": "provider_event_id", "KeyType": "HASH"}],
                "Projection": {"ProjectionType": "ALL"},
            },
        ],
        BillingMode="PAY_PER_REQUEST",
    )

    # Processed webhook events (idempotency + delivery audit)
    dynamodb.create_table(
        TableName="ws-billing-events",
        KeySchema=[
            {"AttributeName": "pk", "KeyType": "HASH"},   # event_id
            {"AttributeName": "sk", "KeyType": "RANGE"},  # event_type
        ],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "sk", "AttributeType": "S"},
            {"AttributeName": "tenant_id", "AttributeType": "S"},
            {"AttributeName": "processed_at", "AttributeType": "S"},
        ],
        GlobalSecondaryIndexes=[
            {
                "IndexName": "tenant-index",
                "KeySchema": [
                    {"AttributeName": "tenant_id", "KeyType": "HASH"},
                    {"AttributeName": "processed_at", "KeyType": "RANGE"},
                ],
                "Projection": {"ProjectionType": "ALL"},
            },
        ],
        BillingMode="PAY_PER_REQUEST",
    )


@pytest.fixture
def mock_dynamodb():
    """Provide mocked DynamoDB with tables."""
    with mock_aws():
        dynamodb = boto3.resource("dynamodb", region_name="us-east-1")
        create_dynamodb_tables(dynamodb)
        yield dynamodb


@pytest.fixture
def stripe_secrets():
    """Seed the Stripe secrets cache so handlers skip Secrets Manager."""
    import shared.stripe_client as stripe_client

    stripe_client._stripe_secrets_cache = (STRIPE_API_KEY, WEBHOOK_SECRET)
    stripe_client._stripe_secrets_cache_time = 9999999999.0
    return STRIPE_API_KEY, WEBHOOK_SECRET


@pytest.fixture
def api_gateway_event():
    """Base API Gateway event for Lambda handler tests."""
    return {
        "httpMethod": "POST",
        "path": "/webhooks/stripe",
        "headers": {},
        "pathParameters": {},
        "queryStringParameters": {},
        "body": None,
        "requestContext": {
            "requestId": "req-test-123",
            "identity": {"sourceIp": "127.0.0.1"},
        },
    }


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a Stripe-Signature header the way Stripe does."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed_payload = f"{timestamp}.{payload}"
    signature = hmac.new(secret.encode("utf-8"), signed_payload.encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_stripe_event(event_type: str, obj: dict, event_id: str = "evt_test_1") -> dict:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": 1767225600,
        "livemode": False,
        "data": {"object": obj},
    }


def make_subscription(
    subscription_id: str = "sub_123",
    tenant_id: str = "user_1",
    product: str | dict = "prod_pro",
    price_id: str = "price_pro",
    status: str = "active",
    cancel_at_period_end: bool = False,
    period_start: int = 1767225600,  # 2026-01-01
    period_end: int = 1769904000,  # 2026-02-01
) -> dict:
    """Stripe subscription object as delivered in webhook payloads."""
    return {
        "id": subscription_id,
        "object": "subscription",
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "metadata": {"userId": tenant_id} if tenant_id else {},
        "items": {
            "data": [
                {
                    "id": "si_1",
                    "price": {"id": price_id, "product": product},
                    "current_period_start": period_start,
                    "current_period_end": period_end,
                }
            ]
        },
    }


def make_product(
    product_id: str = "prod_pro",
    plan_tier: str = "pro",
    max_workspaces: str = "5",
    monthly_tokens: str = "50000",
    tagged: bool = True,
) -> dict:
    metadata = {"plan_tier": plan_tier, "max_workspaces": max_workspaces, "monthly_tokens": monthly_tokens}
    if tagged:
        metadata.update(PRODUCT_TAG)
    return {"id": product_id, "object": "product", "metadata": metadata}


def make_invoice(subscription_id: str = "sub_123", invoice_id: str = "in_123") -> dict:
    return {
        "id": invoice_id,
        "object": "invoice",
        "parent": {
            "type": "subscription_details",
            "subscription_details": {"subscription": subscription_id},
        },
    }


@pytest.fixture
def webhook_request(api_gateway_event):
    """Build a signed API Gateway event for a Stripe event dict."""

    def _build(stripe_event: dict, secret: str = WEBHOOK_SECRET) -> dict:
        payload = json.dumps(stripe_event)
        api_gateway_event["body"] = payload
        api_gateway_event["headers"] = {"Stripe-Signature": sign_payload(payload, secret)}
        return api_gateway_event

    return _build


@pytest.fixture
def seed_subscription(mock_dynamodb):
    """Write a Subscription row directly (bypassing reconciliation)."""
    from shared.models import Subscription

    table = mock_dynamodb.Table("ws-subscriptions")

    def _seed(tenant_id: str = "user_1", **fields) -> Subscription:
        defaults = {
            "plan_tier": "pro",
            "status": "active",
            "provider_subscription_id": "sub_123",
            "provider_price_id": "price_pro",
            "workspace_limit": 5,
            "monthly_token_quota": 50000,
            "tokens_remaining": 50000,
            "current_period_start": "2026-01-01T00:00:00+00:00",
            "current_period_end": "2026-02-01T00:00:00+00:00",
            "created_at": "2026-01-01T00:00:00+00:00",
            "updated_at": "2026-01-01T00:00:00+00:00",
            "version": 1,
        }
        defaults.update(fields)
        subscription = Subscription(tenant_id=tenant_id, **defaults)
        table.put_item(Item=subscription.to_item())
        return subscription

    return _seed


def ledger_items(dynamodb, tenant_id: str = "user_1") -> list[dict]:
    from boto3.dynamodb.conditions import Key

    table = dynamodb.Table("ws-ledger-events")
    return table.query(KeyConditionExpression=Key("pk").eq(tenant_id))["Items"]


def subscription_item(dynamodb, tenant_id: str = "user_1") -> dict | None:
    table = dynamodb.Table("ws-subscriptions")
    return table.get_item(Key={"pk": tenant_id, "sk": "SUBSCRIPTION"}).get("Item")


def processed_event_item(dynamodb, event_id: str) -> dict | None:
    from boto3.dynamodb.conditions import Key

    table = dynamodb.Table("ws-billing-events")
    items = table.query(KeyConditionExpression=Key("pk").eq(event_id))["Items"]
    return items[0] if items else None
