"""
Shared type definitions for the billing webhook.

TypedDicts for the API Gateway proxy event and the DynamoDB item shapes.
"""

from typing import TypedDict, Optional, Any


class APIGatewayEvent(TypedDict, total=False):
    """API Gateway proxy event structure."""

    httpMethod: str
    headers: dict[str, str]
    pathParameters: Optional[dict[str, str]]
    queryStringParameters: Optional[dict[str, str]]
    body: Optional[str]
    requestContext: dict[str, Any]
    resource: str
    path: str
    isBase64Encoded: bool


class SubscriptionItem(TypedDict, total=False):
    """Subscription row as stored in DynamoDB."""

    pk: str
    sk: str
    tenant_id: str
    plan_tier: str
    status: str
    provider_subscription_id: Optional[str]
    provider_price_id: Optional[str]
    workspace_limit: Optional[int]
    monthly_token_quota: int
    tokens_remaining: int
    tokens_reset_at: Optional[str]
    current_period_start: Optional[str]
    current_period_end: Optional[str]
    cancel_at_period_end: bool
    auto_reload_enabled: bool
    auto_reload_amount: Optional[int]
    auto_reload_threshold: Optional[int]
    max_monthly_auto_reload: Optional[int]
    monthly_auto_reloaded_so_far: int
    monthly_auto_reload_reset_at: Optional[str]
    manual_top_up_tokens_added: int
    created_at: str
    updated_at: str
    version: int


class LedgerEventItem(TypedDict, total=False):
    """Ledger event row as stored in DynamoDB."""

    pk: str
    sk: str
    tenant_id: str
    type: str
    from_plan: Optional[str]
    to_plan: Optional[str]
    tokens_added: Optional[int]
    tokens_balance: Optional[int]
    provider_event_id: str
    created_at: str
