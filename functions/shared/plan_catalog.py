"""
Product classification and plan resolution.

The Stripe account may host products unrelated to workspace subscriptions.
Only products tagged with OFFERING_METADATA_KEY=OFFERING_TAG are reconciled,
and their plan tier, workspace limit and monthly token quota are read from
product metadata:

    plan_tier       free | basic | pro
    max_workspaces  integer or "unlimited"
    monthly_tokens  integer

Malformed or missing values fall back to the defaults field by field
instead of failing the webhook.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import stripe

from .constants import (
    DEFAULT_MONTHLY_TOKENS,
    DEFAULT_PLAN_TIER,
    DEFAULT_WORKSPACE_LIMIT,
    OFFERING_METADATA_KEY,
    OFFERING_TAG,
    PLAN_TIERS,
)
from .stripe_client import retrieve_product

logger = logging.getLogger(__name__)

UNLIMITED_WORKSPACES = "unlimited"


@dataclass(frozen=True)
class PlanResolution:
    plan_tier: str
    workspace_limit: Optional[int]  # None means unbounded
    monthly_token_quota: int


DEFAULT_PLAN = PlanResolution(DEFAULT_PLAN_TIER, DEFAULT_WORKSPACE_LIMIT, DEFAULT_MONTHLY_TOKENS)


def _parse_non_negative_int(value, default: int) -> int:
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return default
    return parsed if parsed >= 0 else default


def resolve_plan(metadata: Optional[dict]) -> PlanResolution:
    """Typed view of a product's plan metadata with per-field defaults."""
    metadata = metadata or {}

    plan_tier = metadata.get("plan_tier")
    if plan_tier not in PLAN_TIERS:
        if plan_tier is not None:
            logger.warning(f"Unknown plan_tier {plan_tier!r} in product metadata, using {DEFAULT_PLAN_TIER}")
        plan_tier = DEFAULT_PLAN_TIER

    max_workspaces = metadata.get("max_workspaces")
    if isinstance(max_workspaces, str) and max_workspaces.strip().lower() == UNLIMITED_WORKSPACES:
        workspace_limit = None
    else:
        workspace_limit = _parse_non_negative_int(max_workspaces, DEFAULT_WORKSPACE_LIMIT)

    monthly_token_quota = _parse_non_negative_int(metadata.get("monthly_tokens"), DEFAULT_MONTHLY_TOKENS)

    return PlanResolution(plan_tier, workspace_limit, monthly_token_quota)


def get_product_ref(subscription: dict):
    """Product of the first subscription item: an id string, an expanded product, or None."""
    items = (subscription.get("items") or {}).get("data") or []
    if not items:
        return None
    price = items[0].get("price") or {}
    return price.get("product")


def is_reconcilable_product(product: Optional[dict]) -> bool:
    if not product:
        return False
    metadata = product.get("metadata") or {}
    return metadata.get(OFFERING_METADATA_KEY) == OFFERING_TAG


def resolve_offering(subscription: dict) -> Optional[PlanResolution]:
    """Classify a subscription and resolve its plan from one product lookup.

    Returns None when the subscription does not belong to the workspace
    offering. Transient Stripe errors propagate so the webhook is redelivered.
    """
    product_ref = get_product_ref(subscription)
    if not product_ref:
        logger.info(f"Subscription {subscription.get('id')} has no product, not reconcilable")
        return None

    if isinstance(product_ref, str):
        try:
            product = retrieve_product(product_ref)
        except stripe.InvalidRequestError as e:
            logger.warning(f"Product {product_ref} not retrievable, treating as unrelated: {e}")
            return None
    else:
        product = product_ref

    if not is_reconcilable_product(product):
        logger.info(f"Product {product.get('id')} is not tagged {OFFERING_TAG}, skipping")
        return None

    return resolve_plan(product.get("metadata"))


def is_reconcilable_subscription(subscription: dict) -> bool:
    return resolve_offering(subscription) is not None
