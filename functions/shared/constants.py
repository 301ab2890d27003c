"""
Shared constants for workspace billing.
"""

import os

# Plan tiers
PLAN_FREE = "free"
PLAN_BASIC = "basic"
PLAN_PRO = "pro"

PLAN_TIERS = (PLAN_FREE, PLAN_BASIC, PLAN_PRO)

# Tier ordering for upgrade/downgrade logging
TIER_ORDER = {PLAN_FREE: 0, PLAN_BASIC: 1, PLAN_PRO: 2}

# Fallback when a product's plan metadata is missing or malformed
DEFAULT_PLAN_TIER = PLAN_FREE
DEFAULT_WORKSPACE_LIMIT = 1
DEFAULT_MONTHLY_TOKENS = 0

# Free tier applied when a provider subscription is deleted.
# Configured independently of any "free" product's metadata quota.
FREE_RESET_TOKEN_ALLOTMENT = int(os.environ.get("FREE_RESET_TOKEN_ALLOTMENT") or "50000")
FREE_WORKSPACE_LIMIT = int(os.environ.get("FREE_WORKSPACE_LIMIT") or "1")

# Product metadata that tags this product's subscription offering
OFFERING_METADATA_KEY = os.environ.get("OFFERING_METADATA_KEY") or "type"
OFFERING_TAG = os.environ.get("OFFERING_TAG") or "ws_subscription"

# Metadata key carrying the tenant id on subscriptions and payment intents
TENANT_METADATA_KEY = os.environ.get("TENANT_METADATA_KEY") or "userId"

# Payment intent metadata type for one-time token purchases
TOKEN_RELOAD_TYPE = "token_reload"

# Subscription statuses written by the reconciler
STATUS_ACTIVE = "active"
STATUS_PAST_DUE = "past_due"

# Ledger event types
LEDGER_PLAN_CREATED = "plan_created"
LEDGER_PLAN_CHANGED = "plan_changed"
LEDGER_PLAN_DELETED = "plan_deleted"
LEDGER_CANCELLATION_SCHEDULED = "cancellation_scheduled"
LEDGER_CANCELLATION_REVERSED = "cancellation_reversed"
LEDGER_TOKENS_TOPPED_UP = "tokens_topped_up"
LEDGER_TOKENS_RESET = "tokens_reset"
LEDGER_TOKENS_AUTO_RELOADED = "tokens_auto_reloaded"

# Stripe event types reconciled by the webhook
EVENT_CHECKOUT_COMPLETED = "checkout.session.completed"
EVENT_SUBSCRIPTION_CREATED = "customer.subscription.created"
EVENT_SUBSCRIPTION_UPDATED = "customer.subscription.updated"
EVENT_SUBSCRIPTION_DELETED = "customer.subscription.deleted"
EVENT_INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
EVENT_INVOICE_PAYMENT_FAILED = "invoice.payment_failed"

# Idempotency key namespace for auto-reload credits (keyed by payment intent id)
AUTO_RELOAD_EVENT_TYPE = "payment_intent.auto_reload"

# Timeouts
STRIPE_LOOKUP_TIMEOUT_SECONDS = float(os.environ.get("STRIPE_LOOKUP_TIMEOUT_SECONDS") or "10")
WEBHOOK_TOLERANCE_SECONDS = int(os.environ.get("WEBHOOK_TOLERANCE_SECONDS") or "300")

# Processed-event records expire after this many days
PROCESSED_EVENT_TTL_DAYS = 90

# Optimistic-concurrency retries on a per-tenant version conflict
MAX_CONFLICT_RETRIES = int(os.environ.get("MAX_CONFLICT_RETRIES") or "3")
