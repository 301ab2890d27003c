"""Stripe configuration and read-only lookups used by billing reconciliation.

Lookups run without Stripe's network retries: a failure surfaces to the
webhook handler, which answers with an error so Stripe redelivers.
"""

import json
import logging
import os
import time

import stripe
from botocore.exceptions import ClientError

from .aws_clients import get_secretsmanager
from .constants import STRIPE_LOOKUP_TIMEOUT_SECONDS
from .logging_utils import log_external_call

logger = logging.getLogger(__name__)

STRIPE_SECRET_ARN = os.environ.get("STRIPE_SECRET_ARN")
STRIPE_WEBHOOK_SECRET_ARN = os.environ.get("STRIPE_WEBHOOK_SECRET_ARN")

# Cached Stripe secrets with TTL
_stripe_secrets_cache: tuple[str | None, str | None] = (None, None)
_stripe_secrets_cache_time = 0.0
STRIPE_SECRETS_CACHE_TTL = 300  # 5 minutes

_http_client = None


def _read_secret(secret_arn: str, json_field: str) -> str | None:
    """Read a secret that is either a plain string or JSON with `json_field`."""
    try:
        response = get_secretsmanager().get_secret_value(SecretId=secret_arn)
    except ClientError as e:
        logger.error(f"Failed to retrieve secret {json_field}: {e}")
        return None

    secret_value = response.get("SecretString", "")
    try:
        secret_json = json.loads(secret_value)
    except json.JSONDecodeError:
        return secret_value or None
    if isinstance(secret_json, dict):
        return secret_json.get(json_field) or secret_value
    return secret_value


def get_stripe_secrets() -> tuple[str | None, str | None]:
    """Retrieve Stripe API key and webhook secret from Secrets Manager (cached with TTL)."""
    global _stripe_secrets_cache, _stripe_secrets_cache_time

    if _stripe_secrets_cache[0] and (time.time() - _stripe_secrets_cache_time) < STRIPE_SECRETS_CACHE_TTL:
        return _stripe_secrets_cache

    api_key = _read_secret(STRIPE_SECRET_ARN, "key") if STRIPE_SECRET_ARN else None
    webhook_secret = _read_secret(STRIPE_WEBHOOK_SECRET_ARN, "secret") if STRIPE_WEBHOOK_SECRET_ARN else None

    _stripe_secrets_cache = (api_key, webhook_secret)
    _stripe_secrets_cache_time = time.time()
    return api_key, webhook_secret


def configure_stripe(api_key: str) -> None:
    """Point the stripe module at our key with bounded, non-retrying lookups."""
    global _http_client

    stripe.api_key = api_key
    stripe.max_network_retries = 0
    if _http_client is None:
        _http_client = stripe.RequestsClient(timeout=STRIPE_LOOKUP_TIMEOUT_SECONDS)
    stripe.default_http_client = _http_client


def _timed_lookup(operation: str, retrieve, object_id: str):
    start = time.monotonic()
    try:
        result = retrieve(object_id)
    except stripe.StripeError as e:
        log_external_call(logger, "stripe", operation, False, (time.monotonic() - start) * 1000, str(e))
        raise
    log_external_call(logger, "stripe", operation, True, (time.monotonic() - start) * 1000)
    return result


def retrieve_product(product_id: str):
    """Retrieve a product (plan metadata lives on the product)."""
    return _timed_lookup("products.retrieve", stripe.Product.retrieve, product_id)


def retrieve_subscription(subscription_id: str):
    """Retrieve the subscription behind an invoice."""
    return _timed_lookup("subscriptions.retrieve", stripe.Subscription.retrieve, subscription_id)


def retrieve_payment_intent(payment_intent_id: str):
    """Retrieve the payment intent behind a checkout session (top-up metadata)."""
    return _timed_lookup("payment_intents.retrieve", stripe.PaymentIntent.retrieve, payment_intent_id)
