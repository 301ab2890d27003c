"""
Stripe Webhook Endpoint - POST /webhooks/stripe

Reconciles Stripe billing events into the tenant's Subscription row and
token ledger. Uses Stripe signature verification instead of API key auth.

Response contract: 2xx once the event is durably recorded as processed
(applied or deliberately ignored), an error status only when processing
could not complete. Every error path leaves nothing written, so Stripe's
redelivery is always safe.
"""

import logging
import time

import stripe
from botocore.exceptions import ClientError

from shared.errors import APIError, StripeNotConfiguredError
from shared.logging_utils import (
    bind_event_context,
    clear_event_context,
    configure_structured_logging,
    log_api_request,
    set_request_id,
)
from shared.metrics import emit_error_metric, emit_webhook_metric
from shared.reconciler import OUTCOME_DUPLICATE, reconcile
from shared.response_utils import error_response, success_response
from shared.stripe_client import configure_stripe, get_stripe_secrets
from shared.subscription_store import OUTCOME_IGNORED, is_event_processed, record_ignored_event
from shared.webhook_verifier import extract_raw_body, get_signature_header, verify_and_parse

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

HANDLER_NAME = "billing_webhook"
WEBHOOK_PATH = "/webhooks/stripe"


def _processing_failed(code: str, message: str) -> dict:
    """200 for failures a redelivery cannot fix; Stripe stops retrying."""
    return success_response(
        {
            "error": {"code": code, "message": message},
            "received": True,
            "processed": False,
        }
    )


def handler(event, context):
    """
    Lambda handler for Stripe webhooks.

    Handles:
    - checkout.session.completed: Token top-up purchases
    - customer.subscription.created/updated: Plan, limits and period sync
    - customer.subscription.deleted: Reset to the free tier
    - invoice.payment_succeeded: Monthly token refill
    - invoice.payment_failed: Mark subscription past_due
    """
    configure_structured_logging()
    set_request_id(event)
    clear_event_context()
    start = time.monotonic()

    response, event_type = _handle(event)

    log_api_request(
        logger,
        event.get("httpMethod") or "POST",
        event.get("path") or WEBHOOK_PATH,
        response["statusCode"],
        round((time.monotonic() - start) * 1000, 2),
        event_type,
    )
    return response


def _handle(event) -> tuple[dict, str | None]:
    try:
        stripe_api_key, webhook_secret = get_stripe_secrets()
        if not stripe_api_key or not webhook_secret:
            logger.error("Stripe secrets not configured")
            raise StripeNotConfiguredError()
        configure_stripe(stripe_api_key)

        provider_event = verify_and_parse(
            extract_raw_body(event),
            get_signature_header(event.get("headers")),
            webhook_secret,
        )
    except APIError as e:
        logger.warning(f"Rejected webhook: {e.code}: {e.message}")
        emit_error_metric(e.code, handler=HANDLER_NAME)
        emit_webhook_metric("rejected")
        return e.to_response(), None

    event_id = provider_event.event_id
    event_type = provider_event.event_type
    bind_event_context(stripe_event_id=event_id, event_type=event_type)
    logger.info(f"Processing Stripe event: {event_type} (id={event_id})")

    try:
        if is_event_processed(event_id):
            logger.info(f"Skipping duplicate event {event_id}")
            emit_webhook_metric(OUTCOME_DUPLICATE, event_type)
            return success_response({"received": True, "duplicate": True}), event_type

        result = reconcile(provider_event)

    except APIError as e:
        # ConcurrentUpdateError: nothing written, let Stripe redeliver
        logger.error(f"Could not apply {event_type} ({event_id}): {e.message}")
        emit_error_metric(e.code, service="dynamodb", handler=HANDLER_NAME)
        emit_webhook_metric("failed", event_type)
        return e.to_response(), event_type
    except ClientError as e:
        # DynamoDB errors are transient - nothing committed, Stripe retry re-processes
        logger.error(f"Transient error handling {event_type}: {e}")
        emit_error_metric("temporary_error", service="dynamodb", handler=HANDLER_NAME)
        emit_webhook_metric("failed", event_type)
        return error_response(500, "temporary_error", "Temporary error, please retry"), event_type
    except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as e:
        # Transient Stripe errors (including lookup timeouts)
        logger.error(f"Transient Stripe error handling {event_type}: {e}")
        emit_error_metric("stripe_error", service="stripe", handler=HANDLER_NAME)
        emit_webhook_metric("failed", event_type)
        return error_response(500, "stripe_error", "Stripe error, please retry"), event_type
    except stripe.StripeError as e:
        # Permanent Stripe errors (InvalidRequestError, AuthenticationError, etc.)
        logger.error(f"Permanent Stripe error handling {event_type}: {e}")
        return _record_unprocessable(
            provider_event, "stripe_validation_error", "Stripe validation error"
        ), event_type
    except (ValueError, KeyError, TypeError, AttributeError) as e:
        # Data validation errors are permanent - return 200, don't retry
        # Don't leak internal field names in response
        logger.error(f"Permanent error handling {event_type}: {e}")
        return _record_unprocessable(provider_event, "invalid_event_data", "Invalid event data"), event_type
    except Exception as e:
        logger.error(f"Unexpected error handling {event_type}: {e}", exc_info=True)
        emit_error_metric("processing_failed", handler=HANDLER_NAME)
        emit_webhook_metric("failed", event_type)
        return error_response(500, "processing_failed", "Processing failed"), event_type

    emit_webhook_metric(result.outcome, event_type)
    if result.outcome == OUTCOME_DUPLICATE:
        return success_response({"received": True, "duplicate": True}), event_type
    if result.outcome == OUTCOME_IGNORED:
        return success_response({"received": True, "ignored": True}), event_type
    return success_response({"received": True}), event_type


def _record_unprocessable(provider_event, code: str, message: str) -> dict:
    """Mark an event that can never be applied as processed, then acknowledge it."""
    try:
        record_ignored_event(provider_event, None, code)
    except ClientError as e:
        logger.error(f"Could not record unprocessable event {provider_event.event_id}: {e}")
        emit_error_metric("temporary_error", service="dynamodb", handler=HANDLER_NAME)
        emit_webhook_metric("failed", provider_event.event_type)
        return error_response(500, "temporary_error", "Temporary error, please retry")

    emit_error_metric(code, handler=HANDLER_NAME)
    emit_webhook_metric("unprocessable", provider_event.event_type)
    return _processing_failed(code, message)
