"""
Standardized errors for the billing webhook.
"""

import json
from typing import Optional


class APIError(Exception):
    """Base class for API errors."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 400,
        details: Optional[dict] = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> dict:
        """Convert to API Gateway response format."""
        body = {
            "error": {
                "code": self.code,
                "message": self.message,
            }
        }
        if self.details:
            body["error"]["details"] = self.details

        return {
            "statusCode": self.status_code,
            "headers": {"Content-Type": "application/json"},
            "body": json.dumps(body),
        }


class WebhookSignatureError(APIError):
    """Raised when the Stripe-Signature header is missing or does not verify."""

    def __init__(self, code: str = "invalid_signature", message: str = "Invalid signature"):
        super().__init__(code=code, message=message, status_code=400)


class MalformedEventError(APIError):
    """Raised when a verified body is not a usable event."""

    def __init__(self, message: str = "Invalid webhook payload"):
        super().__init__(
            code="invalid_webhook_payload",
            message=message,
            status_code=400,
        )


class StripeNotConfiguredError(APIError):
    """Raised when the Stripe API key or webhook secret is unavailable."""

    def __init__(self):
        super().__init__(
            code="stripe_not_configured",
            message="Stripe not configured",
            status_code=500,
        )


class ConcurrentUpdateError(APIError):
    """Raised when a tenant row kept changing under a reconciliation."""

    def __init__(self, tenant_id: str, attempts: int):
        super().__init__(
            code="concurrent_update",
            message="Concurrent update, please retry",
            status_code=500,
        )
        self.tenant_id = tenant_id
        self.attempts = attempts


class DuplicateEventError(Exception):
    """Raised when a provider event id has already been reserved."""

    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__(f"Event {event_id} already processed")
