"""
Stripe webhook verification.

The signature is an HMAC over the raw request body, so verification must
run on the bytes API Gateway delivered, before any JSON parsing.
"""

import base64
import binascii
import json
from dataclasses import dataclass, field
from typing import Optional

import stripe

from .constants import WEBHOOK_TOLERANCE_SECONDS
from .errors import MalformedEventError, WebhookSignatureError
from .types import APIGatewayEvent


@dataclass(frozen=True)
class ProviderEvent:
    """A verified Stripe event."""

    event_id: str
    event_type: str
    payload: dict = field(default_factory=dict)
    created: Optional[int] = None
    livemode: bool = False


def extract_raw_body(event: APIGatewayEvent) -> bytes:
    """Raw request body bytes from an API Gateway proxy event."""
    body = event.get("body") or ""
    if event.get("isBase64Encoded"):
        try:
            return base64.b64decode(body, validate=True)
        except (binascii.Error, ValueError) as e:
            raise MalformedEventError("Body is not valid base64") from e
    return body.encode("utf-8")


def get_signature_header(headers: Optional[dict]) -> Optional[str]:
    for name, value in (headers or {}).items():
        if name.lower() == "stripe-signature":
            return value
    return None


def verify_and_parse(
    raw_body: bytes,
    signature_header: Optional[str],
    secret: str,
    tolerance: int = WEBHOOK_TOLERANCE_SECONDS,
) -> ProviderEvent:
    """
    Verify the Stripe-Signature header and parse the event.

    Args:
        raw_body: Request body exactly as received
        signature_header: Value of the Stripe-Signature header
        secret: Webhook signing secret (whsec_...)
        tolerance: Maximum age of the signed timestamp in seconds

    Returns:
        ProviderEvent

    Raises:
        WebhookSignatureError: header missing or signature invalid
        MalformedEventError: verified body is not an event object
    """
    if not signature_header:
        raise WebhookSignatureError("missing_signature", "Missing Stripe signature")

    try:
        payload = raw_body.decode("utf-8")
    except UnicodeDecodeError as e:
        raise MalformedEventError("Body is not UTF-8") from e

    try:
        stripe.WebhookSignature.verify_header(payload, signature_header, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        raise WebhookSignatureError() from e

    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise MalformedEventError() from e

    if not isinstance(data, dict):
        raise MalformedEventError()

    event_id = data.get("id")
    event_type = data.get("type")
    event_data = data.get("data")
    obj = event_data.get("object") if isinstance(event_data, dict) else None
    if not isinstance(event_id, str) or not event_id or not isinstance(event_type, str) or not isinstance(obj, dict):
        raise MalformedEventError()

    created = data.get("created")
    return ProviderEvent(
        event_id=event_id,
        event_type=event_type,
        payload=obj,
        created=created if isinstance(created, int) else None,
        livemode=bool(data.get("livemode", False)),
    )
