"""
Raw payload capture and Stripe signature verification.

Verification is a keyed HMAC over the exact request bytes, so the body is
taken straight from Starlette and never re-encoded before it reaches the SDK.
Nothing in this module touches the store.
"""

import logging

import stripe
from fastapi import Request

from crewcast_billing.config import Config
from crewcast_billing.schemas.billing import WebhookEvent
from crewcast_billing.services.stripe_extractors import get_field, get_path
from crewcast_billing.utils.exceptions import (
    ConfigurationError,
    InvalidPayload,
    MissingSignature,
    RawPayloadUnavailable,
    SignatureInvalid,
)
from crewcast_billing.utils.sentry_context import capture_payment_error

logger = logging.getLogger(__name__)


async def capture_raw_body(request: Request) -> bytes:
    """
    Return the untouched request body.

    Raises:
        RawPayloadUnavailable: if the stream was already consumed or the
            transport handed over something other than bytes
    """
    try:
        body = await request.body()
    except RuntimeError as e:
        # Starlette: "Stream consumed" when something read the stream without caching it
        logger.error(f"Raw webhook body unavailable: {e}")
        raise RawPayloadUnavailable("Raw request body is unavailable for signature verification") from e

    if not isinstance(body, bytes | bytearray):
        logger.error(f"Raw webhook body has unexpected type {type(body).__name__}")
        raise RawPayloadUnavailable("Raw request body is not a byte sequence")

    return bytes(body)


def verify_webhook(
    payload: bytes,
    signature: str | None,
    secret: str | None = None,
    tolerance: int | None = None,
) -> WebhookEvent:
    """
    Verify a Stripe notification and return the typed event envelope.

    The signing secret is checked before the header: with no secret configured
    every request fails with ConfigurationError (500), even one that also lacks
    a stripe-signature header, so a misconfigured deployment shows up as a
    server error on the Stripe dashboard instead of being read as bad requests.

    Args:
        payload: Raw request body bytes
        signature: Value of the stripe-signature header
        secret: Signing secret; resolved from the environment when omitted
        tolerance: Allowed clock skew in seconds for the signed timestamp

    Returns:
        WebhookEvent

    Raises:
        ConfigurationError: no signing secret configured
        MissingSignature: header absent or blank
        SignatureInvalid: signature does not match the payload
        InvalidPayload: body is not a Stripe event envelope
    """
    secret = secret or Config.get_webhook_secret()
    if not secret:
        logger.critical("STRIPE_WEBHOOK_SECRET is not configured; rejecting webhook")
        raise ConfigurationError("Webhook signing secret is not configured")

    if not signature or not signature.strip():
        logger.warning("Webhook request without stripe-signature header")
        raise MissingSignature("Missing stripe-signature header")

    if tolerance is None:
        tolerance = Config.STRIPE_WEBHOOK_TOLERANCE_SECONDS

    try:
        event = stripe.Webhook.construct_event(payload, signature, secret, tolerance=tolerance)
    except stripe.SignatureVerificationError as e:
        logger.error(f"Webhook signature verification failed: {e}")
        capture_payment_error(e, operation="webhook_signature", level="warning")
        raise SignatureInvalid("Webhook signature verification failed") from e
    except (ValueError, TypeError, AttributeError) as e:
        # JSON/UTF-8 decode errors, or a JSON document that is not an object
        logger.error(f"Webhook payload is not valid JSON: {e}")
        raise InvalidPayload("Webhook payload is not valid JSON") from e

    event_id = get_field(event, "id")
    event_type = get_field(event, "type")
    data_object = get_path(event, "data", "object")

    if not isinstance(event_id, str) or not isinstance(event_type, str) or data_object is None:
        logger.error("Verified webhook payload is missing id, type or data.object")
        raise InvalidPayload("Webhook payload is not a Stripe event envelope")

    created = get_field(event, "created")
    return WebhookEvent(
        id=event_id,
        type=event_type,
        created=created if isinstance(created, int) and not isinstance(created, bool) else None,
        livemode=bool(get_field(event, "livemode", False)),
        api_version=get_field(event, "api_version"),
        data_object=data_object,
    )
