#!/usr/bin/env python3
"""
Stripe Payment Routes
Inbound Stripe webhook endpoint
"""

import asyncio
import logging

from fastapi import APIRouter, Header, Request
from fastapi.responses import JSONResponse

from crewcast_billing.schemas.billing import WebhookErrorResponse, WebhookProcessingResult
from crewcast_billing.services.payments import StripeWebhookService
from crewcast_billing.services.webhook_verifier import capture_raw_body
from crewcast_billing.utils.exceptions import BillingWebhookError
from crewcast_billing.utils.sentry_context import capture_payment_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/stripe", tags=["Stripe Payments"])

# Initialize Stripe webhook service
stripe_webhook_service = StripeWebhookService()


def _error_response(status_code: int, error: str, message: str) -> JSONResponse:
    body = WebhookErrorResponse(error=error, message=message)
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


@router.post("/webhook", status_code=200)
async def stripe_webhook(
    request: Request, stripe_signature: str | None = Header(None, alias="stripe-signature")
):
    """
    Stripe webhook endpoint - handles billing lifecycle events

    Subscription Events:
    - customer.subscription.created / updated - sync status, plan, period; start trial credits
    - customer.subscription.deleted - cancel and revoke paid entitlement
    - customer.subscription.trial_will_end - logged
    - invoice.paid - mark active, reset credits for the paid period
    - invoice.payment_failed - mark subscription past_due

    Other Events:
    - payment_method.attached - store card brand / last 4 / expiry
    - customer.updated - logged
    - checkout.session.completed - fulfil credit pack purchases

    Status codes drive Stripe's retry behaviour:
    - 200: processed, duplicate, ignored or skipped (no retry)
    - 400: missing/invalid signature or malformed payload
    - 500: configuration or store failure (Stripe redelivers)

    Args:
        request: FastAPI request object containing raw webhook payload
        stripe_signature: Stripe signature header for verification
    """
    try:
        payload = await capture_raw_body(request)
        result: WebhookProcessingResult = await asyncio.to_thread(
            stripe_webhook_service.handle_webhook, payload, stripe_signature
        )
    except BillingWebhookError as e:
        if e.http_status >= 500:
            logger.error(f"Webhook failed ({e.error_code}): {e.message}")
        else:
            logger.warning(f"Webhook rejected ({e.error_code}): {e.message}")
        return _error_response(e.http_status, e.error_code, e.message)
    except Exception as e:
        logger.error(f"Unexpected webhook processing error: {e}", exc_info=True)
        capture_payment_error(e, operation="webhook")
        return _error_response(500, "internal_error", "Webhook processing failed")

    logger.info(f"Webhook processed: {result.event_type} - {result.status} - {result.message}")
    return JSONResponse(status_code=200, content=result.model_dump(mode="json"))
