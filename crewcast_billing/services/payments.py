#!/usr/bin/env python3
"""
Stripe Webhook Service
Verifies, de-duplicates and dispatches Stripe billing notifications.

Pipeline: signature verification -> idempotency guard -> event router ->
subscription reconciler / credit lifecycle -> Supabase.
"""

import logging
from datetime import UTC, datetime

from crewcast_billing.config.logging_config import current_event_id, current_event_type
from crewcast_billing.schemas.billing import (
    DUPLICATE_STATUS,
    WebhookEvent,
    WebhookProcessingResult,
)
from crewcast_billing.services.idempotency import (
    ProcessedEventCache,
    RedisProcessedEventStore,
    get_idempotency_guard,
)
from crewcast_billing.services.webhook_router import WebhookEventRouter
from crewcast_billing.services.webhook_verifier import verify_webhook
from crewcast_billing.utils.exceptions import StoreFailure
from crewcast_billing.utils.sentry_context import capture_payment_error

logger = logging.getLogger(__name__)


class StripeWebhookService:
    """Service class for Stripe webhook ingestion"""

    def __init__(
        self,
        router: WebhookEventRouter | None = None,
        guard: ProcessedEventCache | RedisProcessedEventStore | None = None,
    ):
        self.router = router or WebhookEventRouter()
        self._guard = guard

    @property
    def guard(self) -> ProcessedEventCache | RedisProcessedEventStore:
        return self._guard if self._guard is not None else get_idempotency_guard()

    def handle_webhook(self, payload: bytes, signature: str | None) -> WebhookProcessingResult:
        """
        Verify and process one Stripe notification.

        Args:
            payload: Raw request body
            signature: stripe-signature header value

        Returns:
            WebhookProcessingResult for processed, duplicate, ignored or skipped events

        Raises:
            WebhookRejected: missing/invalid signature or malformed envelope (nothing was touched)
            ConfigurationError: signing secret not configured
            StoreFailure: store trouble; the event is released for redelivery
        """
        event = verify_webhook(payload, signature)

        id_token = current_event_id.set(event.id)
        type_token = current_event_type.set(event.type)
        try:
            return self._process(event)
        finally:
            current_event_type.reset(type_token)
            current_event_id.reset(id_token)

    def _process(self, event: WebhookEvent) -> WebhookProcessingResult:
        logger.info(f"Processing webhook: {event.type} (ID: {event.id}, livemode={event.livemode})")

        guard = self.guard
        if not guard.claim(event.id):
            logger.info(f"Duplicate webhook event detected, skipping: {event.id}")
            return WebhookProcessingResult(
                success=True,
                event_type=event.type,
                event_id=event.id,
                status=DUPLICATE_STATUS,
                message=f"Event {event.id} already processed (duplicate)",
                processed_at=datetime.now(UTC),
            )

        try:
            result = self.router.dispatch(event)
        except StoreFailure as e:
            guard.release(event.id)
            logger.error(
                f"Store failure while handling {event.type} ({event.id}), released for redelivery: "
                f"{e.message}",
                exc_info=True,
            )
            capture_payment_error(e, operation=event.type, event_id=event.id, details=e.context)
            raise
        except Exception as e:
            guard.release(event.id)
            logger.error(f"Webhook dispatch error for {event.type} ({event.id}): {e}", exc_info=True)
            capture_payment_error(e, operation=event.type, event_id=event.id)
            raise

        logger.info(f"Webhook {event.type} ({event.id}) {result.outcome.value}: {result.message}")
        return WebhookProcessingResult(
            success=result.success,
            event_type=event.type,
            event_id=event.id,
            status=result.outcome.value,
            message=result.message,
            processed_at=datetime.now(UTC),
        )
