"""
Event Router

Stateless dispatch of a verified, non-duplicate event to its handler.
"""

import logging
from collections.abc import Callable
from typing import Any

from crewcast_billing.schemas.billing import DispatchResult, HandlerOutcome, WebhookEvent
from crewcast_billing.services.stripe_extractors import (
    checkout_snapshot,
    extract_reference_id,
    invoice_snapshot,
    payment_method_snapshot,
    subscription_snapshot,
)
from crewcast_billing.services.subscription_reconciler import SubscriptionReconciler
from crewcast_billing.utils.exceptions import StoreFailure, UnresolvedReference
from crewcast_billing.utils.sentry_context import capture_payment_error

logger = logging.getLogger(__name__)

Handler = Callable[[Any], DispatchResult]


class WebhookEventRouter:
    def __init__(self, reconciler: SubscriptionReconciler | None = None):
        self.reconciler = reconciler or SubscriptionReconciler()
        r = self.reconciler
        # event type -> handler taking the raw data.object
        self._handlers: dict[str, Handler] = {
            "customer.subscription.created": lambda obj: r.apply_subscription_update(
                subscription_snapshot(obj)
            ),
            "customer.subscription.updated": lambda obj: r.apply_subscription_update(
                subscription_snapshot(obj)
            ),
            "customer.subscription.deleted": lambda obj: r.apply_subscription_deleted(
                subscription_snapshot(obj)
            ),
            "customer.subscription.trial_will_end": lambda obj: r.note_trial_will_end(
                subscription_snapshot(obj)
            ),
            "invoice.paid": lambda obj: r.apply_invoice_paid(invoice_snapshot(obj)),
            "invoice.payment_failed": lambda obj: r.apply_invoice_payment_failed(
                invoice_snapshot(obj)
            ),
            "payment_method.attached": lambda obj: r.apply_payment_method_attached(
                payment_method_snapshot(obj)
            ),
            "customer.updated": lambda obj: r.note_customer_updated(extract_reference_id(obj)),
            "checkout.session.completed": lambda obj: r.apply_checkout_completed(
                checkout_snapshot(obj)
            ),
        }

    @property
    def handled_event_types(self) -> frozenset[str]:
        return frozenset(self._handlers)

    def dispatch(self, event: WebhookEvent) -> DispatchResult:
        """
        Route one event to its handler.

        Returns:
            DispatchResult; unknown kinds come back as IGNORED

        Raises:
            StoreFailure: store trouble, so the provider redelivers
        """
        handler = self._handlers.get(event.type)
        if handler is None:
            logger.info(f"Unhandled event type: {event.type} ({event.id})")
            return DispatchResult(
                outcome=HandlerOutcome.IGNORED, message=f"Unhandled event type: {event.type}"
            )

        try:
            return handler(event.data_object)
        except UnresolvedReference as e:
            logger.warning(f"Skipping {event.type} ({event.id}): {e.message}")
            return DispatchResult(outcome=HandlerOutcome.SKIPPED, message=e.message)
        except StoreFailure:
            raise
        except Exception as e:
            logger.error(f"Error handling {event.type} ({event.id}): {e}", exc_info=True)
            capture_payment_error(
                e,
                operation=event.type,
                event_id=event.id,
                details={"livemode": event.livemode},
            )
            return DispatchResult(
                outcome=HandlerOutcome.SKIPPED,
                message=f"Error handling {event.type}: {type(e).__name__}",
                success=False,
            )
