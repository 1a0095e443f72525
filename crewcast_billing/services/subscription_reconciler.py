"""
Subscription Reconciler

Applies provider subscription / invoice / payment-method snapshots to the
local subscriptions and users rows. Every write is a keyed overwrite scoped to
one user, so a replayed or reordered event converges to the same state.

Only snapshots cross into this module; raw Stripe objects stop at the
extractors. The one network call is the optional subscription read-back used
when an invoice does not carry its billing period.
"""

import logging
from datetime import datetime, timedelta
from typing import Any

import stripe

from crewcast_billing.config import Config
from crewcast_billing.config.plans import (
    DEFAULT_PERIOD_DAYS,
    FREE_TRIAL_PLAN,
    MONTHLY,
)
from crewcast_billing.db import subscriptions as subscriptions_db
from crewcast_billing.db import users as users_db
from crewcast_billing.schemas.billing import (
    ENTITLED_STATUSES,
    CheckoutSnapshot,
    DispatchResult,
    HandlerOutcome,
    InvoiceSnapshot,
    PaymentMethodSnapshot,
    StoreUserContext,
    SubscriptionSnapshot,
    SubscriptionStatus,
)
from crewcast_billing.services.credit_lifecycle import CreditLifecycleManager, normalize_plan
from crewcast_billing.services.stripe_extractors import (
    map_subscription_status,
    subscription_snapshot,
)
from crewcast_billing.utils.exceptions import (
    ProviderReadbackFailure,
    UnresolvedCustomer,
    UnresolvedUser,
)
from crewcast_billing.utils.timeutils import to_iso, utc_now

logger = logging.getLogger(__name__)


def _processed(message: str) -> DispatchResult:
    return DispatchResult(outcome=HandlerOutcome.PROCESSED, message=message)


def _skipped(message: str) -> DispatchResult:
    return DispatchResult(outcome=HandlerOutcome.SKIPPED, message=message)


class SubscriptionReconciler:
    """Maps Stripe billing snapshots onto the local subscription and user records"""

    def __init__(self, credit_manager: CreditLifecycleManager | None = None):
        self.credit_manager = credit_manager or CreditLifecycleManager()

    # ==================== Lookups ====================

    def _resolve_user(self, customer_id: str | None, source: str) -> StoreUserContext:
        if not customer_id:
            raise UnresolvedCustomer(f"{source} has no customer reference", source=source)

        user = users_db.get_user_by_customer_id(customer_id)
        if user is None:
            raise UnresolvedUser(
                f"No local user for customer {customer_id}", customer_id=customer_id, source=source
            )
        return user

    @staticmethod
    def _retrieve_subscription(subscription_id: str) -> SubscriptionSnapshot:
        try:
            subscription = stripe.Subscription.retrieve(
                subscription_id, api_key=Config.get_stripe_api_key()
            )
        except Exception as e:
            raise ProviderReadbackFailure(
                f"Failed to retrieve subscription {subscription_id}: {e}",
                subscription_id=subscription_id,
            ) from e
        return subscription_snapshot(subscription)

    def _read_back_subscription(self, subscription_id: str | None) -> SubscriptionSnapshot | None:
        """
        Fetch the subscription from Stripe for authoritative period / plan data.

        Failures are logged and reported as None; callers fall back to local data.
        """
        if not subscription_id:
            logger.info("No subscription id available for read-back, using local data")
            return None

        try:
            return self._retrieve_subscription(subscription_id)
        except ProviderReadbackFailure as e:
            logger.error(f"{e.message}; falling back to local billing period")
            return None

    @staticmethod
    def _fallback_period(
        user: StoreUserContext, billing_interval: str | None
    ) -> tuple[datetime, datetime]:
        now = utc_now()
        if (
            user.current_period_start is not None
            and user.current_period_end is not None
            and user.current_period_end > now
            and user.current_period_end > user.current_period_start
        ):
            return user.current_period_start, user.current_period_end

        days = DEFAULT_PERIOD_DAYS.get(billing_interval or MONTHLY, DEFAULT_PERIOD_DAYS[MONTHLY])
        return now, now + timedelta(days=days)

    # ==================== Subscriptions ====================

    def apply_subscription_update(self, snapshot: SubscriptionSnapshot) -> DispatchResult:
        """Handle customer.subscription.created / customer.subscription.updated"""
        user = self._resolve_user(snapshot.customer_id, f"Subscription {snapshot.subscription_id}")
        status = map_subscription_status(snapshot.status)

        logger.info(
            f"Subscription {snapshot.subscription_id} for user {user.user_id}: "
            f"status={snapshot.status}->{status}, plan={snapshot.plan}, "
            f"interval={snapshot.billing_interval}"
        )

        fields: dict[str, Any] = {
            "stripe_subscription_id": snapshot.subscription_id,
            "trial_ends_at": to_iso(snapshot.trial_end),
            "cancel_at_period_end": snapshot.cancel_at_period_end,
        }
        if status:
            fields["status"] = status
        # Unresolved plan/interval keep the stored value
        if snapshot.plan:
            fields["plan"] = snapshot.plan
        if snapshot.billing_interval:
            fields["billing_interval"] = snapshot.billing_interval
        if snapshot.current_period_start is not None:
            fields["current_period_start"] = to_iso(snapshot.current_period_start)
        if snapshot.current_period_end is not None:
            fields["current_period_end"] = to_iso(snapshot.current_period_end)

        subscriptions_db.update_subscription(user.user_id, fields)

        # cancel_at_period_end on an active subscription keeps access until the period ends
        entitled = (status or user.subscription_status) in ENTITLED_STATUSES
        users_db.update_user_entitlement(user.user_id, has_subscription=entitled, plan=snapshot.plan)

        if snapshot.cancel_at_period_end and entitled:
            logger.info(
                f"Subscription {snapshot.subscription_id} set to cancel at period end; "
                f"user {user.user_id} keeps access until {to_iso(snapshot.current_period_end)}"
            )

        # Signup stores "trialing" before this event; one grant per user is enforced by the manager
        if status == SubscriptionStatus.TRIALING.value and snapshot.trial_end is not None:
            trial_start = snapshot.current_period_start or utc_now()
            try:
                self.credit_manager.initialize_trial_credits(
                    user.user_id, trial_start, snapshot.trial_end
                )
            except ValueError as e:
                logger.error(f"Trial window for user {user.user_id} rejected: {e}")

        return _processed(f"Subscription {snapshot.subscription_id} set to {status}")

    def apply_subscription_deleted(self, snapshot: SubscriptionSnapshot) -> DispatchResult:
        """Handle customer.subscription.deleted: paid entitlement ends immediately"""
        user = self._resolve_user(snapshot.customer_id, f"Subscription {snapshot.subscription_id}")

        subscriptions_db.update_subscription(
            user.user_id,
            {"status": SubscriptionStatus.CANCELED.value, "cancel_at_period_end": True},
        )
        users_db.update_user_entitlement(user.user_id, has_subscription=False, plan=FREE_TRIAL_PLAN)

        logger.info(f"Subscription {snapshot.subscription_id} canceled for user {user.user_id}")
        return _processed(f"Subscription {snapshot.subscription_id} canceled")

    def note_trial_will_end(self, snapshot: SubscriptionSnapshot) -> DispatchResult:
        logger.info(
            f"Trial ending soon for subscription {snapshot.subscription_id} "
            f"(customer {snapshot.customer_id or 'unknown'}, trial_end={to_iso(snapshot.trial_end)})"
        )
        return _processed("Trial end notice logged")

    # ==================== Invoices ====================

    def apply_invoice_paid(self, snapshot: InvoiceSnapshot) -> DispatchResult:
        """
        Handle invoice.paid.

        Marks the subscription active and, for a non-zero payment, resets the
        credit ledgers to the plan allotment for the paid period.
        """
        user = self._resolve_user(snapshot.customer_id, f"Invoice {snapshot.invoice_id}")

        logger.info(
            f"Invoice {snapshot.invoice_id} paid: amount={snapshot.amount_paid}, "
            f"customer={snapshot.customer_id}, subscription={snapshot.subscription_id}, "
            f"user={user.user_id}"
        )

        subscription_id = snapshot.subscription_id
        if not subscription_id and user.stripe_subscription_id:
            logger.info(f"Using subscription id from database: {user.stripe_subscription_id}")
            subscription_id = user.stripe_subscription_id

        subscriptions_db.update_subscription(
            user.user_id, {"status": SubscriptionStatus.ACTIVE.value}
        )
        users_db.update_user_entitlement(user.user_id, has_subscription=True)

        if snapshot.amount_paid == 0:
            logger.info(f"Skipping credit reset for zero-amount invoice {snapshot.invoice_id}")
            return _processed("Subscription active; zero-amount invoice, credits unchanged")

        period_start, period_end = snapshot.period_start, snapshot.period_end
        plan = snapshot.plan
        billing_interval = snapshot.billing_interval or user.billing_interval

        if period_start is None or period_end is None or not plan:
            remote = self._read_back_subscription(subscription_id)
            if remote is not None:
                if period_start is None or period_end is None:
                    period_start = remote.current_period_start
                    period_end = remote.current_period_end
                plan = plan or remote.plan
                billing_interval = billing_interval or remote.billing_interval

        if period_start is None or period_end is None:
            period_start, period_end = self._fallback_period(user, billing_interval)
            logger.info(
                f"Using fallback credit period for user {user.user_id}: "
                f"{period_start.isoformat()} -> {period_end.isoformat()}"
            )

        normalized = normalize_plan(plan or user.plan)
        reset = self.credit_manager.reset_for_new_period(
            user.user_id, normalized, period_start, period_end
        )

        if reset:
            return _processed(f"Subscription active; credits reset to {normalized}")
        return _processed("Subscription active; credits already current")

    def apply_invoice_payment_failed(self, snapshot: InvoiceSnapshot) -> DispatchResult:
        """Handle invoice.payment_failed: past_due only, entitlement follows later subscription events"""
        user = self._resolve_user(snapshot.customer_id, f"Invoice {snapshot.invoice_id}")

        subscriptions_db.update_subscription(
            user.user_id, {"status": SubscriptionStatus.PAST_DUE.value}
        )

        logger.warning(f"Payment failed for user {user.user_id} - status set to past_due")
        return _processed("Subscription marked past_due")

    # ==================== Payment methods & customers ====================

    def apply_payment_method_attached(self, snapshot: PaymentMethodSnapshot) -> DispatchResult:
        if not snapshot.customer_id:
            logger.info(f"Payment method {snapshot.payment_method_id} has no customer")
            return _skipped("Payment method has no customer")

        if not snapshot.is_card:
            logger.info(f"Payment method {snapshot.payment_method_id} is not a card ({snapshot.type})")
            return _skipped("Payment method is not a card")

        user = self._resolve_user(snapshot.customer_id, f"Payment method {snapshot.payment_method_id}")

        subscriptions_db.update_subscription(
            user.user_id,
            {
                "stripe_payment_method_id": snapshot.payment_method_id,
                "card_last4": snapshot.card_last4,
                "card_brand": snapshot.card_brand,
                "card_exp_month": snapshot.card_exp_month,
                "card_exp_year": snapshot.card_exp_year,
            },
        )
        users_db.update_user(
            user.user_id,
            {
                "billing_last4": snapshot.card_last4,
                "billing_brand": snapshot.card_brand,
                "billing_expiry": snapshot.billing_expiry,
            },
        )

        logger.info(
            f"Updated card details for user {user.user_id}: "
            f"{snapshot.card_brand} ending {snapshot.card_last4}"
        )
        return _processed("Card details updated")

    def note_customer_updated(self, customer_id: str | None) -> DispatchResult:
        logger.info(f"Customer updated: {customer_id}")
        return _processed("Customer update logged")

    # ==================== Checkout ====================

    def apply_checkout_completed(self, snapshot: CheckoutSnapshot) -> DispatchResult:
        """Handle checkout.session.completed for one-time credit packs"""
        if snapshot.mode != "payment" or not snapshot.credit_type:
            logger.info(
                f"Checkout session {snapshot.session_id} (mode={snapshot.mode}) is not a credit purchase"
            )
            return DispatchResult(
                outcome=HandlerOutcome.IGNORED, message="Checkout session is not a credit purchase"
            )

        if snapshot.payment_status and snapshot.payment_status != "paid":
            logger.info(
                f"Checkout session {snapshot.session_id} not paid yet ({snapshot.payment_status})"
            )
            return _skipped("Checkout session is not paid")

        if not snapshot.session_id:
            return _skipped("Checkout session has no id")

        if self.credit_manager.add_topup_credits(snapshot.session_id):
            return _processed("Top-up credits added")
        return _skipped("Credit purchase already fulfilled or not found")
