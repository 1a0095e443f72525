"""
End-to-end tests for StripeWebhookService.handle_webhook

Signed payloads go through real signature verification, the idempotency
guard, the router and the reconciler against an in-memory Supabase.
"""

import time
from datetime import UTC, datetime
from unittest.mock import MagicMock, patch

import pytest
import stripe

from crewcast_billing.config.logging_config import current_event_id
from crewcast_billing.schemas.billing import DispatchResult, HandlerOutcome
from crewcast_billing.services.idempotency import ProcessedEventCache
from crewcast_billing.services.payments import StripeWebhookService
from crewcast_billing.services.webhook_router import WebhookEventRouter
from crewcast_billing.utils.exceptions import SignatureInvalid, StoreWriteFailure
from crewcast_billing.utils.timeutils import to_iso
from tests.helpers.stripe_events import (
    DAY,
    encode_event,
    invoice_object,
    make_event,
    sign_payload,
    signed_event,
    subscription_object,
)


@pytest.fixture
def guard():
    return ProcessedEventCache()


@pytest.fixture
def service(guard):
    return StripeWebhookService(guard=guard)


@pytest.fixture
def customer(fake_supabase):
    return fake_supabase.seed_customer(user_id=1, customer_id="cus_test_123")


def _deliver(service, event):
    payload, signature = signed_event(event)
    return service.handle_webhook(payload, signature)


def _iso(ts):
    return to_iso(datetime.fromtimestamp(ts, tz=UTC))


class TestEndToEnd:
    def test_trial_subscription_created(self, service, fake_supabase, customer):
        now = int(time.time())
        event = make_event(
            "customer.subscription.created",
            subscription_object(
                status="trialing",
                period_start=now,
                period_end=now + 3 * DAY,
                trial_end=now + 3 * DAY,
                metadata={"plan": "pro", "billing_interval": "monthly"},
            ),
        )

        result = _deliver(service, event)

        assert result.success is True
        assert result.status == "processed"
        sub = fake_supabase.rows("subscriptions", user_id=1)[0]
        assert sub["status"] == "trialing"
        assert sub["plan"] == "pro"
        ledgers = fake_supabase.rows("credit_ledgers", user_id=1)
        assert {row["credit_type"] for row in ledgers} == {"topic_search", "email", "ai"}
        for row in ledgers:
            assert row["is_trial_period"] is True
            assert row["period_start"] == _iso(now)
            assert row["period_end"] == _iso(now + 3 * DAY)

    def test_trial_created_after_signup_marked_row_trialing(self, service, fake_supabase):
        fake_supabase.seed_customer(user_id=1, customer_id="cus_test_123", status="trialing")
        now = int(time.time())
        event = make_event(
            "customer.subscription.created",
            subscription_object(
                status="trialing",
                period_start=now,
                period_end=now + 3 * DAY,
                trial_end=now + 3 * DAY,
                metadata={"plan": "pro"},
            ),
        )

        result = _deliver(service, event)

        assert result.status == "processed"
        ledgers = fake_supabase.rows("credit_ledgers", user_id=1)
        assert {row["credit_type"] for row in ledgers} == {"topic_search", "email", "ai"}
        assert all(row["period_end"] == _iso(now + 3 * DAY) for row in ledgers)

    def test_invoice_paid_resets_to_plan_allotment(self, service, fake_supabase, customer):
        now = int(time.time())
        remote = stripe.StripeObject.construct_from(
            subscription_object(
                period_start=now,
                period_end=now + 30 * DAY,
                metadata={"plan": "pro", "billing_interval": "monthly"},
            ),
            "sk_test_123",
        )
        event = make_event(
            "invoice.paid", invoice_object(amount_paid=4900, parent_subscription="sub_test_123")
        )

        with patch("stripe.Subscription.retrieve", return_value=remote):
            result = _deliver(service, event)

        assert result.status == "processed"
        assert fake_supabase.rows("subscriptions", user_id=1)[0]["status"] == "active"
        assert fake_supabase.rows("users", id=1)[0]["has_subscription"] is True
        ledgers = {row["credit_type"]: row for row in fake_supabase.rows("credit_ledgers", user_id=1)}
        assert ledgers["topic_search"]["credits_total"] == 5
        assert ledgers["email"]["credits_total"] == 150
        assert ledgers["ai"]["credits_total"] == 200
        for row in ledgers.values():
            assert row["credits_used"] == 0
            assert row["period_start"] == _iso(now)
            assert row["period_end"] == _iso(now + 30 * DAY)

    def test_same_invoice_event_twice_is_a_duplicate(self, service, fake_supabase, customer):
        now = int(time.time())
        event = make_event(
            "invoice.paid",
            invoice_object(period=(now, now + 30 * DAY), plan_metadata={"plan": "pro"}),
            event_id="evt_invoice_once",
        )

        first = _deliver(service, event)
        state_after_first = [dict(row) for row in fake_supabase.rows("credit_ledgers")]
        second = _deliver(service, event)

        assert first.status == "processed"
        assert second.status == "duplicate"
        assert second.success is True
        assert [
            {k: v for k, v in row.items() if k != "updated_at"} for row in fake_supabase.rows("credit_ledgers")
        ] == [{k: v for k, v in row.items() if k != "updated_at"} for row in state_after_first]
        resets = [t for t in fake_supabase.rows("credit_transactions") if t["reason"] == "reset"]
        assert len(resets) == 3

    def test_same_invoice_under_new_event_id_does_not_double_reset(
        self, service, fake_supabase, customer
    ):
        now = int(time.time())
        invoice = invoice_object(period=(now, now + 30 * DAY), plan_metadata={"plan": "pro"})

        _deliver(service, make_event("invoice.paid", invoice, event_id="evt_a"))
        fake_supabase.rows("credit_ledgers", user_id=1, credit_type="ai")[0]["credits_used"] = 12
        _deliver(service, make_event("invoice.paid", invoice, event_id="evt_b"))

        assert fake_supabase.rows("credit_ledgers", user_id=1, credit_type="ai")[0]["credits_used"] == 12

    def test_subscription_deleted(self, service, fake_supabase):
        fake_supabase.seed_customer(plan="pro", status="active", has_subscription=True)

        _deliver(service, make_event("customer.subscription.deleted", subscription_object(status="canceled")))

        sub = fake_supabase.rows("subscriptions", user_id=1)[0]
        assert sub["status"] == "canceled"
        assert sub["cancel_at_period_end"] is True
        user = fake_supabase.rows("users", id=1)[0]
        assert user["plan"] == "free_trial"
        assert user["has_subscription"] is False

    def test_bad_signature_writes_nothing(self, service, fake_supabase, customer, guard):
        event = make_event("invoice.paid", invoice_object(), event_id="evt_forged")
        payload = encode_event(event)

        with pytest.raises(SignatureInvalid):
            service.handle_webhook(payload, sign_payload(payload, "whsec_attacker"))

        assert fake_supabase.calls == []
        assert not guard.is_processed("evt_forged")


class TestOutcomes:
    def test_unknown_event_type_is_ignored_and_remembered(self, service, fake_supabase, guard):
        result = _deliver(service, make_event("charge.refunded", {"id": "ch_1"}, event_id="evt_ign"))

        assert result.success is True
        assert result.status == "ignored"
        assert guard.is_processed("evt_ign")
        assert fake_supabase.calls == []

    def test_unknown_customer_is_skipped(self, service, fake_supabase, guard):
        result = _deliver(
            service,
            make_event("invoice.paid", invoice_object(customer="cus_nobody"), event_id="evt_skip"),
        )

        assert result.success is True
        assert result.status == "skipped"
        assert fake_supabase.writes() == []
        assert guard.is_processed("evt_skip")

    def test_store_failure_releases_event_for_redelivery(self, service, fake_supabase, customer, guard):
        fake_supabase.fail("subscriptions", "update")
        event = make_event("customer.subscription.updated", subscription_object(), event_id="evt_retry")

        with pytest.raises(StoreWriteFailure):
            _deliver(service, event)
        assert not guard.is_processed("evt_retry")

        fake_supabase.clear_failures()
        result = _deliver(service, event)

        assert result.status == "processed"
        assert fake_supabase.rows("subscriptions", user_id=1)[0]["status"] == "active"

    def test_trial_ledger_failure_is_retried_on_redelivery(self, service, fake_supabase, guard):
        fake_supabase.seed_customer(user_id=1, customer_id="cus_test_123", status="trialing")
        now = int(time.time())
        event = make_event(
            "customer.subscription.created",
            subscription_object(
                status="trialing", period_start=now, period_end=now + 3 * DAY, trial_end=now + 3 * DAY
            ),
            event_id="evt_trial_retry",
        )
        fake_supabase.fail("credit_ledgers", "upsert")

        with pytest.raises(StoreWriteFailure):
            _deliver(service, event)
        assert not guard.is_processed("evt_trial_retry")
        assert fake_supabase.rows("credit_ledgers", user_id=1) == []

        fake_supabase.clear_failures()
        result = _deliver(service, event)

        assert result.status == "processed"
        assert len(fake_supabase.rows("credit_ledgers", user_id=1)) == 3

    def test_unexpected_dispatch_error_releases_event(self, guard):
        router = MagicMock(spec=WebhookEventRouter)
        router.dispatch.side_effect = RuntimeError("boom")
        service = StripeWebhookService(router=router, guard=guard)

        with pytest.raises(RuntimeError):
            _deliver(service, make_event("invoice.paid", invoice_object(), event_id="evt_boom"))
        assert not guard.is_processed("evt_boom")

    def test_handler_failure_result_is_reported(self, guard):
        router = MagicMock(spec=WebhookEventRouter)
        router.dispatch.return_value = DispatchResult(
            outcome=HandlerOutcome.SKIPPED, message="Error handling invoice.paid: KeyError", success=False
        )
        service = StripeWebhookService(router=router, guard=guard)

        result = _deliver(service, make_event("invoice.paid", invoice_object(), event_id="evt_bug"))

        assert result.success is False
        assert result.status == "skipped"
        assert guard.is_processed("evt_bug")

    def test_event_context_is_set_during_dispatch_and_cleared_after(self, guard):
        seen = []
        router = MagicMock(spec=WebhookEventRouter)

        def dispatch(event):
            seen.append(current_event_id.get())
            return DispatchResult(outcome=HandlerOutcome.PROCESSED, message="ok")

        router.dispatch.side_effect = dispatch
        service = StripeWebhookService(router=router, guard=guard)

        _deliver(service, make_event("invoice.paid", invoice_object(), event_id="evt_ctx"))

        assert seen == ["evt_ctx"]
        assert current_event_id.get() is None

    def test_default_guard_is_the_process_singleton(self):
        from crewcast_billing.services.idempotency import get_idempotency_guard

        assert StripeWebhookService(router=MagicMock()).guard is get_idempotency_guard()
