"""Pydantic schemas for billing webhook ingestion and credit state"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# ===========================
# Enums
# ===========================


class CreditType(str, Enum):  # noqa: UP042
    TOPIC_SEARCH = "topic_search"
    EMAIL = "email"
    AI = "ai"


class SubscriptionStatus(str, Enum):  # noqa: UP042
    """Local subscription statuses written to subscriptions.status"""

    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"


class HandlerOutcome(str, Enum):  # noqa: UP042
    PROCESSED = "processed"
    SKIPPED = "skipped"
    IGNORED = "ignored"


# Response status for a delivery the idempotency guard short-circuited
DUPLICATE_STATUS = "duplicate"

ENTITLED_STATUSES = frozenset({SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value})


# ===========================
# Verified event envelope
# ===========================


class WebhookEvent(BaseModel):
    """A verified provider event. data_object stays provider-shaped."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str
    type: str
    created: int | None = None
    livemode: bool = False
    api_version: str | None = None
    data_object: Any = None


# ===========================
# Per-kind snapshots (Reconciler input)
# ===========================


class SubscriptionSnapshot(BaseModel):
    subscription_id: str | None = None
    customer_id: str | None = None
    status: str | None = None  # provider status, unmapped
    plan: str | None = None
    billing_interval: str | None = None
    price_id: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    trial_end: datetime | None = None
    cancel_at_period_end: bool = False


class InvoiceSnapshot(BaseModel):
    invoice_id: str | None = None
    customer_id: str | None = None
    subscription_id: str | None = None
    amount_paid: int = 0
    currency: str | None = None
    plan: str | None = None
    billing_interval: str | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None


class PaymentMethodSnapshot(BaseModel):
    payment_method_id: str | None = None
    customer_id: str | None = None
    type: str | None = None
    card_brand: str | None = None
    card_last4: str | None = None
    card_exp_month: int | None = None
    card_exp_year: int | None = None

    @property
    def is_card(self) -> bool:
        return self.card_last4 is not None

    @property
    def billing_expiry(self) -> str | None:
        """Card expiry as MM/YY"""
        if self.card_exp_month is None or self.card_exp_year is None:
            return None
        return f"{self.card_exp_month:02d}/{str(self.card_exp_year)[-2:]}"


class CheckoutSnapshot(BaseModel):
    session_id: str | None = None
    customer_id: str | None = None
    mode: str | None = None
    payment_status: str | None = None
    credit_type: str | None = None
    metadata_user_id: str | None = None


# ===========================
# Store read model
# ===========================


class StoreUserContext(BaseModel):
    """Local user + subscription state resolved from a provider customer id"""

    user_id: int | str
    plan: str | None = None
    subscription_status: str | None = None
    stripe_subscription_id: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    billing_interval: str | None = None


# ===========================
# Processing results
# ===========================


class DispatchResult(BaseModel):
    """What a single handler did with an event"""

    outcome: HandlerOutcome
    message: str
    success: bool = True


class WebhookProcessingResult(BaseModel):
    """Response body for POST /api/stripe/webhook"""

    success: bool
    event_type: str | None = None
    event_id: str | None = None
    status: str
    message: str
    processed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class WebhookErrorResponse(BaseModel):
    success: bool = False
    error: str
    message: str
