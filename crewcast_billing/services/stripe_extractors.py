"""
Defensive field extraction for Stripe payloads.

Stripe objects reach us either as SDK StripeObject instances or plain dicts,
reference fields come back as a bare id or an expanded object depending on
the expansion in effect, and several fields have moved between API versions.
Each field is read through an ordered tuple of extractors; the first one that
yields a value wins. When Stripe moves a field again, append an extractor
instead of replacing the old one.

Nothing here touches the network or the store.
"""

import logging
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from typing import Any

from crewcast_billing.config.plans import ANNUAL, MONTHLY, get_price_plan_table
from crewcast_billing.schemas.billing import (
    CheckoutSnapshot,
    InvoiceSnapshot,
    PaymentMethodSnapshot,
    SubscriptionSnapshot,
)

logger = logging.getLogger(__name__)

Extractor = Callable[[Any], Any]

# Provider status -> local status. Unknown statuses pass through unchanged.
SUBSCRIPTION_STATUS_MAP = {
    "trialing": "trialing",
    "active": "active",
    "canceled": "canceled",
    "past_due": "past_due",
    "incomplete": "incomplete",
    "incomplete_expired": "incomplete",
}


# ==================== Generic accessors ====================


def get_field(obj: Any, key: str, default: Any = None) -> Any:
    """
    Read a key from a StripeObject or dict.

    Dict lookup comes first: attribute access on a dict would return bound
    methods for keys like "items".
    """
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    try:
        return obj[key]
    except (KeyError, TypeError, IndexError, AttributeError):
        return default


def get_path(obj: Any, *path: str | int) -> Any:
    """Walk nested keys / list indexes, returning None at the first gap."""
    current = obj
    for segment in path:
        if current is None:
            return None
        if isinstance(segment, int):
            if not isinstance(current, list | tuple) or len(current) <= segment:
                return None
            current = current[segment]
        else:
            current = get_field(current, segment)
    return current


def metadata_to_dict(metadata: Any) -> dict[str, Any]:
    if not metadata:
        return {}
    if isinstance(metadata, dict):
        return dict(metadata)
    to_dict = getattr(metadata, "to_dict", None)
    if callable(to_dict):
        try:
            return dict(to_dict())
        except (TypeError, ValueError):
            return {}
    return {}


def extract_reference_id(value: Any) -> str | None:
    """
    Normalize a reference field: a bare "xxx_123" id or an expanded object with an id.
    """
    if isinstance(value, str):
        return value or None
    if value is None or isinstance(value, bool | int | float):
        return None
    ref_id = get_field(value, "id")
    if isinstance(ref_id, str) and ref_id:
        return ref_id
    return None


def first_present(obj: Any, extractors: Iterable[Extractor]) -> Any:
    """Run extractors in order and return the first non-empty result."""
    for extractor in extractors:
        value = extractor(obj)
        if value is not None and value != "":
            return value
    return None


def epoch_to_datetime(value: Any) -> datetime | None:
    """Stripe timestamps are integer epoch seconds; anything else is treated as absent."""
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return datetime.fromtimestamp(value, tz=UTC)


def map_subscription_status(status: str | None) -> str | None:
    if status is None:
        return None
    mapped = SUBSCRIPTION_STATUS_MAP.get(status)
    if mapped is None:
        logger.warning(f"Unknown Stripe subscription status '{status}', storing unchanged")
        return status
    return mapped


def _validated_period(
    start: datetime | None, end: datetime | None, source: str
) -> tuple[datetime | None, datetime | None]:
    if start is not None and end is not None and end <= start:
        logger.warning(
            f"Dropping {source} period end {end.isoformat()} not after start {start.isoformat()}"
        )
        return start, None
    return start, end


def interval_from_recurring(price: Any) -> str | None:
    interval = get_path(price, "recurring", "interval")
    if not interval:
        return None
    return ANNUAL if interval == "year" else MONTHLY


def lookup_price(price_id: str | None) -> tuple[str | None, str | None]:
    if not price_id:
        return None, None
    return get_price_plan_table().get(price_id, (None, None))


# ==================== Subscriptions ====================


def _first_subscription_item(subscription: Any) -> Any:
    return get_path(subscription, "items", "data", 0)


SUBSCRIPTION_PERIOD_START_EXTRACTORS: tuple[Extractor, ...] = (
    lambda sub: epoch_to_datetime(get_field(sub, "current_period_start")),
    # API versions from 2025-03 moved the period onto subscription items
    lambda sub: epoch_to_datetime(get_field(_first_subscription_item(sub), "current_period_start")),
)

SUBSCRIPTION_PERIOD_END_EXTRACTORS: tuple[Extractor, ...] = (
    lambda sub: epoch_to_datetime(get_field(sub, "current_period_end")),
    lambda sub: epoch_to_datetime(get_field(_first_subscription_item(sub), "current_period_end")),
)


def extract_subscription_period(subscription: Any) -> tuple[datetime | None, datetime | None]:
    start = first_present(subscription, SUBSCRIPTION_PERIOD_START_EXTRACTORS)
    end = first_present(subscription, SUBSCRIPTION_PERIOD_END_EXTRACTORS)
    return _validated_period(start, end, "subscription")


def resolve_plan_and_interval(subscription: Any) -> tuple[str | None, str | None]:
    """
    Resolve (plan, billing_interval) for a subscription.

    Order: metadata -> known price id table -> price.recurring.interval.
    Either element may be None; callers must keep the stored value then.
    """
    metadata = metadata_to_dict(get_field(subscription, "metadata"))
    plan = metadata.get("plan") or None
    interval = metadata.get("billing_interval") or None

    if plan and interval:
        return plan, interval

    price = get_field(_first_subscription_item(subscription), "price")
    price_plan, price_interval = lookup_price(extract_reference_id(price))
    plan = plan or price_plan
    interval = interval or price_interval

    if not interval:
        interval = interval_from_recurring(price)

    return plan, interval


def subscription_snapshot(subscription: Any) -> SubscriptionSnapshot:
    start, end = extract_subscription_period(subscription)
    plan, interval = resolve_plan_and_interval(subscription)
    price = get_field(_first_subscription_item(subscription), "price")

    return SubscriptionSnapshot(
        subscription_id=extract_reference_id(subscription),
        customer_id=extract_reference_id(get_field(subscription, "customer")),
        status=get_field(subscription, "status"),
        plan=plan,
        billing_interval=interval,
        price_id=extract_reference_id(price),
        current_period_start=start,
        current_period_end=end,
        trial_end=epoch_to_datetime(get_field(subscription, "trial_end")),
        cancel_at_period_end=bool(get_field(subscription, "cancel_at_period_end", False)),
    )


# ==================== Invoices ====================


def _first_invoice_line(invoice: Any) -> Any:
    return get_path(invoice, "lines", "data", 0)


INVOICE_SUBSCRIPTION_EXTRACTORS: tuple[Extractor, ...] = (
    # Legacy top-level field (bare id or expanded subscription)
    lambda inv: extract_reference_id(get_field(inv, "subscription")),
    # 2025-03+ API versions: invoice.parent.subscription_details.subscription
    lambda inv: extract_reference_id(
        get_path(inv, "parent", "subscription_details", "subscription")
    ),
    # Line-item level fallback
    lambda inv: extract_reference_id(
        get_path(_first_invoice_line(inv), "parent", "subscription_item_details", "subscription")
    ),
)

INVOICE_PRICE_EXTRACTORS: tuple[Extractor, ...] = (
    lambda inv: extract_reference_id(get_field(_first_invoice_line(inv), "price")),
    lambda inv: extract_reference_id(
        get_path(_first_invoice_line(inv), "pricing", "price_details", "price")
    ),
)


def extract_invoice_subscription_id(invoice: Any) -> str | None:
    return first_present(invoice, INVOICE_SUBSCRIPTION_EXTRACTORS)


def extract_invoice_period(invoice: Any) -> tuple[datetime | None, datetime | None]:
    period = get_field(_first_invoice_line(invoice), "period")
    start = epoch_to_datetime(get_field(period, "start"))
    end = epoch_to_datetime(get_field(period, "end"))
    return _validated_period(start, end, "invoice line")


def resolve_invoice_plan(invoice: Any) -> tuple[str | None, str | None]:
    """Plan from the parent subscription metadata, then from the line's price id."""
    metadata = metadata_to_dict(get_path(invoice, "parent", "subscription_details", "metadata"))
    plan = metadata.get("plan") or None
    interval = metadata.get("billing_interval") or None

    price_plan, price_interval = lookup_price(first_present(invoice, INVOICE_PRICE_EXTRACTORS))
    return plan or price_plan, interval or price_interval


def invoice_snapshot(invoice: Any) -> InvoiceSnapshot:
    start, end = extract_invoice_period(invoice)
    plan, interval = resolve_invoice_plan(invoice)

    amount_paid = get_field(invoice, "amount_paid", 0)
    if isinstance(amount_paid, bool) or not isinstance(amount_paid, int):
        amount_paid = 0

    return InvoiceSnapshot(
        invoice_id=extract_reference_id(invoice),
        customer_id=extract_reference_id(get_field(invoice, "customer")),
        subscription_id=extract_invoice_subscription_id(invoice),
        amount_paid=amount_paid,
        currency=get_field(invoice, "currency"),
        plan=plan,
        billing_interval=interval,
        period_start=start,
        period_end=end,
    )


# ==================== Payment methods ====================


def payment_method_snapshot(payment_method: Any) -> PaymentMethodSnapshot:
    card = get_field(payment_method, "card")
    last4 = get_field(card, "last4")

    return PaymentMethodSnapshot(
        payment_method_id=extract_reference_id(payment_method),
        customer_id=extract_reference_id(get_field(payment_method, "customer")),
        type=get_field(payment_method, "type"),
        card_brand=get_field(card, "brand") if last4 else None,
        card_last4=last4 or None,
        card_exp_month=get_field(card, "exp_month") if last4 else None,
        card_exp_year=get_field(card, "exp_year") if last4 else None,
    )


# ==================== Checkout sessions ====================


def checkout_snapshot(session: Any) -> CheckoutSnapshot:
    metadata = metadata_to_dict(get_field(session, "metadata"))
    user_id = metadata.get("user_id")

    return CheckoutSnapshot(
        session_id=extract_reference_id(session),
        customer_id=extract_reference_id(get_field(session, "customer")),
        mode=get_field(session, "mode"),
        payment_status=get_field(session, "payment_status"),
        credit_type=metadata.get("credit_type") or None,
        metadata_user_id=str(user_id) if user_id else None,
    )
