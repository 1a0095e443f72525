"""
Sentry reporting for billing failures.

Nothing is sent until sentry_sdk.init() has run, so these helpers can be
called unconditionally, including from tests.
"""

import logging
from typing import Any

import sentry_sdk

logger = logging.getLogger(__name__)


def capture_error(
    exception: Exception,
    context_type: str | None = None,
    context_data: dict[str, Any] | None = None,
    tags: dict[str, str] | None = None,
    level: str = "error",
) -> str | None:
    """
    Report an exception in an isolated scope carrying the given context and tags.

    Returns the Sentry event id, or None when nothing was sent.
    """
    try:
        with sentry_sdk.new_scope() as scope:
            scope.level = level
            if context_type and context_data:
                scope.set_context(context_type, context_data)
            for name, value in (tags or {}).items():
                scope.set_tag(name, str(value))
            return sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.warning(f"Could not report {type(exception).__name__} to Sentry: {e}")
        return None


def capture_payment_error(
    exception: Exception,
    operation: str,
    provider: str = "stripe",
    user_id: str | int | None = None,
    event_id: str | None = None,
    details: dict[str, Any] | None = None,
    level: str = "error",
) -> str | None:
    """
    Report a failure in a billing operation such as a webhook handler or credit reset.

    ``details`` is merged into the "payment" context, typically Stripe
    customer, subscription or invoice ids.
    """
    payment = {"operation": operation, "provider": provider}
    if user_id is not None:
        payment["user_id"] = str(user_id)
    if event_id:
        payment["event_id"] = event_id
    payment.update(details or {})

    return capture_error(
        exception,
        context_type="payment",
        context_data=payment,
        tags={"operation": operation, "provider": provider},
        level=level,
    )
