#!/usr/bin/env python3
"""
User Database Module
Resolves provider customers to local users and writes user entitlement state.
"""

import logging
from datetime import UTC, datetime
from typing import Any

from crewcast_billing.config.supabase_config import execute_with_retry
from crewcast_billing.schemas.billing import StoreUserContext
from crewcast_billing.utils.exceptions import StoreReadFailure, StoreWriteFailure
from crewcast_billing.utils.timeutils import parse_timestamp

logger = logging.getLogger(__name__)


def get_user_by_customer_id(customer_id: str) -> StoreUserContext | None:
    """
    Resolve a Stripe customer id to the local user and its subscription row.

    The subscription row (keyed by stripe_customer_id) is created at signup,
    so a missing row means the customer is unknown to this tenant.

    Args:
        customer_id: Stripe customer id (cus_xxx)

    Returns:
        StoreUserContext, or None when no subscription/user matches

    Raises:
        StoreReadFailure: if the store could not be queried
    """
    try:

        def _load_subscription(client):
            return (
                client.table("subscriptions")
                .select(
                    "user_id, status, stripe_subscription_id, current_period_start, "
                    "current_period_end, billing_interval"
                )
                .eq("stripe_customer_id", customer_id)
                .limit(1)
                .execute()
            )

        sub_result = execute_with_retry(
            _load_subscription, operation_name="load subscription by customer"
        )
        if not sub_result.data:
            return None

        subscription = sub_result.data[0]
        user_id = subscription["user_id"]

        def _load_user(client):
            return client.table("users").select("id, plan").eq("id", user_id).limit(1).execute()

        user_result = execute_with_retry(_load_user, operation_name="load user")
    except Exception as e:
        logger.error(f"Error resolving customer {customer_id}: {e}", exc_info=True)
        raise StoreReadFailure(
            f"Failed to resolve customer {customer_id}", customer_id=customer_id
        ) from e

    if not user_result.data:
        logger.warning(f"Subscription row for customer {customer_id} points at missing user {user_id}")
        return None

    user = user_result.data[0]
    return StoreUserContext(
        user_id=user["id"],
        plan=user.get("plan"),
        subscription_status=subscription.get("status"),
        stripe_subscription_id=subscription.get("stripe_subscription_id"),
        current_period_start=parse_timestamp(subscription.get("current_period_start")),
        current_period_end=parse_timestamp(subscription.get("current_period_end")),
        billing_interval=subscription.get("billing_interval"),
    )


def get_user_plan(user_id: int | str) -> str | None:
    try:
        result = execute_with_retry(
            lambda client: client.table("users").select("plan").eq("id", user_id).limit(1).execute(),
            operation_name="load user plan",
        )
    except Exception as e:
        logger.error(f"Error loading plan for user {user_id}: {e}", exc_info=True)
        raise StoreReadFailure(f"Failed to load plan for user {user_id}", user_id=user_id) from e

    if not result.data:
        return None
    return result.data[0].get("plan")


def update_user(user_id: int | str, fields: dict[str, Any]) -> None:
    """
    Overwrite the given user columns, keyed by user id.

    Raises:
        StoreWriteFailure: if the update could not be persisted
    """
    payload = {**fields, "updated_at": datetime.now(UTC).isoformat()}
    try:
        execute_with_retry(
            lambda client: client.table("users").update(payload).eq("id", user_id).execute(),
            operation_name="update user",
        )
    except Exception as e:
        logger.error(f"Error updating user {user_id}: {e}", exc_info=True)
        raise StoreWriteFailure(f"Failed to update user {user_id}", user_id=user_id) from e


def update_user_entitlement(
    user_id: int | str, *, has_subscription: bool, plan: str | None = None
) -> None:
    """Set has_subscription and, when known, the plan tag. A None plan leaves the column alone."""
    fields: dict[str, Any] = {"has_subscription": has_subscription}
    if plan:
        fields["plan"] = plan
    update_user(user_id, fields)
