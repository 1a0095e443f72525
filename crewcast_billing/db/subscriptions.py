#!/usr/bin/env python3
"""
Subscription Database Module
Keyed updates of the per-user subscription row.
"""

import logging
from datetime import UTC, datetime
from typing import Any

from crewcast_billing.config.supabase_config import execute_with_retry
from crewcast_billing.utils.exceptions import StoreWriteFailure

logger = logging.getLogger(__name__)


def update_subscription(user_id: int | str, fields: dict[str, Any]) -> None:
    """
    Overwrite the given subscription columns for one user.

    The row is expected to exist (created at signup); this never inserts.
    Each call is a full overwrite of the fields it names, so replays converge.

    Args:
        user_id: Local user id owning the subscription row
        fields: Column -> value; datetimes must already be ISO strings

    Raises:
        StoreWriteFailure: if the update could not be persisted
    """
    payload = {**fields, "updated_at": datetime.now(UTC).isoformat()}

    try:

        def _update(client):
            return client.table("subscriptions").update(payload).eq("user_id", user_id).execute()

        result = execute_with_retry(_update, operation_name="update subscription")
    except Exception as e:
        logger.error(f"Error updating subscription for user {user_id}: {e}", exc_info=True)
        raise StoreWriteFailure(
            f"Failed to update subscription for user {user_id}", user_id=user_id
        ) from e

    if not result.data:
        logger.warning(f"Subscription update for user {user_id} matched no rows")
