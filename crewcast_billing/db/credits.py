#!/usr/bin/env python3
"""
Credit Database Module
Handles credit ledgers, the credit transaction audit log, and credit pack purchases.

credit_ledgers has one row per (user_id, credit_type); every write is an
upsert on that key so redelivered events overwrite instead of duplicating.
"""

import logging
from datetime import UTC, datetime
from typing import Any

from crewcast_billing.config.supabase_config import execute_with_retry
from crewcast_billing.utils.exceptions import StoreReadFailure, StoreWriteFailure

logger = logging.getLogger(__name__)

LEDGER_TABLE = "credit_ledgers"
TRANSACTION_TABLE = "credit_transactions"
PURCHASE_TABLE = "credit_purchases"
LEDGER_CONFLICT_KEY = "user_id,credit_type"


# ==================== Ledgers ====================


def get_credit_ledgers(user_id: int | str) -> list[dict[str, Any]]:
    """
    Fetch every ledger row for a user.

    Raises:
        StoreReadFailure: if the store could not be queried
    """
    try:
        result = execute_with_retry(
            lambda client: client.table(LEDGER_TABLE).select("*").eq("user_id", user_id).execute(),
            operation_name="load credit ledgers",
        )
    except Exception as e:
        logger.error(f"Error loading credit ledgers for user {user_id}: {e}", exc_info=True)
        raise StoreReadFailure(f"Failed to load credit ledgers for user {user_id}", user_id=user_id) from e

    return result.data or []


def get_credit_ledger(user_id: int | str, credit_type: str) -> dict[str, Any] | None:
    try:

        def _load(client):
            return (
                client.table(LEDGER_TABLE)
                .select("*")
                .eq("user_id", user_id)
                .eq("credit_type", credit_type)
                .limit(1)
                .execute()
            )

        result = execute_with_retry(_load, operation_name="load credit ledger")
    except Exception as e:
        logger.error(f"Error loading {credit_type} ledger for user {user_id}: {e}", exc_info=True)
        raise StoreReadFailure(
            f"Failed to load {credit_type} ledger for user {user_id}",
            user_id=user_id,
            credit_type=credit_type,
        ) from e

    return result.data[0] if result.data else None


def upsert_credit_ledgers(rows: list[dict[str, Any]]) -> None:
    """
    Upsert ledger rows keyed by (user_id, credit_type).

    Columns left out of a row keep their stored value (credits_topup in particular).

    Raises:
        StoreWriteFailure: if the upsert could not be persisted
    """
    if not rows:
        return

    now = datetime.now(UTC).isoformat()
    payload = [{**row, "updated_at": now} for row in rows]

    try:
        execute_with_retry(
            lambda client: client.table(LEDGER_TABLE)
            .upsert(payload, on_conflict=LEDGER_CONFLICT_KEY)
            .execute(),
            operation_name="upsert credit ledgers",
        )
    except Exception as e:
        user_ids = sorted({str(row.get("user_id")) for row in rows})
        logger.error(f"Error upserting credit ledgers for user(s) {user_ids}: {e}", exc_info=True)
        raise StoreWriteFailure("Failed to upsert credit ledgers", user_ids=user_ids) from e


# ==================== Transactions ====================


def has_trial_transaction(user_id: int | str) -> bool:
    """True if the user was ever granted trial credits."""
    try:

        def _check(client):
            return (
                client.table(TRANSACTION_TABLE)
                .select("id")
                .eq("user_id", user_id)
                .in_("reason", ["trial_start", "trial_restart"])
                .limit(1)
                .execute()
            )

        result = execute_with_retry(_check, operation_name="check trial transactions")
    except Exception as e:
        logger.error(f"Error checking trial history for user {user_id}: {e}", exc_info=True)
        raise StoreReadFailure(f"Failed to check trial history for user {user_id}", user_id=user_id) from e

    return bool(result.data)


def insert_credit_transactions(rows: list[dict[str, Any]]) -> None:
    """
    Append audit rows to credit_transactions.

    Raises:
        StoreWriteFailure: if the insert could not be persisted
    """
    if not rows:
        return

    try:
        execute_with_retry(
            lambda client: client.table(TRANSACTION_TABLE).insert(rows).execute(),
            operation_name="insert credit transactions",
        )
    except Exception as e:
        logger.error(f"Error logging credit transactions: {e}", exc_info=True)
        raise StoreWriteFailure("Failed to log credit transactions") from e


# ==================== Credit pack purchases ====================


def get_credit_purchase(checkout_session_id: str) -> dict[str, Any] | None:
    try:

        def _load(client):
            return (
                client.table(PURCHASE_TABLE)
                .select("*")
                .eq("stripe_checkout_session_id", checkout_session_id)
                .limit(1)
                .execute()
            )

        result = execute_with_retry(_load, operation_name="load credit purchase")
    except Exception as e:
        logger.error(f"Error loading credit purchase {checkout_session_id}: {e}", exc_info=True)
        raise StoreReadFailure(
            f"Failed to load credit purchase {checkout_session_id}",
            checkout_session_id=checkout_session_id,
        ) from e

    return result.data[0] if result.data else None


def _set_purchase_status(checkout_session_id: str, from_status: str, to_status: str) -> bool:
    payload: dict[str, Any] = {"status": to_status}
    if to_status == "completed":
        payload["completed_at"] = datetime.now(UTC).isoformat()
    else:
        payload["completed_at"] = None

    try:

        def _update(client):
            return (
                client.table(PURCHASE_TABLE)
                .update(payload)
                .eq("stripe_checkout_session_id", checkout_session_id)
                .eq("status", from_status)
                .execute()
            )

        result = execute_with_retry(_update, operation_name=f"mark credit purchase {to_status}")
    except Exception as e:
        logger.error(
            f"Error moving credit purchase {checkout_session_id} {from_status} -> {to_status}: {e}",
            exc_info=True,
        )
        raise StoreWriteFailure(
            f"Failed to update credit purchase {checkout_session_id}",
            checkout_session_id=checkout_session_id,
        ) from e

    return bool(result.data)


def claim_credit_purchase(checkout_session_id: str) -> bool:
    """
    Flip a purchase from pending to completed in one keyed update.

    Returns:
        True only for the caller whose update matched the pending row
    """
    return _set_purchase_status(checkout_session_id, "pending", "completed")


def revert_credit_purchase(checkout_session_id: str) -> bool:
    """Undo a claim so the provider's redelivery can fulfil the purchase."""
    return _set_purchase_status(checkout_session_id, "completed", "pending")
