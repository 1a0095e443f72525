"""
Credit Lifecycle Manager

Owns the metered credit ledgers (topic search, email, AI):
- trial grant when a subscription starts trialing
- full replacement of the allotment when a paid period is confirmed
- one-time top-up packs bought through Stripe Checkout
"""

import logging
import re
from datetime import datetime

from crewcast_billing.config.plans import FALLBACK_PLAN, PAID_PLANS, PLAN_CREDITS, UNLIMITED
from crewcast_billing.db import credits as credits_db
from crewcast_billing.db import users as users_db
from crewcast_billing.schemas.billing import CreditType
from crewcast_billing.utils.exceptions import StoreFailure, StoreWriteFailure
from crewcast_billing.utils.timeutils import parse_timestamp, to_iso, utc_now

logger = logging.getLogger(__name__)

CREDIT_TYPES = tuple(credit_type.value for credit_type in CreditType)

_PLAN_SUFFIX = re.compile(r"[\s_\-]*(monthly|month|annual|annually|yearly|year)$")


def normalize_plan(plan: str | None) -> str:
    """
    Collapse a provider plan spelling into pro / business / enterprise.

    Interval suffixes are stripped ("pro_monthly", "Business-Annual").
    Anything unrecognized fails closed to the lowest paid allotment.
    """
    cleaned = (plan or "").strip().lower()
    cleaned = _PLAN_SUFFIX.sub("", cleaned).strip(" _-")

    if cleaned in PAID_PLANS:
        return cleaned

    logger.warning(f"Unrecognized plan '{plan}', falling back to '{FALLBACK_PLAN}' credits")
    return FALLBACK_PLAN


def _validate_window(period_start: datetime, period_end: datetime) -> None:
    if period_end <= period_start:
        raise ValueError(
            f"Credit period end {period_end.isoformat()} must be after start {period_start.isoformat()}"
        )


def _transaction_rows(
    user_id, allotment: dict[str, int], reason: str, reference_type: str
) -> list[dict]:
    return [
        {
            "user_id": user_id,
            "credit_type": credit_type,
            "amount": allotment[credit_type],
            "balance_after": allotment[credit_type],
            "reason": reason,
            "reference_type": reference_type,
        }
        for credit_type in CREDIT_TYPES
    ]


class CreditLifecycleManager:
    """Trial grants, period resets and top-ups, all keyed by (user_id, credit_type)."""

    def initialize_trial_credits(
        self, user_id: int | str, period_start: datetime, period_end: datetime
    ) -> bool:
        """
        Grant trial credits once per user, windowed to the trial.

        Returns:
            True if ledgers were created, False if the grant was skipped

        Raises:
            ValueError: if the window is empty or inverted
            StoreFailure: if the store could not be read or written
        """
        _validate_window(period_start, period_end)

        existing = credits_db.get_credit_ledgers(user_id)
        if existing:
            existing_end = parse_timestamp(existing[0].get("period_end"))
            if existing_end is not None and existing_end < utc_now():
                logger.warning(
                    f"SECURITY: User {user_id} has expired credits (ended {existing_end.isoformat()}); "
                    "not granting another trial"
                )
            else:
                logger.info(f"User {user_id} already has credit ledgers, skipping trial grant")
            return False

        if credits_db.has_trial_transaction(user_id):
            logger.warning(f"SECURITY: User {user_id} already used a trial, not granting another")
            return False

        allotment = PLAN_CREDITS["trial"]
        start_iso, end_iso = to_iso(period_start), to_iso(period_end)
        credits_db.upsert_credit_ledgers(
            [
                {
                    "user_id": user_id,
                    "credit_type": credit_type,
                    "credits_total": allotment[credit_type],
                    "credits_used": 0,
                    "credits_topup": 0,
                    "period_start": start_iso,
                    "period_end": end_iso,
                    "is_trial_period": True,
                }
                for credit_type in CREDIT_TYPES
            ]
        )
        credits_db.insert_credit_transactions(
            _transaction_rows(user_id, allotment, "trial_start", "subscription")
        )

        logger.info(
            f"Initialized trial credits for user {user_id}: "
            f"{allotment['topic_search']} searches, {allotment['email']} email, {allotment['ai']} AI "
            f"({start_iso} -> {end_iso})"
        )
        return True

    def reset_for_new_period(
        self,
        user_id: int | str,
        normalized_plan: str,
        period_start: datetime,
        period_end: datetime,
    ) -> bool:
        """
        Replace the user's ledgers with the plan allotment for a new paid period.

        Usage counters go back to zero, top-up balances are kept. A reset never
        extends the previous window; it starts a new one.

        Returns:
            True if the ledgers were replaced, False if the reset was skipped
            (stale period or the same paid period already applied)

        Raises:
            ValueError: if the window is empty or inverted
            StoreFailure: if the store could not be read or written
        """
        _validate_window(period_start, period_end)

        plan = normalized_plan
        if plan not in PLAN_CREDITS or plan == "trial":
            plan = normalize_plan(plan)
        if plan == "enterprise" and users_db.get_user_plan(user_id) != "enterprise":
            logger.error(
                f"SECURITY: User {user_id} requested enterprise credits but is not on the "
                f"enterprise plan; falling back to '{FALLBACK_PLAN}'"
            )
            plan = FALLBACK_PLAN

        existing = credits_db.get_credit_ledgers(user_id)
        if existing:
            current = existing[0]
            current_start = parse_timestamp(current.get("period_start"))
            current_end = parse_timestamp(current.get("period_end"))

            if current_start is not None and period_end <= current_start:
                logger.warning(
                    f"Skipping credit reset for user {user_id}: period ending "
                    f"{period_end.isoformat()} predates current window starting {current_start.isoformat()}"
                )
                return False

            if (
                not current.get("is_trial_period")
                and current_start == period_start
                and current_end == period_end
            ):
                logger.info(
                    f"Credits for user {user_id} already reset for period "
                    f"{period_start.isoformat()} -> {period_end.isoformat()}"
                )
                return False

        allotment = PLAN_CREDITS[plan]
        start_iso, end_iso = to_iso(period_start), to_iso(period_end)
        credits_db.upsert_credit_ledgers(
            [
                {
                    "user_id": user_id,
                    "credit_type": credit_type,
                    "credits_total": allotment[credit_type],
                    "credits_used": 0,
                    "period_start": start_iso,
                    "period_end": end_iso,
                    "is_trial_period": False,
                }
                for credit_type in CREDIT_TYPES
            ]
        )
        credits_db.insert_credit_transactions(
            _transaction_rows(user_id, allotment, "reset", "invoice")
        )

        logger.info(
            f"Reset credits for user {user_id} to {plan} plan: "
            f"{allotment['topic_search']} searches, {allotment['email']} email, {allotment['ai']} AI "
            f"({start_iso} -> {end_iso})"
        )
        return True

    def add_topup_credits(self, checkout_session_id: str) -> bool:
        """
        Fulfil a credit pack purchase recorded in credit_purchases.

        The purchase row, not the checkout metadata, decides user, kind and
        amount. Only the caller that flips the row from pending to completed
        adds the credits.

        Returns:
            True if credits were added, False if there was nothing to do

        Raises:
            StoreFailure: store trouble; a claimed purchase is reverted first
        """
        purchase = credits_db.get_credit_purchase(checkout_session_id)
        if purchase is None:
            logger.error(f"No credit_purchases row for checkout session {checkout_session_id}")
            return False

        if purchase.get("status") == "completed":
            logger.info(f"Credit purchase {checkout_session_id} already fulfilled")
            return False

        user_id = purchase.get("user_id")
        credit_type = purchase.get("credit_type")
        amount = purchase.get("credits_amount")

        if credit_type not in CREDIT_TYPES:
            logger.error(
                f"SECURITY: Credit purchase {checkout_session_id} has invalid credit type {credit_type!r}"
            )
            return False
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            logger.error(
                f"SECURITY: Credit purchase {checkout_session_id} has invalid amount {amount!r}"
            )
            return False

        if not credits_db.claim_credit_purchase(checkout_session_id):
            logger.info(f"Credit purchase {checkout_session_id} was claimed concurrently")
            return False

        try:
            ledger = credits_db.get_credit_ledger(user_id, credit_type)
            topup_after = int((ledger or {}).get("credits_topup") or 0) + amount
            row = {
                "user_id": user_id,
                "credit_type": credit_type,
                "credits_topup": topup_after,
            }
            if ledger is None:
                row.update({"credits_total": 0, "credits_used": 0, "is_trial_period": False})
            credits_db.upsert_credit_ledgers([row])
        except StoreFailure as e:
            logger.error(
                f"Top-up for {checkout_session_id} failed after claim, reverting purchase: {e}"
            )
            credits_db.revert_credit_purchase(checkout_session_id)
            raise StoreWriteFailure(
                f"Failed to add top-up credits for {checkout_session_id}",
                checkout_session_id=checkout_session_id,
            ) from e

        balance_after = topup_after
        if ledger is not None:
            total = ledger.get("credits_total") or 0
            if total == UNLIMITED:
                balance_after = UNLIMITED
            else:
                balance_after = max(0, total - (ledger.get("credits_used") or 0)) + topup_after

        try:
            credits_db.insert_credit_transactions(
                [
                    {
                        "user_id": user_id,
                        "credit_type": credit_type,
                        "amount": amount,
                        "balance_after": balance_after,
                        "reason": "topup_purchase",
                        "reference_type": "checkout_session",
                    }
                ]
            )
        except StoreWriteFailure as e:
            # Credits are already granted; a retry would be refused by the claim
            logger.error(f"Top-up audit row for {checkout_session_id} not written: {e}")

        logger.info(
            f"Added {amount} {credit_type} top-up credits for user {user_id} "
            f"(session {checkout_session_id})"
        )
        return True
