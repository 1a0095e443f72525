"""
Plan & Credit Configuration
Centralized configuration for plan tags, billing intervals, and credit allotments.
"""

from crewcast_billing.config.config import Config

# Plan tags stored on users.plan / subscriptions.plan
FREE_TRIAL_PLAN = "free_trial"
PAID_PLANS = ("pro", "business", "enterprise")
# Unrecognized plans fail closed to the lowest paid allotment
FALLBACK_PLAN = "pro"

# Billing intervals stored on subscriptions.billing_interval
MONTHLY = "monthly"
ANNUAL = "annual"
DEFAULT_PERIOD_DAYS = {MONTHLY: 30, ANNUAL: 365}

UNLIMITED = -1

# Credit allotments per plan and credit type (-1 = unlimited)
PLAN_CREDITS: dict[str, dict[str, int]] = {
    # Trial allocation (3 days, same for every plan)
    "trial": {"topic_search": 1, "email": 30, "ai": 30},
    "pro": {"topic_search": 5, "email": 150, "ai": 200},
    "business": {"topic_search": 10, "email": 300, "ai": 400},
    "enterprise": {"topic_search": UNLIMITED, "email": UNLIMITED, "ai": UNLIMITED},
}


def get_price_plan_table() -> dict[str, tuple[str, str]]:
    """
    Map configured Stripe price ids to (plan, billing_interval).

    Unset price ids are left out so an empty env var never matches.
    """
    table: dict[str, tuple[str, str]] = {}
    for key, price_id in Config.get_price_ids().items():
        if not price_id:
            continue
        plan, interval = key.split("_", 1)
        table[price_id] = (plan, interval)
    return table
