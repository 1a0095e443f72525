import os

# Set test environment before any crewcast_billing import reads Config
os.environ["APP_ENV"] = "testing"
os.environ["TESTING"] = "true"
os.environ["SUPABASE_URL"] = "https://test.supabase.co"
os.environ["SUPABASE_KEY"] = "test-key"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_123"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["STRIPE_PRICE_PRO_MONTHLY"] = "price_pro_monthly"
os.environ["STRIPE_PRICE_PRO_ANNUAL"] = "price_pro_annual"
os.environ["STRIPE_PRICE_BUSINESS_MONTHLY"] = "price_business_monthly"
os.environ["STRIPE_PRICE_BUSINESS_ANNUAL"] = "price_business_annual"
os.environ["WEBHOOK_IDEMPOTENCY_BACKEND"] = "memory"
os.environ["SENTRY_ENABLED"] = "false"
os.environ["LOKI_ENABLED"] = "false"

import pytest

from crewcast_billing.config import supabase_config
from crewcast_billing.services.idempotency import reset_idempotency_guard
from tests.helpers.fake_supabase import FakeSupabase


@pytest.fixture
def fake_supabase(monkeypatch):
    sb = FakeSupabase()
    monkeypatch.setattr(supabase_config, "get_supabase_client", lambda: sb)
    yield sb
    sb.clear_all()


@pytest.fixture(autouse=True)
def _fresh_idempotency_guard():
    reset_idempotency_guard()
    yield
    reset_idempotency_guard()
