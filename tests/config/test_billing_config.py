"""
Tests for configuration: env resolution, plan tables, Supabase and Redis clients
"""

from unittest.mock import MagicMock, patch

import pytest
from httpcore import RemoteProtocolError

from crewcast_billing.config import Config
from crewcast_billing.config import redis_config as redis_config_mod
from crewcast_billing.config import supabase_config as supabase_config_mod
from crewcast_billing.config.plans import PLAN_CREDITS, UNLIMITED, get_price_plan_table


@pytest.fixture
def fresh_supabase_client():
    supabase_config_mod.reset_supabase_client()
    yield
    supabase_config_mod.reset_supabase_client()


class TestConfig:
    def test_webhook_secret_read_from_environment_at_call_time(self, monkeypatch):
        monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "  whsec_rotated  ")
        assert Config.get_webhook_secret() == "whsec_rotated"

    def test_webhook_secret_falls_back_to_import_time_value(self, monkeypatch):
        monkeypatch.delenv("STRIPE_WEBHOOK_SECRET", raising=False)
        monkeypatch.setattr(Config, "STRIPE_WEBHOOK_SECRET", "whsec_boot")
        assert Config.get_webhook_secret() == "whsec_boot"

    def test_critical_env_vars_present(self):
        assert Config.validate_critical_env_vars() == (True, [])

    def test_missing_critical_env_vars_are_named(self, monkeypatch):
        monkeypatch.delenv("STRIPE_WEBHOOK_SECRET", raising=False)
        monkeypatch.setattr(Config, "STRIPE_WEBHOOK_SECRET", None)
        monkeypatch.setattr(Config, "SUPABASE_KEY", None)

        is_valid, missing = Config.validate_critical_env_vars()

        assert is_valid is False
        assert set(missing) == {"SUPABASE_KEY", "STRIPE_WEBHOOK_SECRET"}

    def test_validate_requires_supabase(self, monkeypatch):
        monkeypatch.setattr(Config, "SUPABASE_URL", None)
        with pytest.raises(RuntimeError, match="SUPABASE_URL"):
            Config.validate()


class TestPlans:
    def test_price_table_from_environment(self):
        table = get_price_plan_table()
        assert table["price_pro_monthly"] == ("pro", "monthly")
        assert table["price_business_annual"] == ("business", "annual")

    def test_unset_price_ids_are_left_out(self, monkeypatch):
        monkeypatch.setenv("STRIPE_PRICE_BUSINESS_ANNUAL", "")
        table = get_price_plan_table()
        assert ("business", "annual") not in table.values()
        assert "" not in table

    def test_allotments_cover_every_credit_kind(self):
        for plan, allotment in PLAN_CREDITS.items():
            assert set(allotment) == {"topic_search", "email", "ai"}, plan
        assert set(PLAN_CREDITS["enterprise"].values()) == {UNLIMITED}


class TestSupabaseClient:
    def test_url_without_protocol_is_rejected(self, fresh_supabase_client, monkeypatch):
        monkeypatch.setattr(Config, "SUPABASE_URL", "myproject.supabase.co")

        with pytest.raises(RuntimeError) as exc_info:
            supabase_config_mod.get_supabase_client()

        assert "https://" in str(exc_info.value)

    def test_initialization_error_is_cached(self, fresh_supabase_client, monkeypatch):
        monkeypatch.setattr(Config, "SUPABASE_URL", "myproject.supabase.co")
        with pytest.raises(RuntimeError):
            supabase_config_mod.get_supabase_client()

        with patch.object(supabase_config_mod, "create_client") as mock_create:
            monkeypatch.setattr(Config, "SUPABASE_URL", "https://test.supabase.co")
            with pytest.raises(RuntimeError, match="retry in"):
                supabase_config_mod.get_supabase_client()
        mock_create.assert_not_called()

    def test_client_is_created_once(self, fresh_supabase_client):
        with patch.object(supabase_config_mod, "create_client", return_value=MagicMock()) as mock_create:
            first = supabase_config_mod.get_supabase_client()
            second = supabase_config_mod.get_supabase_client()

        assert first is second
        mock_create.assert_called_once()
        assert mock_create.call_args.kwargs["supabase_url"] == "https://test.supabase.co"

    def test_reset_reports_whether_a_client_was_dropped(self, fresh_supabase_client):
        assert supabase_config_mod.reset_supabase_client() is False
        with patch.object(supabase_config_mod, "create_client", return_value=MagicMock()):
            supabase_config_mod.get_supabase_client()
        assert supabase_config_mod.reset_supabase_client() is True


class TestExecuteWithRetry:
    @pytest.mark.parametrize(
        "error,expected",
        [
            (RemoteProtocolError("ConnectionTerminated"), True),
            (Exception("Invalid input StreamInputs.SEND_HEADERS in state 5"), True),
            (Exception("connection closed (http2)"), True),
            (ValueError("duplicate key value"), False),
            (RuntimeError("connection closed"), False),
        ],
    )
    def test_http2_error_detection(self, error, expected):
        assert supabase_config_mod.is_http2_protocol_error(error) is expected

    @patch("crewcast_billing.config.supabase_config.time.sleep")
    def test_retries_protocol_errors_with_fresh_client(self, mock_sleep, fake_supabase):
        operation = MagicMock(side_effect=[RemoteProtocolError("ConnectionTerminated"), "ok"])

        with patch.object(supabase_config_mod, "reset_supabase_client") as mock_reset:
            result = supabase_config_mod.execute_with_retry(operation, operation_name="test op")

        assert result == "ok"
        assert operation.call_count == 2
        mock_reset.assert_called_once()
        mock_sleep.assert_called_once_with(0.1)

    def test_other_errors_are_not_retried(self, fake_supabase):
        operation = MagicMock(side_effect=ValueError("bad filter"))

        with pytest.raises(ValueError):
            supabase_config_mod.execute_with_retry(operation)
        assert operation.call_count == 1


class TestRedisConfig:
    def test_unreachable_redis_returns_none(self):
        config = redis_config_mod.RedisConfig("redis://localhost:6399/0")
        with patch.object(redis_config_mod.redis, "Redis") as mock_redis:
            mock_redis.return_value.ping.side_effect = ConnectionError("refused")
            assert config.get_client() is None
            assert config.is_available() is False

    def test_reachable_redis_is_cached(self):
        config = redis_config_mod.RedisConfig("redis://localhost:6379/0")
        with patch.object(redis_config_mod.redis, "Redis") as mock_redis:
            first = config.get_client()
            second = config.get_client()

        assert first is second is mock_redis.return_value
        mock_redis.assert_called_once()
        assert config.is_available() is True

    def test_tls_urls_relax_cert_checks(self):
        config = redis_config_mod.RedisConfig("rediss://cache.example.com:6380/0")
        with patch.object(redis_config_mod.ConnectionPool, "from_url") as from_url:
            config.get_connection_pool()
        assert from_url.call_args.kwargs["ssl_cert_reqs"] is None
