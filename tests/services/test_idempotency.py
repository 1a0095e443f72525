"""
Tests for the webhook idempotency guard
"""

import threading
from unittest.mock import MagicMock, patch

import pytest

from crewcast_billing.config import Config
from crewcast_billing.services import idempotency
from crewcast_billing.services.idempotency import (
    ProcessedEventCache,
    RedisProcessedEventStore,
    get_idempotency_guard,
    reset_idempotency_guard,
)

DAY = 86400.0


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return ProcessedEventCache(ttl_seconds=DAY, sweep_threshold=100, clock=clock)


class TestProcessedEventCache:
    def test_mark_then_is_processed(self, cache):
        assert not cache.is_processed("evt_1")
        cache.mark_processed("evt_1")
        assert cache.is_processed("evt_1")

    def test_claim_is_single_use_within_ttl(self, cache, clock):
        assert cache.claim("evt_1") is True
        clock.advance(DAY - 1)
        assert cache.claim("evt_1") is False
        assert cache.get_stats()["duplicates"] == 1

    def test_entry_expires_after_ttl(self, cache, clock):
        cache.claim("evt_1")
        clock.advance(DAY)
        assert not cache.is_processed("evt_1")
        assert len(cache) == 0
        assert cache.claim("evt_1") is True

    def test_release_allows_redelivery(self, cache):
        assert cache.claim("evt_1")
        cache.release("evt_1")
        assert cache.claim("evt_1")
        assert cache.get_stats()["releases"] == 1

    def test_release_of_unknown_event_is_noop(self, cache):
        cache.release("evt_missing")
        assert cache.get_stats()["releases"] == 0

    def test_no_sweep_below_threshold(self, cache, clock):
        for i in range(100):
            cache.mark_processed(f"evt_{i}")
        clock.advance(DAY + 1)
        # Lookups are the only eviction below the threshold
        assert len(cache) == 100

    def test_sweep_evicts_expired_entries_past_threshold(self, cache, clock):
        for i in range(100):
            cache.mark_processed(f"evt_old_{i}")
        clock.advance(DAY + 1)

        cache.mark_processed("evt_new")  # 101 entries -> sweep

        assert len(cache) == 1
        assert cache.is_processed("evt_new")
        assert not cache.is_processed("evt_old_0")

    def test_sweep_keeps_live_entries(self, cache, clock):
        for i in range(60):
            cache.mark_processed(f"evt_old_{i}")
        clock.advance(DAY / 2)
        for i in range(60):
            cache.mark_processed(f"evt_mid_{i}")
        clock.advance(DAY / 2 + 1)

        cache.claim("evt_trigger")

        assert len(cache) == 61
        assert cache.is_processed("evt_mid_0")

    def test_concurrent_claims_admit_exactly_one(self, cache):
        results = []
        barrier = threading.Barrier(16)

        def worker():
            barrier.wait()
            results.append(cache.claim("evt_race"))

        threads = [threading.Thread(target=worker) for _ in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
        assert results.count(False) == 15

    def test_defaults_come_from_config(self):
        cache = ProcessedEventCache()
        assert cache.ttl_seconds == Config.WEBHOOK_EVENT_TTL_SECONDS
        assert cache.sweep_threshold == Config.WEBHOOK_EVENT_CACHE_SWEEP_THRESHOLD


class TestRedisProcessedEventStore:
    def test_claim_uses_set_nx_ex(self):
        client = MagicMock()
        client.set.return_value = True
        store = RedisProcessedEventStore(client, ttl_seconds=60)

        assert store.claim("evt_1") is True
        client.set.assert_called_once_with(
            "crewcast:webhook:event:evt_1", "1", nx=True, ex=60
        )

    def test_claim_of_existing_key_is_duplicate(self):
        client = MagicMock()
        client.set.return_value = None
        assert RedisProcessedEventStore(client).claim("evt_1") is False

    def test_claim_degrades_to_processing_on_redis_error(self):
        client = MagicMock()
        client.set.side_effect = ConnectionError("redis down")
        assert RedisProcessedEventStore(client).claim("evt_1") is True

    def test_is_processed_and_release(self):
        client = MagicMock()
        client.exists.return_value = 1
        store = RedisProcessedEventStore(client)

        assert store.is_processed("evt_1") is True
        store.release("evt_1")
        client.delete.assert_called_once_with("crewcast:webhook:event:evt_1")

    def test_is_processed_on_redis_error(self):
        client = MagicMock()
        client.exists.side_effect = TimeoutError("slow")
        assert RedisProcessedEventStore(client).is_processed("evt_1") is False


class TestGuardSingleton:
    def test_memory_backend_by_default(self):
        guard = get_idempotency_guard()
        assert isinstance(guard, ProcessedEventCache)
        assert get_idempotency_guard() is guard

    def test_reset_builds_a_fresh_guard(self):
        first = get_idempotency_guard()
        first.claim("evt_1")
        reset_idempotency_guard()
        assert not get_idempotency_guard().is_processed("evt_1")

    def test_redis_backend_when_reachable(self, monkeypatch):
        monkeypatch.setattr(Config, "WEBHOOK_IDEMPOTENCY_BACKEND", "redis")
        with patch.object(idempotency, "get_redis_client", return_value=MagicMock()):
            assert isinstance(get_idempotency_guard(), RedisProcessedEventStore)

    def test_redis_backend_falls_back_when_unreachable(self, monkeypatch, caplog):
        monkeypatch.setattr(Config, "WEBHOOK_IDEMPOTENCY_BACKEND", "redis")
        with patch.object(idempotency, "get_redis_client", return_value=None):
            with caplog.at_level("WARNING"):
                guard = get_idempotency_guard()

        assert isinstance(guard, ProcessedEventCache)
        assert "falling back to the in-process cache" in caplog.text
