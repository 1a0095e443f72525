"""
Webhook Idempotency Guard

Suppresses redelivered Stripe events so replays are no-ops for the handlers.

Features:
- Thread-safe in-process cache of processed event ids with a 24h TTL
- Lazy expiry on lookup plus an amortized sweep once the cache grows past a threshold
- Optional Redis backend (SET NX EX) for multi-instance deployments

The guard is advisory. It is process-local unless Redis is configured and it
forgets everything on restart, so every store write behind it is a keyed
overwrite that is safe to apply twice.

Usage:
    guard = get_idempotency_guard()

    if not guard.claim(event_id):
        return  # duplicate delivery
    try:
        process(event)
    except StoreFailure:
        guard.release(event_id)  # let the provider's retry through
        raise
"""

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable

from crewcast_billing.config import Config
from crewcast_billing.config.redis_config import get_redis_client

logger = logging.getLogger(__name__)


class ProcessedEventCache:
    """
    In-process record of processed event ids.

    Entries map event id -> monotonic first-seen time. Insertion order is
    first-seen order, so the sweep can stop at the first live entry.
    """

    backend_name = "memory"

    def __init__(
        self,
        ttl_seconds: float | None = None,
        sweep_threshold: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = float(
            ttl_seconds if ttl_seconds is not None else Config.WEBHOOK_EVENT_TTL_SECONDS
        )
        self.sweep_threshold = (
            sweep_threshold
            if sweep_threshold is not None
            else Config.WEBHOOK_EVENT_CACHE_SWEEP_THRESHOLD
        )
        self._clock = clock
        self._entries: OrderedDict[str, float] = OrderedDict()
        self._lock = threading.Lock()
        self._stats = {"claims": 0, "duplicates": 0, "releases": 0, "expirations": 0}

    def _is_live(self, event_id: str, now: float) -> bool:
        # Caller holds the lock
        first_seen = self._entries.get(event_id)
        if first_seen is None:
            return False
        if now - first_seen < self.ttl_seconds:
            return True
        del self._entries[event_id]
        self._stats["expirations"] += 1
        return False

    def _sweep(self, now: float) -> None:
        # Caller holds the lock
        if len(self._entries) <= self.sweep_threshold:
            return
        expired = 0
        while self._entries:
            event_id, first_seen = next(iter(self._entries.items()))
            if now - first_seen < self.ttl_seconds:
                break
            del self._entries[event_id]
            expired += 1
        if expired:
            self._stats["expirations"] += expired
            logger.debug(f"Idempotency cache sweep removed {expired} expired event(s)")

    def is_processed(self, event_id: str) -> bool:
        with self._lock:
            return self._is_live(event_id, self._clock())

    def mark_processed(self, event_id: str) -> None:
        with self._lock:
            now = self._clock()
            # Re-marking refreshes first-seen and moves it to the young end
            self._entries.pop(event_id, None)
            self._entries[event_id] = now
            self._sweep(now)

    def claim(self, event_id: str) -> bool:
        """
        Atomically check and mark an event id.

        Returns:
            True if this caller should process the event, False for a duplicate
        """
        with self._lock:
            now = self._clock()
            if self._is_live(event_id, now):
                self._stats["duplicates"] += 1
                return False
            self._entries[event_id] = now
            self._stats["claims"] += 1
            self._sweep(now)
            return True

    def release(self, event_id: str) -> None:
        with self._lock:
            if self._entries.pop(event_id, None) is not None:
                self._stats["releases"] += 1

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def get_stats(self) -> dict[str, int]:
        with self._lock:
            return {**self._stats, "entries": len(self._entries)}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RedisProcessedEventStore:
    """
    Shared idempotency store backed by Redis.

    Redis errors degrade to "not processed": a duplicate that slips through
    is absorbed by the keyed store writes downstream.
    """

    backend_name = "redis"
    KEY_PREFIX = "crewcast:webhook:event:"

    def __init__(self, client, ttl_seconds: int | None = None):
        self._client = client
        self.ttl_seconds = int(
            ttl_seconds if ttl_seconds is not None else Config.WEBHOOK_EVENT_TTL_SECONDS
        )

    def _key(self, event_id: str) -> str:
        return f"{self.KEY_PREFIX}{event_id}"

    def is_processed(self, event_id: str) -> bool:
        try:
            return bool(self._client.exists(self._key(event_id)))
        except Exception as e:
            logger.warning(f"Redis idempotency lookup failed for {event_id}: {e}")
            return False

    def mark_processed(self, event_id: str) -> None:
        try:
            self._client.set(self._key(event_id), "1", ex=self.ttl_seconds)
        except Exception as e:
            logger.warning(f"Redis idempotency mark failed for {event_id}: {e}")

    def claim(self, event_id: str) -> bool:
        try:
            return bool(self._client.set(self._key(event_id), "1", nx=True, ex=self.ttl_seconds))
        except Exception as e:
            logger.warning(f"Redis idempotency claim failed for {event_id}, processing anyway: {e}")
            return True

    def release(self, event_id: str) -> None:
        try:
            self._client.delete(self._key(event_id))
        except Exception as e:
            logger.warning(f"Redis idempotency release failed for {event_id}: {e}")

    def clear(self) -> None:
        try:
            keys = list(self._client.scan_iter(match=f"{self.KEY_PREFIX}*"))
            if keys:
                self._client.delete(*keys)
        except Exception as e:
            logger.warning(f"Redis idempotency clear failed: {e}")


_guard: ProcessedEventCache | RedisProcessedEventStore | None = None
_guard_lock = threading.Lock()


def _build_guard() -> ProcessedEventCache | RedisProcessedEventStore:
    if Config.WEBHOOK_IDEMPOTENCY_BACKEND == "redis":
        client = get_redis_client()
        if client is not None:
            logger.info("Webhook idempotency backed by Redis")
            return RedisProcessedEventStore(client)
        logger.warning(
            "WEBHOOK_IDEMPOTENCY_BACKEND=redis but Redis is unreachable; "
            "falling back to the in-process cache"
        )
    return ProcessedEventCache()


def get_idempotency_guard() -> ProcessedEventCache | RedisProcessedEventStore:
    """Get the process-wide idempotency guard (thread-safe singleton)."""
    global _guard
    if _guard is None:
        with _guard_lock:
            if _guard is None:
                _guard = _build_guard()
    return _guard


def reset_idempotency_guard() -> None:
    """Drop the singleton so the next call rebuilds it. For tests."""
    global _guard
    with _guard_lock:
        _guard = None
