"""
Redis connection for the shared webhook idempotency store.

Only needed when several workers must agree on which Stripe event ids were
already claimed; a single process falls back to the in-memory guard.
"""

import logging
import os
import threading
import time

import redis
from redis.connection import ConnectionPool

from crewcast_billing.config.config import Config

logger = logging.getLogger(__name__)

# Seconds a probe result is trusted, by outcome
_HEALTHY_PROBE_TTL = 30.0
_UNHEALTHY_PROBE_TTL = 5.0


class RedisConfig:
    """Lazily connects to Redis and remembers whether it answered."""

    def __init__(self, redis_url: str | None = None):
        self.redis_url = redis_url or Config.REDIS_URL
        self.max_connections = int(os.environ.get("REDIS_MAX_CONNECTIONS", "20"))
        # Short timeouts so a slow Redis cannot delay the webhook acknowledgement
        self.socket_timeout = int(os.environ.get("REDIS_SOCKET_TIMEOUT", "3"))
        self.connect_timeout = int(os.environ.get("REDIS_SOCKET_CONNECT_TIMEOUT", "2"))

        self._pool: ConnectionPool | None = None
        self._client: redis.Redis | None = None
        self._last_probe: tuple[float, bool] | None = None

    def get_connection_pool(self) -> ConnectionPool:
        if self._pool is not None:
            return self._pool

        pool_options = dict(
            max_connections=self.max_connections,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.connect_timeout,
            decode_responses=True,
        )
        # Managed TLS endpoints ship certificates the default store rejects
        if self.redis_url.startswith("rediss://"):
            pool_options["ssl_cert_reqs"] = None

        self._pool = ConnectionPool.from_url(self.redis_url, **pool_options)
        return self._pool

    def get_client(self) -> redis.Redis | None:
        """Return a connected client, or None when the server does not answer PING."""
        if self._client is not None:
            return self._client

        candidate = redis.Redis(connection_pool=self.get_connection_pool())
        try:
            candidate.ping()
        except Exception as e:
            logger.warning(f"Idempotency store at Redis is unreachable: {e}")
            return None

        logger.info("Connected to Redis for webhook idempotency")
        self._client = candidate
        return self._client

    def is_available(self) -> bool:
        now = time.monotonic()
        if self._last_probe is not None:
            probed_at, healthy = self._last_probe
            ttl = _HEALTHY_PROBE_TTL if healthy else _UNHEALTHY_PROBE_TTL
            if now - probed_at < ttl:
                return healthy

        client = self.get_client()
        healthy = False
        if client is not None:
            try:
                healthy = bool(client.ping())
            except Exception as e:
                logger.debug(f"Redis probe failed: {e}")

        self._last_probe = (now, healthy)
        return healthy


_shared_config: RedisConfig | None = None
_shared_config_lock = threading.Lock()


def get_redis_config() -> RedisConfig:
    """Process-wide RedisConfig, created on first use."""
    global _shared_config
    with _shared_config_lock:
        if _shared_config is None:
            _shared_config = RedisConfig()
        return _shared_config


def get_redis_client() -> redis.Redis | None:
    return get_redis_config().get_client()
