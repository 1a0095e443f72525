import logging
import threading
import time

from supabase import Client, create_client
from supabase.client import ClientOptions

from crewcast_billing.config.config import Config
from crewcast_billing.utils.sentry_context import capture_error

logger = logging.getLogger(__name__)

_client: Client | None = None
_client_lock = threading.Lock()
_init_failure: Exception | None = None
_failed_at: float = 0
# Seconds a failed initialization is reported without retrying
ERROR_CACHE_TTL = 60.0


def get_supabase_client() -> Client:
    """
    Return the process-wide Supabase client, creating it on first use.

    A failed initialization is remembered for ERROR_CACHE_TTL seconds so a
    burst of webhook deliveries does not hammer an unreachable database.
    """
    global _client, _init_failure, _failed_at

    if _client is not None:
        return _client

    with _client_lock:
        if _client is not None:
            return _client

        if _init_failure is not None:
            time_since_error = time.time() - _failed_at
            if time_since_error < ERROR_CACHE_TTL:
                retry_in = int(ERROR_CACHE_TTL - time_since_error)
                raise RuntimeError(
                    f"Supabase unavailable (retry in {retry_in}s): {_init_failure}"
                ) from _init_failure
            logger.info("Retrying Supabase initialization after earlier failure")
            _init_failure = None
            _failed_at = 0

        try:
            Config.validate()

            if not Config.SUPABASE_URL.startswith(("http://", "https://")):
                raise RuntimeError(
                    f"SUPABASE_URL must start with 'http://' or 'https://'. "
                    f"Current value: '{Config.SUPABASE_URL}'"
                )

            _client = create_client(
                supabase_url=Config.SUPABASE_URL,
                supabase_key=Config.SUPABASE_KEY,
                options=ClientOptions(
                    postgrest_client_timeout=30,
                    schema="public",
                    headers={"X-Client-Info": f"{Config.SERVICE_NAME}/1.0"},
                ),
            )
            logger.info("Supabase client initialized")
            return _client

        except Exception as e:
            _init_failure = e
            _failed_at = time.time()
            logger.error(
                f"Supabase client could not be created: {type(e).__name__}: {e}", exc_info=True
            )
            capture_error(
                e,
                context_type="supabase_config",
                context_data={
                    "supabase_url_set": bool(Config.SUPABASE_URL),
                    "supabase_key_set": bool(Config.SUPABASE_KEY),
                },
                tags={"component": "supabase_client"},
            )
            raise RuntimeError(f"Supabase client initialization failed: {e}") from e


def reset_supabase_client() -> bool:
    """
    Drop the cached client so the next call builds a fresh connection pool.

    Returns:
        bool: True if a cached client was dropped
    """
    global _client, _init_failure, _failed_at

    with _client_lock:
        had_client = _client is not None
        _client = None
        _init_failure = None
        _failed_at = 0

    if had_client:
        logger.info("Dropped cached Supabase client")
    return had_client


def is_http2_protocol_error(error: Exception) -> bool:
    """
    True when the pooled HTTP/2 connection to PostgREST is broken and the
    client has to be rebuilt before the write can succeed.
    """
    if "protocolerror" in type(error).__name__.lower():
        return True

    error_str = str(error).lower()
    broken_connection_markers = (
        "streaminputs.send_headers",
        "streaminputs.recv_data",
        "connectioninputs.recv_data",
        "connectionstate.closed",
        "stream closed",
        "connection reset by peer",
        "goaway",
        "h2_error",
        "http2 error",
    )
    if any(marker in error_str for marker in broken_connection_markers):
        return True

    return "connection closed" in error_str and ("http2" in error_str or "h2" in error_str)


def execute_with_retry(
    operation,
    max_retries: int = 2,
    retry_delay: float = 0.1,
    operation_name: str = "database operation",
):
    """
    Run a Supabase operation, rebuilding the client and retrying on broken HTTP/2 connections.

    Args:
        operation: Callable taking the Supabase client as its only argument.
        max_retries: Extra attempts after the first one
        retry_delay: Seconds to wait before retrying with a fresh client
        operation_name: Used in the retry warning

    Returns:
        Whatever the operation returns

    Example:
        def load_user(client):
            return client.table("users").select("id").eq("id", 7).execute()

        result = execute_with_retry(load_user, operation_name="load_user")
    """
    for attempt in range(max_retries + 1):
        try:
            return operation(get_supabase_client())
        except Exception as e:
            if not is_http2_protocol_error(e) or attempt >= max_retries:
                raise
            logger.warning(
                f"HTTP/2 protocol error in {operation_name} "
                f"(attempt {attempt + 1}/{max_retries + 1}): {e}. Resetting client and retrying..."
            )
            reset_supabase_client()
            time.sleep(retry_delay)

    raise RuntimeError(f"{operation_name} failed with no error captured")
