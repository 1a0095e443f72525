import os

from dotenv import load_dotenv

load_dotenv()


def _get_env_var(name: str, default: str | None = None, *, strip: bool = True) -> str | None:
    """
    Read an environment variable, treating blank values as unset.

    Stripe secrets pasted into dashboards often pick up a trailing newline,
    so values are trimmed unless ``strip`` is False.
    """
    raw = os.environ.get(name)
    if raw is None:
        return default
    cleaned = raw.strip() if strip else raw
    return cleaned if cleaned else default


def _get_bool_env(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).lower() in {"1", "true", "yes"}


def _get_int_env(name: str, default: int) -> int:
    return int(os.environ.get(name, str(default)))


class Config:
    """Settings for the billing webhook service, read once at import"""

    APP_ENV = os.environ.get("APP_ENV", "development")
    IS_DEVELOPMENT = APP_ENV == "development"
    SERVICE_NAME = os.environ.get("SERVICE_NAME", "crewcast-billing")
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

    # Credit and subscription store
    SUPABASE_URL = os.environ.get("SUPABASE_URL")
    SUPABASE_KEY = os.environ.get("SUPABASE_KEY")

    # Stripe
    STRIPE_SECRET_KEY = _get_env_var("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = _get_env_var("STRIPE_WEBHOOK_SECRET")
    STRIPE_WEBHOOK_TOLERANCE_SECONDS = _get_int_env("STRIPE_WEBHOOK_TOLERANCE_SECONDS", 300)

    # Processed-event guard
    WEBHOOK_IDEMPOTENCY_BACKEND = os.environ.get("WEBHOOK_IDEMPOTENCY_BACKEND", "memory").lower()
    WEBHOOK_EVENT_TTL_SECONDS = _get_int_env("WEBHOOK_EVENT_TTL_SECONDS", 86400)
    WEBHOOK_EVENT_CACHE_SWEEP_THRESHOLD = _get_int_env("WEBHOOK_EVENT_CACHE_SWEEP_THRESHOLD", 100)
    REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")

    # Error reporting
    SENTRY_DSN = os.environ.get("SENTRY_DSN")
    SENTRY_ENABLED = _get_bool_env("SENTRY_ENABLED", "true")
    SENTRY_ENVIRONMENT = os.environ.get("SENTRY_ENVIRONMENT", APP_ENV)
    SENTRY_TRACES_SAMPLE_RATE = float(os.environ.get("SENTRY_TRACES_SAMPLE_RATE", "0.1"))

    # Log shipping
    LOKI_ENABLED = _get_bool_env("LOKI_ENABLED")
    LOKI_PUSH_URL = os.environ.get("LOKI_PUSH_URL", "http://loki:3100/loki/api/v1/push")

    @classmethod
    def get_webhook_secret(cls) -> str | None:
        """
        Signing secret for Stripe webhooks, looked up per request.

        A value set in the environment after startup (secret rotation) takes
        precedence over the one captured at import.
        """
        return _get_env_var("STRIPE_WEBHOOK_SECRET") or cls.STRIPE_WEBHOOK_SECRET

    @classmethod
    def get_stripe_api_key(cls) -> str | None:
        return _get_env_var("STRIPE_SECRET_KEY") or cls.STRIPE_SECRET_KEY

    @classmethod
    def get_price_ids(cls) -> dict[str, str | None]:
        """Configured Stripe price ids, keyed '<plan>_<interval>'"""
        return {
            f"{plan}_{interval}": _get_env_var(f"STRIPE_PRICE_{plan.upper()}_{interval.upper()}")
            for plan in ("pro", "business")
            for interval in ("monthly", "annual")
        }

    @classmethod
    def validate(cls):
        """Raise RuntimeError when the store credentials are absent"""
        store = {"SUPABASE_URL": cls.SUPABASE_URL, "SUPABASE_KEY": cls.SUPABASE_KEY}
        absent = [name for name, value in store.items() if not value]
        if absent:
            raise RuntimeError(
                f"Billing service cannot start, missing: {', '.join(absent)}. "
                "Set SUPABASE_URL and SUPABASE_KEY (service role) in the environment or .env; "
                "STRIPE_SECRET_KEY and STRIPE_WEBHOOK_SECRET are needed to accept webhooks."
            )
        return True

    @classmethod
    def validate_critical_env_vars(cls) -> tuple[bool, list[str]]:
        """
        Check every setting the webhook path cannot run without.

        Returns:
            tuple: (is_valid, names of the unset variables)
        """
        required = {
            "SUPABASE_URL": cls.SUPABASE_URL,
            "SUPABASE_KEY": cls.SUPABASE_KEY,
            "STRIPE_SECRET_KEY": cls.get_stripe_api_key(),
            "STRIPE_WEBHOOK_SECRET": cls.get_webhook_secret(),
        }
        unset = [name for name, value in required.items() if not value]
        return not unset, unset
