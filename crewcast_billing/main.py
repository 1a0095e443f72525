import logging

from fastapi import FastAPI

from crewcast_billing import __version__
from crewcast_billing.config import Config
from crewcast_billing.config.logging_config import configure_logging

configure_logging()
logger = logging.getLogger(__name__)

# Error reporting is opt-in via SENTRY_DSN
if Config.SENTRY_ENABLED and Config.SENTRY_DSN:
    import sentry_sdk

    def sentry_traces_sampler(sampling_context):
        """Webhook traffic uses SENTRY_TRACES_SAMPLE_RATE; health probes are never traced."""
        parent_sampled = sampling_context.get("parent_sampled")
        if parent_sampled is not None:
            return float(parent_sampled)

        if sampling_context.get("asgi_scope", {}).get("path", "") == "/health":
            return 0.0

        if Config.SENTRY_ENVIRONMENT == "development":
            return 1.0

        return Config.SENTRY_TRACES_SAMPLE_RATE

    sentry_sdk.init(
        dsn=Config.SENTRY_DSN,
        # No request bodies, headers or IPs in Sentry events
        send_default_pii=False,
        environment=Config.SENTRY_ENVIRONMENT,
        release=f"{Config.SERVICE_NAME}@{__version__}",
        traces_sampler=sentry_traces_sampler,
    )
    logger.info(f"Sentry initialized (environment: {Config.SENTRY_ENVIRONMENT})")
else:
    logger.info("Sentry disabled (SENTRY_ENABLED=false or SENTRY_DSN not set)")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Crewcast Billing Webhooks",
        description="Stripe billing event ingestion and credit entitlement reconciliation",
        version=__version__,
    )

    from crewcast_billing.routes.health import router as health_router
    from crewcast_billing.routes.payments import router as payments_router

    app.include_router(health_router)
    app.include_router(payments_router)

    is_valid, missing = Config.validate_critical_env_vars()
    if not is_valid:
        # Missing secrets surface per request; warn early for operators
        logger.warning(f"Missing environment variables: {', '.join(missing)}")

    logger.info(f"{Config.SERVICE_NAME} app created (env: {Config.APP_ENV})")
    return app


app = create_app()
