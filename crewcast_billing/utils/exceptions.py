"""
Billing webhook error taxonomy.

Each exception carries the HTTP status the webhook endpoint answers with, so
the provider's retry behaviour follows from the failure class:

- 400: the notification itself is unacceptable (never retried successfully)
- 500: operator or store trouble (provider redelivers)
- 200: acknowledged conditions that retrying cannot fix
"""


class BillingWebhookError(Exception):
    """Base class for every failure raised by the billing webhook pipeline."""

    http_status = 500
    error_code = "webhook_error"

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context


# ==================== Rejected notifications (400) ====================


class WebhookRejected(BillingWebhookError):
    http_status = 400
    error_code = "webhook_rejected"


class MissingSignature(WebhookRejected):
    error_code = "missing_signature"


class SignatureInvalid(WebhookRejected):
    error_code = "invalid_signature"


class InvalidPayload(WebhookRejected):
    error_code = "invalid_payload"


# ==================== Operator attention (500) ====================


class ConfigurationError(BillingWebhookError):
    error_code = "configuration_error"


class RawPayloadUnavailable(BillingWebhookError):
    error_code = "raw_payload_unavailable"


# ==================== Acknowledged, nothing to apply (200) ====================


class UnresolvedReference(BillingWebhookError):
    http_status = 200
    error_code = "unresolved_reference"


class UnresolvedCustomer(UnresolvedReference):
    error_code = "unresolved_customer"


class UnresolvedUser(UnresolvedReference):
    error_code = "unresolved_user"


# ==================== Degraded but recoverable ====================


class ProviderReadbackFailure(BillingWebhookError):
    """The optional read-back to Stripe failed; callers fall back to local data."""

    http_status = 200
    error_code = "provider_readback_failure"


# ==================== Relational store (500, provider retries) ====================


class StoreFailure(BillingWebhookError):
    error_code = "store_failure"


class StoreReadFailure(StoreFailure):
    error_code = "store_read_failure"


class StoreWriteFailure(StoreFailure):
    error_code = "store_write_failure"
