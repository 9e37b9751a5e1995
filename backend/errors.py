"""Billing error taxonomy.

Every error carries the HTTP status it maps to and a stable error_code so the
API layer can render one structured shape without inspecting messages.
"""


class BillingError(Exception):
    status_code = 500
    error_code = "BILLING_ERROR"
    retryable = False

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class ConfigurationError(BillingError):
    """Payment integration disabled or incompletely configured."""
    status_code = 503
    error_code = "BILLING_UNAVAILABLE"


class ValidationError(BillingError):
    status_code = 400
    error_code = "VALIDATION_ERROR"


class SignatureError(BillingError):
    """Webhook payload failed signature verification."""
    status_code = 400
    error_code = "INVALID_SIGNATURE"


class ProcessorUnavailable(BillingError):
    """Outbound Stripe call failed or hit its deadline; safe to retry."""
    status_code = 503
    error_code = "PROCESSOR_UNAVAILABLE"
    retryable = True


class NotFound(BillingError):
    status_code = 404
    error_code = "NOT_FOUND"


class ConcurrentUpdateError(BillingError):
    """Compare-and-swap on a subscription record kept losing."""
    status_code = 409
    error_code = "CONCURRENT_UPDATE"
    retryable = True


class WebhookProcessingTimeout(BillingError):
    status_code = 503
    error_code = "WEBHOOK_TIMEOUT"
    retryable = True
