"""
Error taxonomy for the payment layer.

Each class carries the HTTP status it maps to and a short machine-readable
``code``; ``main.py`` turns them into the error envelope.
"""
from typing import Any, Dict, Optional


class PaymentError(Exception):
    status_code = 400
    code = "payment_error"
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(PaymentError):
    """Missing or malformed input, rejected before any external call."""
    status_code = 400
    code = "validation_error"


class ConflictError(PaymentError):
    """Duplicate payment attempt or a transition the record no longer allows."""
    status_code = 409
    code = "conflict"


class NotFoundError(PaymentError):
    status_code = 404
    code = "not_found"


class ConfigurationError(PaymentError):
    """Provider credentials are missing. Not a provider rejection."""
    status_code = 503
    code = "configuration_error"


class ProviderError(PaymentError):
    """The external gateway reported a failure or could not be reached."""
    status_code = 502
    code = "provider_error"


class ProviderTimeoutError(ProviderError):
    status_code = 504
    code = "provider_timeout"
    retryable = True


class SignatureError(PaymentError):
    """A callback/IPN failed its authenticity check. Possibly adversarial."""
    status_code = 400
    code = "invalid_signature"
