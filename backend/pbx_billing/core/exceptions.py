from typing import Any, Dict, Optional


class BillingError(Exception):
    """Base exception for all billing engine errors."""

    code = "billing_error"

    def __init__(self, message: str, *, code: str | None = None, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}


class ValidationError(BillingError, ValueError):
    """Malformed input: negative quantities, unknown ids, amounts above what is due."""

    code = "validation_error"


class NotFoundError(ValidationError):
    code = "not_found"


class DuplicateInvoiceError(BillingError):
    """An invoice already exists for the subscription and billing period."""

    code = "duplicate_invoice"


class NoPaymentMethodError(BillingError):
    """The tenant has no saved payment method to charge."""

    code = "no_payment_method"


class AlreadyPaidError(BillingError):
    code = "already_paid"


class CycleAlreadyRunningError(BillingError):
    """A live billing cycle is in progress; the new run was rejected."""

    code = "cycle_already_running"


class ConfigurationError(BillingError):
    code = "config_error"


class GatewayError(BillingError):
    """Transport-level failure talking to a payment provider."""

    code = "gateway_error"

    def __init__(
        self,
        message: str,
        *,
        reason: str = "processing_error",
        details: Optional[Dict[str, Any]] = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.reason = reason
        self.status_code = status_code
