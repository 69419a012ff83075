"""Billing error hierarchy."""
from typing import Optional


class BillingError(Exception):
    """Base exception for billing errors."""

    error_code = "billing_error"

    def __init__(self, message: str, error_code: Optional[str] = None):
        """
        Initialize billing error.

        Args:
            message: Error message
            error_code: Stable machine-readable code
        """
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code


class NoGatewayAvailableError(BillingError):
    """Raised when no configured gateway exists for a country."""

    error_code = "no_gateway_available"


class TenantNotFoundError(BillingError):
    """Raised when the tenant does not exist."""

    error_code = "tenant_not_found"


class PlanNotFoundError(BillingError):
    """Raised when the plan does not exist or is inactive."""

    error_code = "plan_not_found"


class InvoiceNotFoundError(BillingError):
    """Raised when the invoice does not exist."""

    error_code = "invoice_not_found"


class InvoiceStateError(BillingError):
    """Raised when an invoice is in the wrong state for an operation."""

    error_code = "invalid_invoice_state"


class UnknownProviderError(BillingError):
    """Raised when a provider name has no registered adapter."""

    error_code = "unknown_provider"


class UnsupportedCapabilityError(BillingError):
    """Raised when an adapter lacks an optional capability."""

    error_code = "unsupported_capability"


class LedgerError(BillingError):
    """Raised when the webhook ledger cannot record an event."""

    error_code = "ledger_error"
