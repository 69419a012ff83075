"""
Canonical gateway contract types.

Every adapter speaks these shapes; nothing provider-specific leaks past
the adapter boundary.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


class GatewayProvider(str, Enum):
    """Supported payment providers."""

    STRIPE = "stripe"
    RAZORPAY = "razorpay"
    PAYSTACK = "paystack"
    MOCK = "mock"


class GatewayMode(str, Enum):
    """Provider environment."""

    SANDBOX = "sandbox"
    LIVE = "live"


class PaymentIntentStatus(str, Enum):
    """Status of a created payment intent."""

    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PaymentState(str, Enum):
    """Status of a payment as reported by a provider poll."""

    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class RefundStatus(str, Enum):
    """Status of a refund."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class WebhookEventType(str, Enum):
    """Canonical webhook event types."""

    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"
    REFUND_COMPLETED = "refund.completed"
    INVOICE_PAID = "invoice.paid"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class GatewayConfig:
    """Credentials and connection settings for one provider."""

    provider: GatewayProvider
    api_key: Optional[str] = field(default=None, repr=False)
    api_secret: Optional[str] = field(default=None, repr=False)
    webhook_secret: Optional[str] = field(default=None, repr=False)
    mode: GatewayMode = GatewayMode.SANDBOX
    base_url: Optional[str] = None
    timeout_seconds: float = 15.0


@dataclass(frozen=True)
class CreatePaymentParams:
    """Parameters for a one-off payment."""

    tenant_id: str
    invoice_id: str
    amount: Decimal
    currency: str
    description: str
    customer_email: Optional[str] = None
    return_url: Optional[str] = None
    webhook_url: Optional[str] = None
    attempt_number: int = 1
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def idempotency_key(self) -> str:
        """Key that makes a re-sent create land on the same provider object."""
        return f"invoice:{self.invoice_id}:attempt:{self.attempt_number}"


@dataclass(frozen=True)
class PaymentIntent:
    """Result of creating a payment. Never mutated after creation."""

    id: str
    provider: GatewayProvider
    amount: Decimal
    currency: str
    status: PaymentIntentStatus
    external_payment_id: Optional[str] = None
    redirect_url: Optional[str] = None
    client_secret: Optional[str] = field(default=None, repr=False)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def error(self) -> Optional[str]:
        """Provider error message for failed intents."""
        return self.metadata.get("error")

    @property
    def payment_url(self) -> Optional[str]:
        """Whatever the tenant must follow or use to complete payment."""
        return self.redirect_url or self.client_secret


@dataclass(frozen=True)
class PaymentStatus:
    """Provider-side status of a payment."""

    external_payment_id: str
    status: PaymentState
    amount: Decimal
    currency: str
    paid_at: Optional[datetime] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


@dataclass(frozen=True)
class RefundParams:
    """Parameters for a refund. amount=None refunds the full payment."""

    external_payment_id: str
    currency: str
    amount: Optional[Decimal] = None
    reason: Optional[str] = None
    idempotency_key: Optional[str] = None


@dataclass(frozen=True)
class RefundResult:
    """Result of a refund."""

    id: str
    external_payment_id: str
    amount: Decimal
    status: RefundStatus
    external_refund_id: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class SubscriptionCreateParams:
    """Parameters for a provider-managed subscription."""

    tenant_id: str
    plan_code: str
    external_plan_id: str
    customer_email: Optional[str] = None
    total_count: int = 12
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SubscriptionResult:
    """Result of a provider-managed subscription operation."""

    success: bool
    external_subscription_id: Optional[str] = None
    status: Optional[str] = None
    redirect_url: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class NormalizedWebhookEvent:
    """Provider-independent webhook event."""

    type: WebhookEventType
    external_event_id: str
    external_payment_id: Optional[str] = None
    external_subscription_id: Optional[str] = None
    invoice_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    tenant_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    raw_payload: Dict[str, Any] = field(default_factory=dict, repr=False)
