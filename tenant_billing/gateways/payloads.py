"""
Raw webhook payload models, one envelope per provider.

Models accept unknown fields and unknown event names; mapping to the
canonical event types happens in the adapters.
"""
from decimal import Decimal
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class _Payload(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


# Stripe


class StripeEventObject(_Payload):
    """The object embedded in a Stripe event (PaymentIntent, Charge, ...)."""

    id: Optional[str] = None
    object: Optional[str] = None
    amount: Optional[int] = None
    amount_refunded: Optional[int] = None
    amount_paid: Optional[int] = None
    currency: Optional[str] = None
    status: Optional[str] = None
    payment_intent: Optional[str] = None
    subscription: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    last_payment_error: Optional[Dict[str, Any]] = None


class StripeEventData(_Payload):
    object: StripeEventObject = Field(default_factory=StripeEventObject)


class StripeWebhookPayload(_Payload):
    """Stripe event envelope."""

    id: str
    type: str
    created: Optional[int] = None
    livemode: bool = False
    data: StripeEventData = Field(default_factory=StripeEventData)


# Razorpay


class RazorpayEntity(_Payload):
    """Entity inside a Razorpay payload section (payment, refund, ...)."""

    id: Optional[str] = None
    entity: Optional[str] = None
    amount: Optional[int] = None
    amount_paid: Optional[int] = None
    currency: Optional[str] = None
    status: Optional[str] = None
    payment_id: Optional[str] = None
    subscription_id: Optional[str] = None
    error_code: Optional[str] = None
    error_description: Optional[str] = None
    notes: Union[Dict[str, Any], list] = Field(default_factory=dict)

    @property
    def notes_dict(self) -> Dict[str, Any]:
        # Razorpay sends an empty list when an entity has no notes.
        return self.notes if isinstance(self.notes, dict) else {}


class RazorpayEntityWrapper(_Payload):
    entity: RazorpayEntity = Field(default_factory=RazorpayEntity)


class RazorpayPayloadSections(_Payload):
    payment: Optional[RazorpayEntityWrapper] = None
    subscription: Optional[RazorpayEntityWrapper] = None
    refund: Optional[RazorpayEntityWrapper] = None
    invoice: Optional[RazorpayEntityWrapper] = None
    payment_link: Optional[RazorpayEntityWrapper] = None


class RazorpayWebhookPayload(_Payload):
    """Razorpay event envelope."""

    id: Optional[str] = None
    entity: str = "event"
    account_id: Optional[str] = None
    event: str
    created_at: Optional[int] = None
    payload: RazorpayPayloadSections = Field(default_factory=RazorpayPayloadSections)


# Paystack


class PaystackCustomer(_Payload):
    email: Optional[str] = None
    customer_code: Optional[str] = None


class PaystackSubscriptionRef(_Payload):
    subscription_code: Optional[str] = None


class PaystackEventData(_Payload):
    """The data object of a Paystack event."""

    id: Optional[Union[int, str]] = None
    reference: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    status: Optional[str] = None
    paid: Optional[bool] = None
    gateway_response: Optional[str] = None
    subscription_code: Optional[str] = None
    transaction_reference: Optional[str] = None
    metadata: Optional[Union[Dict[str, Any], str]] = None
    customer: Optional[PaystackCustomer] = None
    subscription: Optional[PaystackSubscriptionRef] = None
    transaction: Optional[Dict[str, Any]] = None

    @property
    def metadata_dict(self) -> Dict[str, Any]:
        return self.metadata if isinstance(self.metadata, dict) else {}


class PaystackWebhookPayload(_Payload):
    """Paystack event envelope."""

    event: str
    data: PaystackEventData = Field(default_factory=PaystackEventData)


# Mock


class MockWebhookPayload(_Payload):
    """Mock gateway event. Already uses canonical event names."""

    id: str
    type: str
    payment_id: Optional[str] = None
    subscription_id: Optional[str] = None
    invoice_id: Optional[str] = None
    tenant_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
