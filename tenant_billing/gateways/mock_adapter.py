"""
In-process mock gateway for development and tests.

Registered only when mock_gateway_enabled is set. Payments never leave
the process; webhooks are signed with HMAC-SHA256 and already use the
canonical event names.
"""
import hashlib
import secrets
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

import structlog
from pydantic import ValidationError

from tenant_billing.gateways.base import GatewayAdapter, compute_hmac, verify_hmac
from tenant_billing.gateways.payloads import MockWebhookPayload
from tenant_billing.gateways.types import (
    CreatePaymentParams,
    GatewayConfig,
    GatewayProvider,
    NormalizedWebhookEvent,
    PaymentIntent,
    PaymentIntentStatus,
    PaymentState,
    PaymentStatus,
    RefundParams,
    RefundResult,
    RefundStatus,
    SubscriptionCreateParams,
    SubscriptionResult,
    WebhookEventType,
)

logger = structlog.get_logger(__name__)


class MockAdapter(GatewayAdapter):
    """Deterministic gateway that can be told to decline."""

    provider = GatewayProvider.MOCK
    signature_header = "X-Mock-Signature"
    supports_subscriptions = True

    def __init__(self, decline: bool = False) -> None:
        super().__init__()
        self.decline = decline
        self.payments: Dict[str, PaymentStatus] = {}
        self.subscriptions: Dict[str, str] = {}
        self.created: list[CreatePaymentParams] = []

    def _setup(self, config: GatewayConfig) -> bool:
        return True

    async def create_payment(self, params: CreatePaymentParams) -> PaymentIntent:
        """Record the payment and return a mock checkout redirect."""
        self.created.append(params)
        if not self.is_configured():
            error = self._not_configured_error()
            return self._failed_intent(params, str(error), error.code)
        if self.decline:
            logger.info("mock_payment_declined", invoice_id=params.invoice_id)
            return self._failed_intent(params, "Card declined", "card_declined")

        # Same idempotency key, same provider object.
        payment_id = "mock_pi_" + hashlib.sha256(params.idempotency_key.encode()).hexdigest()[:24]
        self.payments[payment_id] = PaymentStatus(
            external_payment_id=payment_id,
            status=PaymentState.PENDING,
            amount=params.amount,
            currency=params.currency,
        )
        return PaymentIntent(
            id=self.generate_transaction_id(),
            provider=self.provider,
            amount=params.amount,
            currency=params.currency,
            status=PaymentIntentStatus.PENDING,
            external_payment_id=payment_id,
            redirect_url=f"mock://checkout/{payment_id}",
            metadata={"invoice_id": params.invoice_id},
        )

    def settle(self, external_payment_id: str, succeeded: bool = True) -> None:
        """Mark a mock payment as paid or failed."""
        current = self.payments[external_payment_id]
        self.payments[external_payment_id] = PaymentStatus(
            external_payment_id=external_payment_id,
            status=PaymentState.SUCCEEDED if succeeded else PaymentState.FAILED,
            amount=current.amount,
            currency=current.currency,
            paid_at=datetime.now(timezone.utc) if succeeded else None,
        )

    async def get_payment_status(self, external_payment_id: str) -> PaymentStatus:
        status = self.payments.get(external_payment_id)
        if status is None:
            return PaymentStatus(
                external_payment_id=external_payment_id,
                status=PaymentState.FAILED,
                amount=Decimal("0.00"),
                currency="",
                error_code="not_found",
                error_message="No such payment",
            )
        return status

    async def refund(self, params: RefundParams) -> RefundResult:
        status = self.payments.get(params.external_payment_id)
        if status is None:
            return self._failed_refund(params, "No such payment")
        return RefundResult(
            id=self.generate_transaction_id(),
            external_payment_id=params.external_payment_id,
            amount=params.amount if params.amount is not None else status.amount,
            status=RefundStatus.SUCCEEDED,
            external_refund_id=f"mock_re_{secrets.token_hex(8)}",
        )

    async def create_subscription(self, params: SubscriptionCreateParams) -> SubscriptionResult:
        subscription_id = f"mock_sub_{secrets.token_hex(8)}"
        self.subscriptions[subscription_id] = "active"
        return SubscriptionResult(
            success=True, external_subscription_id=subscription_id, status="active"
        )

    async def cancel_subscription(self, external_subscription_id: str) -> bool:
        self.subscriptions[external_subscription_id] = "cancelled"
        return True

    def sign(self, raw_body: bytes) -> str:
        """Signature a client must send in X-Mock-Signature."""
        secret = self.config.webhook_secret if self.config else None
        return compute_hmac(secret or "", raw_body, hashlib.sha256)

    def verify_webhook_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        secret = self.config.webhook_secret if self.config else None
        return verify_hmac(secret, raw_body, signature, hashlib.sha256)

    def normalize_webhook_event(self, payload: Mapping[str, Any]) -> NormalizedWebhookEvent:
        try:
            event = MockWebhookPayload.model_validate(payload)
        except ValidationError:
            return self._unknown_event(payload)

        try:
            event_type = WebhookEventType(event.type)
        except ValueError:
            event_type = WebhookEventType.UNKNOWN
        if event_type == WebhookEventType.UNKNOWN:
            return self._unknown_event(payload, event.id)

        return NormalizedWebhookEvent(
            type=event_type,
            external_event_id=event.id,
            external_payment_id=event.payment_id,
            external_subscription_id=event.subscription_id,
            invoice_id=event.invoice_id,
            amount=event.amount,
            currency=event.currency.upper() if event.currency else None,
            tenant_id=event.tenant_id,
            metadata=dict(event.metadata),
            raw_payload=dict(payload),
        )
