"""
Paystack adapter.

Uses the Transaction initialize/verify API. The authorization_url is the
redirect handed back to the tenant and the transaction reference is the
external payment id. Paystack signs webhooks with the secret key
(HMAC-SHA512). Managed subscriptions are not supported here.
"""
import hashlib
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

import httpx
import structlog
from pydantic import ValidationError

from tenant_billing.core.money import from_minor_units, to_minor_units
from tenant_billing.gateways.base import GatewayAdapter, verify_hmac
from tenant_billing.gateways.http import ProviderHTTPClient
from tenant_billing.gateways.payloads import PaystackWebhookPayload
from tenant_billing.gateways.resilience import ProviderError
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
    WebhookEventType,
)

logger = structlog.get_logger(__name__)

PAYSTACK_API_BASE = "https://api.paystack.co"

EVENT_TYPE_MAP: Dict[str, WebhookEventType] = {
    "charge.success": WebhookEventType.PAYMENT_SUCCEEDED,
    "charge.failed": WebhookEventType.PAYMENT_FAILED,
    "invoice.payment_failed": WebhookEventType.PAYMENT_FAILED,
    "subscription.disable": WebhookEventType.SUBSCRIPTION_CANCELLED,
    "refund.processed": WebhookEventType.REFUND_COMPLETED,
}

TRANSACTION_STATUS_MAP: Dict[str, PaymentState] = {
    "success": PaymentState.SUCCEEDED,
    "failed": PaymentState.FAILED,
    "abandoned": PaymentState.CANCELLED,
    "reversed": PaymentState.REFUNDED,
    "ongoing": PaymentState.PROCESSING,
    "processing": PaymentState.PROCESSING,
    "queued": PaymentState.PROCESSING,
    "pending": PaymentState.PENDING,
}


def _parse_paid_at(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


class PaystackAdapter(GatewayAdapter):
    """Paystack Transactions integration."""

    provider = GatewayProvider.PAYSTACK
    signature_header = "X-Paystack-Signature"
    supports_subscriptions = False

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        super().__init__()
        self._transport = transport
        self.client: Optional[ProviderHTTPClient] = None

    def _setup(self, config: GatewayConfig) -> bool:
        if not config.api_key:
            logger.warning("paystack_secret_key_missing")
            return False
        self.client = ProviderHTTPClient(
            provider=self.name,
            base_url=config.base_url or PAYSTACK_API_BASE,
            timeout_seconds=config.timeout_seconds,
            headers={"Authorization": f"Bearer {config.api_key}"},
            transport=self._transport,
        )
        return True

    async def create_payment(self, params: CreatePaymentParams) -> PaymentIntent:
        """
        Initialize a Paystack transaction.

        Paystack requires a customer email; without one the intent fails
        before any API call.
        """
        if not self.is_configured() or self.client is None:
            error = self._not_configured_error()
            return self._failed_intent(params, str(error), error.code)
        if not params.customer_email:
            return self._failed_intent(
                params, "Paystack requires a customer email", "missing_customer_email"
            )

        reference = f"{params.invoice_id}-{params.attempt_number}"
        body: Dict[str, Any] = {
            "email": params.customer_email,
            "amount": to_minor_units(params.amount, params.currency),
            "currency": params.currency.upper(),
            "reference": reference,
            "metadata": {
                "tenant_id": params.tenant_id,
                "invoice_id": params.invoice_id,
                **{key: str(value) for key, value in params.metadata.items()},
            },
        }
        if params.return_url:
            body["callback_url"] = params.return_url

        try:
            response = await self._call(
                "create_payment", self.client.post, "/transaction/initialize", json=body
            )
        except ProviderError as e:
            return self._failed_intent(params, str(e), e.code)

        data = response.get("data") or {}
        if not response.get("status") or not data.get("authorization_url"):
            message = response.get("message") or "Paystack did not return an authorization URL"
            return self._failed_intent(params, message)

        logger.info(
            "transaction_initialized",
            provider=self.name,
            invoice_id=params.invoice_id,
            reference=data.get("reference", reference),
        )

        return PaymentIntent(
            id=self.generate_transaction_id(),
            provider=self.provider,
            amount=params.amount,
            currency=params.currency,
            status=PaymentIntentStatus.PENDING,
            external_payment_id=data.get("reference", reference),
            redirect_url=data["authorization_url"],
            client_secret=data.get("access_code"),
            metadata={"invoice_id": params.invoice_id},
        )

    async def get_payment_status(self, external_payment_id: str) -> PaymentStatus:
        """Verify a transaction by reference."""
        if not self.is_configured() or self.client is None:
            return self._failed_status(external_payment_id, self._not_configured_error())

        try:
            response = await self._call(
                "get_payment_status",
                self.client.get,
                f"/transaction/verify/{external_payment_id}",
                retry=True,
            )
        except ProviderError as e:
            return self._failed_status(external_payment_id, e)

        data = response.get("data") or {}
        currency = (data.get("currency") or "").upper()
        status = TRANSACTION_STATUS_MAP.get(data.get("status") or "", PaymentState.PENDING)
        return PaymentStatus(
            external_payment_id=external_payment_id,
            status=status,
            amount=from_minor_units(data.get("amount") or 0, currency or "NGN"),
            currency=currency,
            paid_at=_parse_paid_at(data.get("paid_at")),
            error_message=data.get("gateway_response") if status == PaymentState.FAILED else None,
        )

    async def refund(self, params: RefundParams) -> RefundResult:
        """Refund a transaction by reference."""
        if not self.is_configured() or self.client is None:
            return self._failed_refund(params, str(self._not_configured_error()))

        body: Dict[str, Any] = {"transaction": params.external_payment_id}
        if params.amount is not None:
            body["amount"] = to_minor_units(params.amount, params.currency)
        if params.reason:
            body["merchant_note"] = params.reason

        try:
            response = await self._call("refund", self.client.post, "/refund", json=body)
        except ProviderError as e:
            return self._failed_refund(params, str(e))

        data = response.get("data") or {}
        if data.get("status") == "processed":
            status = RefundStatus.SUCCEEDED
        elif data.get("status") == "failed":
            status = RefundStatus.FAILED
        else:
            status = RefundStatus.PENDING
        refund_id = data.get("id")
        return RefundResult(
            id=self.generate_transaction_id(),
            external_payment_id=params.external_payment_id,
            amount=from_minor_units(data.get("amount") or 0, params.currency),
            status=status,
            external_refund_id=str(refund_id) if refund_id is not None else None,
        )

    def verify_webhook_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        """HMAC-SHA512 hex of the raw body keyed with the secret key."""
        secret = None
        if self.config:
            secret = self.config.webhook_secret or self.config.api_key
        return verify_hmac(secret, raw_body, signature, hashlib.sha512)

    def normalize_webhook_event(self, payload: Mapping[str, Any]) -> NormalizedWebhookEvent:
        """Map a Paystack event onto the canonical event shape."""
        try:
            event = PaystackWebhookPayload.model_validate(payload)
        except ValidationError:
            return self._unknown_event(payload)

        data = event.data
        key = data.id if data.id is not None else data.reference
        event_id = f"{event.event}:{key}" if key is not None else None

        event_type = EVENT_TYPE_MAP.get(event.event, WebhookEventType.UNKNOWN)
        if event.event == "invoice.update" and data.status == "success":
            event_type = WebhookEventType.INVOICE_PAID
        if event_type == WebhookEventType.UNKNOWN or event_id is None:
            return self._unknown_event(payload, event_id)

        metadata = dict(data.metadata_dict)
        transaction = data.transaction or {}
        if event_type == WebhookEventType.REFUND_COMPLETED:
            external_payment_id = data.transaction_reference or transaction.get("reference")
        elif event_type == WebhookEventType.INVOICE_PAID or event.event == "invoice.payment_failed":
            external_payment_id = transaction.get("reference")
        else:
            external_payment_id = data.reference
        if event_type == WebhookEventType.PAYMENT_FAILED and data.gateway_response:
            metadata["error"] = data.gateway_response

        subscription_code = data.subscription_code or (
            data.subscription.subscription_code if data.subscription else None
        )
        currency = data.currency.upper() if data.currency else None
        amount = (
            from_minor_units(data.amount, currency)
            if data.amount is not None and currency
            else None
        )

        return NormalizedWebhookEvent(
            type=event_type,
            external_event_id=event_id,
            external_payment_id=external_payment_id,
            external_subscription_id=subscription_code,
            invoice_id=metadata.get("invoice_id"),
            amount=amount,
            currency=currency,
            tenant_id=metadata.get("tenant_id"),
            metadata=metadata,
            raw_payload=dict(payload),
        )

    async def aclose(self) -> None:
        if self.client is not None:
            await self.client.aclose()
