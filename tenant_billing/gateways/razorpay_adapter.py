"""
Razorpay adapter.

Payments are collected through Payment Links; the link's short_url is the
redirect handed back to the tenant. REST calls use basic auth with the
key id and key secret.
"""
import hashlib
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

import httpx
import structlog
from pydantic import ValidationError

from tenant_billing.core.money import from_minor_units, to_minor_units
from tenant_billing.gateways.base import GatewayAdapter, verify_hmac
from tenant_billing.gateways.http import ProviderHTTPClient
from tenant_billing.gateways.payloads import RazorpayEntity, RazorpayWebhookPayload
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
    SubscriptionCreateParams,
    SubscriptionResult,
    WebhookEventType,
)

logger = structlog.get_logger(__name__)

RAZORPAY_API_BASE = "https://api.razorpay.com"

EVENT_TYPE_MAP: Dict[str, WebhookEventType] = {
    "payment.captured": WebhookEventType.PAYMENT_SUCCEEDED,
    "subscription.charged": WebhookEventType.PAYMENT_SUCCEEDED,
    "payment_link.paid": WebhookEventType.PAYMENT_SUCCEEDED,
    "payment.failed": WebhookEventType.PAYMENT_FAILED,
    "subscription.cancelled": WebhookEventType.SUBSCRIPTION_CANCELLED,
    "refund.processed": WebhookEventType.REFUND_COMPLETED,
    "invoice.paid": WebhookEventType.INVOICE_PAID,
}

PAYMENT_STATUS_MAP: Dict[str, PaymentState] = {
    # payments
    "created": PaymentState.PENDING,
    "authorized": PaymentState.PROCESSING,
    "captured": PaymentState.SUCCEEDED,
    "refunded": PaymentState.REFUNDED,
    "failed": PaymentState.FAILED,
    # payment links
    "partially_paid": PaymentState.PROCESSING,
    "paid": PaymentState.SUCCEEDED,
    "cancelled": PaymentState.CANCELLED,
    "expired": PaymentState.CANCELLED,
}


class RazorpayAdapter(GatewayAdapter):
    """Razorpay Payment Links and Subscriptions integration."""

    provider = GatewayProvider.RAZORPAY
    signature_header = "X-Razorpay-Signature"
    supports_subscriptions = True

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        super().__init__()
        self._transport = transport
        self.client: Optional[ProviderHTTPClient] = None

    def _setup(self, config: GatewayConfig) -> bool:
        if not config.api_key or not config.api_secret:
            logger.warning("razorpay_credentials_missing")
            return False
        self.client = ProviderHTTPClient(
            provider=self.name,
            base_url=config.base_url or RAZORPAY_API_BASE,
            timeout_seconds=config.timeout_seconds,
            auth=(config.api_key, config.api_secret),
            transport=self._transport,
        )
        return True

    async def create_payment(self, params: CreatePaymentParams) -> PaymentIntent:
        """
        Create a Razorpay Payment Link for an invoice.

        The link's reference_id is unique per invoice attempt, so a
        re-sent create is rejected by Razorpay instead of duplicating.
        """
        if not self.is_configured() or self.client is None:
            error = self._not_configured_error()
            return self._failed_intent(params, str(error), error.code)

        notes = {
            "tenant_id": params.tenant_id,
            "invoice_id": params.invoice_id,
            **{key: str(value) for key, value in params.metadata.items()},
        }
        body: Dict[str, Any] = {
            "amount": to_minor_units(params.amount, params.currency),
            "currency": params.currency.upper(),
            "description": params.description[:2048],
            "reference_id": f"{params.invoice_id}-{params.attempt_number}"[:40],
            "notes": notes,
        }
        if params.customer_email:
            body["customer"] = {"email": params.customer_email}
            body["notify"] = {"email": True}
        if params.return_url:
            body["callback_url"] = params.return_url
            body["callback_method"] = "get"

        try:
            link = await self._call("create_payment", self.client.post, "/v1/payment_links", json=body)
        except ProviderError as e:
            return self._failed_intent(params, str(e), e.code)

        logger.info(
            "payment_link_created",
            provider=self.name,
            invoice_id=params.invoice_id,
            payment_link_id=link.get("id"),
        )

        return PaymentIntent(
            id=self.generate_transaction_id(),
            provider=self.provider,
            amount=params.amount,
            currency=params.currency,
            status=PaymentIntentStatus.PENDING,
            external_payment_id=link.get("id"),
            redirect_url=link.get("short_url"),
            metadata={"invoice_id": params.invoice_id},
        )

    async def get_payment_status(self, external_payment_id: str) -> PaymentStatus:
        """Fetch a payment link (plink_*) or a payment (pay_*)."""
        if not self.is_configured() or self.client is None:
            return self._failed_status(external_payment_id, self._not_configured_error())

        if external_payment_id.startswith("plink_"):
            path = f"/v1/payment_links/{external_payment_id}"
        else:
            path = f"/v1/payments/{external_payment_id}"

        try:
            entity = await self._call("get_payment_status", self.client.get, path, retry=True)
        except ProviderError as e:
            return self._failed_status(external_payment_id, e)

        currency = (entity.get("currency") or "").upper()
        status = PAYMENT_STATUS_MAP.get(entity.get("status") or "", PaymentState.PENDING)
        paid_at = None
        if status == PaymentState.SUCCEEDED:
            paid_at = datetime.now(timezone.utc)
        return PaymentStatus(
            external_payment_id=external_payment_id,
            status=status,
            amount=from_minor_units(entity.get("amount") or 0, currency or "INR"),
            currency=currency,
            paid_at=paid_at,
            error_code=entity.get("error_code"),
            error_message=entity.get("error_description"),
        )

    async def refund(self, params: RefundParams) -> RefundResult:
        """Refund a captured payment."""
        if not self.is_configured() or self.client is None:
            return self._failed_refund(params, str(self._not_configured_error()))

        body: Dict[str, Any] = {}
        if params.amount is not None:
            body["amount"] = to_minor_units(params.amount, params.currency)
        if params.reason:
            body["notes"] = {"reason": params.reason}

        try:
            refund = await self._call(
                "refund",
                self.client.post,
                f"/v1/payments/{params.external_payment_id}/refund",
                json=body,
            )
        except ProviderError as e:
            return self._failed_refund(params, str(e))

        if refund.get("status") == "processed":
            status = RefundStatus.SUCCEEDED
        elif refund.get("status") == "failed":
            status = RefundStatus.FAILED
        else:
            status = RefundStatus.PENDING
        return RefundResult(
            id=self.generate_transaction_id(),
            external_payment_id=params.external_payment_id,
            amount=from_minor_units(refund.get("amount") or 0, params.currency),
            status=status,
            external_refund_id=refund.get("id"),
        )

    async def create_subscription(self, params: SubscriptionCreateParams) -> SubscriptionResult:
        """Create a Razorpay subscription on an existing plan."""
        if not self.is_configured() or self.client is None:
            return SubscriptionResult(success=False, error=str(self._not_configured_error()))

        body = {
            "plan_id": params.external_plan_id,
            "total_count": params.total_count,
            "customer_notify": 1,
            "notes": {"tenant_id": params.tenant_id, "plan_code": params.plan_code, **params.metadata},
        }
        try:
            subscription = await self._call(
                "create_subscription", self.client.post, "/v1/subscriptions", json=body
            )
        except ProviderError as e:
            return SubscriptionResult(success=False, error=str(e))

        return SubscriptionResult(
            success=True,
            external_subscription_id=subscription.get("id"),
            status=subscription.get("status"),
            redirect_url=subscription.get("short_url"),
        )

    async def cancel_subscription(self, external_subscription_id: str) -> bool:
        """Cancel a Razorpay subscription immediately."""
        if not self.is_configured() or self.client is None:
            return False
        try:
            await self._call(
                "cancel_subscription",
                self.client.post,
                f"/v1/subscriptions/{external_subscription_id}/cancel",
                json={"cancel_at_cycle_end": 0},
            )
        except ProviderError:
            return False
        return True

    def verify_webhook_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        """HMAC-SHA256 hex of the raw body keyed with the webhook secret."""
        secret = self.config.webhook_secret if self.config else None
        return verify_hmac(secret, raw_body, signature, hashlib.sha256)

    def normalize_webhook_event(self, payload: Mapping[str, Any]) -> NormalizedWebhookEvent:
        """Map a Razorpay event onto the canonical event shape."""
        try:
            event = RazorpayWebhookPayload.model_validate(payload)
        except ValidationError:
            return self._unknown_event(payload)

        sections = event.payload
        payment = sections.payment.entity if sections.payment else None
        subscription = sections.subscription.entity if sections.subscription else None
        refund = sections.refund.entity if sections.refund else None
        invoice = sections.invoice.entity if sections.invoice else None
        payment_link = sections.payment_link.entity if sections.payment_link else None

        primary: Optional[RazorpayEntity] = (
            refund or payment_link or payment or invoice or subscription
        )
        event_id = event.id or (
            f"rzp_{event.account_id}_{event.created_at}_{event.event}_"
            f"{primary.id if primary else 'none'}"
        )

        event_type = EVENT_TYPE_MAP.get(event.event, WebhookEventType.UNKNOWN)
        if event_type == WebhookEventType.UNKNOWN:
            return self._unknown_event(payload, event_id)

        notes: Dict[str, Any] = {}
        for entity in (subscription, invoice, payment, payment_link, refund):
            if entity is not None:
                notes.update(entity.notes_dict)

        external_payment_id: Optional[str] = None
        amount_source: Optional[RazorpayEntity] = None
        if event.event == "payment_link.paid" and payment_link is not None:
            external_payment_id = payment.id if payment is not None else payment_link.id
            amount_source = payment or payment_link
            notes.setdefault("payment_link_id", payment_link.id)
        elif event_type == WebhookEventType.REFUND_COMPLETED and refund is not None:
            external_payment_id = refund.payment_id
            amount_source = refund
        elif payment is not None:
            external_payment_id = payment.id
            amount_source = payment
        elif invoice is not None:
            external_payment_id = invoice.payment_id
            amount_source = invoice

        currency = None
        amount = None
        if amount_source is not None and amount_source.currency:
            currency = amount_source.currency.upper()
            minor = amount_source.amount_paid if amount_source is invoice else amount_source.amount
            if minor is not None:
                amount = from_minor_units(minor, currency)

        metadata = dict(notes)
        if event_type == WebhookEventType.PAYMENT_FAILED and payment is not None:
            metadata["error"] = payment.error_description
            metadata["error_code"] = payment.error_code

        return NormalizedWebhookEvent(
            type=event_type,
            external_event_id=event_id,
            external_payment_id=external_payment_id,
            external_subscription_id=(
                subscription.id if subscription else (invoice.subscription_id if invoice else None)
            ),
            invoice_id=notes.get("invoice_id"),
            amount=amount,
            currency=currency,
            tenant_id=notes.get("tenant_id"),
            metadata=metadata,
            raw_payload=dict(payload),
        )

    async def aclose(self) -> None:
        if self.client is not None:
            await self.client.aclose()
