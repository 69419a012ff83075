"""
Stripe adapter.

Implements:
- Idempotent PaymentIntent creation
- Refunds and status polling
- Managed subscriptions
- Webhook signature verification with Stripe's verifier
"""
import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

import stripe
import structlog
from pydantic import ValidationError

from tenant_billing.core.money import from_minor_units, to_minor_units
from tenant_billing.gateways.base import GatewayAdapter
from tenant_billing.gateways.payloads import StripeWebhookPayload
from tenant_billing.gateways.resilience import ProviderError, ProviderErrorType
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

EVENT_TYPE_MAP: Dict[str, WebhookEventType] = {
    "payment_intent.succeeded": WebhookEventType.PAYMENT_SUCCEEDED,
    "payment_intent.payment_failed": WebhookEventType.PAYMENT_FAILED,
    "customer.subscription.deleted": WebhookEventType.SUBSCRIPTION_CANCELLED,
    "charge.refunded": WebhookEventType.REFUND_COMPLETED,
    "invoice.paid": WebhookEventType.INVOICE_PAID,
}

STATUS_MAP: Dict[str, PaymentIntentStatus] = {
    "succeeded": PaymentIntentStatus.SUCCEEDED,
    "processing": PaymentIntentStatus.PROCESSING,
    "canceled": PaymentIntentStatus.CANCELLED,
    "requires_payment_method": PaymentIntentStatus.PENDING,
    "requires_confirmation": PaymentIntentStatus.PENDING,
    "requires_action": PaymentIntentStatus.PENDING,
    "requires_capture": PaymentIntentStatus.PENDING,
}

# Stripe only accepts these values for Refund.reason.
REFUND_REASONS = frozenset({"duplicate", "fraudulent", "requested_by_customer"})

WEBHOOK_TOLERANCE_SECONDS = 300


def _map_status(status: Optional[str]) -> PaymentIntentStatus:
    return STATUS_MAP.get(status or "", PaymentIntentStatus.PENDING)


class StripeAdapter(GatewayAdapter):
    """Stripe PaymentIntents integration."""

    provider = GatewayProvider.STRIPE
    signature_header = "Stripe-Signature"
    supports_subscriptions = True

    def __init__(self, api_version: Optional[str] = None) -> None:
        super().__init__()
        self._api_key: Optional[str] = None
        self._api_version = api_version

    def _setup(self, config: GatewayConfig) -> bool:
        if not config.api_key:
            logger.warning("stripe_api_key_missing")
            return False
        if not config.api_key.startswith(("sk_test_", "sk_live_")):
            logger.warning("stripe_api_key_invalid_format")
            return False
        self._api_key = config.api_key
        return True

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> ProviderErrorType:
        """
        Classify Stripe error for retry logic.

        Args:
            error: Stripe error

        Returns:
            ProviderErrorType: Error classification
        """
        if isinstance(error, stripe.RateLimitError):
            return ProviderErrorType.RATE_LIMIT
        elif isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
            return ProviderErrorType.TRANSIENT
        elif isinstance(
            error,
            (
                stripe.CardError,
                stripe.InvalidRequestError,
                stripe.AuthenticationError,
                stripe.PermissionError,
                stripe.IdempotencyError,
            ),
        ):
            return ProviderErrorType.PERMANENT
        else:
            # Unknown errors are treated as transient
            return ProviderErrorType.TRANSIENT

    def _to_provider_error(self, error: stripe.StripeError) -> ProviderError:
        return ProviderError(
            getattr(error, "user_message", None) or str(error),
            self._classify_error(error),
            original_error=error,
            code=getattr(error, "code", None),
        )

    async def _request(self, func: Any, *args: Any, **kwargs: Any) -> Any:
        """Run a blocking SDK call in a worker thread with this adapter's key."""
        if self._api_version:
            kwargs["stripe_version"] = self._api_version
        try:
            return await asyncio.to_thread(func, *args, api_key=self._api_key, **kwargs)
        except stripe.StripeError as e:
            raise self._to_provider_error(e) from e

    async def create_payment(self, params: CreatePaymentParams) -> PaymentIntent:
        """
        Create a Stripe PaymentIntent with idempotency.

        Args:
            params: Payment parameters

        Returns:
            PaymentIntent: Pending intent carrying the client secret, or a
            failed intent with metadata["error"]
        """
        if not self.is_configured():
            error = self._not_configured_error()
            return self._failed_intent(params, str(error), error.code)

        metadata = {
            "tenant_id": params.tenant_id,
            "invoice_id": params.invoice_id,
            **{key: str(value) for key, value in params.metadata.items()},
        }
        create_kwargs: Dict[str, Any] = {
            "amount": to_minor_units(params.amount, params.currency),
            "currency": params.currency.lower(),
            "description": params.description,
            "metadata": metadata,
            "automatic_payment_methods": {"enabled": True},
            "idempotency_key": params.idempotency_key,
        }
        if params.customer_email:
            create_kwargs["receipt_email"] = params.customer_email

        logger.info(
            "creating_payment_intent",
            provider=self.name,
            invoice_id=params.invoice_id,
            idempotency_key=params.idempotency_key,
        )

        try:
            payment_intent = await self._call(
                "create_payment",
                self._request,
                stripe.PaymentIntent.create,
                retry=True,
                **create_kwargs,
            )
        except ProviderError as e:
            return self._failed_intent(params, str(e), e.code)

        logger.info(
            "payment_intent_created",
            provider=self.name,
            payment_intent_id=payment_intent["id"],
            status=payment_intent["status"],
        )

        return PaymentIntent(
            id=self.generate_transaction_id(),
            provider=self.provider,
            amount=params.amount,
            currency=params.currency,
            status=_map_status(payment_intent["status"]),
            external_payment_id=payment_intent["id"],
            client_secret=payment_intent.get("client_secret"),
            metadata={"invoice_id": params.invoice_id},
        )

    async def get_payment_status(self, external_payment_id: str) -> PaymentStatus:
        """Retrieve a PaymentIntent and map its status."""
        if not self.is_configured():
            return self._failed_status(external_payment_id, self._not_configured_error())

        try:
            payment_intent = await self._call(
                "get_payment_status",
                self._request,
                stripe.PaymentIntent.retrieve,
                external_payment_id,
                retry=True,
            )
        except ProviderError as e:
            return self._failed_status(external_payment_id, e)

        status = payment_intent["status"]
        currency = (payment_intent.get("currency") or "").upper()
        return PaymentStatus(
            external_payment_id=external_payment_id,
            status=PaymentState(_map_status(status).value),
            amount=from_minor_units(payment_intent.get("amount") or 0, currency),
            currency=currency,
            paid_at=datetime.now(timezone.utc) if status == "succeeded" else None,
        )

    async def refund(self, params: RefundParams) -> RefundResult:
        """Create a refund for a PaymentIntent."""
        if not self.is_configured():
            return self._failed_refund(params, str(self._not_configured_error()))

        refund_kwargs: Dict[str, Any] = {"payment_intent": params.external_payment_id}
        if params.amount is not None:
            refund_kwargs["amount"] = to_minor_units(params.amount, params.currency)
        if params.reason in REFUND_REASONS:
            refund_kwargs["reason"] = params.reason
        elif params.reason:
            refund_kwargs["metadata"] = {"reason": params.reason}
        if params.idempotency_key:
            refund_kwargs["idempotency_key"] = params.idempotency_key

        logger.info(
            "creating_refund",
            provider=self.name,
            payment_intent_id=params.external_payment_id,
            amount=str(params.amount) if params.amount is not None else None,
        )

        try:
            refund = await self._call(
                "refund",
                self._request,
                stripe.Refund.create,
                retry=bool(params.idempotency_key),
                **refund_kwargs,
            )
        except ProviderError as e:
            return self._failed_refund(params, str(e))

        logger.info("refund_created", provider=self.name, refund_id=refund["id"], status=refund["status"])

        if refund["status"] == "succeeded":
            status = RefundStatus.SUCCEEDED
        elif refund["status"] in ("failed", "canceled"):
            status = RefundStatus.FAILED
        else:
            status = RefundStatus.PENDING
        return RefundResult(
            id=self.generate_transaction_id(),
            external_payment_id=params.external_payment_id,
            amount=from_minor_units(refund.get("amount") or 0, params.currency),
            status=status,
            external_refund_id=refund["id"],
        )

    async def create_subscription(self, params: SubscriptionCreateParams) -> SubscriptionResult:
        """Create a customer and a Stripe subscription on an existing price."""
        if not self.is_configured():
            return SubscriptionResult(success=False, error=str(self._not_configured_error()))

        metadata = {"tenant_id": params.tenant_id, "plan_code": params.plan_code, **params.metadata}
        try:
            customer_kwargs: Dict[str, Any] = {
                "metadata": metadata,
                "idempotency_key": f"customer:{params.tenant_id}",
            }
            if params.customer_email:
                customer_kwargs["email"] = params.customer_email
            customer = await self._call(
                "create_customer",
                self._request,
                stripe.Customer.create,
                retry=True,
                **customer_kwargs,
            )
            subscription = await self._call(
                "create_subscription",
                self._request,
                stripe.Subscription.create,
                retry=True,
                customer=customer["id"],
                items=[{"price": params.external_plan_id}],
                metadata=metadata,
                idempotency_key=f"subscription:{params.tenant_id}:{params.plan_code}",
            )
        except ProviderError as e:
            return SubscriptionResult(success=False, error=str(e))

        logger.info(
            "subscription_created",
            provider=self.name,
            tenant_id=params.tenant_id,
            subscription_id=subscription["id"],
        )
        return SubscriptionResult(
            success=True,
            external_subscription_id=subscription["id"],
            status=subscription.get("status"),
        )

    async def cancel_subscription(self, external_subscription_id: str) -> bool:
        """Cancel a Stripe subscription immediately."""
        if not self.is_configured():
            return False
        try:
            await self._call(
                "cancel_subscription",
                self._request,
                stripe.Subscription.cancel,
                external_subscription_id,
            )
        except ProviderError:
            return False
        return True

    def verify_webhook_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        """Verify the Stripe-Signature header (timestamped HMAC-SHA256)."""
        secret = self.config.webhook_secret if self.config else None
        if not secret or not signature or not signature.isascii():
            return False
        try:
            stripe.WebhookSignature.verify_header(
                raw_body.decode("utf-8"), signature, secret, WEBHOOK_TOLERANCE_SECONDS
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError, TypeError) as e:
            logger.warning("stripe_signature_verification_failed", error=str(e))
            return False
        return True

    def normalize_webhook_event(self, payload: Mapping[str, Any]) -> NormalizedWebhookEvent:
        """Map a Stripe event onto the canonical event shape."""
        try:
            event = StripeWebhookPayload.model_validate(payload)
        except ValidationError:
            event_id = payload.get("id")
            return self._unknown_event(payload, event_id if isinstance(event_id, str) else None)

        event_type = EVENT_TYPE_MAP.get(event.type, WebhookEventType.UNKNOWN)
        if event_type == WebhookEventType.UNKNOWN:
            return self._unknown_event(payload, event.id)

        obj = event.data.object
        currency = obj.currency.upper() if obj.currency else None
        metadata = dict(obj.metadata)

        external_payment_id: Optional[str] = None
        external_subscription_id: Optional[str] = obj.subscription
        minor_amount: Optional[int] = obj.amount

        if event_type in (WebhookEventType.PAYMENT_SUCCEEDED, WebhookEventType.PAYMENT_FAILED):
            external_payment_id = obj.id
            if event_type == WebhookEventType.PAYMENT_FAILED and obj.last_payment_error:
                metadata["error"] = obj.last_payment_error.get("message")
        elif event_type == WebhookEventType.REFUND_COMPLETED:
            external_payment_id = obj.payment_intent or obj.id
            minor_amount = obj.amount_refunded
        elif event_type == WebhookEventType.INVOICE_PAID:
            external_payment_id = obj.payment_intent
            minor_amount = obj.amount_paid
        elif event_type == WebhookEventType.SUBSCRIPTION_CANCELLED:
            external_subscription_id = obj.id
            minor_amount = None

        amount = (
            from_minor_units(minor_amount, currency)
            if minor_amount is not None and currency
            else None
        )

        return NormalizedWebhookEvent(
            type=event_type,
            external_event_id=event.id,
            external_payment_id=external_payment_id,
            external_subscription_id=external_subscription_id,
            invoice_id=metadata.get("invoice_id"),
            amount=amount,
            currency=currency,
            tenant_id=metadata.get("tenant_id"),
            metadata=metadata,
            raw_payload=dict(payload),
        )
