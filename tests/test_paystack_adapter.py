"""
Tests for the Paystack adapter against a mocked HTTP transport.
"""
import hashlib
import hmac
import json
from decimal import Decimal
from typing import List

import httpx
import pytest
from tenacity import wait_none

from tenant_billing.gateways.base import SubscriptionCapable
from tenant_billing.gateways.paystack_adapter import PaystackAdapter
from tenant_billing.gateways.types import (
    CreatePaymentParams,
    GatewayConfig,
    GatewayProvider,
    PaymentIntentStatus,
    PaymentState,
    RefundParams,
    RefundStatus,
    WebhookEventType,
)

SECRET_KEY = "sk_test_paystack"


def make_adapter(handler) -> PaystackAdapter:
    adapter = PaystackAdapter(transport=httpx.MockTransport(handler))
    adapter.initialize(GatewayConfig(provider=GatewayProvider.PAYSTACK, api_key=SECRET_KEY))
    adapter.retry_wait = wait_none()
    return adapter


@pytest.fixture
def params() -> CreatePaymentParams:
    return CreatePaymentParams(
        tenant_id="tenant-ng",
        invoice_id="inv-7",
        amount=Decimal("53750.00"),
        currency="NGN",
        description="Subscription: growth (INV-7)",
        customer_email="finance@jollof.test",
        return_url="https://billing.test/billing/success",
    )


class TestPaystackPayments:
    """Transaction initialize, verify and refund."""

    @pytest.mark.unit
    def test_no_managed_subscriptions(self) -> None:
        adapter = PaystackAdapter()

        assert not adapter.supports_subscriptions
        assert not isinstance(adapter, SubscriptionCapable)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_initialize_transaction(self, params: CreatePaymentParams) -> None:
        requests: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(
                200,
                json={
                    "status": True,
                    "message": "Authorization URL created",
                    "data": {
                        "authorization_url": "https://checkout.paystack.com/abc",
                        "access_code": "abc",
                        "reference": "inv-7-1",
                    },
                },
            )

        adapter = make_adapter(handler)
        intent = await adapter.create_payment(params)
        await adapter.aclose()

        assert intent.status == PaymentIntentStatus.PENDING
        assert intent.external_payment_id == "inv-7-1"
        assert intent.payment_url == "https://checkout.paystack.com/abc"

        request = requests[0]
        assert request.url.path == "/transaction/initialize"
        assert request.headers["Authorization"] == f"Bearer {SECRET_KEY}"
        body = json.loads(request.content)
        assert body["amount"] == 5375000
        assert body["email"] == "finance@jollof.test"
        assert body["reference"] == "inv-7-1"
        assert body["metadata"] == {"tenant_id": "tenant-ng", "invoice_id": "inv-7"}
        assert body["callback_url"] == "https://billing.test/billing/success"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_email_required(self, params: CreatePaymentParams) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json={})

        no_email = CreatePaymentParams(
            tenant_id=params.tenant_id,
            invoice_id=params.invoice_id,
            amount=params.amount,
            currency=params.currency,
            description=params.description,
        )
        intent = await make_adapter(handler).create_payment(no_email)

        assert calls == []
        assert intent.status == PaymentIntentStatus.FAILED
        assert intent.metadata["error_code"] == "missing_customer_email"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_authorization_url_fails(self, params: CreatePaymentParams) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"status": False, "message": "Invalid currency"})

        intent = await make_adapter(handler).create_payment(params)

        assert intent.status == PaymentIntentStatus.FAILED
        assert intent.error == "Invalid currency"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_timeout_fails_intent(self, params: CreatePaymentParams) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=request)

        intent = await make_adapter(handler).create_payment(params)

        assert intent.status == PaymentIntentStatus.FAILED
        assert intent.metadata["error_code"] == "timeout"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_verify_transaction(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/transaction/verify/inv-7-1"
            return httpx.Response(
                200,
                json={
                    "status": True,
                    "data": {
                        "status": "success",
                        "amount": 5375000,
                        "currency": "NGN",
                        "paid_at": "2024-05-01T10:00:00.000Z",
                    },
                },
            )

        status = await make_adapter(handler).get_payment_status("inv-7-1")

        assert status.status == PaymentState.SUCCEEDED
        assert status.amount == Decimal("53750.00")
        assert status.paid_at is not None
        assert status.paid_at.year == 2024

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/refund"
            assert json.loads(request.content) == {
                "transaction": "inv-7-1",
                "merchant_note": "duplicate charge",
            }
            return httpx.Response(
                200,
                json={"status": True, "data": {"id": 991, "status": "processed", "amount": 5375000}},
            )

        result = await make_adapter(handler).refund(
            RefundParams(external_payment_id="inv-7-1", currency="NGN", reason="duplicate charge")
        )

        assert result.status == RefundStatus.SUCCEEDED
        assert result.external_refund_id == "991"
        assert result.amount == Decimal("53750.00")


class TestPaystackWebhooks:
    """Signature verification and event normalization."""

    @pytest.fixture
    def adapter(self) -> PaystackAdapter:
        return make_adapter(lambda request: httpx.Response(200, json={}))

    @pytest.mark.unit
    def test_sha512_signature_with_secret_key(self, adapter: PaystackAdapter) -> None:
        body = b'{"event": "charge.success"}'
        signature = hmac.new(SECRET_KEY.encode(), body, hashlib.sha512).hexdigest()
        sha256_signature = hmac.new(SECRET_KEY.encode(), body, hashlib.sha256).hexdigest()

        assert adapter.verify_webhook_signature(body, signature)
        assert not adapter.verify_webhook_signature(body, sha256_signature)

    @pytest.mark.unit
    def test_non_ascii_signature_rejected(self, adapter: PaystackAdapter) -> None:
        body = b'{"event": "charge.success"}'

        assert not adapter.verify_webhook_signature(body, "\u00e9" * 128)

    @pytest.mark.unit
    def test_charge_success(self, adapter: PaystackAdapter) -> None:
        event = adapter.normalize_webhook_event(
            {
                "event": "charge.success",
                "data": {
                    "id": 302961,
                    "reference": "inv-7-1",
                    "amount": 5375000,
                    "currency": "NGN",
                    "status": "success",
                    "metadata": {"tenant_id": "tenant-ng", "invoice_id": "inv-7"},
                },
            }
        )

        assert event.type == WebhookEventType.PAYMENT_SUCCEEDED
        assert event.external_event_id == "charge.success:302961"
        assert event.external_payment_id == "inv-7-1"
        assert event.amount == Decimal("53750.00")
        assert event.tenant_id == "tenant-ng"
        assert event.invoice_id == "inv-7"

    @pytest.mark.unit
    def test_charge_failed_carries_gateway_response(self, adapter: PaystackAdapter) -> None:
        event = adapter.normalize_webhook_event(
            {
                "event": "charge.failed",
                "data": {
                    "reference": "inv-7-2",
                    "gateway_response": "Insufficient Funds",
                    "metadata": "",
                },
            }
        )

        assert event.type == WebhookEventType.PAYMENT_FAILED
        assert event.external_event_id == "charge.failed:inv-7-2"
        assert event.metadata == {"error": "Insufficient Funds"}

    @pytest.mark.unit
    def test_invoice_update_success_is_invoice_paid(self, adapter: PaystackAdapter) -> None:
        event = adapter.normalize_webhook_event(
            {
                "event": "invoice.update",
                "data": {
                    "id": 77,
                    "status": "success",
                    "amount": 5375000,
                    "currency": "NGN",
                    "subscription": {"subscription_code": "SUB_abc"},
                    "transaction": {"reference": "inv-7-1"},
                },
            }
        )

        assert event.type == WebhookEventType.INVOICE_PAID
        assert event.external_payment_id == "inv-7-1"
        assert event.external_subscription_id == "SUB_abc"

    @pytest.mark.unit
    def test_refund_processed(self, adapter: PaystackAdapter) -> None:
        event = adapter.normalize_webhook_event(
            {
                "event": "refund.processed",
                "data": {
                    "id": 991,
                    "transaction_reference": "inv-7-1",
                    "amount": 100000,
                    "currency": "NGN",
                },
            }
        )

        assert event.type == WebhookEventType.REFUND_COMPLETED
        assert event.external_payment_id == "inv-7-1"
        assert event.amount == Decimal("1000.00")

    @pytest.mark.unit
    def test_unmapped_event(self, adapter: PaystackAdapter) -> None:
        event = adapter.normalize_webhook_event(
            {"event": "transfer.success", "data": {"id": 5}}
        )

        assert event.type == WebhookEventType.UNKNOWN
        assert event.external_event_id == "transfer.success:5"
