"""
Tests for the Razorpay adapter against a mocked HTTP transport.
"""
import hashlib
import hmac
import json
from decimal import Decimal
from typing import Any, Callable, Dict, List

import httpx
import pytest
from tenacity import wait_none

from tenant_billing.gateways.razorpay_adapter import RazorpayAdapter
from tenant_billing.gateways.types import (
    CreatePaymentParams,
    GatewayConfig,
    GatewayProvider,
    PaymentIntentStatus,
    PaymentState,
    RefundParams,
    RefundStatus,
    SubscriptionCreateParams,
    WebhookEventType,
)

WEBHOOK_SECRET = "rzp_whsec_test"

Handler = Callable[[httpx.Request], httpx.Response]


def make_adapter(handler: Handler) -> RazorpayAdapter:
    adapter = RazorpayAdapter(transport=httpx.MockTransport(handler))
    adapter.initialize(
        GatewayConfig(
            provider=GatewayProvider.RAZORPAY,
            api_key="rzp_test_key",
            api_secret="rzp_test_secret",
            webhook_secret=WEBHOOK_SECRET,
        )
    )
    adapter.retry_wait = wait_none()
    return adapter


@pytest.fixture
def params() -> CreatePaymentParams:
    return CreatePaymentParams(
        tenant_id="tenant-in",
        invoice_id="inv-42",
        amount=Decimal("9438.82"),
        currency="INR",
        description="Subscription: growth (INV-42)",
        customer_email="accounts@chai.test",
        return_url="https://billing.test/billing/success",
        attempt_number=2,
    )


class TestRazorpayPayments:
    """Payment link creation, status and refunds."""

    @pytest.mark.unit
    def test_requires_key_and_secret(self) -> None:
        adapter = RazorpayAdapter()
        adapter.initialize(GatewayConfig(provider=GatewayProvider.RAZORPAY, api_key="rzp_test_key"))

        assert not adapter.is_configured()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_payment_link(self, params: CreatePaymentParams) -> None:
        requests: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(
                200,
                json={"id": "plink_abc", "short_url": "https://rzp.io/i/abc", "status": "created"},
            )

        adapter = make_adapter(handler)
        intent = await adapter.create_payment(params)
        await adapter.aclose()

        assert intent.status == PaymentIntentStatus.PENDING
        assert intent.external_payment_id == "plink_abc"
        assert intent.payment_url == "https://rzp.io/i/abc"

        request = requests[0]
        assert request.method == "POST"
        assert request.url.path == "/v1/payment_links"
        assert request.headers["Authorization"].startswith("Basic ")
        body = json.loads(request.content)
        assert body["amount"] == 943882
        assert body["currency"] == "INR"
        assert body["reference_id"] == "inv-42-2"
        assert body["notes"] == {"tenant_id": "tenant-in", "invoice_id": "inv-42"}
        assert body["customer"] == {"email": "accounts@chai.test"}
        assert body["callback_url"] == "https://billing.test/billing/success"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_provider_rejection_is_not_retried(self, params: CreatePaymentParams) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(
                400,
                json={
                    "error": {
                        "code": "BAD_REQUEST_ERROR",
                        "description": "reference_id already exists",
                    }
                },
            )

        adapter = make_adapter(handler)
        intent = await adapter.create_payment(params)

        assert len(calls) == 1
        assert intent.status == PaymentIntentStatus.FAILED
        assert intent.error == "reference_id already exists"
        assert intent.metadata["error_code"] == "BAD_REQUEST_ERROR"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_status_of_payment_link(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1/payment_links/plink_abc"
            return httpx.Response(200, json={"status": "paid", "amount": 943882, "currency": "INR"})

        status = await make_adapter(handler).get_payment_status("plink_abc")

        assert status.status == PaymentState.SUCCEEDED
        assert status.amount == Decimal("9438.82")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_status_read_retried_on_server_error(self) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(503, json={"error": {"description": "unavailable"}})
            assert request.url.path == "/v1/payments/pay_1"
            return httpx.Response(
                200, json={"status": "failed", "amount": 100, "currency": "inr",
                           "error_code": "BAD_REQUEST_ERROR",
                           "error_description": "Payment was declined"}
            )

        status = await make_adapter(handler).get_payment_status("pay_1")

        assert len(calls) == 3
        assert status.status == PaymentState.FAILED
        assert status.error_message == "Payment was declined"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1/payments/pay_1/refund"
            assert json.loads(request.content) == {
                "amount": 50000,
                "notes": {"reason": "downgrade"},
            }
            return httpx.Response(200, json={"id": "rfnd_1", "status": "processed", "amount": 50000})

        result = await make_adapter(handler).refund(
            RefundParams(
                external_payment_id="pay_1",
                currency="INR",
                amount=Decimal("500.00"),
                reason="downgrade",
            )
        )

        assert result.status == RefundStatus.SUCCEEDED
        assert result.amount == Decimal("500.00")
        assert result.external_refund_id == "rfnd_1"


class TestRazorpaySubscriptions:
    """Managed subscriptions."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_and_cancel(self) -> None:
        paths: List[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.path)
            if request.url.path == "/v1/subscriptions":
                return httpx.Response(
                    200,
                    json={"id": "sub_1", "status": "created", "short_url": "https://rzp.io/i/sub"},
                )
            return httpx.Response(200, json={"id": "sub_1", "status": "cancelled"})

        adapter = make_adapter(handler)
        result = await adapter.create_subscription(
            SubscriptionCreateParams(
                tenant_id="tenant-in", plan_code="growth", external_plan_id="plan_rzp_1"
            )
        )
        cancelled = await adapter.cancel_subscription("sub_1")

        assert result.success
        assert result.external_subscription_id == "sub_1"
        assert result.redirect_url == "https://rzp.io/i/sub"
        assert cancelled
        assert paths == ["/v1/subscriptions", "/v1/subscriptions/sub_1/cancel"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel_failure_returns_false(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"error": {"description": "already cancelled"}})

        assert not await make_adapter(handler).cancel_subscription("sub_1")


def _event(event: str, **sections: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "entity": "event",
        "account_id": "acc_1",
        "event": event,
        "created_at": 1700000000,
        "payload": {name: {"entity": entity} for name, entity in sections.items()},
    }


class TestRazorpayWebhooks:
    """Signature verification and event normalization."""

    @pytest.fixture
    def adapter(self) -> RazorpayAdapter:
        return make_adapter(lambda request: httpx.Response(200, json={}))

    @pytest.mark.unit
    def test_signature(self, adapter: RazorpayAdapter) -> None:
        body = b'{"event": "payment.captured"}'
        signature = hmac.new(WEBHOOK_SECRET.encode(), body, hashlib.sha256).hexdigest()

        assert adapter.verify_webhook_signature(body, signature)
        assert not adapter.verify_webhook_signature(body + b" ", signature)
        assert not adapter.verify_webhook_signature(body, None)

    @pytest.mark.unit
    def test_non_ascii_signature_rejected(self, adapter: RazorpayAdapter) -> None:
        body = b'{"event": "payment.captured"}'

        assert not adapter.verify_webhook_signature(body, "\u00e9" * 64)

    @pytest.mark.unit
    def test_payment_captured(self, adapter: RazorpayAdapter) -> None:
        event = adapter.normalize_webhook_event(
            _event(
                "payment.captured",
                payment={
                    "id": "pay_1",
                    "amount": 943882,
                    "currency": "INR",
                    "status": "captured",
                    "notes": {"tenant_id": "tenant-in", "invoice_id": "inv-42"},
                },
            )
        )

        assert event.type == WebhookEventType.PAYMENT_SUCCEEDED
        assert event.external_payment_id == "pay_1"
        assert event.amount == Decimal("9438.82")
        assert event.tenant_id == "tenant-in"
        assert event.invoice_id == "inv-42"
        assert event.external_event_id == "rzp_acc_1_1700000000_payment.captured_pay_1"

    @pytest.mark.unit
    def test_payment_link_paid_prefers_payment_id(self, adapter: RazorpayAdapter) -> None:
        event = adapter.normalize_webhook_event(
            _event(
                "payment_link.paid",
                payment_link={
                    "id": "plink_abc",
                    "amount": 943882,
                    "currency": "INR",
                    "notes": {"tenant_id": "tenant-in", "invoice_id": "inv-42"},
                },
                payment={"id": "pay_9", "amount": 943882, "currency": "INR", "notes": []},
            )
        )

        assert event.type == WebhookEventType.PAYMENT_SUCCEEDED
        assert event.external_payment_id == "pay_9"
        assert event.metadata["payment_link_id"] == "plink_abc"
        assert event.invoice_id == "inv-42"

    @pytest.mark.unit
    def test_payment_failed(self, adapter: RazorpayAdapter) -> None:
        event = adapter.normalize_webhook_event(
            _event(
                "payment.failed",
                payment={
                    "id": "pay_2",
                    "amount": 100,
                    "currency": "INR",
                    "error_code": "BAD_REQUEST_ERROR",
                    "error_description": "Card expired",
                    "notes": {"tenant_id": "tenant-in"},
                },
            )
        )

        assert event.type == WebhookEventType.PAYMENT_FAILED
        assert event.metadata["error"] == "Card expired"
        assert event.metadata["error_code"] == "BAD_REQUEST_ERROR"

    @pytest.mark.unit
    def test_refund_processed(self, adapter: RazorpayAdapter) -> None:
        event = adapter.normalize_webhook_event(
            _event(
                "refund.processed",
                refund={"id": "rfnd_1", "payment_id": "pay_1", "amount": 50000, "currency": "INR"},
            )
        )

        assert event.type == WebhookEventType.REFUND_COMPLETED
        assert event.external_payment_id == "pay_1"
        assert event.amount == Decimal("500.00")

    @pytest.mark.unit
    def test_subscription_cancelled(self, adapter: RazorpayAdapter) -> None:
        event = adapter.normalize_webhook_event(
            _event("subscription.cancelled", subscription={"id": "sub_1", "status": "cancelled"})
        )

        assert event.type == WebhookEventType.SUBSCRIPTION_CANCELLED
        assert event.external_subscription_id == "sub_1"

    @pytest.mark.unit
    def test_unmapped_event(self, adapter: RazorpayAdapter) -> None:
        event = adapter.normalize_webhook_event(
            {"id": "evt_x", "event": "order.paid", "payload": {}}
        )

        assert event.type == WebhookEventType.UNKNOWN
        assert event.external_event_id == "evt_x"
