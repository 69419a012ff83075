"""
Tests for the in-process mock gateway.
"""
from decimal import Decimal

import pytest

from tenant_billing.gateways.base import verify_hmac
from tenant_billing.gateways.mock_adapter import MockAdapter
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


@pytest.fixture
def adapter() -> MockAdapter:
    adapter = MockAdapter()
    adapter.initialize(GatewayConfig(provider=GatewayProvider.MOCK, webhook_secret="mock_secret"))
    return adapter


def _params(attempt: int = 1) -> CreatePaymentParams:
    return CreatePaymentParams(
        tenant_id="tenant-us",
        invoice_id="inv-1",
        amount=Decimal("49.00"),
        currency="USD",
        description="Subscription: starter",
        attempt_number=attempt,
    )


class TestMockAdapter:
    """Deterministic payments and canonical webhooks."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_same_attempt_same_payment(self, adapter: MockAdapter) -> None:
        first = await adapter.create_payment(_params())
        again = await adapter.create_payment(_params())
        retry = await adapter.create_payment(_params(attempt=2))

        assert first.external_payment_id == again.external_payment_id
        assert retry.external_payment_id != first.external_payment_id
        assert first.payment_url == f"mock://checkout/{first.external_payment_id}"
        assert len(adapter.created) == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_decline(self, adapter: MockAdapter) -> None:
        adapter.decline = True

        intent = await adapter.create_payment(_params())

        assert intent.status == PaymentIntentStatus.FAILED
        assert intent.error == "Card declined"
        assert intent.metadata["error_code"] == "card_declined"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_settle_and_refund(self, adapter: MockAdapter) -> None:
        intent = await adapter.create_payment(_params())
        adapter.settle(intent.external_payment_id)

        status = await adapter.get_payment_status(intent.external_payment_id)
        refund = await adapter.refund(
            RefundParams(external_payment_id=intent.external_payment_id, currency="USD")
        )
        unknown = await adapter.refund(RefundParams(external_payment_id="nope", currency="USD"))

        assert status.status == PaymentState.SUCCEEDED
        assert refund.status == RefundStatus.SUCCEEDED
        assert refund.amount == Decimal("49.00")
        assert unknown.status == RefundStatus.FAILED

    @pytest.mark.unit
    def test_sign_round_trip(self, adapter: MockAdapter) -> None:
        body = b'{"id": "evt_1"}'

        assert adapter.verify_webhook_signature(body, adapter.sign(body))
        assert not adapter.verify_webhook_signature(body, "0" * 64)

    @pytest.mark.unit
    def test_non_ascii_signature_rejected(self, adapter: MockAdapter) -> None:
        body = b'{"id": "evt_1"}'

        assert not adapter.verify_webhook_signature(body, "\u00e9" * 64)
        assert not adapter.verify_webhook_signature(body, "\u00e9abc")
        assert not verify_hmac("mock_whsec", body, "\u00e9" * 64)

    @pytest.mark.unit
    def test_normalize(self, adapter: MockAdapter) -> None:
        event = adapter.normalize_webhook_event(
            {
                "id": "evt_1",
                "type": "payment.succeeded",
                "payment_id": "mock_pi_1",
                "tenant_id": "tenant-us",
                "amount": "49.00",
                "currency": "usd",
            }
        )
        unknown = adapter.normalize_webhook_event({"id": "evt_2", "type": "customer.updated"})

        assert event.type == WebhookEventType.PAYMENT_SUCCEEDED
        assert event.amount == Decimal("49.00")
        assert event.currency == "USD"
        assert unknown.type == WebhookEventType.UNKNOWN
        assert unknown.external_event_id == "evt_2"
