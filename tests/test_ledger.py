"""
Tests for the webhook idempotency ledger.
"""
import pytest

from tenant_billing.core.context import BillingContext
from tenant_billing.core.ledger import ClaimStatus, WebhookEventLedger
from tenant_billing.gateways.types import NormalizedWebhookEvent, WebhookEventType


def _event(event_id: str = "evt_1") -> NormalizedWebhookEvent:
    return NormalizedWebhookEvent(
        type=WebhookEventType.PAYMENT_SUCCEEDED,
        external_event_id=event_id,
        raw_payload={"id": event_id},
    )


@pytest.fixture
def ledger(context: BillingContext) -> WebhookEventLedger:
    return context.ledger


class TestWebhookEventLedger:
    """Claiming, duplicates and reclaiming failed events."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_first_claim_wins(self, ledger: WebhookEventLedger) -> None:
        first = await ledger.claim("stripe", _event())
        second = await ledger.claim("stripe", _event())

        assert first.status == ClaimStatus.CLAIMED
        assert first.acquired
        assert second.status == ClaimStatus.DUPLICATE
        assert not second.acquired
        assert second.previous_status == "pending"

        record = await ledger.get("stripe", "evt_1")
        assert record.delivery_count == 2
        assert record.payload == {"id": "evt_1"}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_same_id_different_provider_is_distinct(
        self, ledger: WebhookEventLedger
    ) -> None:
        assert (await ledger.claim("stripe", _event())).acquired
        assert (await ledger.claim("razorpay", _event())).acquired

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failed_event_reclaimed_once(self, ledger: WebhookEventLedger) -> None:
        await ledger.claim("paystack", _event())
        await ledger.mark_failed("paystack", "evt_1", "database unavailable")

        failed = await ledger.get("paystack", "evt_1")
        assert failed.status == "failed"
        assert failed.error_message == "database unavailable"

        reclaim = await ledger.claim("paystack", _event())
        again = await ledger.claim("paystack", _event())

        assert reclaim.status == ClaimStatus.RECLAIMED
        assert reclaim.previous_status == "failed"
        assert again.status == ClaimStatus.DUPLICATE

        record = await ledger.get("paystack", "evt_1")
        assert record.status == "pending"
        assert record.error_message is None
        assert record.delivery_count == 3

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_processed_event_stays_duplicate(
        self, context: BillingContext, ledger: WebhookEventLedger
    ) -> None:
        await ledger.claim("stripe", _event())
        async with context.session_factory() as session:
            async with session.begin():
                await ledger.mark_processed(session, "stripe", "evt_1")

        duplicate = await ledger.claim("stripe", _event())
        record = await ledger.get("stripe", "evt_1")

        assert duplicate.previous_status == "processed"
        assert record.status == "processed"
        assert record.processed_at is not None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_long_errors_truncated(self, ledger: WebhookEventLedger) -> None:
        await ledger.claim("stripe", _event())
        await ledger.mark_failed("stripe", "evt_1", "x" * 5000)

        record = await ledger.get("stripe", "evt_1")

        assert len(record.error_message) == 2000
