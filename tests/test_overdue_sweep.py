"""
Tests for the overdue invoice sweep.
"""
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict

import fakeredis.aioredis
import pytest
import pytest_asyncio
from sqlalchemy import select

from tenant_billing.core.context import BillingContext
from tenant_billing.database.models import Invoice, Tenant, TenantSubscription, utcnow
from tenant_billing.workers.overdue_sweep import SWEEP_LOCK_KEY, OverdueSweep


@pytest.fixture
def sweep(context: BillingContext) -> OverdueSweep:
    return OverdueSweep(context.session_factory, context.orchestrator)


@pytest_asyncio.fixture
async def redis_client() -> Any:
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.aclose()


async def _invoice(context: BillingContext, tenant_id: str = "tenant-us") -> str:
    result = await context.orchestrator.create_subscription_payment(tenant_id, "starter")
    assert result.success
    return result.invoice_id


async def _subscription(context: BillingContext, tenant_id: str) -> TenantSubscription:
    async with context.session_factory() as session:
        return await session.scalar(
            select(TenantSubscription).where(TenantSubscription.tenant_id == tenant_id)
        )


class TestOverdueSweep:
    """Marking past-due invoices and dunning."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_nothing_due_yet(
        self, context: BillingContext, seeded: Dict[str, str], sweep: OverdueSweep
    ) -> None:
        await _invoice(context)

        result = await sweep.run_once()

        assert result.scanned == 0
        assert result.marked_overdue == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_past_due_invoice_marked_once(
        self, context: BillingContext, seeded: Dict[str, str], sweep: OverdueSweep
    ) -> None:
        invoice_id = await _invoice(context)
        later = utcnow() + timedelta(days=8)

        first = await sweep.run_once(now=later)
        second = await sweep.run_once(now=later)

        assert (first.scanned, first.marked_overdue) == (1, 1)
        assert first.suspended_tenants == []
        assert second.scanned == 0

        async with context.session_factory() as session:
            invoice = await session.get(Invoice, invoice_id)
        subscription = await _subscription(context, "tenant-us")
        assert invoice.status == "overdue"
        assert invoice.amount_paid == Decimal("0.00")
        assert invoice.amount_due == invoice.total_amount - invoice.amount_paid
        assert invoice.amount_due >= 0
        assert subscription.status == "past_due"
        assert subscription.payment_failure_count == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_third_overdue_invoice_suspends_tenant(
        self, context: BillingContext, seeded: Dict[str, str], sweep: OverdueSweep
    ) -> None:
        for _ in range(3):
            await _invoice(context)

        result = await sweep.run_once(now=utcnow() + timedelta(days=8))

        assert result.marked_overdue == 3
        assert result.suspended_tenants == ["tenant-us"]
        async with context.session_factory() as session:
            tenant = await session.get(Tenant, "tenant-us")
        assert tenant.status == "suspended"
        assert tenant.status_reason == "Overdue payments exceeded threshold"

    @pytest.mark.race
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_invoice_claimed_by_one_run_only(
        self, context: BillingContext, seeded: Dict[str, str]
    ) -> None:
        invoice_id = await _invoice(context)
        later = utcnow() + timedelta(days=8)

        first = await context.orchestrator.apply_overdue(invoice_id, later)
        second = await context.orchestrator.apply_overdue(invoice_id, later)

        assert first is not None
        assert second is None
        subscription = await _subscription(context, "tenant-us")
        assert subscription.payment_failure_count == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_paid_invoice_is_not_swept(
        self,
        context: BillingContext,
        seeded: Dict[str, str],
        sweep: OverdueSweep,
        send_webhook: Any,
    ) -> None:
        invoice_id = await _invoice(context)
        await send_webhook(
            {
                "id": "evt_paid",
                "type": "payment.succeeded",
                "invoice_id": invoice_id,
                "tenant_id": "tenant-us",
            }
        )

        result = await sweep.run_once(now=utcnow() + timedelta(days=8))

        assert result.scanned == 0


class TestSweepLock:
    """Cross-process exclusion through Redis."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_skipped_while_lock_held(
        self, context: BillingContext, seeded: Dict[str, str], redis_client: Any
    ) -> None:
        await _invoice(context)
        await redis_client.set(SWEEP_LOCK_KEY, "other-worker", ex=60)
        sweep = OverdueSweep(context.session_factory, context.orchestrator, redis_client)

        result = await sweep.run_once(now=utcnow() + timedelta(days=8))

        assert result.skipped is True
        assert result.marked_overdue == 0
        assert await redis_client.get(SWEEP_LOCK_KEY) == "other-worker"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_lock_released_after_run(
        self, context: BillingContext, seeded: Dict[str, str], redis_client: Any
    ) -> None:
        await _invoice(context)
        sweep = OverdueSweep(context.session_factory, context.orchestrator, redis_client)

        result = await sweep.run_once(now=utcnow() + timedelta(days=8))

        assert result.skipped is False
        assert result.marked_overdue == 1
        assert await redis_client.get(SWEEP_LOCK_KEY) is None
