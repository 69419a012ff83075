"""
Overdue invoice sweep.

Periodically marks pending invoices past their due date as overdue and
feeds each one into the dunning state machine as a failure.
"""
import asyncio
import secrets
import signal
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenant_billing.core.orchestrator import PaymentOrchestrator
from tenant_billing.database.models import Invoice, utcnow
from tenant_billing.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

SWEEP_LOCK_KEY = "tenant-billing:overdue-sweep:lock"


@dataclass
class SweepResult:
    scanned: int = 0
    marked_overdue: int = 0
    suspended_tenants: List[str] = field(default_factory=list)
    skipped: bool = False


class OverdueSweep:
    """Marks past-due invoices overdue, at most once each."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        orchestrator: PaymentOrchestrator,
        redis_client: Optional[aioredis.Redis] = None,
        lock_ttl_seconds: int = 300,
        batch_size: int = 500,
    ) -> None:
        self.session_factory = session_factory
        self.orchestrator = orchestrator
        self.redis = redis_client
        self.lock_ttl_seconds = lock_ttl_seconds
        self.batch_size = batch_size

    async def _acquire_lock(self) -> Optional[str]:
        token = secrets.token_hex(16)
        acquired = await self.redis.set(SWEEP_LOCK_KEY, token, nx=True, ex=self.lock_ttl_seconds)
        return token if acquired else None

    async def _release_lock(self, token: str) -> None:
        current = await self.redis.get(SWEEP_LOCK_KEY)
        if isinstance(current, bytes):
            current = current.decode()
        if current == token:
            await self.redis.delete(SWEEP_LOCK_KEY)

    async def run_once(self, now: Optional[datetime] = None) -> SweepResult:
        """
        Run one sweep.

        Args:
            now: Reference time (defaults to the current UTC time)

        Returns:
            SweepResult: skipped is True when another run holds the lock
        """
        now = now or utcnow()
        start = time.perf_counter()

        token = None
        if self.redis is not None:
            token = await self._acquire_lock()
            if token is None:
                logger.info("overdue_sweep_skipped", reason="lock_held")
                metrics.record_overdue_sweep("skipped")
                return SweepResult(skipped=True)

        try:
            result = await self._sweep(now)
        except Exception as e:
            logger.error("overdue_sweep_failed", error=str(e))
            metrics.record_overdue_sweep("error", duration_seconds=time.perf_counter() - start)
            raise
        finally:
            if token is not None:
                await self._release_lock(token)

        metrics.record_overdue_sweep(
            "success",
            marked_overdue=result.marked_overdue,
            duration_seconds=time.perf_counter() - start,
        )
        logger.info(
            "overdue_sweep_completed",
            scanned=result.scanned,
            marked_overdue=result.marked_overdue,
            suspended_tenants=len(result.suspended_tenants),
        )
        return result

    async def _sweep(self, now: datetime) -> SweepResult:
        async with self.session_factory() as session:
            rows = await session.execute(
                select(Invoice.id, Invoice.tenant_id)
                .where(Invoice.status == "pending", Invoice.due_date < now)
                .order_by(Invoice.due_date)
                .limit(self.batch_size)
            )
            candidates = rows.all()

        result = SweepResult(scanned=len(candidates))
        for invoice_id, tenant_id in candidates:
            transition = await self.orchestrator.apply_overdue(invoice_id, now)
            if transition is None:
                continue
            result.marked_overdue += 1
            if transition.suspends:
                result.suspended_tenants.append(tenant_id)
        return result


async def start_overdue_sweep_worker(interval_seconds: Optional[int] = None) -> None:
    """
    Start the overdue sweep worker.

    Runs a sweep every interval until SIGINT or SIGTERM.

    Args:
        interval_seconds: Seconds between runs (default: overdue_sweep_interval_seconds)
    """
    from tenant_billing.core.context import BillingContext
    from tenant_billing.monitoring.logging import setup_logging

    setup_logging()
    context = await BillingContext.create()
    interval = interval_seconds or context.settings.overdue_sweep_interval_seconds
    sweep = OverdueSweep(
        context.session_factory,
        context.orchestrator,
        context.redis,
        lock_ttl_seconds=context.settings.sweep_lock_ttl_seconds,
    )

    logger.info("overdue_sweep_worker_starting", interval_seconds=interval)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("overdue_sweep_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            try:
                await sweep.run_once()
            except Exception as e:
                # Keep the worker alive; the next run retries the same invoices.
                logger.error("overdue_sweep_execution_error", error=str(e))

            remaining = float(interval)
            while remaining > 0 and running:
                pause = min(remaining, 1.0)
                await asyncio.sleep(pause)
                remaining -= pause
    finally:
        await context.aclose()
        logger.info("overdue_sweep_worker_stopped")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Overdue invoice sweep worker")
    parser.add_argument(
        "--interval", type=int, default=None, help="Seconds between sweeps"
    )
    parser.add_argument(
        "--once", action="store_true", help="Run a single sweep and exit"
    )
    args = parser.parse_args()

    if args.once:
        asyncio.run(_run_single_sweep())
    else:
        asyncio.run(start_overdue_sweep_worker(interval_seconds=args.interval))


async def _run_single_sweep() -> None:
    from tenant_billing.core.context import BillingContext
    from tenant_billing.monitoring.logging import setup_logging

    setup_logging()
    context = await BillingContext.create()
    try:
        await OverdueSweep(
            context.session_factory,
            context.orchestrator,
            context.redis,
            lock_ttl_seconds=context.settings.sweep_lock_ttl_seconds,
        ).run_once()
    finally:
        await context.aclose()


if __name__ == "__main__":
    main()
