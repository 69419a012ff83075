"""
Webhook idempotency ledger.

Inserting into webhook_events under the unique (provider,
external_event_id) constraint is the atomic test-and-set: exactly one
delivery of an event wins the insert. A record left in status 'failed'
may be reclaimed by exactly one later delivery.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenant_billing.database.models import WebhookEventRecord, utcnow
from tenant_billing.gateways.types import NormalizedWebhookEvent

logger = structlog.get_logger(__name__)

MAX_ERROR_LENGTH = 2000


class ClaimStatus(str, Enum):
    """Outcome of claiming an event."""

    CLAIMED = "claimed"
    RECLAIMED = "reclaimed"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class ClaimResult:
    status: ClaimStatus
    previous_status: Optional[str] = None

    @property
    def acquired(self) -> bool:
        return self.status != ClaimStatus.DUPLICATE


class WebhookEventLedger:
    """Records every verified webhook event exactly once."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def claim(self, provider: str, event: NormalizedWebhookEvent) -> ClaimResult:
        """
        Claim an event for processing.

        Commits a 'pending' record in its own transaction so concurrent
        deliveries see it immediately.

        Args:
            provider: Provider name
            event: Normalized event

        Returns:
            ClaimResult: claimed, reclaimed (a failed record retried) or
            duplicate
        """
        record = WebhookEventRecord(
            provider=provider,
            external_event_id=event.external_event_id,
            event_type=event.type.value,
            payload=event.raw_payload,
            status="pending",
        )
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    session.add(record)
        except IntegrityError:
            pass
        else:
            logger.info(
                "webhook_event_claimed",
                provider=provider,
                event_id=event.external_event_id,
                event_type=event.type.value,
            )
            return ClaimResult(ClaimStatus.CLAIMED)

        async with self.session_factory() as session:
            async with session.begin():
                reclaim = await session.execute(
                    update(WebhookEventRecord)
                    .where(
                        WebhookEventRecord.provider == provider,
                        WebhookEventRecord.external_event_id == event.external_event_id,
                        WebhookEventRecord.status == "failed",
                    )
                    .values(
                        status="pending",
                        error_message=None,
                        delivery_count=WebhookEventRecord.delivery_count + 1,
                    )
                )
                if reclaim.rowcount == 1:
                    logger.info(
                        "webhook_event_reclaimed",
                        provider=provider,
                        event_id=event.external_event_id,
                    )
                    return ClaimResult(ClaimStatus.RECLAIMED, previous_status="failed")

                await session.execute(
                    update(WebhookEventRecord)
                    .where(
                        WebhookEventRecord.provider == provider,
                        WebhookEventRecord.external_event_id == event.external_event_id,
                    )
                    .values(delivery_count=WebhookEventRecord.delivery_count + 1)
                )
                previous = await session.scalar(
                    select(WebhookEventRecord.status).where(
                        WebhookEventRecord.provider == provider,
                        WebhookEventRecord.external_event_id == event.external_event_id,
                    )
                )

        logger.info(
            "webhook_event_duplicate",
            provider=provider,
            event_id=event.external_event_id,
            previous_status=previous,
        )
        return ClaimResult(ClaimStatus.DUPLICATE, previous_status=previous)

    async def mark_processed(
        self, session: AsyncSession, provider: str, external_event_id: str
    ) -> None:
        """Mark an event processed inside the caller's transaction."""
        await session.execute(
            update(WebhookEventRecord)
            .where(
                WebhookEventRecord.provider == provider,
                WebhookEventRecord.external_event_id == external_event_id,
            )
            .values(status="processed", processed_at=utcnow(), error_message=None)
        )

    async def mark_failed(self, provider: str, external_event_id: str, error: str) -> None:
        """Mark an event failed in a separate transaction."""
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(WebhookEventRecord)
                    .where(
                        WebhookEventRecord.provider == provider,
                        WebhookEventRecord.external_event_id == external_event_id,
                    )
                    .values(status="failed", error_message=error[:MAX_ERROR_LENGTH])
                )
        logger.warning(
            "webhook_event_failed",
            provider=provider,
            event_id=external_event_id,
            error=error,
        )

    async def get(self, provider: str, external_event_id: str) -> Optional[WebhookEventRecord]:
        async with self.session_factory() as session:
            return await session.scalar(
                select(WebhookEventRecord).where(
                    WebhookEventRecord.provider == provider,
                    WebhookEventRecord.external_event_id == external_event_id,
                )
            )
