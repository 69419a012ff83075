"""
Revenue reporting.

Read-only projection over successful payment transaction logs. Amounts
are summed as stored; no currency conversion is applied.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional, Tuple

import structlog
from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenant_billing.core.money import to_decimal
from tenant_billing.database.models import Invoice, Tenant, TenantSubscription, TransactionLog, utcnow

logger = structlog.get_logger(__name__)

DEFAULT_BUSINESS_TYPE = "service"


@dataclass(frozen=True)
class RevenueStats:
    total_revenue: Decimal
    monthly_revenue: Decimal
    last_month_revenue: Decimal
    mrr: Decimal
    revenue_change: int
    active_subscriptions: int
    pending_invoices: int
    revenue_by_country: Dict[str, Decimal] = field(default_factory=dict)
    revenue_by_provider: Dict[str, Decimal] = field(default_factory=dict)
    revenue_by_business_type: Dict[str, Decimal] = field(default_factory=dict)
    subscriptions_by_business_type: Dict[str, int] = field(default_factory=dict)


def month_bounds(now: datetime) -> Tuple[datetime, datetime]:
    """Start of the current month and start of the previous month."""
    this_month = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if this_month.month == 1:
        last_month = this_month.replace(year=this_month.year - 1, month=12)
    else:
        last_month = this_month.replace(month=this_month.month - 1)
    return this_month, last_month


def revenue_change(current: Decimal, previous: Decimal) -> int:
    """Rounded month-over-month change in percent."""
    if previous > 0:
        return round((current - previous) / previous * 100)
    return 100 if current > 0 else 0


class RevenueReporter:
    """Aggregates revenue figures for the admin dashboard."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def get_revenue_stats(self, now: Optional[datetime] = None) -> RevenueStats:
        now = now or utcnow()
        this_month, last_month = month_bounds(now)

        successful = and_(
            TransactionLog.transaction_type == "payment",
            TransactionLog.status == "success",
        )
        in_this_month = TransactionLog.created_at >= this_month
        in_last_month = and_(
            TransactionLog.created_at >= last_month,
            TransactionLog.created_at < this_month,
        )
        amount_sum = func.coalesce(func.sum(TransactionLog.amount), 0)

        async with self.session_factory() as session:
            total = await session.scalar(select(amount_sum).where(successful))
            monthly = await session.scalar(select(amount_sum).where(successful, in_this_month))
            previous = await session.scalar(select(amount_sum).where(successful, in_last_month))

            by_country = await session.execute(
                select(TransactionLog.country, amount_sum)
                .where(successful)
                .group_by(TransactionLog.country)
            )
            by_provider = await session.execute(
                select(TransactionLog.provider, amount_sum)
                .where(successful)
                .group_by(TransactionLog.provider)
            )

            business_type = func.coalesce(Tenant.business_type, DEFAULT_BUSINESS_TYPE)
            by_business_type = await session.execute(
                select(business_type, amount_sum)
                .select_from(TransactionLog)
                .outerjoin(Tenant, Tenant.id == TransactionLog.tenant_id)
                .where(successful, in_this_month)
                .group_by(business_type)
            )
            subscriptions = await session.execute(
                select(business_type, func.count(TenantSubscription.id))
                .select_from(TenantSubscription)
                .outerjoin(Tenant, Tenant.id == TenantSubscription.tenant_id)
                .where(TenantSubscription.status == "active")
                .group_by(business_type)
            )
            pending = await session.scalar(
                select(func.count(Invoice.id)).where(Invoice.status == "pending")
            )

        subscriptions_by_business_type = {key: count for key, count in subscriptions.all()}
        monthly_revenue = to_decimal(monthly)
        last_month_revenue = to_decimal(previous)

        stats = RevenueStats(
            total_revenue=to_decimal(total),
            monthly_revenue=monthly_revenue,
            last_month_revenue=last_month_revenue,
            mrr=monthly_revenue,
            revenue_change=revenue_change(monthly_revenue, last_month_revenue),
            active_subscriptions=sum(subscriptions_by_business_type.values()),
            pending_invoices=pending or 0,
            revenue_by_country={
                (key or "unknown"): to_decimal(value) for key, value in by_country.all()
            },
            revenue_by_provider={key: to_decimal(value) for key, value in by_provider.all()},
            revenue_by_business_type={
                key: to_decimal(value) for key, value in by_business_type.all()
            },
            subscriptions_by_business_type=subscriptions_by_business_type,
        )
        logger.debug("revenue_stats_computed", monthly_revenue=str(monthly_revenue))
        return stats
