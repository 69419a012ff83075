"""SQLAlchemy database models for the billing engine."""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONType = JSON().with_variant(JSONB(), "postgresql")
MoneyType = Numeric(12, 2, asdecimal=True)


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Generate a string primary key."""
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Tenant(Base):
    """
    Tenant record supplied by the tenant-management collaborator.

    The billing engine reads the billing country and writes only the
    status fields (suspend / reactivate).
    """

    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    country: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    business_type: Mapped[str] = mapped_column(String(64), nullable=False, default="service")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")
    status_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    status_changed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'trial', 'suspended', 'cancelled')",
            name="valid_tenant_status",
        ),
    )

    def __repr__(self) -> str:
        """String representation of Tenant."""
        return f"<Tenant(id={self.id}, country={self.country}, status={self.status})>"


class PricingPlan(Base):
    """Global pricing plan with a base price."""

    __tablename__ = "pricing_plans"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    base_price: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class PlanLocalPrice(Base):
    """Per-country localized price for a plan."""

    __tablename__ = "plan_local_prices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    plan_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("pricing_plans.id"), nullable=False
    )
    country: Mapped[str] = mapped_column(String(64), nullable=False)
    local_price: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)

    __table_args__ = (UniqueConstraint("plan_id", "country", name="uq_plan_country_price"),)


class CountryGatewayConfig(Base):
    """Config-store row for the per-country gateway and tax mapping."""

    __tablename__ = "country_gateway_configs"

    country: Mapped[str] = mapped_column(String(64), primary_key=True)
    primary_provider: Mapped[str] = mapped_column(String(32), nullable=False)
    fallback_provider: Mapped[str | None] = mapped_column(String(32), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    tax_name: Mapped[str] = mapped_column(String(32), nullable=False)
    tax_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class Invoice(Base):
    """
    Subscription invoice.

    Invariant: amount_due = total_amount - amount_paid, never negative,
    and status 'paid' exactly when amount_due is zero.
    """

    __tablename__ = "invoices"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    invoice_number: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    plan_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending", index=True)
    country: Mapped[str] = mapped_column(String(64), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    subtotal: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    tax_name: Mapped[str] = mapped_column(String(32), nullable=False)
    tax_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    amount_paid: Mapped[Decimal] = mapped_column(MoneyType, nullable=False, default=Decimal("0"))
    amount_due: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    due_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    provider: Mapped[str | None] = mapped_column(String(32), nullable=True)
    external_payment_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    line_items: Mapped[List[Dict[str, Any]] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'paid', 'overdue', 'cancelled')",
            name="valid_invoice_status",
        ),
        CheckConstraint("amount_due >= 0", name="non_negative_amount_due"),
        CheckConstraint("amount_due = total_amount - amount_paid", name="amount_due_balance"),
        Index("idx_invoices_status_due", "status", "due_date"),
    )

    def __repr__(self) -> str:
        """String representation of Invoice."""
        return (
            f"<Invoice(id={self.id}, tenant_id={self.tenant_id}, "
            f"total={self.total_amount}, status={self.status})>"
        )


class TenantSubscription(Base):
    """Tenant subscription state, owned by the dunning state machine."""

    __tablename__ = "tenant_subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    plan_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="trialing")
    payment_failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_payment_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    provider: Mapped[str | None] = mapped_column(String(32), nullable=True)
    external_subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'trialing', 'past_due', 'suspended', 'cancelled')",
            name="valid_subscription_status",
        ),
        CheckConstraint("payment_failure_count >= 0", name="non_negative_failure_count"),
    )

    def __repr__(self) -> str:
        """String representation of TenantSubscription."""
        return (
            f"<TenantSubscription(tenant_id={self.tenant_id}, status={self.status}, "
            f"failures={self.payment_failure_count})>"
        )


class TransactionLog(Base):
    """
    Transaction log table.

    Immutable record of every attempted charge or refund at the provider.
    Never updated or deleted.
    """

    __tablename__ = "transaction_logs"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    tenant_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    invoice_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    external_transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    transaction_type: Mapped[str] = mapped_column(String(16), nullable=False)
    country: Mapped[str | None] = mapped_column(String(64), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    raw_response: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )

    __table_args__ = (
        CheckConstraint(
            "transaction_type IN ('payment', 'refund')", name="valid_transaction_type"
        ),
        Index("idx_transaction_logs_type_status", "transaction_type", "status"),
    )

    def __repr__(self) -> str:
        """String representation of TransactionLog."""
        return (
            f"<TransactionLog(id={self.id}, type={self.transaction_type}, "
            f"provider={self.provider}, status={self.status})>"
        )


class PaymentAttempt(Base):
    """One row per physical attempt to pay an invoice."""

    __tablename__ = "payment_attempts"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    invoice_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("invoices.id"), nullable=False, index=True
    )
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    external_payment_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        UniqueConstraint("invoice_id", "attempt_number", name="uq_invoice_attempt_number"),
        CheckConstraint("attempt_number >= 1", name="positive_attempt_number"),
    )


class WebhookEventRecord(Base):
    """
    Webhook idempotency ledger.

    The unique (provider, external_event_id) constraint is the only
    concurrency guard for webhook application.
    """

    __tablename__ = "webhook_events"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    external_event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    delivery_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("provider", "external_event_id", name="uq_webhook_provider_event"),
        CheckConstraint(
            "status IN ('pending', 'processed', 'failed')", name="valid_webhook_status"
        ),
    )

    def __repr__(self) -> str:
        """String representation of WebhookEventRecord."""
        return (
            f"<WebhookEventRecord(provider={self.provider}, "
            f"event_id={self.external_event_id}, status={self.status})>"
        )
