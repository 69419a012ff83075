"""Database package."""
from .connection import close_db, create_engine_from_settings, create_session_factory, init_db
from .models import (
    Base,
    CountryGatewayConfig,
    Invoice,
    PaymentAttempt,
    PlanLocalPrice,
    PricingPlan,
    Tenant,
    TenantSubscription,
    TransactionLog,
    WebhookEventRecord,
)

__all__ = [
    "Base",
    "CountryGatewayConfig",
    "Invoice",
    "PaymentAttempt",
    "PlanLocalPrice",
    "PricingPlan",
    "Tenant",
    "TenantSubscription",
    "TransactionLog",
    "WebhookEventRecord",
    "close_db",
    "create_engine_from_settings",
    "create_session_factory",
    "init_db",
]
