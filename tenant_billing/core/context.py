"""
Billing context.

Owns every long-lived resource of one billing process: the database
engine and session factory, the gateway registry, the optional Redis
client and the services built on them. One context per process, a fresh
one per test.
"""
from dataclasses import dataclass
from typing import Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from tenant_billing.config import Settings, get_settings
from tenant_billing.core.ledger import WebhookEventLedger
from tenant_billing.core.orchestrator import PaymentOrchestrator
from tenant_billing.core.reporting import RevenueReporter
from tenant_billing.core.selector import GatewaySelector, load_country_mappings
from tenant_billing.core.state_machine import SubscriptionStateMachine
from tenant_billing.database.connection import (
    close_db,
    create_engine_from_settings,
    create_session_factory,
    init_db,
)
from tenant_billing.gateways.registry import GatewayRegistry
from tenant_billing.monitoring.health import HealthCheck

logger = structlog.get_logger(__name__)


@dataclass
class BillingContext:
    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    registry: GatewayRegistry
    selector: GatewaySelector
    ledger: WebhookEventLedger
    state_machine: SubscriptionStateMachine
    orchestrator: PaymentOrchestrator
    reporter: RevenueReporter
    health: HealthCheck
    redis: Optional[aioredis.Redis] = None

    @classmethod
    async def create(
        cls,
        settings: Optional[Settings] = None,
        registry: Optional[GatewayRegistry] = None,
        redis_client: Optional[aioredis.Redis] = None,
        create_tables: bool = False,
    ) -> "BillingContext":
        """
        Build a context from settings.

        Args:
            settings: Settings to use (defaults to get_settings())
            registry: Pre-built gateway registry, built from settings if omitted
            redis_client: Pre-built Redis client, created from redis_url if omitted
            create_tables: Create missing tables before loading country config

        Returns:
            BillingContext: Ready-to-use context
        """
        settings = settings or get_settings()
        engine = create_engine_from_settings(settings)
        session_factory = create_session_factory(engine)
        if create_tables:
            await init_db(engine)

        if registry is None:
            registry = GatewayRegistry.from_settings(settings)
        if redis_client is None and settings.redis_url:
            redis_client = aioredis.from_url(settings.redis_url, decode_responses=True)

        mappings = await load_country_mappings(session_factory)
        selector = GatewaySelector(registry, mappings, default_provider=settings.default_gateway)
        ledger = WebhookEventLedger(session_factory)
        state_machine = SubscriptionStateMachine(settings.suspend_after_failures)

        context = cls(
            settings=settings,
            engine=engine,
            session_factory=session_factory,
            registry=registry,
            selector=selector,
            ledger=ledger,
            state_machine=state_machine,
            orchestrator=PaymentOrchestrator(
                session_factory, selector, ledger, state_machine, settings
            ),
            reporter=RevenueReporter(session_factory),
            health=HealthCheck(session_factory, registry, redis_client),
            redis=redis_client,
        )
        logger.info(
            "billing_context_created",
            gateways=registry.configured(),
            countries=sorted(mappings),
            redis_enabled=redis_client is not None,
        )
        return context

    async def aclose(self) -> None:
        """Release provider clients, Redis and database connections."""
        await self.registry.aclose()
        if self.redis is not None:
            await self.redis.aclose()
        await close_db(self.engine)
        logger.info("billing_context_closed")
