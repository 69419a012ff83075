"""
Pytest configuration and fixtures.
"""
import json
from decimal import Decimal
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict

import pytest
import pytest_asyncio

from tenant_billing.config import Settings
from tenant_billing.core.context import BillingContext
from tenant_billing.core.orchestrator import WebhookResult
from tenant_billing.database.models import PlanLocalPrice, PricingPlan, Tenant
from tenant_billing.gateways.mock_adapter import MockAdapter

WebhookSender = Callable[[Dict[str, Any]], Awaitable[WebhookResult]]


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: fast tests without I/O beyond in-memory SQLite")
    config.addinivalue_line("markers", "integration: tests that exercise the database or ASGI app")
    config.addinivalue_line("markers", "race: tests for duplicate deliveries and overlapping runs")


@pytest.fixture
def test_settings() -> Settings:
    """Settings for an in-memory database with only the mock gateway usable."""
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite:///:memory:",
        redis_url=None,
        app_name="tenant-billing-test",
        app_env="test",
        app_base_url="https://billing.test",
        log_level="DEBUG",
        enabled_gateways="stripe,razorpay,paystack",
        default_gateway="mock",
        mock_gateway_enabled=True,
        mock_webhook_secret="mock_whsec_test",
    )


@pytest_asyncio.fixture
async def context(test_settings: Settings) -> AsyncGenerator[BillingContext, Any]:
    """Fresh billing context with empty tables."""
    ctx = await BillingContext.create(test_settings, create_tables=True)
    yield ctx
    await ctx.aclose()


@pytest.fixture
def mock_gateway(context: BillingContext) -> MockAdapter:
    return context.registry["mock"]  # type: ignore[return-value]


@pytest_asyncio.fixture
async def seeded(context: BillingContext) -> Dict[str, str]:
    """Two tenants and three plans (one inactive)."""
    async with context.session_factory() as session:
        async with session.begin():
            session.add_all(
                [
                    Tenant(
                        id="tenant-us",
                        name="Acme Inc",
                        email="billing@acme.test",
                        country="usa",
                        business_type="saas",
                    ),
                    Tenant(
                        id="tenant-in",
                        name="Chai Point",
                        email="accounts@chai.test",
                        country="India",
                        business_type="retail",
                    ),
                    PricingPlan(
                        id="plan-starter",
                        code="starter",
                        name="Starter",
                        base_price=Decimal("49.00"),
                        currency="USD",
                        sort_order=1,
                    ),
                    PricingPlan(
                        id="plan-growth",
                        code="growth",
                        name="Growth",
                        base_price=Decimal("99.00"),
                        currency="USD",
                        sort_order=2,
                    ),
                    PricingPlan(
                        id="plan-legacy",
                        code="legacy",
                        name="Legacy",
                        base_price=Decimal("19.00"),
                        currency="USD",
                        is_active=False,
                        sort_order=0,
                    ),
                ]
            )
            await session.flush()
            session.add(
                PlanLocalPrice(plan_id="plan-growth", country="india", local_price=Decimal("7999.00"))
            )
    return {"us": "tenant-us", "in": "tenant-in"}


@pytest.fixture
def send_webhook(context: BillingContext, mock_gateway: MockAdapter) -> WebhookSender:
    """Sign a payload with the mock gateway secret and deliver it."""

    async def _send(payload: Dict[str, Any]) -> WebhookResult:
        body = json.dumps(payload).encode()
        return await context.orchestrator.handle_webhook_event(
            "mock", payload, mock_gateway.sign(body), body
        )

    return _send
