"""
Tests for country-based gateway selection.
"""
from decimal import Decimal
from typing import Any

import pytest

from tenant_billing.config import Settings
from tenant_billing.core.context import BillingContext
from tenant_billing.core.selector import (
    DEFAULT_COUNTRY_MAPPINGS,
    GatewaySelector,
    load_country_mappings,
)
from tenant_billing.database.models import CountryGatewayConfig
from tenant_billing.gateways.mock_adapter import MockAdapter
from tenant_billing.gateways.paystack_adapter import PaystackAdapter
from tenant_billing.gateways.razorpay_adapter import RazorpayAdapter
from tenant_billing.gateways.registry import GatewayRegistry
from tenant_billing.gateways.stripe_adapter import StripeAdapter
from tenant_billing.gateways.types import GatewayConfig, GatewayProvider


def _registry(**configured: bool) -> GatewayRegistry:
    """Registry with stripe, razorpay and paystack, configured as requested."""
    stripe_adapter = StripeAdapter()
    razorpay_adapter = RazorpayAdapter()
    paystack_adapter = PaystackAdapter()
    if configured.get("stripe"):
        stripe_adapter.initialize(
            GatewayConfig(provider=GatewayProvider.STRIPE, api_key="sk_test_123")
        )
    if configured.get("razorpay"):
        razorpay_adapter.initialize(
            GatewayConfig(
                provider=GatewayProvider.RAZORPAY, api_key="rzp_test_1", api_secret="secret"
            )
        )
    if configured.get("paystack"):
        paystack_adapter.initialize(
            GatewayConfig(provider=GatewayProvider.PAYSTACK, api_key="sk_test_ps")
        )
    return GatewayRegistry(
        {"stripe": stripe_adapter, "razorpay": razorpay_adapter, "paystack": paystack_adapter}
    )


class TestGatewaySelector:
    """Primary, fallback and default resolution."""

    @pytest.mark.unit
    def test_primary_used_when_configured(self) -> None:
        selector = GatewaySelector(_registry(stripe=True, razorpay=True), default_provider="stripe")

        assert selector.get_gateway_for_country("india").name == "razorpay"

    @pytest.mark.unit
    def test_fallback_when_primary_unconfigured(self) -> None:
        selector = GatewaySelector(_registry(stripe=True), default_provider="stripe")

        adapter = selector.get_gateway_for_country("India")

        assert adapter is not None
        assert adapter.name == "stripe"

    @pytest.mark.unit
    def test_default_for_unmapped_country(self) -> None:
        selector = GatewaySelector(_registry(stripe=True), default_provider="stripe")

        assert selector.get_country_mapping("brazil") is None
        assert selector.get_gateway_for_country("brazil").name == "stripe"

    @pytest.mark.unit
    def test_none_when_nothing_configured(self) -> None:
        selector = GatewaySelector(_registry(), default_provider="stripe")

        assert selector.get_gateway_for_country("nigeria") is None

    @pytest.mark.unit
    def test_candidate_chain_is_deduplicated(self) -> None:
        selector = GatewaySelector(_registry(), default_provider="stripe")

        assert selector.candidate_chain("india") == ["razorpay", "stripe"]
        assert selector.candidate_chain("nigeria") == ["paystack", "stripe"]
        assert selector.candidate_chain("uk") == ["stripe"]

    @pytest.mark.unit
    def test_default_country_table(self) -> None:
        nigeria = DEFAULT_COUNTRY_MAPPINGS["nigeria"]

        assert (nigeria.primary_provider, nigeria.currency) == ("paystack", "NGN")
        assert nigeria.tax_rate == Decimal("7.5")
        assert DEFAULT_COUNTRY_MAPPINGS["india"].tax_rate == Decimal("18")

    @pytest.mark.unit
    def test_mock_adapter_can_be_default(self) -> None:
        mock = MockAdapter()
        mock.initialize(GatewayConfig(provider=GatewayProvider.MOCK, webhook_secret="s"))
        selector = GatewaySelector(GatewayRegistry({"mock": mock}), default_provider="MOCK")

        assert selector.get_gateway_for_country("uae") is mock


class TestLoadCountryMappings:
    """Config store loading."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_defaults_when_table_empty(self, context: BillingContext) -> None:
        mappings = await load_country_mappings(context.session_factory)

        assert mappings is DEFAULT_COUNTRY_MAPPINGS

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_defaults_when_store_unreachable(self, test_settings: Settings) -> None:
        # Tables are never created in this context.
        ctx = await BillingContext.create(test_settings)
        try:
            mappings = await load_country_mappings(ctx.session_factory)
        finally:
            await ctx.aclose()

        assert mappings is DEFAULT_COUNTRY_MAPPINGS

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_rows_replace_defaults(self, context: BillingContext) -> None:
        async with context.session_factory() as session:
            async with session.begin():
                session.add_all(
                    [
                        CountryGatewayConfig(
                            country="Kenya",
                            primary_provider="Paystack",
                            fallback_provider=None,
                            currency="kes",
                            tax_name="VAT",
                            tax_rate=Decimal("16"),
                        ),
                        CountryGatewayConfig(
                            country="uk",
                            primary_provider="stripe",
                            currency="GBP",
                            tax_name="VAT",
                            tax_rate=Decimal("20"),
                            is_active=False,
                        ),
                    ]
                )

        mappings: Any = await load_country_mappings(context.session_factory)

        assert list(mappings) == ["kenya"]
        assert mappings["kenya"].primary_provider == "paystack"
        assert mappings["kenya"].currency == "KES"
        assert mappings["kenya"].tax_rate == Decimal("16")
