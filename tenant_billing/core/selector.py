"""
Gateway selection per billing country.

The chain [primary, fallback, default] is evaluated in order and the
first configured adapter wins.
"""
from dataclasses import dataclass
from decimal import Decimal
from types import MappingProxyType
from typing import List, Mapping, Optional, Tuple

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenant_billing.database.models import CountryGatewayConfig
from tenant_billing.gateways.base import GatewayAdapter
from tenant_billing.gateways.registry import GatewayRegistry
from tenant_billing.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CountryGatewayMapping:
    """Gateway and tax settings for one billing country."""

    country: str
    primary_provider: str
    fallback_provider: Optional[str]
    currency: str
    tax_name: str
    tax_rate: Decimal


def _mapping(
    country: str,
    primary: str,
    fallback: Optional[str],
    currency: str,
    tax_name: str,
    tax_rate: str,
) -> Tuple[str, CountryGatewayMapping]:
    return country, CountryGatewayMapping(
        country=country,
        primary_provider=primary,
        fallback_provider=fallback,
        currency=currency,
        tax_name=tax_name,
        tax_rate=Decimal(tax_rate),
    )


DEFAULT_COUNTRY_MAPPINGS: Mapping[str, CountryGatewayMapping] = MappingProxyType(
    dict(
        [
            _mapping("india", "razorpay", "stripe", "INR", "GST", "18"),
            _mapping("uae", "stripe", None, "AED", "VAT", "5"),
            _mapping("uk", "stripe", None, "GBP", "VAT", "20"),
            _mapping("singapore", "stripe", None, "SGD", "GST", "9"),
            _mapping("malaysia", "stripe", "razorpay", "MYR", "SST", "6"),
            _mapping("nigeria", "paystack", "stripe", "NGN", "VAT", "7.5"),
            _mapping("usa", "stripe", None, "USD", "Sales Tax", "0"),
        ]
    )
)


def normalize_country(country: str) -> str:
    return country.strip().lower()


async def load_country_mappings(
    session_factory: async_sessionmaker[AsyncSession],
) -> Mapping[str, CountryGatewayMapping]:
    """
    Load the country mapping from the config store.

    Falls back to DEFAULT_COUNTRY_MAPPINGS when the store is unreachable
    or holds no active rows.
    """
    try:
        async with session_factory() as session:
            result = await session.execute(
                select(CountryGatewayConfig).where(CountryGatewayConfig.is_active.is_(True))
            )
            rows = result.scalars().all()
    except SQLAlchemyError as e:
        logger.warning("country_mapping_load_failed_using_defaults", error=str(e))
        return DEFAULT_COUNTRY_MAPPINGS

    if not rows:
        logger.info("country_mapping_empty_using_defaults")
        return DEFAULT_COUNTRY_MAPPINGS

    mappings = {
        normalize_country(row.country): CountryGatewayMapping(
            country=normalize_country(row.country),
            primary_provider=row.primary_provider.lower(),
            fallback_provider=row.fallback_provider.lower() if row.fallback_provider else None,
            currency=row.currency.upper(),
            tax_name=row.tax_name,
            tax_rate=Decimal(str(row.tax_rate)),
        )
        for row in rows
    }
    logger.info("country_mapping_loaded", countries=sorted(mappings))
    return MappingProxyType(mappings)


class GatewaySelector:
    """Picks the adapter to charge a tenant through."""

    def __init__(
        self,
        registry: GatewayRegistry,
        mappings: Mapping[str, CountryGatewayMapping] = DEFAULT_COUNTRY_MAPPINGS,
        default_provider: Optional[str] = None,
    ) -> None:
        self.registry = registry
        self.mappings = mappings
        self.default_provider = default_provider.lower() if default_provider else None

    def get_country_mapping(self, country: str) -> Optional[CountryGatewayMapping]:
        return self.mappings.get(normalize_country(country))

    def get_gateway(self, provider: str) -> Optional[GatewayAdapter]:
        return self.registry.get(provider.lower())

    def candidate_chain(self, country: str) -> List[str]:
        """Ordered, de-duplicated provider names to try for a country."""
        mapping = self.get_country_mapping(country)
        chain: List[Optional[str]] = []
        if mapping is not None:
            chain.extend([mapping.primary_provider, mapping.fallback_provider])
        chain.append(self.default_provider)

        ordered: List[str] = []
        for provider in chain:
            if provider and provider not in ordered:
                ordered.append(provider)
        return ordered

    def get_gateway_for_country(self, country: str) -> Optional[GatewayAdapter]:
        """
        Return the first configured adapter in [primary, fallback, default].

        Returns:
            The adapter, or None when nothing in the chain is configured
        """
        chain = self.candidate_chain(country)
        for position, provider in enumerate(chain):
            adapter = self.get_gateway(provider)
            if adapter is None or not adapter.is_configured():
                continue
            if position > 0:
                logger.warning(
                    "gateway_fallback_used",
                    country=normalize_country(country),
                    provider=provider,
                    skipped=chain[:position],
                )
                metrics.record_gateway_fallback(normalize_country(country), provider)
            return adapter

        logger.error(
            "no_gateway_for_country",
            country=normalize_country(country),
            candidates=chain,
        )
        return None
