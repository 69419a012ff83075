"""Explicit gateway adapter registry, built once at process start."""
from collections.abc import Iterator, Mapping
from typing import Callable, Dict, Optional

import structlog

from tenant_billing.config import Settings
from tenant_billing.core.exceptions import UnknownProviderError
from tenant_billing.gateways.base import GatewayAdapter
from tenant_billing.gateways.mock_adapter import MockAdapter
from tenant_billing.gateways.paystack_adapter import PaystackAdapter
from tenant_billing.gateways.razorpay_adapter import RazorpayAdapter
from tenant_billing.gateways.stripe_adapter import StripeAdapter
from tenant_billing.gateways.types import GatewayConfig, GatewayMode, GatewayProvider

logger = structlog.get_logger(__name__)


def _secret(value: object) -> Optional[str]:
    return value.get_secret_value() if value is not None else None  # type: ignore[attr-defined]


def _mode_from_key(key: Optional[str]) -> GatewayMode:
    return GatewayMode.LIVE if key and "_live_" in key else GatewayMode.SANDBOX


def gateway_config_for(provider: GatewayProvider, settings: Settings) -> GatewayConfig:
    """Build a provider's GatewayConfig from settings."""
    timeout = settings.provider_timeout_seconds
    if provider == GatewayProvider.STRIPE:
        key = _secret(settings.stripe_secret_key)
        return GatewayConfig(
            provider=provider,
            api_key=key,
            webhook_secret=_secret(settings.stripe_webhook_secret),
            mode=_mode_from_key(key),
            timeout_seconds=timeout,
        )
    if provider == GatewayProvider.RAZORPAY:
        key_id = settings.razorpay_key_id
        return GatewayConfig(
            provider=provider,
            api_key=key_id,
            api_secret=_secret(settings.razorpay_key_secret),
            webhook_secret=_secret(settings.razorpay_webhook_secret),
            mode=GatewayMode.LIVE if key_id and key_id.startswith("rzp_live_") else GatewayMode.SANDBOX,
            timeout_seconds=timeout,
        )
    if provider == GatewayProvider.PAYSTACK:
        key = _secret(settings.paystack_secret_key)
        return GatewayConfig(
            provider=provider,
            api_key=key,
            webhook_secret=key,
            mode=_mode_from_key(key),
            timeout_seconds=timeout,
        )
    return GatewayConfig(
        provider=provider,
        webhook_secret=_secret(settings.mock_webhook_secret),
        timeout_seconds=timeout,
    )


ADAPTER_FACTORIES: Dict[GatewayProvider, Callable[[Settings], GatewayAdapter]] = {
    GatewayProvider.STRIPE: lambda settings: StripeAdapter(api_version=settings.stripe_api_version),
    GatewayProvider.RAZORPAY: lambda settings: RazorpayAdapter(),
    GatewayProvider.PAYSTACK: lambda settings: PaystackAdapter(),
    GatewayProvider.MOCK: lambda settings: MockAdapter(),
}


class GatewayRegistry(Mapping[str, GatewayAdapter]):
    """Read-only mapping of provider name to initialized adapter."""

    def __init__(self, adapters: Dict[str, GatewayAdapter]) -> None:
        self._adapters = dict(adapters)

    def __getitem__(self, name: str) -> GatewayAdapter:
        return self._adapters[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._adapters)

    def __len__(self) -> int:
        return len(self._adapters)

    def require(self, name: str) -> GatewayAdapter:
        """
        Look up an adapter by provider name.

        Raises:
            UnknownProviderError: If no adapter is registered under name
        """
        adapter = self._adapters.get(name.lower())
        if adapter is None:
            raise UnknownProviderError(f"Unknown payment provider: {name}")
        return adapter

    def configured(self) -> list[str]:
        return [name for name, adapter in self._adapters.items() if adapter.is_configured()]

    async def aclose(self) -> None:
        """Close HTTP clients held by adapters."""
        for adapter in self._adapters.values():
            close = getattr(adapter, "aclose", None)
            if close is not None:
                await close()

    @classmethod
    def from_settings(cls, settings: Settings) -> "GatewayRegistry":
        """Create and initialize every enabled adapter."""
        adapters: Dict[str, GatewayAdapter] = {}
        for name in settings.get_enabled_gateways():
            try:
                provider = GatewayProvider(name)
            except ValueError:
                logger.warning("unknown_gateway_in_settings", provider=name)
                continue
            adapter = ADAPTER_FACTORIES[provider](settings)
            adapter.initialize(gateway_config_for(provider, settings))
            adapters[provider.value] = adapter

        registry = cls(adapters)
        logger.info(
            "gateway_registry_built",
            registered=list(registry),
            configured=registry.configured(),
        )
        return registry
