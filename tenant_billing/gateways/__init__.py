"""Payment gateway adapters."""
from .base import GatewayAdapter, SubscriptionCapable
from .registry import GatewayRegistry

__all__ = ["GatewayAdapter", "GatewayRegistry", "SubscriptionCapable"]
