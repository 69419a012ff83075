"""Multi-gateway subscription billing for multi-tenant platforms."""

__version__ = "1.0.0"
