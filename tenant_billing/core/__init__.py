"""Billing core: gateway selection, webhook ledger, dunning and orchestration."""
