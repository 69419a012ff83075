"""HTTP API for tenant billing."""
