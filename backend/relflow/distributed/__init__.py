"""Redis-backed store, lease and approval transport for distributed deployments."""
