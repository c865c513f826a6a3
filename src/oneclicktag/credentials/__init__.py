"""Per-user, per-tenant, per-scope Google credentials."""
