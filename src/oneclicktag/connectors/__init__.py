"""Google API access: transport, OAuth endpoints and per-API clients."""
