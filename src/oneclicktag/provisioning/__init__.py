"""Provisioning: account discovery, shared resources, tag graphs and conversions."""
