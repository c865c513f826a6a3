"""OneClickTag: Google credential and resource provisioning."""

__version__ = "0.1.0"
