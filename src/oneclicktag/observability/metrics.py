"""Prometheus metrics for OneClickTag.

Tenant and user ids are never labels; every label here has a bounded value set.
"""

from typing import Dict

import prometheus_client

_metrics: Dict[str, object] = {}


def _metric(name, metric_type, description, labelnames=()):
    """Get or create a Prometheus metric."""
    if name not in _metrics:
        cls = getattr(prometheus_client, metric_type)
        _metrics[name] = cls(name, description, labelnames=labelnames)
    return _metrics[name]


def credential_refresh_total():
    return _metric(
        "oneclicktag_credential_refresh_total",
        "Counter",
        "Access token refresh attempts",
        labelnames=["scope", "outcome"],
    )


def remote_errors_total():
    return _metric(
        "oneclicktag_remote_errors_total",
        "Counter",
        "Classified errors returned by Google APIs",
        labelnames=["api", "kind"],
    )


def resource_resolution_total():
    return _metric(
        "oneclicktag_resource_resolution_total",
        "Counter",
        "Find-or-create resolutions by resource kind and source",
        labelnames=["kind", "source"],
    )


def provisioning_total():
    return _metric(
        "oneclicktag_provisioning_total",
        "Counter",
        "Tracking provisioning outcomes",
        labelnames=["outcome"],
    )


def generate_metrics_text() -> str:
    return prometheus_client.generate_latest().decode("utf-8")
