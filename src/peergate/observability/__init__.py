"""Prometheus metrics for the tunnel engine."""

from .metrics import (
    ACTIVE_CHANNELS,
    ACTIVE_SESSIONS,
    BYTES_TRANSFERRED,
    NEGOTIATIONS,
    RELAY_DURATION,
    RELAYED_REQUESTS,
    bucket_status,
    generate_metrics,
    get_content_type,
)

__all__ = [
    "ACTIVE_CHANNELS",
    "ACTIVE_SESSIONS",
    "BYTES_TRANSFERRED",
    "NEGOTIATIONS",
    "RELAY_DURATION",
    "RELAYED_REQUESTS",
    "bucket_status",
    "generate_metrics",
    "get_content_type",
]
