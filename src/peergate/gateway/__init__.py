"""Request-relaying side of the tunnel."""

from .dispatcher import TunnelDispatcher, error_response
from .routing import resolve_service_tag, service_tag_from_host
from .server import GatewayServer

__all__ = [
    "GatewayServer",
    "TunnelDispatcher",
    "error_response",
    "resolve_service_tag",
    "service_tag_from_host",
]
