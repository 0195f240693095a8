"""Remote side of the tunnel: answers offers and serves local backends."""

from .responder import ServiceHost, status_response

__all__ = ["ServiceHost", "status_response"]
