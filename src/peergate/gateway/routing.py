"""Service tag resolution from the intercepted request's hostname."""

from __future__ import annotations

import structlog

from peergate.core.exceptions import RoutingError
from peergate.protocol.framing import MAX_TAG_LENGTH, encode_routing_tag

logger = structlog.get_logger()

DEFAULT_SERVICE = "default"


def service_tag_from_host(hostname: str | None) -> str | None:
    """First label of ``hostname`` (``blog.example.com`` -> ``blog``)."""
    if not hostname:
        return None
    return hostname.split(".", 1)[0]


def validate_service_tag(tag: str, max_length: int = MAX_TAG_LENGTH) -> str:
    """Raises RoutingError if ``tag`` cannot be carried in the length-prefixed frame."""
    encode_routing_tag(tag)
    if len(tag.encode("utf-8")) > max_length:
        raise RoutingError(f"Routing tag exceeds configured limit of {max_length} bytes")
    return tag


def resolve_service_tag(
    hostname: str | None,
    default: str = DEFAULT_SERVICE,
    max_length: int = MAX_TAG_LENGTH,
) -> str:
    """Routing tag for a request; unusable names fall back to ``default``."""
    tag = service_tag_from_host(hostname)
    if tag is None:
        return default
    try:
        return validate_service_tag(tag, max_length)
    except RoutingError as e:
        logger.debug("Falling back to default service", hostname=hostname, reason=e.message)
        return default
