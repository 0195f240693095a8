"""Data channel transport and per-exchange state."""

from .channel import (
    EOF_MARKER,
    ChannelProvider,
    PerRequestChannelProvider,
    SharedChannelProvider,
    TunnelChannel,
    create_channel_provider,
)
from .exchange import ExchangeState, PendingExchange

__all__ = [
    "EOF_MARKER",
    "ChannelProvider",
    "PerRequestChannelProvider",
    "SharedChannelProvider",
    "TunnelChannel",
    "create_channel_provider",
    "ExchangeState",
    "PendingExchange",
]
