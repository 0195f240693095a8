"""Core."""

from .config import (
    ChannelTopology,
    GatewayConfig,
    HostConfig,
    PeergateConfig,
    SignalingServerConfig,
    TimeoutConfig,
    clear_config,
    get_config,
)
from .exceptions import (
    ChannelError,
    ExchangeTimeoutError,
    NegotiationError,
    NegotiationTimeoutError,
    PeerGateError,
    ProtocolParseError,
    RoutingError,
    SignalingError,
    format_error_for_user,
)

__all__ = [
    # Config
    "ChannelTopology",
    "GatewayConfig",
    "HostConfig",
    "PeergateConfig",
    "SignalingServerConfig",
    "TimeoutConfig",
    "clear_config",
    "get_config",
    # Errors
    "PeerGateError",
    "SignalingError",
    "NegotiationError",
    "NegotiationTimeoutError",
    "ChannelError",
    "ProtocolParseError",
    "ExchangeTimeoutError",
    "RoutingError",
    "format_error_for_user",
]
