"""Error types raised by the tunnel engine.

Every failure that can reach a relayed exchange maps to an HTTP status the
gateway renders as a synthesized response.
"""

from __future__ import annotations


class PeerGateError(Exception):
    """Base class for all peergate errors."""

    code = "PEERGATE_ERROR"
    http_status = 502
    title = "Peer Proxy Error"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class SignalingError(PeerGateError):
    """The control connection to the rendezvous server failed or was rejected."""

    code = "SIGNALING_FAILED"
    http_status = 503
    title = "Gateway Not Connected"


class NegotiationError(PeerGateError):
    """The session could not be negotiated (bad description, gathering stalled, transport failed)."""

    code = "NEGOTIATION_FAILED"
    http_status = 503
    title = "Gateway Not Connected"


class NegotiationTimeoutError(NegotiationError):
    """Negotiation did not complete within the configured timeout."""

    code = "NEGOTIATION_TIMEOUT"

    def __init__(self, timeout: float) -> None:
        super().__init__(f"Session negotiation did not complete within {timeout:g}s")
        self.timeout = timeout


class ChannelError(PeerGateError):
    """Transport-level send/receive failure on a single data channel."""

    code = "CHANNEL_FAILED"
    http_status = 502


class ProtocolParseError(PeerGateError):
    """Inbound bytes violated the tunnel framing."""

    code = "PROTOCOL_ERROR"
    http_status = 502

    @classmethod
    def closed_before_headers(cls) -> ProtocolParseError:
        return cls("Connection closed before response headers received")


class ExchangeTimeoutError(PeerGateError):
    """No response headers arrived within the configured timeout."""

    code = "EXCHANGE_TIMEOUT"
    http_status = 504
    title = "Gateway Timeout"

    def __init__(self, timeout: float) -> None:
        super().__init__(f"No response headers received within {timeout:g}s")
        self.timeout = timeout


class RoutingError(PeerGateError):
    """No usable service name could be derived; callers fall back to the default tag."""

    code = "ROUTING_FAILED"


def format_error_for_user(error: BaseException) -> str:
    """Render an exception as a short, human-readable sentence."""
    if isinstance(error, PeerGateError):
        return error.message
    if isinstance(error, TimeoutError):
        return "Operation timed out"
    if isinstance(error, ConnectionRefusedError):
        return "Connection refused - is the signaling server running?"
    if isinstance(error, OSError):
        return f"Network error: {error.strerror or error}"
    text = str(error)
    return text or type(error).__name__
