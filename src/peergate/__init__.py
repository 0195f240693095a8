"""Peergate - reach services behind NAT over WebRTC data channels."""

__version__ = "0.1.0"

__all__ = ["__version__"]
