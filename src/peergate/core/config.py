"""Configuration types with environment variable support.

All settings can be configured via environment variables with the PEERGATE_ prefix.
Example: PEERGATE_NEGOTIATION_TIMEOUT=45 sets the negotiation timeout to 45s.
"""

from __future__ import annotations

import tomllib
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SIGNALING_URL = "ws://localhost:8000/ws"
DEFAULT_ICE_SERVERS: list[dict[str, Any]] = [
    {"urls": "stun:stun.l.google.com:19302"},
]


def load_config_from_file(path: str | Path) -> dict[str, Any]:
    """Load configuration from a YAML or TOML file.

    Args:
        path: Path to the configuration file (.yaml, .yml, or .toml)

    Returns:
        Configuration dictionary

    Raises:
        FileNotFoundError: If the config file doesn't exist
        ValueError: If the config file has encoding errors, invalid syntax, or unsupported format
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ValueError(f"Config file encoding error in {path}: {e}") from e

    try:
        if path.suffix in (".yaml", ".yml"):
            return yaml.safe_load(content) or {}
        elif path.suffix == ".toml":
            return tomllib.loads(content)
        else:
            raise ValueError(f"Unsupported config format: {path.suffix}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Invalid TOML in {path}: {e}") from e


def flatten_config(config: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in config.items():
        full_key = f"{prefix}_{key}" if prefix else key
        if isinstance(value, dict) and key != "services":
            result.update(flatten_config(value, full_key))
        else:
            result[full_key] = value
    return result


class ChannelTopology(str, Enum):
    """How exchanges are mapped onto data channels."""

    PER_REQUEST = "per-request"
    SHARED = "shared"


class GatewayConfig(BaseModel):
    """Settings for the request-relaying side of the tunnel."""

    signaling_url: str = DEFAULT_SIGNALING_URL
    target_peer_id: str = "host-node"
    http_version: str = Field(
        default="HTTP/1.1",
        description="Protocol version tag written into every relayed request line.",
    )
    channel_topology: ChannelTopology = ChannelTopology.PER_REQUEST
    bootstrap_label: str = Field(
        default="peergate",
        description="Label of the data channel created with the offer.",
    )
    channel_label_prefix: str = "px"
    negotiation_timeout: float | None = Field(
        default=30.0,
        description="Seconds to wait for a session to become ready. None or 0 for indefinite.",
    )
    response_timeout: float | None = Field(
        default=None,
        description="Seconds to wait for response headers. None or 0 for indefinite.",
    )
    channel_open_timeout: float = Field(
        default=10.0,
        description="Seconds to wait for a freshly created data channel to open.",
    )
    ice_servers: list[dict[str, Any]] = Field(
        default_factory=lambda: list(DEFAULT_ICE_SERVERS),
    )
    default_service: str = "default"
    max_tag_length: int = Field(default=255, ge=1, le=255)

    @field_validator("http_version")
    @classmethod
    def _check_http_version(cls, value: str) -> str:
        if not value.startswith("HTTP/") or " " in value:
            raise ValueError(f"Invalid HTTP version tag: {value!r}")
        return value

    @field_validator("negotiation_timeout", "response_timeout")
    @classmethod
    def _zero_is_indefinite(cls, value: float | None) -> float | None:
        return value or None


class HostConfig(BaseModel):
    """Settings for the service host that answers offers."""

    signaling_url: str = DEFAULT_SIGNALING_URL
    peer_id: str = "host-node"
    services: dict[str, str] = Field(
        default_factory=dict,
        description="Routing tag to backend address (host:port).",
    )
    ice_servers: list[dict[str, Any]] = Field(
        default_factory=lambda: list(DEFAULT_ICE_SERVERS),
    )
    shared_label: str = Field(
        default="peergate",
        description="Channels with this label carry several exchanges and end bodies with EOF.",
    )
    read_chunk_size: int = Field(default=16 * 1024, gt=0)
    backend_connect_timeout: float = 10.0
    backend_http_version: str = Field(
        default="HTTP/1.0",
        description="Version written on requests to backends; HTTP/1.0 keeps responses close-delimited.",
    )

    @field_validator("services")
    @classmethod
    def _check_services(cls, value: dict[str, str]) -> dict[str, str]:
        for tag, addr in value.items():
            if len(tag.encode("utf-8")) > 255:
                raise ValueError(f"Routing tag too long: {tag!r}")
            if ":" not in addr:
                raise ValueError(f"Backend address must be host:port, got {addr!r}")
        return value


class SignalingServerConfig(BaseModel):
    """Rendezvous server bind settings."""

    host: str = "0.0.0.0"
    port: int = 8000
    path: str = "/ws"


class TimeoutConfig(BaseSettings):
    """Timeout configuration.

    All timeouts are in seconds. Set to 0 or None for indefinite where supported.
    """

    model_config = SettingsConfigDict(
        env_prefix="PEERGATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    negotiation_timeout: float | None = Field(
        default=30.0,
        description="Session negotiation timeout (seconds). None or 0 for indefinite.",
    )
    response_timeout: float | None = Field(
        default=None,
        description="Response header timeout (seconds). None or 0 for indefinite.",
    )
    channel_open_timeout: float = Field(
        default=10.0,
        description="Data channel open timeout (seconds).",
    )
    backend_connect_timeout: float = Field(
        default=10.0,
        description="Service host backend connect timeout (seconds).",
    )


class PeergateConfig(BaseSettings):
    """Master configuration combining env-driven settings.

    Use get_config() to get a cached instance.
    """

    model_config = SettingsConfigDict(
        env_prefix="PEERGATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    signaling_url: str = DEFAULT_SIGNALING_URL
    target_peer_id: str = "host-node"
    peer_id: str = "host-node"
    http_version: str = "HTTP/1.1"
    channel_topology: ChannelTopology = ChannelTopology.PER_REQUEST

    @property
    def timeouts(self) -> TimeoutConfig:
        """Get timeout configuration."""
        return TimeoutConfig()

    def gateway(self, **overrides: Any) -> GatewayConfig:
        """Build a GatewayConfig from env values plus explicit overrides."""
        timeouts = self.timeouts
        values: dict[str, Any] = {
            "signaling_url": self.signaling_url,
            "target_peer_id": self.target_peer_id,
            "http_version": self.http_version,
            "channel_topology": self.channel_topology,
            "negotiation_timeout": timeouts.negotiation_timeout or None,
            "response_timeout": timeouts.response_timeout or None,
            "channel_open_timeout": timeouts.channel_open_timeout,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return GatewayConfig(**values)

    def host(self, **overrides: Any) -> HostConfig:
        """Build a HostConfig from env values plus explicit overrides."""
        values: dict[str, Any] = {
            "signaling_url": self.signaling_url,
            "peer_id": self.peer_id,
            "backend_connect_timeout": self.timeouts.backend_connect_timeout,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return HostConfig(**values)

    def to_display_dict(self) -> dict[str, Any]:
        """Export current configuration as a nested dictionary for display."""
        timeouts = self.timeouts
        return {
            "session": {
                "signaling_url": self.signaling_url,
                "target_peer_id": self.target_peer_id,
                "peer_id": self.peer_id,
                "http_version": self.http_version,
                "channel_topology": self.channel_topology.value,
            },
            "timeouts": {
                "negotiation_timeout": timeouts.negotiation_timeout,
                "response_timeout": timeouts.response_timeout,
                "channel_open_timeout": timeouts.channel_open_timeout,
                "backend_connect_timeout": timeouts.backend_connect_timeout,
            },
        }


_config: PeergateConfig | None = None


def get_config() -> PeergateConfig:
    """Get the global configuration instance.

    Returns a cached instance of PeergateConfig that reads from environment variables.
    To reload config (e.g., in tests), call clear_config() first.
    """
    global _config
    if _config is None:
        _config = PeergateConfig()
    return _config


def clear_config() -> None:
    """Clear the cached configuration.

    Call this to force reloading of environment variables on next get_config() call.
    """
    global _config
    _config = None
