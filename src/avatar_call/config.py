"""Configuration schema for the avatar call client.

Defines Pydantic models for loading and validating call configuration
from YAML files and environment variables.
"""

import os
from pathlib import Path

from pydantic import BaseModel, Field, field_validator


class NegotiatorConfig(BaseModel):
    """Conversation backend configuration."""

    backend_url: str = Field(
        default="http://localhost:8080",
        description="Base URL of the backend exposing /start-conversation",
    )
    timeout_s: float = Field(
        default=10.0, gt=0, description="Total timeout for the negotiation request"
    )

    @field_validator("backend_url")
    @classmethod
    def validate_backend_url(cls, v: str) -> str:
        """Require an http(s) URL and drop any trailing slash."""
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"backend_url must start with http:// or https://, got '{v}'")
        return v.rstrip("/")


class SignalingConfig(BaseModel):
    """Signaling WebSocket configuration."""

    ws_url: str = Field(
        default="ws://localhost:8080/ws",
        description="WebSocket endpoint; the session id is added as ?connectionId=",
    )
    connect_timeout_s: float = Field(default=10.0, gt=0, description="Connect timeout")
    max_message_bytes: int = Field(
        default=16 * 1024 * 1024, ge=1024, description="Largest inbound message accepted"
    )

    @field_validator("ws_url")
    @classmethod
    def validate_ws_url(cls, v: str) -> str:
        """Require a ws(s) URL."""
        if not v.startswith(("ws://", "wss://")):
            raise ValueError(f"ws_url must start with ws:// or wss://, got '{v}'")
        return v


class CaptureConfig(BaseModel):
    """Microphone capture configuration."""

    sample_rate: int = Field(default=16000, description="Capture sample rate in Hz")
    channels: int = Field(default=1, ge=1, le=2, description="Number of input channels")
    chunk_ms: int = Field(
        default=100, ge=10, le=1000, description="Duration of each uploaded chunk"
    )
    device: str | int | None = Field(
        default=None, description="Input device name or index (None = system default)"
    )

    @field_validator("sample_rate")
    @classmethod
    def validate_sample_rate(cls, v: int) -> int:
        """Validate that sample rate is one the backend accepts."""
        valid_rates = [8000, 16000, 22050, 24000, 44100, 48000]
        if v not in valid_rates:
            raise ValueError(f"Capture sample_rate must be one of {valid_rates}, got {v}")
        return v


class AvatarConfig(BaseModel):
    """Avatar renderer identity, sent once in the transport descriptor."""

    api_key: str = Field(default="", description="Avatar service API key")
    face_id: str = Field(default="", description="Avatar face identifier")
    handle_silence: bool = Field(
        default=True, description="Let the avatar idle naturally when no audio arrives"
    )


class PollingConfig(BaseModel):
    """Transport readiness polling configuration."""

    initial_delay_s: float = Field(
        default=4.0, ge=0, description="Delay before the first readiness check"
    )
    interval_s: float = Field(
        default=1.0, ge=0, description="Delay between subsequent readiness checks"
    )
    max_attempts: int | None = Field(
        default=30,
        ge=1,
        description="Readiness checks before giving up (None polls forever)",
    )


class LiveKitConfig(BaseModel):
    """LiveKit/WebRTC avatar transport configuration."""

    url: str = Field(default="ws://localhost:7880", description="LiveKit server URL")
    api_key: str = Field(default="devkey", description="LiveKit API key")
    api_secret: str = Field(default="secret", description="LiveKit API secret")
    room_name: str = Field(default="avatar-call", description="Room shared with the avatar")
    identity: str = Field(default="avatar-call-client", description="Local participant identity")
    avatar_identity: str | None = Field(
        default=None,
        description="Identity of the avatar participant (None accepts any participant)",
    )
    token_ttl_hours: int = Field(default=1, ge=1, le=24, description="Access token lifetime")


class CallConfig(BaseModel):
    """Root avatar call configuration."""

    negotiator: NegotiatorConfig = Field(default_factory=NegotiatorConfig)
    signaling: SignalingConfig = Field(default_factory=SignalingConfig)
    capture: CaptureConfig = Field(default_factory=CaptureConfig)
    avatar: AvatarConfig = Field(default_factory=AvatarConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    livekit: LiveKitConfig = Field(default_factory=LiveKitConfig)

    prompt: str = Field(
        default="You are a friendly assistant. Keep your answers short.",
        description="Initial system prompt for the conversation",
    )
    voice_id: str = Field(default="", description="Voice used by the speech backend")

    # Operational settings
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )

    @classmethod
    def from_yaml(cls, path: Path) -> "CallConfig":
        """Load configuration from YAML file with environment variable overrides.

        Args:
            path: Path to YAML configuration file

        Returns:
            Loaded configuration

        Raises:
            FileNotFoundError: If configuration file doesn't exist
            ValueError: If YAML is invalid or validation fails
        """
        import yaml  # type: ignore[import-untyped]

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ValueError(f"Configuration root must be a mapping: {path}")

        return cls.model_validate(apply_env_overrides(data))

    @classmethod
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "CallConfig":
        """Load configuration from YAML or use defaults if file doesn't exist.

        Environment overrides apply in both cases.

        Args:
            path: Optional path to YAML configuration file

        Returns:
            Loaded configuration or defaults
        """
        if path is not None and path.exists():
            return cls.from_yaml(path)

        return cls.model_validate(apply_env_overrides({}))


# (environment variable, section or None for root, key)
_ENV_OVERRIDES: list[tuple[str, str | None, str]] = [
    ("BACKEND_URL", "negotiator", "backend_url"),
    ("SIGNALING_URL", "signaling", "ws_url"),
    ("SIMLI_API_KEY", "avatar", "api_key"),
    ("SIMLI_FACE_ID", "avatar", "face_id"),
    ("ELEVENLABS_VOICE_ID", None, "voice_id"),
    ("LIVEKIT_URL", "livekit", "url"),
    ("LIVEKIT_API_KEY", "livekit", "api_key"),
    ("LIVEKIT_API_SECRET", "livekit", "api_secret"),
]


def apply_env_overrides(data: dict) -> dict:
    """Overlay environment variables onto raw configuration data.

    Args:
        data: Raw configuration mapping (modified in place)

    Returns:
        The same mapping, with any set environment variables applied
    """
    for env_name, section, key in _ENV_OVERRIDES:
        value = os.getenv(env_name)
        if not value:
            continue
        if section is None:
            data[key] = value
            continue
        if not isinstance(data.get(section), dict):
            data[section] = {}
        data[section][key] = value
    return data
