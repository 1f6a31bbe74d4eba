"""Configuration schema for the voice relay.

Defines Pydantic models for loading and validating relay configuration
from YAML files and environment variables.
"""

import os
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

DEFAULT_VOICE_ID = "pNInz6obpgDQGcFmaJgB"
DEFAULT_VOICE_NAME = "Adam"


class LiveKitConfig(BaseModel):
    """LiveKit room connection configuration."""

    url: str = Field(default="", description="LiveKit server websocket URL")
    api_key: str = Field(default="", description="LiveKit API key")
    api_secret: str = Field(default="", description="LiveKit API secret")
    identity: str = Field(
        default="audio-worker",
        description="Identity the relay joins with (also the self-loop guard prefix)",
    )
    room_name: str = Field(default="default-room", description="Room to join")
    token_ttl_hours: int = Field(default=1, ge=1, description="Access token validity")
    route_prefix: str = Field(
        default="from-",
        description="Prefix of published route track names",
    )


class TransformConfig(BaseModel):
    """Voice transformation service configuration."""

    api_key: str = Field(default="", description="Transformation service API key")
    base_url: str = Field(
        default="https://api.elevenlabs.io/v1",
        description="Transformation service base URL",
    )
    output_format: str = Field(default="pcm_48000", description="Requested output format")
    output_sample_rate: int = Field(
        default=48000,
        description="Sample rate of the PCM returned by the service",
    )
    optimize_streaming_latency: int = Field(default=4, ge=0, le=4)
    request_timeout_s: float = Field(default=30.0, gt=0, description="Per-request timeout")
    quota_cooldown_s: float = Field(
        default=60.0,
        gt=0,
        description="Pause after a quota or rate-limit response",
    )


class ChunkingConfig(BaseModel):
    """Inbound audio chunking and silence gating."""

    sample_rate: int = Field(default=48000, description="Inbound PCM sample rate")
    chunk_ms: int = Field(default=1000, gt=0, description="Duration of one transform chunk")
    min_interval_ms: int = Field(
        default=200,
        ge=0,
        description="Minimum time between two emitted chunks",
    )
    flush_min_fraction: float = Field(
        default=0.5,
        description="Fraction of a chunk a trailing flush must hold",
    )
    frame_ms: int = Field(default=20, gt=0, description="Duration of published output frames")
    silence_threshold_db: float = Field(
        default=-55.0,
        description="Chunks below this level (dBFS) are not transformed",
    )
    silence_floor_db: float = Field(default=-120.0, description="Lowest reported level")

    @field_validator("sample_rate")
    @classmethod
    def validate_sample_rate(cls, v: int) -> int:
        """Validate that the sample rate is one LiveKit can deliver."""
        valid_rates = [8000, 16000, 24000, 32000, 44100, 48000]
        if v not in valid_rates:
            raise ValueError(f"Chunking sample_rate must be one of {valid_rates}, got {v}")
        return v

    @field_validator("flush_min_fraction")
    @classmethod
    def validate_flush_fraction(cls, v: float) -> float:
        if not 0.0 < v <= 1.0:
            raise ValueError(f"flush_min_fraction must be in (0, 1], got {v}")
        return v

    @field_validator("silence_threshold_db")
    @classmethod
    def validate_threshold(cls, v: float) -> float:
        if v > 0.0:
            raise ValueError(f"silence_threshold_db must be <= 0 dBFS, got {v}")
        return v


class RecoveryConfig(BaseModel):
    """Retry, debounce and reconnect timings."""

    route_retry_delay_s: float = Field(
        default=1.0,
        gt=0,
        description="Delay before the single route-readiness retry",
    )
    recreate_debounce_s: float = Field(
        default=5.0,
        gt=0,
        description="Window in which a route is not recreated twice",
    )
    reconnect_delay_s: float = Field(
        default=5.0,
        gt=0,
        description="Delay before the single reconnect attempt",
    )
    housekeeping_interval_s: float = Field(
        default=30.0,
        gt=0,
        description="Interval of the quota/debounce expiry and status timer",
    )


class ControlPlaneConfig(BaseModel):
    """Control plane HTTP server and voice lookup."""

    enabled: bool = Field(default=True, description="Run the control plane in-process")
    host: str = Field(default="0.0.0.0", description="Bind host address")  # noqa: S104
    port: int = Field(default=3000, ge=1, le=65535, description="Bind port")
    voice_lookup_url: str = Field(
        default="http://localhost:3000",
        description="Control plane base URL used when it runs out-of-process",
    )
    lookup_timeout_s: float = Field(default=5.0, gt=0)
    default_voice_id: str = Field(default=DEFAULT_VOICE_ID)
    default_voice_name: str = Field(default=DEFAULT_VOICE_NAME)


class RelayConfig(BaseModel):
    """Root relay configuration."""

    livekit: LiveKitConfig = Field(default_factory=LiveKitConfig)
    transform: TransformConfig = Field(default_factory=TransformConfig)
    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)
    recovery: RecoveryConfig = Field(default_factory=RecoveryConfig)
    control_plane: ControlPlaneConfig = Field(default_factory=ControlPlaneConfig)

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )

    def missing_credentials(self) -> list[str]:
        """Names of required secrets that are not configured."""
        missing = []
        if not self.livekit.url:
            missing.append("LIVEKIT_URL")
        if not self.livekit.api_key:
            missing.append("LIVEKIT_API_KEY")
        if not self.livekit.api_secret:
            missing.append("LIVEKIT_API_SECRET")
        if not self.transform.api_key:
            missing.append("ELEVENLABS_API_KEY")
        return missing

    @staticmethod
    def _apply_env_overrides(data: dict) -> dict:
        livekit = data.setdefault("livekit", {})
        if livekit_url := os.getenv("LIVEKIT_URL") or os.getenv("LIVEKIT_WS_URL"):
            livekit["url"] = livekit_url
        if api_key := os.getenv("LIVEKIT_API_KEY"):
            livekit["api_key"] = api_key
        if api_secret := os.getenv("LIVEKIT_API_SECRET"):
            livekit["api_secret"] = api_secret

        if transform_key := os.getenv("ELEVENLABS_API_KEY"):
            data.setdefault("transform", {})["api_key"] = transform_key

        if chunk_ms := os.getenv("S2S_CHUNK_MS"):
            data.setdefault("chunking", {})["chunk_ms"] = int(chunk_ms)

        if port := os.getenv("PORT"):
            data.setdefault("control_plane", {})["port"] = int(port)

        if log_level := os.getenv("LOG_LEVEL"):
            data["log_level"] = log_level

        return data

    @classmethod
    def from_env(cls) -> "RelayConfig":
        """Build configuration from defaults and environment variables only."""
        return cls.model_validate(cls._apply_env_overrides({}))

    @classmethod
    def from_yaml(cls, path: Path) -> "RelayConfig":
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

        return cls.model_validate(cls._apply_env_overrides(data))

    @classmethod
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "RelayConfig":
        """Load configuration from YAML or fall back to the environment.

        Args:
            path: Optional path to YAML configuration file

        Returns:
            Loaded configuration or defaults with environment overrides
        """
        if path is not None and path.exists():
            return cls.from_yaml(path)

        return cls.from_env()
