"""Configuration schema for the realtime coach client.

Defines Pydantic models for loading and validating client configuration
from YAML files and environment variables.
"""

from pathlib import Path

from pydantic import BaseModel, Field, field_validator


class TokenEndpointConfig(BaseModel):
    """Token endpoint configuration (credential exchange)."""

    url: str = Field(
        default="http://localhost:3000/token",
        description="URL returning a short-lived realtime session credential",
    )
    timeout_s: float = Field(default=10.0, gt=0, le=120, description="Request timeout")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate that the token URL is HTTP(S)."""
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"Token url must start with http:// or https://, got '{v}'")
        return v


class RealtimeConfig(BaseModel):
    """Remote realtime service (offer/answer) configuration."""

    base_url: str = Field(
        default="https://api.openai.com/v1/realtime",
        description="Endpoint receiving the SDP offer",
    )
    model: str = Field(
        default="gpt-4o-realtime-preview-2024-12-17",
        min_length=1,
        description="Target realtime model, sent as the 'model' query parameter",
    )
    data_channel_label: str = Field(
        default="oai-events",
        min_length=1,
        description="Label of the single data channel carrying the event protocol",
    )
    timeout_s: float = Field(default=15.0, gt=0, le=120, description="SDP exchange timeout")


class AudioConfig(BaseModel):
    """Local audio input/output configuration.

    Device and format strings are passed through to FFmpeg (via aiortc's
    media helpers), e.g. ``device="default", format="pulse"`` on Linux or
    ``device=":0", format="avfoundation"`` on macOS.
    """

    mic_device: str = Field(default="default", description="Microphone input device")
    mic_format: str | None = Field(default="pulse", description="Microphone input format")
    playback_device: str | None = Field(
        default=None,
        description="Output device for the remote voice (None discards audio)",
    )
    playback_format: str | None = Field(default=None, description="Output device format")


class ChoreographyConfig(BaseModel):
    """Tool-call choreography configuration."""

    follow_up_delay_s: float = Field(
        default=0.5,
        ge=0.0,
        le=10.0,
        description="Delay between a completed tool step and the next instruction",
    )


class SilenceConfig(BaseModel):
    """Silence-triggered termination configuration."""

    threshold: float = Field(
        default=10.0,
        ge=0.0,
        le=255.0,
        description="Average byte-scaled frequency magnitude below which audio is silent",
    )
    duration_ms: float = Field(
        default=2000.0,
        gt=0.0,
        description="Continuous silence required before the call is ended",
    )
    fft_size: int = Field(default=256, description="FFT window size for level analysis")
    tick_hz: float = Field(
        default=60.0,
        gt=0.0,
        le=1000.0,
        description="Sampling cadence (display refresh rate equivalent)",
    )

    @field_validator("fft_size")
    @classmethod
    def validate_fft_size(cls, v: int) -> int:
        """Validate that FFT size is a power of two in the analyser range."""
        if v < 32 or v > 32768 or v & (v - 1) != 0:
            raise ValueError(f"Silence fft_size must be a power of two in [32, 32768], got {v}")
        return v


class CacheConfig(BaseModel):
    """Tool result cache configuration."""

    directory: Path = Field(
        default=Path(".realtime_coach_cache"),
        description="Directory holding one JSON file per cached step",
    )


class CoachConfig(BaseModel):
    """Root client configuration."""

    token: TokenEndpointConfig = Field(default_factory=TokenEndpointConfig)
    realtime: RealtimeConfig = Field(default_factory=RealtimeConfig)
    audio: AudioConfig = Field(default_factory=AudioConfig)
    choreography: ChoreographyConfig = Field(default_factory=ChoreographyConfig)
    silence: SilenceConfig = Field(default_factory=SilenceConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level name."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}, got '{v}'")
        return v.upper()

    @classmethod
    def from_yaml(cls, path: Path) -> "CoachConfig":
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
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "CoachConfig":
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


# Environment variable → (section, key); section None means top level
ENV_OVERRIDES: dict[str, tuple[str | None, str]] = {
    "COACH_TOKEN_URL": ("token", "url"),
    "REALTIME_BASE_URL": ("realtime", "base_url"),
    "REALTIME_MODEL": ("realtime", "model"),
    "COACH_MIC_DEVICE": ("audio", "mic_device"),
    "COACH_MIC_FORMAT": ("audio", "mic_format"),
    "COACH_CACHE_DIR": ("cache", "directory"),
    "LOG_LEVEL": (None, "log_level"),
}


def apply_env_overrides(data: dict) -> dict:
    """Apply environment variable overrides onto raw config data.

    Args:
        data: Raw configuration mapping (modified in place)

    Returns:
        The same mapping, with overrides applied
    """
    import os

    for env_name, (section, key) in ENV_OVERRIDES.items():
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
