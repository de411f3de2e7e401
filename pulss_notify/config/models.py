"""Configuration schema models using Pydantic."""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from .duration import DurationParseError, parse_duration, validate_duration_range


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogFormat(str, Enum):
    """Log output formats."""

    JSON = "json"
    KEY_VALUE = "key-value"


def _duration_field(value: Any, minimum: int, maximum: int, label: str) -> Any:
    try:
        seconds = parse_duration(value)
        validate_duration_range(seconds, min_seconds=minimum, max_seconds=maximum, label=label)
    except DurationParseError as e:
        raise ValueError(str(e)) from e
    return value


class WorkerConfig(BaseModel):
    """Delivery worker settings."""

    poll_interval: str = Field("15s", description="How often the worker looks for due jobs")
    batch_size: int = Field(50, ge=1, le=1000, description="Jobs claimed per worker pass")
    concurrency: int = Field(8, ge=1, le=64, description="Parallel delivery attempts per instance")
    claim_lease: str = Field(
        "10m", description="A sending job older than this is assumed orphaned and released"
    )
    provider_timeout_seconds: int = Field(
        10, ge=1, le=120, description="Default timeout for a single provider call"
    )

    @field_validator("poll_interval")
    @classmethod
    def validate_poll_interval(cls, v: str) -> str:
        return _duration_field(v, 1, 3600, "poll_interval")

    @field_validator("claim_lease")
    @classmethod
    def validate_claim_lease(cls, v: str) -> str:
        return _duration_field(v, 30, 86400, "claim_lease")

    @property
    def poll_interval_seconds(self) -> int:
        return parse_duration(self.poll_interval)

    @property
    def claim_lease_seconds(self) -> int:
        return parse_duration(self.claim_lease)


class RetryConfig(BaseModel):
    """Retry and backoff policy for transient delivery failures.

    When ``backoff_schedule`` is non-empty the n-th retry waits the n-th entry
    (the last entry repeats). Otherwise the delay is
    ``base_delay * multiplier ** (n - 1)`` capped at ``max_delay``.
    """

    max_retries: int = Field(3, ge=0, le=10, description="Retries after the first attempt")
    backoff_schedule: List[str] = Field(
        default_factory=lambda: ["1m", "5m", "30m", "2h"],
        description="Explicit per-retry delays",
    )
    base_delay: str = Field("1m", description="Exponential base delay")
    multiplier: float = Field(5.0, ge=1.0, le=10.0, description="Exponential growth factor")
    max_delay: str = Field("2h", description="Upper bound for any single delay")
    jitter_ratio: float = Field(
        0.1, ge=0.0, le=0.5, description="Random +/- fraction applied to each delay"
    )

    @field_validator("backoff_schedule")
    @classmethod
    def validate_schedule(cls, v: List[str]) -> List[str]:
        for entry in v:
            _duration_field(entry, 1, 7 * 86400, "backoff_schedule entry")
        return v

    @field_validator("base_delay", "max_delay")
    @classmethod
    def validate_delay(cls, v: str) -> str:
        return _duration_field(v, 1, 7 * 86400, "delay")

    @model_validator(mode="after")
    def validate_bounds(self):
        if parse_duration(self.base_delay) > parse_duration(self.max_delay):
            raise ValueError("base_delay cannot be larger than max_delay")
        return self

    @property
    def schedule_seconds(self) -> List[int]:
        return [parse_duration(entry) for entry in self.backoff_schedule]


class RenderingConfig(BaseModel):
    """Channel rendering limits."""

    sms_max_length: int = Field(
        1600, ge=160, le=1600, description="Longest SMS body sent (160 for single segment)"
    )
    push_max_length: int = Field(240, ge=40, le=4000, description="Longest push body sent")
    truncation_suffix: str = Field("...", max_length=3)


class PlatformProviderConfig(BaseModel):
    """Platform-wide default provider for one channel."""

    channel: str = Field(..., description="email, sms, push, webhook or in_app")
    provider: str = Field(..., min_length=1, description="Registered provider name")
    credentials: Dict[str, Any] = Field(default_factory=dict)
    timeout_seconds: Optional[int] = Field(None, ge=1, le=120)

    @field_validator("channel")
    @classmethod
    def normalize_channel(cls, v: str) -> str:
        value = v.strip().lower()
        if value not in {"email", "sms", "push", "webhook", "in_app"}:
            raise ValueError(f"Unknown channel: {v}")
        return value


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: LogLevel = Field(LogLevel.INFO, description="Log level")
    format: LogFormat = Field(
        LogFormat.KEY_VALUE, description="Log output format (json or key-value)"
    )

    model_config = {"use_enum_values": True}


class AppConfig(BaseModel):
    """Root configuration object for the notification service."""

    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    rendering: RenderingConfig = Field(default_factory=RenderingConfig)
    platform_providers: List[PlatformProviderConfig] = Field(default_factory=list)
    critical_types: List[str] = Field(
        default_factory=lambda: [
            "payment_failed",
            "billing_payment_failed",
            "password_reset",
            "account_locked",
            "login_new_device",
        ],
        description="Type codes that bypass quiet hours",
    )
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("critical_types")
    @classmethod
    def normalize_types(cls, v: List[str]) -> List[str]:
        return sorted({code.strip().lower() for code in v if code.strip()})

    @model_validator(mode="after")
    def validate_platform_providers(self):
        seen = set()
        for entry in self.platform_providers:
            if entry.channel in seen:
                raise ValueError(
                    f"Duplicate platform provider for channel '{entry.channel}'"
                )
            seen.add(entry.channel)
        return self

    def get_platform_provider(self, channel: str) -> Optional[PlatformProviderConfig]:
        """Return the platform default provider for a channel, if any."""
        for entry in self.platform_providers:
            if entry.channel == channel:
                return entry
        return None
