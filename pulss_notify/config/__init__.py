"""Configuration management for the notification service."""

from .environment import EnvironmentConfig, expand_env_refs, load_environment_config
from .exceptions import ConfigurationError
from .loader import load_config, parse_config_dict, validate_config_file
from .models import (
    AppConfig,
    LogFormat,
    LogLevel,
    LoggingConfig,
    PlatformProviderConfig,
    RenderingConfig,
    RetryConfig,
    WorkerConfig,
)

__all__ = [
    # Loader functions
    "load_config",
    "parse_config_dict",
    "validate_config_file",
    "load_environment_config",
    "expand_env_refs",
    # Configuration models
    "AppConfig",
    "WorkerConfig",
    "RetryConfig",
    "RenderingConfig",
    "PlatformProviderConfig",
    "LoggingConfig",
    "EnvironmentConfig",
    # Enums
    "LogLevel",
    "LogFormat",
    # Exceptions
    "ConfigurationError",
]
