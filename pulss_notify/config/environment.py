"""Environment variable loading and validation."""

import os
import re
import socket
from typing import Any, Optional

from .exceptions import ConfigurationError

_VALID_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
_ENV_REF = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class EnvironmentConfig:
    """Environment variable configuration holder."""

    def __init__(
        self,
        database_url: Optional[str] = None,
        log_level: Optional[str] = None,
        worker_id: Optional[str] = None,
        environment: Optional[str] = None,
    ):
        self.database_url = database_url or "sqlite:///./data/pulss_notify.db"
        self.log_level = log_level
        self.worker_id = worker_id or f"{socket.gethostname()}-{os.getpid()}"
        self.environment = environment or "local"


def load_environment_config() -> EnvironmentConfig:
    """
    Load and validate environment variables.

    Optional environment variables:
    - DATABASE_URL: SQLAlchemy URL (default: sqlite:///./data/pulss_notify.db)
    - LOG_LEVEL: Override log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    - WORKER_ID: Identity recorded on claimed jobs (default: hostname-pid)
    - ENVIRONMENT: Label added to every log record (default: local)

    Returns:
        EnvironmentConfig object with validated values

    Raises:
        ConfigurationError: If a variable is set to an invalid value
    """
    errors = []

    database_url = os.getenv("DATABASE_URL")
    log_level = os.getenv("LOG_LEVEL")
    worker_id = os.getenv("WORKER_ID")
    environment = os.getenv("ENVIRONMENT")

    if database_url is not None and "://" not in database_url:
        errors.append(f"Invalid DATABASE_URL: '{database_url}'. Expected a SQLAlchemy URL.")

    if log_level and log_level.upper() not in _VALID_LEVELS:
        errors.append(
            f"Invalid LOG_LEVEL: '{log_level}'. Must be one of: {', '.join(_VALID_LEVELS)}"
        )

    if worker_id is not None and not worker_id.strip():
        errors.append("WORKER_ID is set but empty")

    if errors:
        raise ConfigurationError(
            "Environment variable validation failed",
            errors=errors,
            suggestions=[
                "Copy .env.example to .env and adjust the values",
                "Use a URL such as sqlite:///./data/pulss_notify.db or postgresql://...",
            ],
        )

    return EnvironmentConfig(
        database_url=database_url,
        log_level=log_level.upper() if log_level else None,
        worker_id=worker_id.strip() if worker_id else None,
        environment=environment,
    )


def expand_env_refs(value: Any) -> Any:
    """Replace ``${VAR}`` references in strings, recursing into dicts and lists.

    Unknown variables raise ConfigurationError so a provider is never
    configured with a literal placeholder as its secret.
    """
    if isinstance(value, dict):
        return {key: expand_env_refs(item) for key, item in value.items()}
    if isinstance(value, list):
        return [expand_env_refs(item) for item in value]
    if not isinstance(value, str):
        return value

    missing = [name for name in _ENV_REF.findall(value) if name not in os.environ]
    if missing:
        raise ConfigurationError(
            "Provider credentials reference unset environment variables",
            errors=[f"Missing environment variable: {name}" for name in missing],
            suggestions=["Set the variables in your environment or .env file"],
        )
    return _ENV_REF.sub(lambda m: os.environ[m.group(1)], value)
