"""Resolution of the provider that delivers a tenant's channel."""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from pulss_notify.config.models import AppConfig
from pulss_notify.domain.exceptions import NoProviderConfigured
from pulss_notify.domain.models import Channel
from pulss_notify.logging import get_logger
from pulss_notify.persistence.repositories import ProviderConfigRepository

from .base import NotificationProvider
from .factory import create_provider, get_provider_class

logger = get_logger(__name__, component="router")


@dataclass
class ResolvedProvider:
    """Provider chosen for one send, with the credentials to use.

    Attributes:
        name: Registered provider name
        provider: Provider instance
        credentials: Credentials from the winning configuration
        timeout: Request timeout in seconds
        source: "tenant", "platform" or "config", for logs and troubleshooting
    """

    name: str
    provider: NotificationProvider
    credentials: Dict[str, Any] = field(default_factory=dict, repr=False)
    timeout: int = 10
    source: str = "tenant"


class ProviderRouter:
    """Chooses a provider per (tenant, channel).

    Resolution order: the tenant's active configuration, the platform default
    stored in the database, the ``platform_providers`` entry of the YAML
    configuration. Nothing is cached: each send reads the current rows, so a
    tenant switching vendors takes effect on the next attempt.
    """

    def __init__(
        self,
        app_config: AppConfig,
        provider_factory: Optional[Callable[..., NotificationProvider]] = None,
    ):
        self.app_config = app_config
        self.provider_factory = provider_factory or create_provider
        self.default_timeout = app_config.worker.provider_timeout_seconds

    def resolve(self, session: Session, tenant_id: str, channel: Channel) -> ResolvedProvider:
        """Return the provider for the tenant's channel.

        Raises:
            NoProviderConfigured: If neither tenant nor platform configures the channel
            UnknownProviderError: If the winning configuration names an unregistered provider
        """
        channel_value = Channel(channel).value
        repo = ProviderConfigRepository(session)

        config = repo.get(tenant_id, channel_value)
        source = "tenant"
        if config is None:
            config = repo.get(None, channel_value)
            source = "platform"

        if config is not None:
            name, credentials, timeout = config.provider, config.credentials, config.timeout_seconds
        else:
            fallback = self.app_config.get_platform_provider(channel_value)
            if fallback is None:
                raise NoProviderConfigured(tenant_id, channel_value)
            name, credentials, timeout = fallback.provider, fallback.credentials, fallback.timeout_seconds
            source = "config"

        get_provider_class(name)
        timeout = timeout or self.default_timeout
        logger.debug(
            f"Resolved {channel_value} provider {name} from {source}",
            extra={"event": "provider.resolved", "provider": name, "source": source, "channel": channel_value},
        )
        return ResolvedProvider(
            name=name,
            provider=self.provider_factory(name, timeout=timeout),
            credentials=dict(credentials),
            timeout=timeout,
            source=source,
        )

    def has_provider(self, session: Session, tenant_id: str, channel: Channel) -> bool:
        """Cheap existence check used at enqueue time; builds no provider."""
        channel_value = Channel(channel).value
        repo = ProviderConfigRepository(session)
        return (
            repo.get(tenant_id, channel_value) is not None
            or repo.get(None, channel_value) is not None
            or self.app_config.get_platform_provider(channel_value) is not None
        )
