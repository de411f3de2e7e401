"""Exceptions raised by notification providers.

Every vendor failure is classified as transient (worth retrying later) or
permanent (retrying cannot help). The worker decides retry versus failure
from the class alone.
"""

from typing import Optional

from pulss_notify.domain.exceptions import NotificationConfigurationError, NotificationError


class ProviderError(NotificationError):
    """Base exception for provider send failures."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """The vendor may accept the message later.

    Examples: HTTP 5xx, HTTP 429, timeouts, refused connections, SMTP 4xx replies.
    """

    pass


class PermanentProviderError(ProviderError):
    """The vendor rejected the message and will keep rejecting it.

    Examples: HTTP 4xx other than 429, invalid recipient address, bad credentials.
    """

    pass


class ProviderCredentialsError(PermanentProviderError):
    """Credentials are missing from the configuration or were rejected by the vendor."""

    pass


class UnknownProviderError(NotificationConfigurationError):
    """A configuration names a provider that is not registered."""

    alert_kind = "unknown_provider"
