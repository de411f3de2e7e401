"""Registry mapping provider names to provider classes."""

import logging
from typing import Dict, Optional, Type

import requests

from .base import DEFAULT_TIMEOUT_SECONDS, HTTPProvider, NotificationProvider
from .exceptions import UnknownProviderError
from .fcm import FCMPushProvider
from .in_app import InAppProvider
from .sendgrid import SendGridEmailProvider
from .smtp import SMTPEmailProvider
from .twilio import TwilioSMSProvider
from .webhook import WebhookProvider

logger = logging.getLogger(__name__)

PROVIDER_CLASSES: Dict[str, Type[NotificationProvider]] = {
    SMTPEmailProvider.name: SMTPEmailProvider,
    SendGridEmailProvider.name: SendGridEmailProvider,
    TwilioSMSProvider.name: TwilioSMSProvider,
    FCMPushProvider.name: FCMPushProvider,
    WebhookProvider.name: WebhookProvider,
    InAppProvider.name: InAppProvider,
}


def get_provider_class(name: str) -> Type[NotificationProvider]:
    """Look up a provider class by its configured name.

    Raises:
        UnknownProviderError: If no provider is registered under the name

    Example:
        >>> get_provider_class("twilio")
        <class 'pulss_notify.providers.twilio.TwilioSMSProvider'>
    """
    provider_class = PROVIDER_CLASSES.get((name or "").strip().lower())
    if provider_class is None:
        supported = ", ".join(sorted(PROVIDER_CLASSES))
        raise UnknownProviderError(f"Unknown provider: {name}. Supported providers: {supported}")
    return provider_class


def register_provider(provider_class: Type[NotificationProvider]) -> None:
    """Register an additional provider class under its ``name``."""
    if not provider_class.name:
        raise ValueError("Provider classes must define a non-empty name")
    PROVIDER_CLASSES[provider_class.name] = provider_class


def create_provider(
    name: str,
    timeout: int = DEFAULT_TIMEOUT_SECONDS,
    session: Optional[requests.Session] = None,
) -> NotificationProvider:
    """Instantiate a provider, sharing an HTTP session where the class uses one."""
    provider_class = get_provider_class(name)
    logger.debug(
        "Creating provider instance",
        extra={"provider": name, "provider_class": provider_class.__name__, "timeout": timeout},
    )
    if issubclass(provider_class, HTTPProvider):
        return provider_class(timeout=timeout, session=session)
    return provider_class(timeout=timeout)
