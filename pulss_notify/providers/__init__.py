"""Notification providers and provider routing."""

from .base import HTTPProvider, NotificationProvider, ProviderResult
from .exceptions import (
    PermanentProviderError,
    ProviderCredentialsError,
    ProviderError,
    TransientProviderError,
    UnknownProviderError,
)
from .factory import create_provider, get_provider_class, register_provider
from .fcm import FCMPushProvider
from .in_app import InAppProvider
from .router import ProviderRouter, ResolvedProvider
from .sendgrid import SendGridEmailProvider
from .smtp import SMTPEmailProvider
from .twilio import TwilioSMSProvider
from .webhook import WebhookProvider

__all__ = [
    "NotificationProvider",
    "HTTPProvider",
    "ProviderResult",
    "ProviderRouter",
    "ResolvedProvider",
    "get_provider_class",
    "create_provider",
    "register_provider",
    "SMTPEmailProvider",
    "SendGridEmailProvider",
    "TwilioSMSProvider",
    "FCMPushProvider",
    "WebhookProvider",
    "InAppProvider",
    "ProviderError",
    "TransientProviderError",
    "PermanentProviderError",
    "ProviderCredentialsError",
    "UnknownProviderError",
]
