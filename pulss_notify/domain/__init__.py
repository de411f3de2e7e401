"""Domain models and errors for notification delivery."""

from .exceptions import (
    InvalidTransition,
    JobNotFound,
    NoProviderConfigured,
    NotificationConfigurationError,
    NotificationError,
    TemplateMissing,
    TemplateRenderError,
    UnknownNotificationType,
)
from .models import (
    AdminAlert,
    AnalyticsCounter,
    AnalyticsMetric,
    Channel,
    DeliveryEvent,
    DeliveryOutcome,
    DenyReason,
    JobStatus,
    NotificationJob,
    NotificationTemplate,
    NotificationType,
    Page,
    PreferenceDecision,
    Priority,
    ProviderConfig,
    QuietHours,
    RecipientPreference,
    RecipientType,
    RenderedContent,
    TenantToggle,
)

__all__ = [
    "AdminAlert",
    "AnalyticsCounter",
    "AnalyticsMetric",
    "Channel",
    "DeliveryEvent",
    "DeliveryOutcome",
    "DenyReason",
    "JobStatus",
    "NotificationJob",
    "NotificationTemplate",
    "NotificationType",
    "Page",
    "PreferenceDecision",
    "Priority",
    "ProviderConfig",
    "QuietHours",
    "RecipientPreference",
    "RecipientType",
    "RenderedContent",
    "TenantToggle",
    "InvalidTransition",
    "JobNotFound",
    "NoProviderConfigured",
    "NotificationConfigurationError",
    "NotificationError",
    "TemplateMissing",
    "TemplateRenderError",
    "UnknownNotificationType",
]
