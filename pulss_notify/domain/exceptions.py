"""Exceptions raised by the notification delivery core."""

from typing import Optional


class NotificationError(Exception):
    """Base exception for notification delivery errors.

    Callers of the public service can catch this single class to handle any
    delivery-level failure that is not a persistence or configuration problem.
    """

    pass


class NotificationConfigurationError(NotificationError):
    """A tenant or platform configuration gap that no retry can fix.

    Jobs hitting one of these are failed at once and an admin alert is raised.
    """

    alert_kind = "configuration_error"

    def __init__(self, message: str, tenant_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.tenant_id = tenant_id


class TemplateMissing(NotificationConfigurationError):
    """Neither the tenant nor the platform has a template for the type/channel."""

    alert_kind = "template_missing"

    def __init__(self, tenant_id: Optional[str], type_code: str, channel: str) -> None:
        super().__init__(
            f"No template for type '{type_code}' on channel '{channel}'",
            tenant_id=tenant_id,
        )
        self.type_code = type_code
        self.channel = channel


class NoProviderConfigured(NotificationConfigurationError):
    """No tenant or platform provider is configured for the channel."""

    alert_kind = "no_provider_configured"

    def __init__(self, tenant_id: Optional[str], channel: str) -> None:
        super().__init__(f"No provider configured for channel '{channel}'", tenant_id=tenant_id)
        self.channel = channel


class UnknownNotificationType(NotificationError):
    """The type code is not in the notification type catalog."""

    def __init__(self, type_code: str) -> None:
        super().__init__(f"Unknown notification type: {type_code}")
        self.type_code = type_code


class JobNotFound(NotificationError):
    """No job with the given id exists for the tenant."""

    def __init__(self, job_id: str, tenant_id: Optional[str] = None) -> None:
        super().__init__(f"Notification job {job_id} not found")
        self.job_id = job_id
        self.tenant_id = tenant_id


class InvalidTransition(NotificationError):
    """A job status change that the lifecycle does not allow."""

    def __init__(self, job_id: str, current: str, target: str) -> None:
        super().__init__(f"Job {job_id} cannot move from {current} to {target}")
        self.job_id = job_id
        self.current = current
        self.target = target


class TemplateRenderError(NotificationConfigurationError):
    """A stored template does not compile or violates the sandbox."""

    alert_kind = "template_invalid"
