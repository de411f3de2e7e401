"""Core domain models for notification delivery.

This module defines the data structures passed between components:
- NotificationType: catalog entry for a type code (critical flag, opt-out rules)
- NotificationTemplate: subject/body text for (tenant, type code, channel)
- NotificationJob: one queued or attempted send and its lifecycle state
- RecipientPreference: a recipient's channel/type opt-ins and quiet hours
- ProviderConfig: which external vendor a tenant uses for a channel
- DeliveryEvent: append-only record of an attempt or engagement outcome
"""

from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator, model_validator


def _as_utc(v: Optional[datetime]) -> Optional[datetime]:
    if v is None:
        return None
    if v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v.astimezone(timezone.utc)


class Channel(str, Enum):
    """Delivery media."""

    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"
    WEBHOOK = "webhook"
    IN_APP = "in_app"


class RecipientType(str, Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"


class JobStatus(str, Enum):
    """Lifecycle states of a NotificationJob."""

    PENDING = "pending"
    SENDING = "sending"
    DELIVERED = "delivered"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.DELIVERED, JobStatus.FAILED, JobStatus.CANCELLED})

# Allowed status transitions. Pending may fail directly only for configuration
# errors found before any attempt.
ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: frozenset({JobStatus.SENDING, JobStatus.CANCELLED, JobStatus.FAILED}),
    JobStatus.SENDING: frozenset({JobStatus.PENDING, JobStatus.DELIVERED, JobStatus.FAILED}),
    JobStatus.DELIVERED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    """Check whether ``current -> target`` is a legal job transition."""
    return target in ALLOWED_TRANSITIONS[JobStatus(current)]


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {Priority.LOW: 0, Priority.MEDIUM: 1, Priority.HIGH: 2, Priority.URGENT: 3}


class DeliveryOutcome(str, Enum):
    """Outcomes recorded as DeliveryEvents."""

    DELIVERED = "delivered"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    OPENED = "opened"
    CLICKED = "clicked"
    BOUNCED = "bounced"


ATTEMPT_OUTCOMES = frozenset(
    {DeliveryOutcome.DELIVERED, DeliveryOutcome.RETRY_SCHEDULED, DeliveryOutcome.FAILED}
)
ENGAGEMENT_OUTCOMES = frozenset(
    {DeliveryOutcome.OPENED, DeliveryOutcome.CLICKED, DeliveryOutcome.BOUNCED}
)


class DenyReason(str, Enum):
    """Why the preference filter refused a send."""

    TENANT_CHANNEL_DISABLED = "tenant_channel_disabled"
    TENANT_TYPE_DISABLED = "tenant_type_disabled"
    CHANNEL_OPTED_OUT = "channel_opted_out"
    TYPE_OPTED_OUT = "type_opted_out"
    QUIET_HOURS = "quiet_hours"
    PREFERENCE_LOOKUP_FAILED = "preference_lookup_failed"


class NotificationType(BaseModel):
    """Catalog entry describing a notification type code."""

    type_code: str = Field(..., min_length=1, max_length=50)
    name: str = Field(..., min_length=1)
    category: str = Field("transactional")
    critical: bool = Field(False, description="Bypasses quiet hours and fails open")
    can_opt_out: bool = Field(True, description="Whether recipients may opt out of this type")
    default_channel: Channel = Field(Channel.EMAIL)
    priority: Priority = Field(Priority.MEDIUM)

    @field_validator("type_code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        return v.strip().lower()


class NotificationTemplate(BaseModel):
    """Template text for one (tenant, type code, channel).

    ``tenant_id`` None marks a platform default used when a tenant has not
    customised the template.
    """

    id: Optional[str] = None
    tenant_id: Optional[str] = None
    type_code: str = Field(..., min_length=1)
    channel: Channel
    subject: str = ""
    body: str = Field(..., min_length=1)
    is_active: bool = True
    updated_at: Optional[datetime] = None

    @field_validator("type_code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator("updated_at")
    @classmethod
    def ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)

    @property
    def is_platform_default(self) -> bool:
        return self.tenant_id is None


class RenderedContent(BaseModel):
    """Channel payload produced by the template renderer."""

    subject: str = ""
    body: str = ""
    is_html: bool = False
    data: Optional[Dict[str, Any]] = None


class NotificationJob(BaseModel):
    """A queued or attempted notification send."""

    id: str
    tenant_id: str
    recipient_id: str
    recipient_type: RecipientType
    recipient_address: Optional[str] = None
    type_code: str
    channel: Channel
    priority: Priority = Priority.MEDIUM
    rendered_content: Optional[RenderedContent] = None
    status: JobStatus = JobStatus.PENDING
    attempt_count: int = Field(0, ge=0)
    max_retries: int = Field(3, ge=0)
    next_attempt_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    last_error: Optional[str] = None
    cancel_reason: Optional[str] = None
    cancel_requested: bool = False
    claimed_by: Optional[str] = None
    claimed_at: Optional[datetime] = None
    provider_name: Optional[str] = None
    provider_message_id: Optional[str] = None
    version: int = 0

    @field_validator("next_attempt_at", "created_at", "updated_at", "claimed_at")
    @classmethod
    def ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)

    @property
    def is_terminal(self) -> bool:
        return JobStatus(self.status).is_terminal

    @property
    def retry_count(self) -> int:
        """Retries made after the first attempt."""
        return max(0, self.attempt_count - 1)

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1


class QuietHours(BaseModel):
    """Daily window in the recipient's local time. May wrap past midnight."""

    start: time
    end: time

    @model_validator(mode="after")
    def validate_window(self):
        if self.start == self.end:
            raise ValueError("Quiet hours start and end cannot be equal")
        return self

    def contains(self, local_time: time) -> bool:
        """Check whether a local wall-clock time falls inside the window."""
        local_time = local_time.replace(tzinfo=None)
        if self.start < self.end:
            return self.start <= local_time < self.end
        return local_time >= self.start or local_time < self.end


class RecipientPreference(BaseModel):
    """Notification settings for one recipient within a tenant."""

    tenant_id: str
    recipient_id: str
    enabled_channels: List[Channel] = Field(default_factory=lambda: list(Channel))
    disabled_types: List[str] = Field(default_factory=list)
    quiet_hours: Optional[QuietHours] = None
    timezone: str = "UTC"
    language: str = "en"
    addresses: Dict[str, str] = Field(
        default_factory=dict, description="Channel value -> email, phone, device token"
    )

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {v}") from e
        return v

    @field_validator("disabled_types")
    @classmethod
    def normalize_types(cls, v: List[str]) -> List[str]:
        return sorted({code.strip().lower() for code in v if code.strip()})

    @classmethod
    def defaults(cls, tenant_id: str, recipient_id: str) -> "RecipientPreference":
        """Settings applied when a recipient has never saved preferences."""
        return cls(tenant_id=tenant_id, recipient_id=recipient_id)

    def channel_enabled(self, channel: Channel) -> bool:
        return Channel(channel) in {Channel(c) for c in self.enabled_channels}

    def address_for(self, channel: Channel) -> Optional[str]:
        return self.addresses.get(Channel(channel).value)


class ProviderConfig(BaseModel):
    """External vendor selection for one (tenant, channel).

    ``tenant_id`` None marks the platform default for the channel.
    """

    id: Optional[str] = None
    tenant_id: Optional[str] = None
    channel: Channel
    provider: str = Field(..., min_length=1)
    credentials: Dict[str, Any] = Field(default_factory=dict)
    timeout_seconds: Optional[int] = Field(None, ge=1, le=120)
    is_active: bool = True

    def __repr__(self) -> str:
        # Credentials stay out of reprs that may end up in logs.
        return (
            f"ProviderConfig(tenant_id={self.tenant_id!r}, channel={self.channel.value!r}, "
            f"provider={self.provider!r}, is_active={self.is_active!r})"
        )


class TenantToggle(BaseModel):
    """Tenant-wide switch for a channel or a type code."""

    tenant_id: str
    scope: str = Field(..., pattern="^(channel|type)$")
    key: str = Field(..., min_length=1)
    enabled: bool = True
    updated_at: Optional[datetime] = None

    @field_validator("key")
    @classmethod
    def normalize_key(cls, v: str) -> str:
        return v.strip().lower()


class DeliveryEvent(BaseModel):
    """Append-only audit row for an attempt or engagement outcome."""

    id: Optional[str] = None
    tenant_id: str
    job_id: str
    channel: Channel
    type_code: str
    attempt_number: int = Field(0, ge=0)
    outcome: DeliveryOutcome
    provider: Optional[str] = None
    provider_response: Optional[str] = None
    occurred_at: datetime

    @field_validator("occurred_at")
    @classmethod
    def ensure_utc(cls, v: datetime) -> datetime:
        return _as_utc(v)

    @property
    def idempotency_key(self) -> str:
        """Key under which the event is recorded at most once.

        Retries are keyed per attempt; terminal and engagement outcomes are
        keyed per job so a replayed report cannot be counted twice.
        """
        outcome = DeliveryOutcome(self.outcome).value
        if DeliveryOutcome(self.outcome) == DeliveryOutcome.RETRY_SCHEDULED:
            return f"{self.job_id}:{outcome}:{self.attempt_number}"
        return f"{self.job_id}:{outcome}"


class AdminAlert(BaseModel):
    """Problem surfaced to tenant admins (configuration errors, final failures)."""

    id: Optional[str] = None
    tenant_id: str
    job_id: Optional[str] = None
    kind: str
    message: str
    created_at: datetime
    acknowledged: bool = False

    @field_validator("created_at")
    @classmethod
    def ensure_utc(cls, v: datetime) -> datetime:
        return _as_utc(v)


class Page(BaseModel):
    """One page of a paginated query."""

    items: List[Any]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.items) < self.total


class AnalyticsMetric(str, Enum):
    """Counter names maintained per (tenant, day, channel, type code)."""

    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    RETRIED = "retried"
    OPENED = "opened"
    CLICKED = "clicked"
    BOUNCED = "bounced"


# Column order used by analytics reads and exports.
METRIC_COLUMNS = [metric.value for metric in AnalyticsMetric]

OUTCOME_METRICS = {
    DeliveryOutcome.DELIVERED: AnalyticsMetric.DELIVERED,
    DeliveryOutcome.RETRY_SCHEDULED: AnalyticsMetric.RETRIED,
    DeliveryOutcome.FAILED: AnalyticsMetric.FAILED,
    DeliveryOutcome.OPENED: AnalyticsMetric.OPENED,
    DeliveryOutcome.CLICKED: AnalyticsMetric.CLICKED,
    DeliveryOutcome.BOUNCED: AnalyticsMetric.BOUNCED,
}


class AnalyticsCounter(BaseModel):
    tenant_id: str
    day: date
    channel: Channel
    type_code: str
    metric: AnalyticsMetric
    count: int = Field(0, ge=0)


class PreferenceDecision(BaseModel):
    """Result of the preference filter for one prospective send."""

    allowed: bool
    reason: Optional[DenyReason] = None
    defer_until: Optional[datetime] = None

    @classmethod
    def allow(cls, defer_until: Optional[datetime] = None) -> "PreferenceDecision":
        reason = DenyReason.QUIET_HOURS if defer_until is not None else None
        return cls(allowed=True, reason=reason, defer_until=defer_until)

    @classmethod
    def deny(cls, reason: DenyReason) -> "PreferenceDecision":
        return cls(allowed=False, reason=reason)

    @property
    def deferred(self) -> bool:
        return self.allowed and self.defer_until is not None
