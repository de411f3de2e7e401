"""Database schema definition and ORM models.

Each ORM model maps one notification entity to a table and converts to and
from the pydantic domain model. Timestamps are stored as fixed-width ISO 8601
UTC strings so that lexical order matches chronological order on every
backend.
"""

import logging
from datetime import date, datetime, time, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    inspect,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base

from pulss_notify.domain.models import (
    AdminAlert,
    AnalyticsCounter,
    DeliveryEvent,
    NotificationJob,
    NotificationTemplate,
    NotificationType,
    ProviderConfig,
    QuietHours,
    RecipientPreference,
    RenderedContent,
    TenantToggle,
)

logger = logging.getLogger(__name__)

Base = declarative_base()

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


class NotificationTypeModel(Base):
    """Catalog of notification type codes shared by every tenant."""

    __tablename__ = "notification_types"

    type_code = Column(String(50), primary_key=True)
    name = Column(String(255), nullable=False)
    category = Column(String(50), nullable=False, default="transactional")
    critical = Column(Boolean, nullable=False, default=False)
    can_opt_out = Column(Boolean, nullable=False, default=True)
    default_channel = Column(String(20), nullable=False)
    priority = Column(String(20), nullable=False, default="medium")

    def to_domain(self) -> NotificationType:
        return NotificationType(
            type_code=self.type_code,
            name=self.name,
            category=self.category,
            critical=self.critical,
            can_opt_out=self.can_opt_out,
            default_channel=self.default_channel,
            priority=self.priority,
        )

    @classmethod
    def from_domain(cls, notification_type: NotificationType) -> "NotificationTypeModel":
        return cls(
            type_code=notification_type.type_code,
            name=notification_type.name,
            category=notification_type.category,
            critical=notification_type.critical,
            can_opt_out=notification_type.can_opt_out,
            default_channel=_enum_value(notification_type.default_channel),
            priority=_enum_value(notification_type.priority),
        )


class NotificationTemplateModel(Base):
    """Tenant templates plus platform defaults (tenant_id NULL)."""

    __tablename__ = "notification_templates"

    id = Column(String(36), primary_key=True)
    tenant_id = Column(String(64), nullable=True)
    type_code = Column(String(50), nullable=False)
    channel = Column(String(20), nullable=False)
    subject = Column(Text, nullable=False, default="")
    body = Column(Text, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    updated_at = Column(String(50), nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "type_code", "channel", name="uq_template_scope"),
        Index("idx_templates_lookup", "type_code", "channel"),
    )

    def to_domain(self) -> NotificationTemplate:
        return NotificationTemplate(
            id=self.id,
            tenant_id=self.tenant_id,
            type_code=self.type_code,
            channel=self.channel,
            subject=self.subject or "",
            body=self.body,
            is_active=self.is_active,
            updated_at=_parse_datetime(self.updated_at),
        )


class NotificationJobModel(Base):
    """Queued and attempted sends. Rows are never deleted."""

    __tablename__ = "notification_jobs"

    id = Column(String(36), primary_key=True)
    tenant_id = Column(String(64), nullable=False)
    recipient_id = Column(String(64), nullable=False)
    recipient_type = Column(String(20), nullable=False)
    recipient_address = Column(String(512), nullable=True)
    type_code = Column(String(50), nullable=False)
    channel = Column(String(20), nullable=False)
    priority = Column(String(20), nullable=False, default="medium")
    priority_rank = Column(Integer, nullable=False, default=1)
    rendered_content = Column(JSON, nullable=True)

    status = Column(String(20), nullable=False, default="pending")
    attempt_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    next_attempt_at = Column(String(50), nullable=True)
    last_error = Column(Text, nullable=True)
    cancel_reason = Column(String(100), nullable=True)
    cancel_requested = Column(Boolean, nullable=False, default=False)

    claimed_by = Column(String(255), nullable=True)
    claimed_at = Column(String(50), nullable=True)
    provider_name = Column(String(50), nullable=True)
    provider_message_id = Column(String(255), nullable=True)
    version = Column(Integer, nullable=False, default=0)

    created_at = Column(String(50), nullable=False)
    updated_at = Column(String(50), nullable=False)

    __table_args__ = (
        Index("idx_jobs_due", "status", "next_attempt_at"),
        Index("idx_jobs_tenant_recipient", "tenant_id", "recipient_id"),
        Index("idx_jobs_tenant_status", "tenant_id", "status"),
        Index("idx_jobs_claimed", "status", "claimed_at"),
    )

    def to_domain(self) -> NotificationJob:
        return NotificationJob(
            id=self.id,
            tenant_id=self.tenant_id,
            recipient_id=self.recipient_id,
            recipient_type=self.recipient_type,
            recipient_address=self.recipient_address,
            type_code=self.type_code,
            channel=self.channel,
            priority=self.priority,
            rendered_content=(
                RenderedContent.model_validate(self.rendered_content)
                if self.rendered_content
                else None
            ),
            status=self.status,
            attempt_count=self.attempt_count,
            max_retries=self.max_retries,
            next_attempt_at=_parse_datetime(self.next_attempt_at),
            created_at=_parse_datetime(self.created_at),
            updated_at=_parse_datetime(self.updated_at),
            last_error=self.last_error,
            cancel_reason=self.cancel_reason,
            cancel_requested=self.cancel_requested,
            claimed_by=self.claimed_by,
            claimed_at=_parse_datetime(self.claimed_at),
            provider_name=self.provider_name,
            provider_message_id=self.provider_message_id,
            version=self.version,
        )


class RecipientPreferenceModel(Base):
    """Saved preferences. A missing row means platform defaults."""

    __tablename__ = "recipient_preferences"

    tenant_id = Column(String(64), primary_key=True)
    recipient_id = Column(String(64), primary_key=True)
    enabled_channels = Column(JSON, nullable=False)
    disabled_types = Column(JSON, nullable=False)
    quiet_start = Column(String(5), nullable=True)
    quiet_end = Column(String(5), nullable=True)
    timezone = Column(String(64), nullable=False, default="UTC")
    language = Column(String(10), nullable=False, default="en")
    addresses = Column(JSON, nullable=False)
    updated_at = Column(String(50), nullable=False)

    def to_domain(self) -> RecipientPreference:
        quiet_hours = None
        if self.quiet_start and self.quiet_end:
            quiet_hours = QuietHours(
                start=time.fromisoformat(self.quiet_start),
                end=time.fromisoformat(self.quiet_end),
            )
        return RecipientPreference(
            tenant_id=self.tenant_id,
            recipient_id=self.recipient_id,
            enabled_channels=self.enabled_channels or [],
            disabled_types=self.disabled_types or [],
            quiet_hours=quiet_hours,
            timezone=self.timezone,
            language=self.language,
            addresses=self.addresses or {},
        )

    def apply(self, preference: RecipientPreference, now: datetime) -> None:
        """Copy domain fields onto this row."""
        self.enabled_channels = [_enum_value(c) for c in preference.enabled_channels]
        self.disabled_types = list(preference.disabled_types)
        if preference.quiet_hours:
            self.quiet_start = preference.quiet_hours.start.strftime("%H:%M")
            self.quiet_end = preference.quiet_hours.end.strftime("%H:%M")
        else:
            self.quiet_start = None
            self.quiet_end = None
        self.timezone = preference.timezone
        self.language = preference.language
        self.addresses = dict(preference.addresses)
        self.updated_at = _format_datetime(now)


class ProviderConfigModel(Base):
    """Vendor selection per tenant and channel. tenant_id NULL is the platform default."""

    __tablename__ = "provider_configs"

    id = Column(String(36), primary_key=True)
    tenant_id = Column(String(64), nullable=True)
    channel = Column(String(20), nullable=False)
    provider = Column(String(50), nullable=False)
    credentials = Column(JSON, nullable=False)
    timeout_seconds = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    updated_at = Column(String(50), nullable=False)

    __table_args__ = (UniqueConstraint("tenant_id", "channel", name="uq_provider_scope"),)

    def to_domain(self) -> ProviderConfig:
        return ProviderConfig(
            id=self.id,
            tenant_id=self.tenant_id,
            channel=self.channel,
            provider=self.provider,
            credentials=self.credentials or {},
            timeout_seconds=self.timeout_seconds,
            is_active=self.is_active,
        )


class TenantToggleModel(Base):
    __tablename__ = "tenant_toggles"

    tenant_id = Column(String(64), primary_key=True)
    scope = Column(String(20), primary_key=True)
    key = Column(String(50), primary_key=True)
    enabled = Column(Boolean, nullable=False, default=True)
    updated_at = Column(String(50), nullable=False)

    def to_domain(self) -> TenantToggle:
        return TenantToggle(
            tenant_id=self.tenant_id,
            scope=self.scope,
            key=self.key,
            enabled=self.enabled,
            updated_at=_parse_datetime(self.updated_at),
        )


class DeliveryEventModel(Base):
    """Append-only delivery log. The idempotency key makes replays no-ops."""

    __tablename__ = "delivery_events"

    id = Column(String(36), primary_key=True)
    tenant_id = Column(String(64), nullable=False)
    job_id = Column(String(36), ForeignKey("notification_jobs.id"), nullable=False)
    channel = Column(String(20), nullable=False)
    type_code = Column(String(50), nullable=False)
    attempt_number = Column(Integer, nullable=False, default=0)
    outcome = Column(String(20), nullable=False)
    provider = Column(String(50), nullable=True)
    provider_response = Column(Text, nullable=True)
    idempotency_key = Column(String(128), nullable=False, unique=True)
    occurred_at = Column(String(50), nullable=False)

    __table_args__ = (
        Index("idx_events_tenant_time", "tenant_id", "occurred_at"),
        Index("idx_events_job", "job_id"),
    )

    def to_domain(self) -> DeliveryEvent:
        return DeliveryEvent(
            id=self.id,
            tenant_id=self.tenant_id,
            job_id=self.job_id,
            channel=self.channel,
            type_code=self.type_code,
            attempt_number=self.attempt_number,
            outcome=self.outcome,
            provider=self.provider,
            provider_response=self.provider_response,
            occurred_at=_parse_datetime(self.occurred_at),
        )

    @classmethod
    def from_domain(cls, event: DeliveryEvent, event_id: str) -> "DeliveryEventModel":
        return cls(
            id=event_id,
            tenant_id=event.tenant_id,
            job_id=event.job_id,
            channel=_enum_value(event.channel),
            type_code=event.type_code,
            attempt_number=event.attempt_number,
            outcome=_enum_value(event.outcome),
            provider=event.provider,
            provider_response=event.provider_response,
            idempotency_key=event.idempotency_key,
            occurred_at=_format_datetime(event.occurred_at),
        )


class AnalyticsCounterModel(Base):
    """Daily counters derived from delivery events."""

    __tablename__ = "analytics_counters"

    tenant_id = Column(String(64), primary_key=True)
    day = Column(String(10), primary_key=True)
    channel = Column(String(20), primary_key=True)
    type_code = Column(String(50), primary_key=True)
    metric = Column(String(20), primary_key=True)
    count = Column(Integer, nullable=False, default=0)

    def to_domain(self) -> AnalyticsCounter:
        return AnalyticsCounter(
            tenant_id=self.tenant_id,
            day=date.fromisoformat(self.day),
            channel=self.channel,
            type_code=self.type_code,
            metric=self.metric,
            count=self.count,
        )


class AdminAlertModel(Base):
    __tablename__ = "admin_alerts"

    id = Column(String(36), primary_key=True)
    tenant_id = Column(String(64), nullable=False)
    job_id = Column(String(36), ForeignKey("notification_jobs.id"), nullable=True)
    kind = Column(String(50), nullable=False)
    message = Column(Text, nullable=False)
    created_at = Column(String(50), nullable=False)
    acknowledged = Column(Boolean, nullable=False, default=False)

    __table_args__ = (Index("idx_alerts_tenant", "tenant_id", "acknowledged"),)

    def to_domain(self) -> AdminAlert:
        return AdminAlert(
            id=self.id,
            tenant_id=self.tenant_id,
            job_id=self.job_id,
            kind=self.kind,
            message=self.message,
            created_at=_parse_datetime(self.created_at),
            acknowledged=self.acknowledged,
        )


def _enum_value(value) -> str:
    return getattr(value, "value", value)


def _format_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Format a datetime as a fixed-width UTC string for storage."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    else:
        dt = dt.astimezone(timezone.utc)
    return dt.strftime(TIMESTAMP_FORMAT)


def _parse_datetime(dt_str: Optional[str]) -> Optional[datetime]:
    """Parse a stored timestamp back into an aware UTC datetime."""
    if not dt_str:
        return None
    dt_str = dt_str.rstrip("Z")
    try:
        dt = datetime.strptime(dt_str, "%Y-%m-%dT%H:%M:%S.%f")
    except ValueError:
        dt = datetime.strptime(dt_str, "%Y-%m-%dT%H:%M:%S")
    return dt.replace(tzinfo=timezone.utc)


def create_schema(engine: Engine) -> None:
    """Create all tables and indexes that do not exist yet (idempotent)."""
    logger.info("Creating database schema if not exists")

    try:
        Base.metadata.create_all(engine, checkfirst=True)
        tables = inspect(engine).get_table_names()
        logger.info(f"Database schema ready. Tables: {', '.join(sorted(tables))}")
    except Exception as e:
        logger.error(f"Failed to create database schema: {e}", exc_info=True)
        raise
