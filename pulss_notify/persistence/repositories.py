"""Data access layer (repositories) for persistence operations.

Repositories wrap a session, speak in domain models and translate
SQLAlchemy failures into PersistenceError. State-changing job operations are
conditional UPDATEs: a write only lands if the row is still in the state the
caller observed, and the return value tells the caller whether it won.
"""

import logging
import uuid
from contextlib import contextmanager
from datetime import date, datetime
from typing import Dict, Iterator, List, Optional, Tuple

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from pulss_notify.domain.models import (
    ATTEMPT_OUTCOMES,
    AdminAlert,
    AnalyticsCounter,
    DeliveryEvent,
    JobStatus,
    NotificationJob,
    NotificationTemplate,
    NotificationType,
    Priority,
    ProviderConfig,
    RecipientPreference,
    RenderedContent,
    TenantToggle,
)

from .exceptions import DataIntegrityError, PersistenceError
from .schema import (
    AdminAlertModel,
    AnalyticsCounterModel,
    DeliveryEventModel,
    NotificationJobModel,
    NotificationTemplateModel,
    NotificationTypeModel,
    ProviderConfigModel,
    RecipientPreferenceModel,
    TenantToggleModel,
    _enum_value,
    _format_datetime,
)

logger = logging.getLogger(__name__)


def new_id() -> str:
    return str(uuid.uuid4())


@contextmanager
def _db_errors(action: str) -> Iterator[None]:
    """Translate SQLAlchemy errors raised inside the block into PersistenceError."""
    try:
        yield
    except IntegrityError as e:
        logger.error(f"Integrity error while trying to {action}: {e}", exc_info=True)
        raise DataIntegrityError(f"Failed to {action} due to constraint violation: {e}") from e
    except SQLAlchemyError as e:
        logger.error(f"Database error while trying to {action}: {e}", exc_info=True)
        raise PersistenceError(f"Failed to {action}: {e}") from e


def _tenant_clause(column, tenant_id: Optional[str]):
    """Match a nullable tenant column, treating None as the platform scope."""
    return column.is_(None) if tenant_id is None else column == tenant_id


class NotificationTypeRepository:
    """Repository for the notification type catalog."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, type_code: str) -> Optional[NotificationType]:
        with _db_errors(f"retrieve notification type {type_code}"):
            model = self.session.get(NotificationTypeModel, type_code.strip().lower())
            return model.to_domain() if model else None

    def list_all(self) -> List[NotificationType]:
        with _db_errors("list notification types"):
            stmt = select(NotificationTypeModel).order_by(NotificationTypeModel.type_code)
            return [m.to_domain() for m in self.session.execute(stmt).scalars()]

    def upsert(self, notification_type: NotificationType) -> NotificationType:
        with _db_errors(f"upsert notification type {notification_type.type_code}"):
            fresh = NotificationTypeModel.from_domain(notification_type)
            existing = self.session.get(NotificationTypeModel, notification_type.type_code)
            if existing is None:
                self.session.add(fresh)
                self.session.flush()
                return fresh.to_domain()

            for column in ("name", "category", "critical", "can_opt_out", "default_channel", "priority"):
                setattr(existing, column, getattr(fresh, column))
            self.session.flush()
            return existing.to_domain()


class TemplateRepository:
    """Repository for tenant templates and platform default templates."""

    def __init__(self, session: Session):
        self.session = session

    def _find(self, tenant_id: Optional[str], type_code: str, channel: str):
        stmt = select(NotificationTemplateModel).where(
            _tenant_clause(NotificationTemplateModel.tenant_id, tenant_id),
            NotificationTemplateModel.type_code == type_code.strip().lower(),
            NotificationTemplateModel.channel == _enum_value(channel),
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def get(
        self, tenant_id: Optional[str], type_code: str, channel: str, active_only: bool = True
    ) -> Optional[NotificationTemplate]:
        """Fetch the template of exactly one scope (tenant, or platform when tenant_id is None)."""
        with _db_errors(f"retrieve template {type_code}/{_enum_value(channel)}"):
            model = self._find(tenant_id, type_code, channel)
            if model is None or (active_only and not model.is_active):
                return None
            return model.to_domain()

    def list(self, tenant_id: Optional[str], include_platform: bool = False) -> List[NotificationTemplate]:
        with _db_errors("list templates"):
            scope = _tenant_clause(NotificationTemplateModel.tenant_id, tenant_id)
            if include_platform and tenant_id is not None:
                scope = scope | NotificationTemplateModel.tenant_id.is_(None)
            stmt = (
                select(NotificationTemplateModel)
                .where(scope)
                .order_by(
                    NotificationTemplateModel.type_code,
                    NotificationTemplateModel.channel,
                    NotificationTemplateModel.tenant_id,
                )
            )
            return [m.to_domain() for m in self.session.execute(stmt).scalars()]

    def upsert(self, template: NotificationTemplate, now: datetime) -> NotificationTemplate:
        with _db_errors(f"upsert template {template.type_code}/{_enum_value(template.channel)}"):
            model = self._find(template.tenant_id, template.type_code, template.channel)
            if model is None:
                model = NotificationTemplateModel(
                    id=template.id or new_id(),
                    tenant_id=template.tenant_id,
                    type_code=template.type_code,
                    channel=_enum_value(template.channel),
                )
                self.session.add(model)
            model.subject = template.subject
            model.body = template.body
            model.is_active = template.is_active
            model.updated_at = _format_datetime(now)
            self.session.flush()
            return model.to_domain()

    def delete(self, tenant_id: Optional[str], type_code: str, channel: str) -> bool:
        with _db_errors(f"delete template {type_code}/{_enum_value(channel)}"):
            stmt = delete(NotificationTemplateModel).where(
                _tenant_clause(NotificationTemplateModel.tenant_id, tenant_id),
                NotificationTemplateModel.type_code == type_code.strip().lower(),
                NotificationTemplateModel.channel == _enum_value(channel),
            )
            return self.session.execute(stmt).rowcount > 0


class JobRepository:
    """Repository for notification jobs and their lifecycle transitions."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, job: NotificationJob) -> NotificationJob:
        with _db_errors(f"create job {job.id}"):
            model = NotificationJobModel(
                id=job.id,
                tenant_id=job.tenant_id,
                recipient_id=job.recipient_id,
                recipient_type=_enum_value(job.recipient_type),
                recipient_address=job.recipient_address,
                type_code=job.type_code,
                channel=_enum_value(job.channel),
                priority=_enum_value(job.priority),
                priority_rank=Priority(job.priority).rank,
                rendered_content=job.rendered_content.model_dump() if job.rendered_content else None,
                status=_enum_value(job.status),
                attempt_count=job.attempt_count,
                max_retries=job.max_retries,
                next_attempt_at=_format_datetime(job.next_attempt_at),
                last_error=job.last_error,
                cancel_reason=job.cancel_reason,
                cancel_requested=job.cancel_requested,
                version=job.version,
                created_at=_format_datetime(job.created_at),
                updated_at=_format_datetime(job.updated_at or job.created_at),
            )
            self.session.add(model)
            self.session.flush()
            return model.to_domain()

    def get(self, job_id: str, tenant_id: Optional[str] = None) -> Optional[NotificationJob]:
        """Fetch a job; when tenant_id is given, jobs of other tenants are invisible."""
        with _db_errors(f"retrieve job {job_id}"):
            stmt = select(NotificationJobModel).where(NotificationJobModel.id == job_id)
            if tenant_id is not None:
                stmt = stmt.where(NotificationJobModel.tenant_id == tenant_id)
            model = self.session.execute(stmt).scalar_one_or_none()
            return model.to_domain() if model else None

    def attach_content(
        self,
        job_id: str,
        content: RenderedContent,
        recipient_address: Optional[str],
        next_attempt_at: datetime,
        now: datetime,
    ) -> bool:
        """Store rendered content on a pending job and make it due at next_attempt_at."""
        with _db_errors(f"attach content to job {job_id}"):
            stmt = (
                update(NotificationJobModel)
                .where(
                    NotificationJobModel.id == job_id,
                    NotificationJobModel.status == JobStatus.PENDING.value,
                )
                .values(
                    rendered_content=content.model_dump(),
                    recipient_address=recipient_address,
                    next_attempt_at=_format_datetime(next_attempt_at),
                    updated_at=_format_datetime(now),
                    version=NotificationJobModel.version + 1,
                )
            )
            return self.session.execute(stmt).rowcount == 1

    def find_due_job_ids(self, now: datetime, limit: int) -> List[str]:
        """Pending, unclaimed, due jobs ordered by priority then due time.

        The row locks taken on PostgreSQL only last until the caller's session
        commits, which happens before any job is claimed; they only skip rows
        another selection holds at that instant. SQLite ignores the hint.
        Ownership of a job comes solely from the conditional UPDATE in
        claim_job.
        """
        with _db_errors("find due jobs"):
            stmt = (
                select(NotificationJobModel.id)
                .where(
                    NotificationJobModel.status == JobStatus.PENDING.value,
                    NotificationJobModel.claimed_by.is_(None),
                    NotificationJobModel.cancel_requested.is_(False),
                    NotificationJobModel.next_attempt_at.is_not(None),
                    NotificationJobModel.next_attempt_at <= _format_datetime(now),
                )
                .order_by(
                    NotificationJobModel.priority_rank.desc(),
                    NotificationJobModel.next_attempt_at,
                    NotificationJobModel.created_at,
                )
                .limit(limit)
                .with_for_update(skip_locked=True)
            )
            return list(self.session.execute(stmt).scalars())

    def claim_job(self, job_id: str, worker_id: str, now: datetime) -> Optional[NotificationJob]:
        """Atomically move a pending job to sending for this worker.

        The UPDATE only matches a pending, unclaimed, not-cancelled row, so of
        any number of concurrent callers exactly one sees rowcount 1. Claiming
        counts as an attempt.

        Returns:
            The claimed job, or None if another worker got there first
        """
        with _db_errors(f"claim job {job_id}"):
            stamp = _format_datetime(now)
            stmt = (
                update(NotificationJobModel)
                .where(
                    NotificationJobModel.id == job_id,
                    NotificationJobModel.status == JobStatus.PENDING.value,
                    NotificationJobModel.claimed_by.is_(None),
                    NotificationJobModel.cancel_requested.is_(False),
                )
                .values(
                    status=JobStatus.SENDING.value,
                    claimed_by=worker_id,
                    claimed_at=stamp,
                    attempt_count=NotificationJobModel.attempt_count + 1,
                    version=NotificationJobModel.version + 1,
                    updated_at=stamp,
                )
                .execution_options(synchronize_session=False)
            )
            if self.session.execute(stmt).rowcount != 1:
                return None

            model = self.session.get(NotificationJobModel, job_id, populate_existing=True)
            return model.to_domain()

    def _finish_attempt(self, job_id: str, worker_id: str, values: Dict) -> bool:
        stmt = (
            update(NotificationJobModel)
            .where(
                NotificationJobModel.id == job_id,
                NotificationJobModel.status == JobStatus.SENDING.value,
                NotificationJobModel.claimed_by == worker_id,
            )
            .values(version=NotificationJobModel.version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        return self.session.execute(stmt).rowcount == 1

    def mark_delivered(
        self,
        job_id: str,
        worker_id: str,
        provider_name: str,
        provider_message_id: Optional[str],
        now: datetime,
    ) -> bool:
        """Close a claimed attempt as delivered. False if the claim was lost."""
        with _db_errors(f"mark job {job_id} delivered"):
            return self._finish_attempt(
                job_id,
                worker_id,
                {
                    "status": JobStatus.DELIVERED.value,
                    "provider_name": provider_name,
                    "provider_message_id": provider_message_id,
                    "last_error": None,
                    "claimed_by": None,
                    "claimed_at": None,
                    "updated_at": _format_datetime(now),
                },
            )

    def schedule_retry(
        self,
        job_id: str,
        worker_id: str,
        next_attempt_at: datetime,
        error: str,
        now: datetime,
        provider_name: Optional[str] = None,
    ) -> bool:
        """Return a claimed job to pending, due again at next_attempt_at."""
        with _db_errors(f"schedule retry for job {job_id}"):
            return self._finish_attempt(
                job_id,
                worker_id,
                {
                    "status": JobStatus.PENDING.value,
                    "next_attempt_at": _format_datetime(next_attempt_at),
                    "last_error": error,
                    "provider_name": provider_name,
                    "claimed_by": None,
                    "claimed_at": None,
                    "updated_at": _format_datetime(now),
                },
            )

    def mark_failed(
        self,
        job_id: str,
        error: str,
        now: datetime,
        worker_id: Optional[str] = None,
        provider_name: Optional[str] = None,
    ) -> bool:
        """Fail a job terminally.

        With a worker_id the job must be sending under that worker's claim.
        Without one the job must still be pending: the configuration-error
        path that fails a job before any attempt.
        """
        with _db_errors(f"mark job {job_id} failed"):
            values = {
                "status": JobStatus.FAILED.value,
                "last_error": error,
                "provider_name": provider_name,
                "claimed_by": None,
                "claimed_at": None,
                "updated_at": _format_datetime(now),
            }
            if worker_id is not None:
                return self._finish_attempt(job_id, worker_id, values)

            stmt = (
                update(NotificationJobModel)
                .where(
                    NotificationJobModel.id == job_id,
                    NotificationJobModel.status == JobStatus.PENDING.value,
                    NotificationJobModel.claimed_by.is_(None),
                )
                .values(version=NotificationJobModel.version + 1, **values)
                .execution_options(synchronize_session=False)
            )
            return self.session.execute(stmt).rowcount == 1

    def cancel_pending(self, job_id: str, reason: str, now: datetime, tenant_id: Optional[str] = None) -> bool:
        """Cancel a job that is pending and unclaimed."""
        with _db_errors(f"cancel job {job_id}"):
            stmt = update(NotificationJobModel).where(
                NotificationJobModel.id == job_id,
                NotificationJobModel.status == JobStatus.PENDING.value,
                NotificationJobModel.claimed_by.is_(None),
            )
            if tenant_id is not None:
                stmt = stmt.where(NotificationJobModel.tenant_id == tenant_id)
            stmt = stmt.values(
                status=JobStatus.CANCELLED.value,
                cancel_reason=reason,
                next_attempt_at=None,
                updated_at=_format_datetime(now),
                version=NotificationJobModel.version + 1,
            ).execution_options(synchronize_session=False)
            return self.session.execute(stmt).rowcount == 1

    def request_cancel(self, job_id: str, tenant_id: str, reason: str, now: datetime) -> bool:
        """Flag an in-flight job so it is cancelled instead of retried."""
        with _db_errors(f"request cancellation of job {job_id}"):
            stmt = (
                update(NotificationJobModel)
                .where(
                    NotificationJobModel.id == job_id,
                    NotificationJobModel.tenant_id == tenant_id,
                    NotificationJobModel.status == JobStatus.SENDING.value,
                )
                .values(
                    cancel_requested=True,
                    cancel_reason=reason,
                    updated_at=_format_datetime(now),
                    version=NotificationJobModel.version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            return self.session.execute(stmt).rowcount == 1

    def cancel_flagged_pending(self, now: datetime) -> int:
        """Cancel pending jobs whose cancellation was requested mid-attempt."""
        with _db_errors("cancel flagged jobs"):
            stmt = (
                update(NotificationJobModel)
                .where(
                    NotificationJobModel.status == JobStatus.PENDING.value,
                    NotificationJobModel.cancel_requested.is_(True),
                    NotificationJobModel.claimed_by.is_(None),
                )
                .values(
                    status=JobStatus.CANCELLED.value,
                    next_attempt_at=None,
                    updated_at=_format_datetime(now),
                    version=NotificationJobModel.version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            return self.session.execute(stmt).rowcount

    def find_stale_claims(self, cutoff: datetime) -> List[NotificationJob]:
        """Sending jobs whose claim is older than cutoff (the worker likely died)."""
        with _db_errors("find stale claims"):
            stmt = select(NotificationJobModel).where(
                NotificationJobModel.status == JobStatus.SENDING.value,
                NotificationJobModel.claimed_at < _format_datetime(cutoff),
            )
            return [m.to_domain() for m in self.session.execute(stmt).scalars()]

    def release_claim(self, job: NotificationJob, now: datetime) -> bool:
        """Return a stale sending job to pending, due immediately.

        Guarded by the version seen in find_stale_claims so a late result from
        the original worker and the release cannot both apply.
        """
        with _db_errors(f"release claim on job {job.id}"):
            stamp = _format_datetime(now)
            stmt = (
                update(NotificationJobModel)
                .where(
                    NotificationJobModel.id == job.id,
                    NotificationJobModel.status == JobStatus.SENDING.value,
                    NotificationJobModel.version == job.version,
                )
                .values(
                    status=JobStatus.PENDING.value,
                    claimed_by=None,
                    claimed_at=None,
                    next_attempt_at=stamp,
                    last_error="claim lease expired",
                    updated_at=stamp,
                    version=NotificationJobModel.version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            return self.session.execute(stmt).rowcount == 1

    def fail_stale_claim(self, job: NotificationJob, now: datetime) -> bool:
        """Fail a stale sending job that has no attempts left."""
        with _db_errors(f"fail stale job {job.id}"):
            stmt = (
                update(NotificationJobModel)
                .where(
                    NotificationJobModel.id == job.id,
                    NotificationJobModel.status == JobStatus.SENDING.value,
                    NotificationJobModel.version == job.version,
                )
                .values(
                    status=JobStatus.FAILED.value,
                    claimed_by=None,
                    claimed_at=None,
                    last_error="claim lease expired with no attempts left",
                    updated_at=_format_datetime(now),
                    version=NotificationJobModel.version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            return self.session.execute(stmt).rowcount == 1

    def list_for_tenant(
        self,
        tenant_id: str,
        recipient_id: Optional[str] = None,
        status: Optional[str] = None,
        channel: Optional[str] = None,
        type_code: Optional[str] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[NotificationJob], int]:
        """Newest-first page of a tenant's jobs plus the total match count."""
        with _db_errors(f"list jobs for tenant {tenant_id}"):
            conditions = [NotificationJobModel.tenant_id == tenant_id]
            if recipient_id is not None:
                conditions.append(NotificationJobModel.recipient_id == recipient_id)
            if status is not None:
                conditions.append(NotificationJobModel.status == _enum_value(status))
            if channel is not None:
                conditions.append(NotificationJobModel.channel == _enum_value(channel))
            if type_code is not None:
                conditions.append(NotificationJobModel.type_code == type_code)
            if created_from is not None:
                conditions.append(NotificationJobModel.created_at >= _format_datetime(created_from))
            if created_to is not None:
                conditions.append(NotificationJobModel.created_at < _format_datetime(created_to))

            total = self.session.execute(
                select(func.count()).select_from(NotificationJobModel).where(*conditions)
            ).scalar_one()
            stmt = (
                select(NotificationJobModel)
                .where(*conditions)
                .order_by(NotificationJobModel.created_at.desc(), NotificationJobModel.id)
                .limit(limit)
                .offset(offset)
            )
            items = [m.to_domain() for m in self.session.execute(stmt).scalars()]
            return items, total

    def status_summary(self, tenant_id: str) -> Dict[str, int]:
        with _db_errors(f"summarise jobs for tenant {tenant_id}"):
            stmt = (
                select(NotificationJobModel.status, func.count())
                .where(NotificationJobModel.tenant_id == tenant_id)
                .group_by(NotificationJobModel.status)
            )
            counts = {status.value: 0 for status in JobStatus}
            for status, count in self.session.execute(stmt):
                counts[status] = count
            return counts


class PreferenceRepository:
    """Repository for recipient preferences."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, tenant_id: str, recipient_id: str) -> Optional[RecipientPreference]:
        with _db_errors(f"retrieve preferences for {tenant_id}/{recipient_id}"):
            model = self.session.get(RecipientPreferenceModel, (tenant_id, recipient_id))
            return model.to_domain() if model else None

    def upsert(self, preference: RecipientPreference, now: datetime) -> RecipientPreference:
        with _db_errors(f"save preferences for {preference.tenant_id}/{preference.recipient_id}"):
            model = self.session.get(
                RecipientPreferenceModel, (preference.tenant_id, preference.recipient_id)
            )
            if model is None:
                model = RecipientPreferenceModel(
                    tenant_id=preference.tenant_id, recipient_id=preference.recipient_id
                )
                self.session.add(model)
            model.apply(preference, now)
            self.session.flush()
            return model.to_domain()


class ProviderConfigRepository:
    """Repository for per-tenant and platform provider configuration."""

    def __init__(self, session: Session):
        self.session = session

    def _find(self, tenant_id: Optional[str], channel: str):
        stmt = select(ProviderConfigModel).where(
            _tenant_clause(ProviderConfigModel.tenant_id, tenant_id),
            ProviderConfigModel.channel == _enum_value(channel),
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def get(self, tenant_id: Optional[str], channel: str, active_only: bool = True) -> Optional[ProviderConfig]:
        with _db_errors(f"retrieve provider config for {tenant_id}/{_enum_value(channel)}"):
            model = self._find(tenant_id, channel)
            if model is None or (active_only and not model.is_active):
                return None
            return model.to_domain()

    def list(self, tenant_id: Optional[str]) -> List[ProviderConfig]:
        with _db_errors("list provider configs"):
            stmt = (
                select(ProviderConfigModel)
                .where(_tenant_clause(ProviderConfigModel.tenant_id, tenant_id))
                .order_by(ProviderConfigModel.channel)
            )
            return [m.to_domain() for m in self.session.execute(stmt).scalars()]

    def upsert(self, config: ProviderConfig, now: datetime) -> ProviderConfig:
        with _db_errors(f"save provider config for {config.tenant_id}/{_enum_value(config.channel)}"):
            model = self._find(config.tenant_id, config.channel)
            if model is None:
                model = ProviderConfigModel(
                    id=config.id or new_id(),
                    tenant_id=config.tenant_id,
                    channel=_enum_value(config.channel),
                )
                self.session.add(model)
            model.provider = config.provider
            model.credentials = dict(config.credentials)
            model.timeout_seconds = config.timeout_seconds
            model.is_active = config.is_active
            model.updated_at = _format_datetime(now)
            self.session.flush()
            return model.to_domain()

    def delete(self, tenant_id: Optional[str], channel: str) -> bool:
        with _db_errors(f"delete provider config for {tenant_id}/{_enum_value(channel)}"):
            stmt = delete(ProviderConfigModel).where(
                _tenant_clause(ProviderConfigModel.tenant_id, tenant_id),
                ProviderConfigModel.channel == _enum_value(channel),
            )
            return self.session.execute(stmt).rowcount > 0


class TenantToggleRepository:
    """Repository for tenant-wide channel and type switches."""

    def __init__(self, session: Session):
        self.session = session

    def is_enabled(self, tenant_id: str, scope: str, key: str) -> bool:
        """Toggles default to enabled when no row exists."""
        with _db_errors(f"read toggle {scope}:{key} for tenant {tenant_id}"):
            model = self.session.get(TenantToggleModel, (tenant_id, scope, key.lower()))
            return True if model is None else model.enabled

    def set(self, tenant_id: str, scope: str, key: str, enabled: bool, now: datetime) -> TenantToggle:
        toggle = TenantToggle(tenant_id=tenant_id, scope=scope, key=key, enabled=enabled)
        with _db_errors(f"set toggle {scope}:{key} for tenant {tenant_id}"):
            model = self.session.get(TenantToggleModel, (tenant_id, toggle.scope, toggle.key))
            if model is None:
                model = TenantToggleModel(tenant_id=tenant_id, scope=toggle.scope, key=toggle.key)
                self.session.add(model)
            model.enabled = enabled
            model.updated_at = _format_datetime(now)
            self.session.flush()
            return model.to_domain()

    def list(self, tenant_id: str) -> List[TenantToggle]:
        with _db_errors(f"list toggles for tenant {tenant_id}"):
            stmt = (
                select(TenantToggleModel)
                .where(TenantToggleModel.tenant_id == tenant_id)
                .order_by(TenantToggleModel.scope, TenantToggleModel.key)
            )
            return [m.to_domain() for m in self.session.execute(stmt).scalars()]


class DeliveryEventRepository:
    """Append-only repository for delivery events."""

    def __init__(self, session: Session):
        self.session = session

    def append_if_new(self, event: DeliveryEvent) -> Optional[DeliveryEvent]:
        """Insert the event unless its idempotency key was already recorded.

        The insert runs in a savepoint so a duplicate key only undoes the
        insert, not the caller's surrounding transaction.

        Returns:
            The stored event, or None if it was a duplicate
        """
        key = event.idempotency_key
        try:
            with self.session.begin_nested():
                model = DeliveryEventModel.from_domain(event, event.id or new_id())
                self.session.add(model)
                self.session.flush()
        except IntegrityError:
            logger.debug(f"Delivery event {key} already recorded")
            return None
        except SQLAlchemyError as e:
            logger.error(f"Error appending delivery event {key}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to append delivery event: {e}") from e
        return model.to_domain()

    def exists(self, idempotency_key: str) -> bool:
        with _db_errors(f"check delivery event {idempotency_key}"):
            stmt = select(DeliveryEventModel.id).where(
                DeliveryEventModel.idempotency_key == idempotency_key
            )
            return self.session.execute(stmt).first() is not None

    def count_attempt_events(self, job_id: str) -> int:
        """Number of recorded attempt outcomes (delivered, retry_scheduled, failed) for a job.

        Pre-attempt failures (attempt 0) are not attempts and are not counted.
        """
        with _db_errors(f"count attempt events for job {job_id}"):
            stmt = select(func.count(DeliveryEventModel.id)).where(
                DeliveryEventModel.job_id == job_id,
                DeliveryEventModel.attempt_number >= 1,
                DeliveryEventModel.outcome.in_([outcome.value for outcome in ATTEMPT_OUTCOMES]),
            )
            return self.session.execute(stmt).scalar_one()

    def list_for_job(self, tenant_id: str, job_id: str) -> List[DeliveryEvent]:
        with _db_errors(f"list events for job {job_id}"):
            stmt = (
                select(DeliveryEventModel)
                .where(
                    DeliveryEventModel.tenant_id == tenant_id,
                    DeliveryEventModel.job_id == job_id,
                )
                .order_by(DeliveryEventModel.occurred_at, DeliveryEventModel.attempt_number)
            )
            return [m.to_domain() for m in self.session.execute(stmt).scalars()]

    def list_between(
        self, tenant_id: Optional[str], start: datetime, end: datetime
    ) -> List[DeliveryEvent]:
        """Events in [start, end); tenant_id None spans every tenant."""
        with _db_errors("list delivery events"):
            stmt = select(DeliveryEventModel).where(
                DeliveryEventModel.occurred_at >= _format_datetime(start),
                DeliveryEventModel.occurred_at < _format_datetime(end),
            )
            if tenant_id is not None:
                stmt = stmt.where(DeliveryEventModel.tenant_id == tenant_id)
            stmt = stmt.order_by(DeliveryEventModel.occurred_at)
            return [m.to_domain() for m in self.session.execute(stmt).scalars()]


class AnalyticsRepository:
    """Repository for daily analytics counters."""

    def __init__(self, session: Session):
        self.session = session

    def increment(
        self, tenant_id: str, day: date, channel: str, type_code: str, metric: str, amount: int = 1
    ) -> None:
        key = {
            "tenant_id": tenant_id,
            "day": day.isoformat(),
            "channel": _enum_value(channel),
            "type_code": type_code,
            "metric": _enum_value(metric),
        }
        with _db_errors(f"increment {key['metric']} for tenant {tenant_id}"):
            if self._bump(key, amount):
                return
            try:
                with self.session.begin_nested():
                    self.session.add(AnalyticsCounterModel(count=amount, **key))
                    self.session.flush()
            except IntegrityError:
                # Another transaction inserted the row first.
                self._bump(key, amount)

    def _bump(self, key: Dict[str, str], amount: int) -> bool:
        stmt = (
            update(AnalyticsCounterModel)
            .where(*(getattr(AnalyticsCounterModel, column) == value for column, value in key.items()))
            .values(count=AnalyticsCounterModel.count + amount)
            .execution_options(synchronize_session=False)
        )
        return self.session.execute(stmt).rowcount == 1

    def query(
        self,
        tenant_id: Optional[str],
        start_day: date,
        end_day: date,
        channel: Optional[str] = None,
        type_code: Optional[str] = None,
    ) -> List[AnalyticsCounter]:
        """Counters with start_day <= day <= end_day; tenant_id None spans every tenant."""
        with _db_errors("query analytics counters"):
            stmt = select(AnalyticsCounterModel).where(
                AnalyticsCounterModel.day >= start_day.isoformat(),
                AnalyticsCounterModel.day <= end_day.isoformat(),
            )
            if tenant_id is not None:
                stmt = stmt.where(AnalyticsCounterModel.tenant_id == tenant_id)
            if channel is not None:
                stmt = stmt.where(AnalyticsCounterModel.channel == _enum_value(channel))
            if type_code is not None:
                stmt = stmt.where(AnalyticsCounterModel.type_code == type_code)
            stmt = stmt.order_by(
                AnalyticsCounterModel.day,
                AnalyticsCounterModel.channel,
                AnalyticsCounterModel.type_code,
                AnalyticsCounterModel.tenant_id,
            )
            return [m.to_domain() for m in self.session.execute(stmt).scalars()]


class AdminAlertRepository:
    """Repository for admin alerts."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, alert: AdminAlert) -> AdminAlert:
        with _db_errors(f"create {alert.kind} alert for tenant {alert.tenant_id}"):
            model = AdminAlertModel(
                id=alert.id or new_id(),
                tenant_id=alert.tenant_id,
                job_id=alert.job_id,
                kind=alert.kind,
                message=alert.message,
                created_at=_format_datetime(alert.created_at),
                acknowledged=alert.acknowledged,
            )
            self.session.add(model)
            self.session.flush()
            return model.to_domain()

    def list(self, tenant_id: str, include_acknowledged: bool = False) -> List[AdminAlert]:
        with _db_errors(f"list alerts for tenant {tenant_id}"):
            stmt = select(AdminAlertModel).where(AdminAlertModel.tenant_id == tenant_id)
            if not include_acknowledged:
                stmt = stmt.where(AdminAlertModel.acknowledged.is_(False))
            stmt = stmt.order_by(AdminAlertModel.created_at.desc())
            return [m.to_domain() for m in self.session.execute(stmt).scalars()]

    def acknowledge(self, tenant_id: str, alert_id: str) -> bool:
        with _db_errors(f"acknowledge alert {alert_id}"):
            stmt = (
                update(AdminAlertModel)
                .where(AdminAlertModel.id == alert_id, AdminAlertModel.tenant_id == tenant_id)
                .values(acknowledged=True)
                .execution_options(synchronize_session=False)
            )
            return self.session.execute(stmt).rowcount == 1
