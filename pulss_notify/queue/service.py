"""Public notification API: enqueue, cancel and query jobs.

Callers (order, payment, billing and admin flows) use NotificationService
in-process. Enqueueing returns a job id straight away; delivery happens later
in a DeliveryWorker pass.
"""

from datetime import datetime
from typing import Any, Callable, ContextManager, Dict, List, Mapping, Optional

from sqlalchemy.orm import Session

from pulss_notify.analytics.recorder import AnalyticsRecorder
from pulss_notify.config.models import AppConfig
from pulss_notify.domain.exceptions import (
    InvalidTransition,
    JobNotFound,
    NoProviderConfigured,
    NotificationConfigurationError,
    UnknownNotificationType,
)
from pulss_notify.domain.models import (
    Channel,
    DeliveryEvent,
    DeliveryOutcome,
    JobStatus,
    NotificationJob,
    Page,
    RecipientType,
)
from pulss_notify.logging import get_logger
from pulss_notify.logging.context import log_context
from pulss_notify.persistence import get_session, new_id
from pulss_notify.persistence.exceptions import PersistenceError
from pulss_notify.persistence.repositories import (
    DeliveryEventRepository,
    JobRepository,
    NotificationTypeRepository,
    PreferenceRepository,
)
from pulss_notify.preferences.filter import PreferenceFilter
from pulss_notify.providers.router import ProviderRouter
from pulss_notify.templates.renderer import TemplateRenderer
from pulss_notify.templates.resolver import TemplateResolver
from pulss_notify.utils.timestamps import ensure_utc, utc_now

from .alerts import raise_admin_alert

logger = get_logger(__name__, component="queue")

MAX_PAGE_SIZE = 200
LIST_FILTERS = {"status", "channel", "type_code", "created_from", "created_to"}


class NotificationService:
    """Entry point for creating, cancelling and inspecting notification jobs.

    Enqueueing runs, in order: job creation, the preference filter, template
    resolution and rendering, and a provider existence check. A denial
    cancels the job with the deny reason; a missing template or provider
    fails it at once and raises an admin alert. None of these raise to the
    caller, who only ever gets the job id back.
    """

    def __init__(
        self,
        app_config: AppConfig,
        router: Optional[ProviderRouter] = None,
        renderer: Optional[TemplateRenderer] = None,
        resolver: Optional[TemplateResolver] = None,
        preference_filter: Optional[PreferenceFilter] = None,
        recorder: Optional[AnalyticsRecorder] = None,
        clock: Callable[[], datetime] = utc_now,
        session_factory: Callable[[], ContextManager[Session]] = get_session,
    ):
        self.app_config = app_config
        self.router = router or ProviderRouter(app_config)
        self.renderer = renderer or TemplateRenderer(app_config.rendering)
        self.resolver = resolver or TemplateResolver()
        self.preference_filter = preference_filter or PreferenceFilter(app_config)
        self.recorder = recorder or AnalyticsRecorder()
        self.clock = clock
        self.session_factory = session_factory

    def enqueue_notification(
        self,
        tenant_id: str,
        recipient_type: RecipientType | str,
        recipient_id: str,
        type_code: str,
        variables: Optional[Mapping[str, Any]] = None,
        channel_override: Optional[Channel | str] = None,
        recipient_address: Optional[str] = None,
        scheduled_for: Optional[datetime] = None,
    ) -> str:
        """Queue a notification and return its job id.

        Args:
            tenant_id: Tenant the recipient belongs to
            recipient_type: "customer" or "admin"
            recipient_id: Recipient identifier within the tenant
            type_code: Catalog type code, e.g. "order_confirmed"
            variables: Template variables
            channel_override: Channel to use instead of the type's default channel
            recipient_address: Email, phone, device token or URL; defaults to the
                address saved in the recipient's preferences
            scheduled_for: Earliest delivery time (defaults to now)

        Raises:
            UnknownNotificationType: If type_code is not in the catalog
            PersistenceError: If the job cannot be stored
        """
        type_code = type_code.strip().lower()
        recipient_type = RecipientType(recipient_type)
        variables = dict(variables or {})
        now = self.clock()

        with self.session_factory() as session:
            notification_type = NotificationTypeRepository(session).get(type_code)
            if notification_type is None:
                raise UnknownNotificationType(type_code)

            channel = Channel(channel_override or notification_type.default_channel)
            job = JobRepository(session).create(
                NotificationJob(
                    id=new_id(),
                    tenant_id=tenant_id,
                    recipient_id=recipient_id,
                    recipient_type=recipient_type,
                    recipient_address=recipient_address,
                    type_code=type_code,
                    channel=channel,
                    priority=notification_type.priority,
                    status=JobStatus.PENDING,
                    max_retries=self.app_config.retry.max_retries,
                    created_at=now,
                )
            )

            with log_context(tenant_id=tenant_id, job_id=job.id):
                self._prepare(
                    session, job, notification_type, variables, recipient_address, scheduled_for, now
                )

        return job.id

    def _prepare(
        self,
        session: Session,
        job: NotificationJob,
        notification_type,
        variables: Dict[str, Any],
        recipient_address: Optional[str],
        scheduled_for: Optional[datetime],
        now: datetime,
    ) -> None:
        jobs = JobRepository(session)
        decision = self.preference_filter.check(
            session,
            job.tenant_id,
            job.recipient_id,
            job.channel,
            job.type_code,
            now,
            notification_type=notification_type,
        )
        if not decision.allowed:
            jobs.cancel_pending(job.id, decision.reason.value, now)
            logger.info(
                f"Notification {job.type_code} cancelled: {decision.reason.value}",
                extra={"event": "notification.cancelled", "reason": decision.reason.value},
            )
            return

        try:
            template = self.resolver.resolve(session, job.tenant_id, job.type_code, job.channel)
            content = self.renderer.render(template, variables, job.channel)
            if not self.router.has_provider(session, job.tenant_id, job.channel):
                raise NoProviderConfigured(job.tenant_id, Channel(job.channel).value)
        except NotificationConfigurationError as e:
            self._fail_before_attempt(session, job, e, now)
            return

        address = recipient_address or self._saved_address(session, job)
        due = max(ensure_utc(scheduled_for) or now, decision.defer_until or now)
        jobs.attach_content(job.id, content, address, due, now)

        logger.info(
            f"Notification {job.type_code} enqueued on {Channel(job.channel).value}",
            extra={
                "event": "notification.enqueued",
                "type_code": job.type_code,
                "channel": Channel(job.channel).value,
                "next_attempt_at": due.isoformat(),
                "deferred": decision.deferred,
            },
        )

    def _saved_address(self, session: Session, job: NotificationJob) -> Optional[str]:
        if Channel(job.channel) == Channel.IN_APP:
            return job.recipient_id
        try:
            preference = PreferenceRepository(session).get(job.tenant_id, job.recipient_id)
        except PersistenceError as e:
            logger.warning(
                f"Could not read saved address: {e}",
                extra={"event": "notification.address_lookup_failed"},
            )
            return None
        return preference.address_for(job.channel) if preference else None

    def _fail_before_attempt(
        self, session: Session, job: NotificationJob, error: NotificationConfigurationError, now: datetime
    ) -> None:
        JobRepository(session).mark_failed(job.id, str(error), now)
        self.recorder.record(
            session,
            DeliveryEvent(
                tenant_id=job.tenant_id,
                job_id=job.id,
                channel=job.channel,
                type_code=job.type_code,
                attempt_number=0,
                outcome=DeliveryOutcome.FAILED,
                provider_response=str(error),
                occurred_at=now,
            ),
        )
        raise_admin_alert(session, job.tenant_id, error.alert_kind, str(error), now, job_id=job.id)
        logger.error(
            f"Notification {job.type_code} failed before delivery: {error}",
            extra={"event": "notification.configuration_error", "kind": error.alert_kind},
        )

    def cancel_notification(
        self, tenant_id: str, job_id: str, reason: str = "cancelled_by_request"
    ) -> NotificationJob:
        """Cancel a job.

        Pending jobs are cancelled at once. Jobs mid-attempt are flagged and
        cancelled before their next attempt; the attempt already running may
        still deliver.

        Raises:
            JobNotFound: If the tenant has no such job
            InvalidTransition: If the job already delivered, failed or was cancelled
        """
        now = self.clock()
        with self.session_factory() as session:
            jobs = JobRepository(session)
            job = jobs.get(job_id, tenant_id=tenant_id)
            if job is None:
                raise JobNotFound(job_id, tenant_id)

            status = JobStatus(job.status)
            if status == JobStatus.PENDING and jobs.cancel_pending(job_id, reason, now, tenant_id=tenant_id):
                logger.info(
                    "Notification cancelled",
                    extra={"event": "notification.cancelled", "job_id": job_id, "reason": reason},
                )
                return jobs.get(job_id, tenant_id=tenant_id)

            # Either sending, or claimed between the read and the cancel.
            if jobs.request_cancel(job_id, tenant_id, reason, now):
                logger.info(
                    "Cancellation requested for in-flight notification",
                    extra={"event": "notification.cancel_requested", "job_id": job_id, "reason": reason},
                )
                return jobs.get(job_id, tenant_id=tenant_id)

            current = jobs.get(job_id, tenant_id=tenant_id)
            raise InvalidTransition(job_id, JobStatus(current.status).value, JobStatus.CANCELLED.value)

    def get_notification(self, tenant_id: str, job_id: str) -> NotificationJob:
        """Raises JobNotFound if the tenant has no such job."""
        with self.session_factory() as session:
            job = JobRepository(session).get(job_id, tenant_id=tenant_id)
        if job is None:
            raise JobNotFound(job_id, tenant_id)
        return job

    def list_notifications(
        self,
        tenant_id: str,
        recipient_id: Optional[str] = None,
        filters: Optional[Mapping[str, Any]] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Page:
        """Newest-first page of a tenant's notifications.

        ``filters`` may contain status, channel, type_code, created_from and
        created_to.

        Raises:
            ValueError: On an unknown filter or out-of-range paging values
        """
        filters = dict(filters or {})
        unknown = set(filters) - LIST_FILTERS
        if unknown:
            raise ValueError(f"Unknown filters: {', '.join(sorted(unknown))}")
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValueError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        if offset < 0:
            raise ValueError("offset cannot be negative")

        with self.session_factory() as session:
            items, total = JobRepository(session).list_for_tenant(
                tenant_id,
                recipient_id=recipient_id,
                status=JobStatus(filters["status"]).value if filters.get("status") else None,
                channel=Channel(filters["channel"]).value if filters.get("channel") else None,
                type_code=filters.get("type_code"),
                created_from=filters.get("created_from"),
                created_to=filters.get("created_to"),
                limit=limit,
                offset=offset,
            )
        return Page(items=items, total=total, limit=limit, offset=offset)

    def get_status_summary(self, tenant_id: str) -> Dict[str, int]:
        """Job counts for every status, zeros included."""
        with self.session_factory() as session:
            return JobRepository(session).status_summary(tenant_id)

    def list_delivery_events(self, tenant_id: str, job_id: str) -> List[DeliveryEvent]:
        """Raises JobNotFound if the tenant has no such job."""
        with self.session_factory() as session:
            if JobRepository(session).get(job_id, tenant_id=tenant_id) is None:
                raise JobNotFound(job_id, tenant_id)
            return DeliveryEventRepository(session).list_for_job(tenant_id, job_id)

    def record_engagement(
        self,
        tenant_id: str,
        job_id: str,
        outcome: DeliveryOutcome | str,
        provider_response: Optional[str] = None,
    ) -> bool:
        """Record an opened, clicked or bounced report from a provider callback.

        Returns:
            True if recorded, False if the same report was already recorded
        """
        with self.session_factory() as session:
            return self.recorder.record_engagement(
                session, tenant_id, job_id, DeliveryOutcome(outcome), self.clock(), provider_response
            )
