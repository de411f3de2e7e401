"""Delivery worker: claims due jobs and sends them through providers."""

import contextvars
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, ContextManager, List, Optional

from sqlalchemy.orm import Session

from pulss_notify.analytics.recorder import AnalyticsRecorder
from pulss_notify.config.models import AppConfig
from pulss_notify.domain.exceptions import NotificationConfigurationError
from pulss_notify.domain.models import DeliveryEvent, DeliveryOutcome, NotificationJob
from pulss_notify.logging import get_logger
from pulss_notify.logging.context import log_context
from pulss_notify.persistence import get_session
from pulss_notify.persistence.exceptions import PersistenceError
from pulss_notify.persistence.repositories import JobRepository
from pulss_notify.providers.exceptions import (
    PermanentProviderError,
    ProviderCredentialsError,
    TransientProviderError,
)
from pulss_notify.providers.router import ProviderRouter
from pulss_notify.utils.timestamps import utc_now

from .alerts import DELIVERY_FAILED, raise_admin_alert
from .backoff import BackoffPolicy

logger = get_logger(__name__, component="worker")


@dataclass
class WorkerPassResult:
    """Counts from one worker pass, for logs and the CLI summary."""

    claimed: int = 0
    delivered: int = 0
    retried: int = 0
    failed: int = 0
    cancelled: int = 0
    released: int = 0
    errors: int = 0


class DeliveryWorker:
    """Moves due jobs through one delivery attempt each.

    A pass:

    1. cancels pending jobs whose cancellation was requested mid-attempt
    2. releases claims older than the lease (their worker is presumed dead)
    3. claims up to ``batch_size`` due jobs, one conditional UPDATE per job
    4. sends the claimed jobs concurrently on a thread pool

    Several workers (threads or processes) may run passes at once; the claim
    guarantees at most one in-flight attempt per job. Provider configuration
    is resolved per attempt, never cached.
    """

    def __init__(
        self,
        app_config: AppConfig,
        worker_id: str,
        router: Optional[ProviderRouter] = None,
        recorder: Optional[AnalyticsRecorder] = None,
        backoff: Optional[BackoffPolicy] = None,
        clock: Callable[[], datetime] = utc_now,
        session_factory: Callable[[], ContextManager[Session]] = get_session,
    ):
        self.app_config = app_config
        self.worker_id = worker_id
        self.router = router or ProviderRouter(app_config)
        self.recorder = recorder or AnalyticsRecorder()
        self.backoff = backoff or BackoffPolicy(app_config.retry)
        self.clock = clock
        self.session_factory = session_factory
        self.batch_size = app_config.worker.batch_size
        self.concurrency = app_config.worker.concurrency
        self.claim_lease = timedelta(seconds=app_config.worker.claim_lease_seconds)
        self.critical_types = set(app_config.critical_types)

    def run_once(self) -> WorkerPassResult:
        """Run one pass and return what happened."""
        result = WorkerPassResult()
        with log_context(worker_id=self.worker_id):
            now = self.clock()
            result.cancelled = self._cancel_flagged(now)
            result.released = self._release_stale_claims(now)

            jobs = self.claim_due_jobs(now)
            result.claimed = len(jobs)
            for outcome in self._dispatch(jobs):
                if outcome is None:
                    result.errors += 1
                elif outcome == DeliveryOutcome.DELIVERED:
                    result.delivered += 1
                elif outcome == DeliveryOutcome.RETRY_SCHEDULED:
                    result.retried += 1
                elif outcome == DeliveryOutcome.FAILED:
                    result.failed += 1

            if result.claimed or result.cancelled or result.released:
                logger.info(
                    f"Worker pass complete: {result.claimed} claimed, {result.delivered} delivered, "
                    f"{result.retried} retried, {result.failed} failed",
                    extra={"event": "worker.pass.completed", **result.__dict__},
                )
        return result

    def _cancel_flagged(self, now: datetime) -> int:
        with self.session_factory() as session:
            count = JobRepository(session).cancel_flagged_pending(now)
        if count:
            logger.info(
                f"Cancelled {count} jobs flagged during delivery",
                extra={"event": "worker.cancelled_flagged", "count": count},
            )
        return count

    def _release_stale_claims(self, now: datetime) -> int:
        cutoff = now - self.claim_lease
        released = 0
        with self.session_factory() as session:
            repo = JobRepository(session)
            for job in repo.find_stale_claims(cutoff):
                if job.attempt_count >= job.max_attempts:
                    done = repo.fail_stale_claim(job, now)
                    if done:
                        self._record(session, job, DeliveryOutcome.FAILED, now, response="claim lease expired")
                else:
                    done = repo.release_claim(job, now)
                if not done:
                    continue
                released += 1
                logger.warning(
                    f"Released stale claim held by {job.claimed_by}",
                    extra={"event": "worker.claim.released", "job_id": job.id, "claimed_by": job.claimed_by},
                )
        return released

    def claim_due_jobs(self, now: datetime) -> List[NotificationJob]:
        """Claim up to batch_size due jobs for this worker."""
        with self.session_factory() as session:
            candidate_ids = JobRepository(session).find_due_job_ids(now, self.batch_size)

        claimed = []
        for job_id in candidate_ids:
            with self.session_factory() as session:
                job = JobRepository(session).claim_job(job_id, self.worker_id, now)
            if job is None:
                logger.debug(
                    "Job claimed by another worker",
                    extra={"event": "delivery.claim.lost", "job_id": job_id},
                )
                continue
            claimed.append(job)
        return claimed

    def _dispatch(self, jobs: List[NotificationJob]) -> List[Optional[DeliveryOutcome]]:
        if not jobs:
            return []
        if self.concurrency <= 1 or len(jobs) == 1:
            return [self._deliver_safely(job) for job in jobs]

        with ThreadPoolExecutor(
            max_workers=min(self.concurrency, len(jobs)), thread_name_prefix="pulss-delivery"
        ) as executor:
            futures = [
                executor.submit(contextvars.copy_context().run, self._deliver_safely, job)
                for job in jobs
            ]
            return [future.result() for future in futures]

    def _deliver_safely(self, job: NotificationJob) -> Optional[DeliveryOutcome]:
        try:
            return self.deliver(job)
        except PersistenceError as e:
            # The claim stays in place and is released once the lease expires.
            logger.error(
                f"Could not record outcome for job {job.id}: {e}",
                extra={"event": "delivery.persistence_error", "job_id": job.id},
            )
            return None
        except Exception as e:
            # One broken job must not abort the pass for the rest of the batch.
            logger.error(
                f"Delivery of job {job.id} crashed: {e}",
                exc_info=True,
                extra={"event": "delivery.job.crashed", "job_id": job.id, "error_type": type(e).__name__},
            )
            return None

    def deliver(self, job: NotificationJob) -> Optional[DeliveryOutcome]:
        """Make one attempt for a job this worker has claimed.

        Returns:
            The recorded outcome, or None if the claim expired before it was recorded
        """
        with log_context(tenant_id=job.tenant_id, job_id=job.id):
            if job.rendered_content is None:
                return self._fail(job, "job has no rendered content", provider_name=None, alert_kind="configuration_error")

            try:
                with self.session_factory() as session:
                    resolved = self.router.resolve(session, job.tenant_id, job.channel)
            except NotificationConfigurationError as e:
                return self._fail(job, str(e), provider_name=None, alert_kind=e.alert_kind)

            logger.debug(
                f"Attempt {job.attempt_count}/{job.max_attempts} via {resolved.name}",
                extra={"event": "delivery.attempt.started", "provider": resolved.name, "attempt": job.attempt_count},
            )
            try:
                result = resolved.provider.send(
                    job.rendered_content, job.recipient_address or "", resolved.credentials
                )
            except TransientProviderError as e:
                return self._handle_transient(job, resolved.name, e)
            except ProviderCredentialsError as e:
                return self._fail(job, str(e), provider_name=resolved.name, alert_kind="provider_credentials")
            except PermanentProviderError as e:
                return self._fail(job, str(e), provider_name=resolved.name)
            except Exception as e:
                # The vendor may already have the message, so a retry could send it twice.
                logger.error(
                    f"Unexpected error from {resolved.name}: {e}",
                    exc_info=True,
                    extra={"event": "delivery.attempt.error", "provider": resolved.name, "error_type": type(e).__name__},
                )
                return self._fail(
                    job, f"unexpected provider error: {type(e).__name__}: {e}", provider_name=resolved.name
                )

            now = self.clock()
            with self.session_factory() as session:
                won = JobRepository(session).mark_delivered(
                    job.id, self.worker_id, resolved.name, result.provider_message_id, now
                )
                if won:
                    self._record(session, job, DeliveryOutcome.DELIVERED, now, resolved.name, result.response)
            if not won:
                return self._claim_lost(job)

            logger.info(
                f"Delivered {job.type_code} via {resolved.name}",
                extra={
                    "event": "delivery.attempt.succeeded",
                    "provider": resolved.name,
                    "attempt": job.attempt_count,
                    "provider_message_id": result.provider_message_id,
                },
            )
            return DeliveryOutcome.DELIVERED

    def _handle_transient(
        self, job: NotificationJob, provider_name: str, error: Exception
    ) -> Optional[DeliveryOutcome]:
        if job.attempt_count >= job.max_attempts:
            return self._fail(job, f"retries exhausted: {error}", provider_name=provider_name)

        now = self.clock()
        next_attempt_at = self.backoff.next_attempt_at(job.attempt_count, now)
        with self.session_factory() as session:
            won = JobRepository(session).schedule_retry(
                job.id, self.worker_id, next_attempt_at, str(error), now, provider_name=provider_name
            )
            if won:
                self._record(session, job, DeliveryOutcome.RETRY_SCHEDULED, now, provider_name, str(error))
        if not won:
            return self._claim_lost(job)

        logger.warning(
            f"Attempt {job.attempt_count}/{job.max_attempts} failed, retrying at {next_attempt_at.isoformat()}: {error}",
            extra={
                "event": "delivery.attempt.failed",
                "provider": provider_name,
                "attempt": job.attempt_count,
                "next_attempt_at": next_attempt_at.isoformat(),
            },
        )
        return DeliveryOutcome.RETRY_SCHEDULED

    def _fail(
        self,
        job: NotificationJob,
        reason: str,
        provider_name: Optional[str],
        alert_kind: Optional[str] = None,
    ) -> Optional[DeliveryOutcome]:
        if alert_kind is None and job.type_code in self.critical_types:
            alert_kind = DELIVERY_FAILED

        now = self.clock()
        with self.session_factory() as session:
            won = JobRepository(session).mark_failed(
                job.id, reason, now, worker_id=self.worker_id, provider_name=provider_name
            )
            if won:
                self._record(session, job, DeliveryOutcome.FAILED, now, provider_name, reason)
                if alert_kind:
                    raise_admin_alert(
                        session, job.tenant_id, alert_kind, f"{job.type_code} to {job.recipient_id} failed: {reason}",
                        now, job_id=job.id,
                    )
        if not won:
            return self._claim_lost(job)

        logger.error(
            f"Job failed after {job.attempt_count} attempts: {reason}",
            extra={"event": "delivery.job.failed", "provider": provider_name, "attempt": job.attempt_count},
        )
        return DeliveryOutcome.FAILED

    def _claim_lost(self, job: NotificationJob) -> Optional[DeliveryOutcome]:
        logger.warning(
            "Claim lost before the outcome was recorded; result discarded",
            extra={"event": "delivery.claim.expired", "job_id": job.id},
        )
        return None

    def _record(
        self,
        session: Session,
        job: NotificationJob,
        outcome: DeliveryOutcome,
        now: datetime,
        provider_name: Optional[str] = None,
        response: Optional[str] = None,
    ) -> None:
        self.recorder.record(
            session,
            DeliveryEvent(
                tenant_id=job.tenant_id,
                job_id=job.id,
                channel=job.channel,
                type_code=job.type_code,
                attempt_number=job.attempt_count,
                outcome=outcome,
                provider=provider_name,
                provider_response=(response or "")[:1000] or None,
                occurred_at=now,
            ),
        )
