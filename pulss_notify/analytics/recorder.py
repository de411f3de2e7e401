"""Recording of delivery events and the counters derived from them."""

from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from pulss_notify.domain.exceptions import JobNotFound
from pulss_notify.domain.models import (
    ATTEMPT_OUTCOMES,
    ENGAGEMENT_OUTCOMES,
    OUTCOME_METRICS,
    AnalyticsMetric,
    DeliveryEvent,
    DeliveryOutcome,
)
from pulss_notify.logging import get_logger
from pulss_notify.persistence.repositories import (
    AnalyticsRepository,
    DeliveryEventRepository,
    JobRepository,
)

logger = get_logger(__name__, component="analytics")


class AnalyticsRecorder:
    """Appends delivery events and keeps daily counters in step with them.

    Counters only move when the event is new, so replaying the same outcome
    (a retried worker pass, a provider re-sending a webhook) never counts
    twice. Counter updates share the caller's transaction with the event
    insert, which keeps counters reconcilable with the event log.
    """

    def record(self, session: Session, event: DeliveryEvent) -> bool:
        """Append the event and bump its counters.

        Returns:
            True if the event was new, False if it had already been recorded
        """
        stored = DeliveryEventRepository(session).append_if_new(event)
        if stored is None:
            logger.debug(
                "Duplicate delivery event ignored",
                extra={"event": "analytics.event.duplicate", "idempotency_key": event.idempotency_key},
            )
            return False

        outcome = DeliveryOutcome(event.outcome)
        counters = AnalyticsRepository(session)
        day = event.occurred_at.date()
        counters.increment(event.tenant_id, day, event.channel, event.type_code, OUTCOME_METRICS[outcome])
        if self._is_first_attempt_outcome(session, event, outcome):
            counters.increment(event.tenant_id, day, event.channel, event.type_code, AnalyticsMetric.SENT)

        logger.debug(
            f"Recorded {outcome.value} event",
            extra={
                "event": "analytics.event.recorded",
                "job_id": event.job_id,
                "outcome": outcome.value,
                "attempt_number": event.attempt_number,
            },
        )
        return True

    @staticmethod
    def _is_first_attempt_outcome(session: Session, event: DeliveryEvent, outcome: DeliveryOutcome) -> bool:
        # A job counts as sent once, on its first recorded attempt outcome. That
        # is usually attempt 1, but not when attempt 1 was lost with an expired claim.
        if outcome not in ATTEMPT_OUTCOMES or event.attempt_number < 1:
            return False
        return DeliveryEventRepository(session).count_attempt_events(event.job_id) == 1

    def record_engagement(
        self,
        session: Session,
        tenant_id: str,
        job_id: str,
        outcome: DeliveryOutcome,
        now: datetime,
        provider_response: Optional[str] = None,
    ) -> bool:
        """Record an opened, clicked or bounced report for a job.

        Raises:
            ValueError: If outcome is not an engagement outcome
            JobNotFound: If the job does not exist for the tenant
        """
        outcome = DeliveryOutcome(outcome)
        if outcome not in ENGAGEMENT_OUTCOMES:
            raise ValueError(f"{outcome.value} is not an engagement outcome")

        job = JobRepository(session).get(job_id, tenant_id=tenant_id)
        if job is None:
            raise JobNotFound(job_id, tenant_id)

        return self.record(
            session,
            DeliveryEvent(
                tenant_id=tenant_id,
                job_id=job_id,
                channel=job.channel,
                type_code=job.type_code,
                attempt_number=job.attempt_count,
                outcome=outcome,
                provider=job.provider_name,
                provider_response=provider_response,
                occurred_at=now,
            ),
        )
