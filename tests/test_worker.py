"""Tests for the delivery worker: claims, retries, failures and alerts."""

from datetime import time, timedelta
from unittest.mock import MagicMock, Mock, patch

import pytest
import requests

from pulss_notify.admin import AdminService
from pulss_notify.domain.models import (
    Channel,
    DeliveryOutcome,
    JobStatus,
    ProviderConfig,
    QuietHours,
    RecipientPreference,
)
from pulss_notify.providers import (
    PermanentProviderError,
    ProviderCredentialsError,
    ProviderRouter,
    TransientProviderError,
    create_provider,
)
from pulss_notify.queue import DeliveryWorker, NotificationService
from tests.helpers import ScriptedProvider, scripted_factory


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def router(app_config, provider):
    return ProviderRouter(app_config, provider_factory=scripted_factory(provider))


@pytest.fixture
def service(seeded, app_config, router, clock):
    return NotificationService(app_config, router=router, clock=clock)


@pytest.fixture
def worker(seeded, app_config, router, clock):
    return DeliveryWorker(app_config, "w-1", router=router, clock=clock)


@pytest.fixture
def admin(seeded, app_config, clock):
    return AdminService(app_config, clock=clock)


def enqueue(service, type_code="order_confirmed", **kwargs):
    kwargs.setdefault("recipient_address", "ann@pulss.app")
    kwargs.setdefault("variables", {"order_id": 1001, "customer_name": "Ann", "store_name": "Pulss Mart"})
    return service.enqueue_notification("t-1", "customer", "c-1", type_code, **kwargs)


def outcomes(service, job_id):
    return [DeliveryOutcome(e.outcome) for e in service.list_delivery_events("t-1", job_id)]


class TestDelivery:
    """Test successful attempts."""

    def test_delivers_due_job(self, service, worker, provider, admin, clock):
        job_id = enqueue(service)

        result = worker.run_once()

        assert (result.claimed, result.delivered, result.errors) == (1, 1, 0)
        job = service.get_notification("t-1", job_id)
        assert job.status == JobStatus.DELIVERED
        assert job.attempt_count == 1
        assert job.provider_name == "smtp"
        assert job.provider_message_id == "msg-1"
        assert job.claimed_by is None

        call = provider.calls[0]
        assert call["recipient"] == "ann@pulss.app"
        assert call["payload"].subject == "Order Confirmed - 1001"
        assert call["credentials"]["host"] == "smtp.test"

        assert outcomes(service, job_id) == [DeliveryOutcome.DELIVERED]
        totals = admin.get_analytics("t-1", clock().date(), clock().date()).totals
        assert totals["sent"] == 1
        assert totals["delivered"] == 1

    def test_nothing_due(self, worker, provider):
        result = worker.run_once()

        assert result.claimed == 0
        assert provider.calls == []

    def test_future_job_waits(self, service, worker, provider, clock):
        enqueue(service, scheduled_for=clock() + timedelta(hours=1))

        assert worker.run_once().claimed == 0
        clock.advance(hours=1)
        assert worker.run_once().delivered == 1

    def test_quiet_hours_job_not_attempted_before_window_ends(self, service, worker, provider, admin, clock):
        """Test that a job deferred by quiet hours waits until the window closes."""
        admin.upsert_preference(
            RecipientPreference(
                tenant_id="t-1", recipient_id="c-1", quiet_hours=QuietHours(start=time(11, 0), end=time(13, 0))
            )
        )
        job_id = enqueue(service, "promo_new_offer")

        assert worker.run_once().claimed == 0
        clock.advance(minutes=59)
        assert worker.run_once().claimed == 0
        assert provider.calls == []

        clock.advance(minutes=1)
        result = worker.run_once()

        assert result.delivered == 1
        assert len(provider.calls) == 1
        assert service.get_notification("t-1", job_id).status == JobStatus.DELIVERED

    def test_higher_priority_claimed_first(self, service, worker):
        worker.batch_size = 1
        enqueue(service, "promo_new_offer")
        urgent = enqueue(service, "password_reset", variables={"reset_link": "https://pulss.app/r/1"})

        worker.run_once()

        assert service.get_notification("t-1", urgent).status == JobStatus.DELIVERED

    def test_concurrent_delivery_sends_each_job_once(self, seeded, service, provider, router, app_config, clock):
        app_config.worker.concurrency = 4
        worker = DeliveryWorker(app_config, "w-1", router=router, clock=clock)
        job_ids = [enqueue(service) for _ in range(10)]

        result = worker.run_once()

        assert result.delivered == 10
        assert len(provider.calls) == 10
        assert all(service.get_notification("t-1", j).status == JobStatus.DELIVERED for j in job_ids)


class TestRetries:
    """Test transient failures and the retry schedule."""

    def test_retries_then_fails_when_exhausted(self, service, worker, provider, admin, clock):
        provider.outcomes = [TransientProviderError("relay busy")] * 4
        start = clock()
        job_id = enqueue(service)

        assert worker.run_once().retried == 1
        job = service.get_notification("t-1", job_id)
        assert job.status == JobStatus.PENDING
        assert job.attempt_count == 1
        assert job.next_attempt_at == start + timedelta(minutes=1)
        assert job.last_error == "relay busy"

        assert worker.run_once().claimed == 0

        for wait, expected_next in ((1, 6), (5, 36)):
            clock.advance(minutes=wait)
            assert worker.run_once().retried == 1
            job = service.get_notification("t-1", job_id)
            assert job.next_attempt_at == start + timedelta(minutes=expected_next)

        clock.advance(minutes=30)
        result = worker.run_once()

        assert result.failed == 1
        job = service.get_notification("t-1", job_id)
        assert job.status == JobStatus.FAILED
        assert job.attempt_count == 4
        assert job.last_error.startswith("retries exhausted")
        assert len(provider.calls) == 4
        assert outcomes(service, job_id) == [DeliveryOutcome.RETRY_SCHEDULED] * 3 + [DeliveryOutcome.FAILED]
        assert admin.list_admin_alerts("t-1") == []

        totals = admin.get_analytics("t-1", start.date(), clock().date()).totals
        assert (totals["sent"], totals["retried"], totals["failed"]) == (1, 3, 1)

    def test_retry_then_delivered(self, service, worker, provider, clock):
        provider.outcomes = [TransientProviderError("timeout")]
        job_id = enqueue(service)

        worker.run_once()
        clock.advance(minutes=1)
        result = worker.run_once()

        assert result.delivered == 1
        job = service.get_notification("t-1", job_id)
        assert job.attempt_count == 2
        assert job.last_error is None
        assert outcomes(service, job_id) == [DeliveryOutcome.RETRY_SCHEDULED, DeliveryOutcome.DELIVERED]


class TestFailures:
    """Test permanent failures and the alerts they raise."""

    def test_permanent_failure_not_retried(self, service, worker, provider, admin):
        provider.outcomes = [PermanentProviderError("mailbox does not exist")]
        job_id = enqueue(service)

        assert worker.run_once().failed == 1

        job = service.get_notification("t-1", job_id)
        assert job.status == JobStatus.FAILED
        assert job.attempt_count == 1
        assert job.last_error == "mailbox does not exist"
        assert outcomes(service, job_id) == [DeliveryOutcome.FAILED]
        assert admin.list_admin_alerts("t-1") == []

    def test_rejected_credentials_alert(self, service, worker, provider, admin):
        provider.outcomes = [ProviderCredentialsError("HTTP 401")]
        job_id = enqueue(service)

        worker.run_once()

        alerts = admin.list_admin_alerts("t-1")
        assert [a.kind for a in alerts] == ["provider_credentials"]
        assert alerts[0].job_id == job_id

    def test_critical_type_failure_alerts(self, service, worker, provider, admin):
        provider.outcomes = [PermanentProviderError("rejected")]
        job_id = enqueue(service, "payment_failed", variables={"order_id": 7, "amount": "$10"})

        worker.run_once()

        alerts = admin.list_admin_alerts("t-1")
        assert [a.kind for a in alerts] == ["delivery_failed"]
        assert alerts[0].job_id == job_id

    def test_provider_removed_after_enqueue(self, service, worker, provider, admin):
        admin.upsert_provider_config(
            ProviderConfig(tenant_id="t-1", channel=Channel.WEBHOOK, provider="webhook", credentials={"url": "https://x.pulss.app"})
        )
        job_id = enqueue(service, channel_override="webhook", recipient_address=None)
        admin.delete_provider_config("t-1", "webhook")

        assert worker.run_once().failed == 1

        assert provider.calls == []
        assert service.get_notification("t-1", job_id).status == JobStatus.FAILED
        assert [a.kind for a in admin.list_admin_alerts("t-1")] == ["no_provider_configured"]

    def test_unexpected_provider_error_fails_without_resend(self, service, worker, provider, clock):
        """Test that an unclassified provider error ends the job instead of leaving it claimed."""
        provider.outcomes = [RuntimeError("malformed vendor reply")]
        job_id = enqueue(service)

        result = worker.run_once()

        assert result.failed == 1
        job = service.get_notification("t-1", job_id)
        assert job.status == JobStatus.FAILED
        assert job.claimed_by is None
        assert "RuntimeError" in job.last_error

        clock.advance(minutes=11)
        assert worker.run_once().claimed == 0
        assert len(provider.calls) == 1

    def test_crash_outside_provider_does_not_abort_pass(self, service, worker, router, provider):
        first = enqueue(service)
        second = enqueue(service)
        real_resolve = router.resolve
        calls = []

        def flaky_resolve(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                raise RuntimeError("router bug")
            return real_resolve(*args, **kwargs)

        with patch.object(router, "resolve", side_effect=flaky_resolve):
            result = worker.run_once()

        assert (result.claimed, result.delivered, result.errors) == (2, 1, 1)
        statuses = {service.get_notification("t-1", j).status for j in (first, second)}
        assert statuses == {JobStatus.SENDING, JobStatus.DELIVERED}


class TestVendorResponses:
    """Test the worker against a real HTTP provider with a stubbed session."""

    @pytest.fixture
    def http_session(self):
        return MagicMock()

    @pytest.fixture
    def http_router(self, app_config, http_session):
        return ProviderRouter(
            app_config,
            provider_factory=lambda name, timeout=10: create_provider(name, timeout=timeout, session=http_session),
        )

    def test_accepted_sms_with_non_json_body_sent_once(self, seeded, app_config, http_router, http_session, clock):
        response = Mock(status_code=201, headers={}, text="Queued", reason="Created")
        response.json.side_effect = requests.exceptions.JSONDecodeError("Expecting value", "Queued", 0)
        http_session.post.return_value = response
        service = NotificationService(app_config, router=http_router, clock=clock)
        worker = DeliveryWorker(app_config, "w-1", router=http_router, clock=clock)
        job_id = enqueue(service, channel_override="sms", recipient_address="+15550111111")

        result = worker.run_once()

        assert (result.delivered, result.errors) == (1, 0)
        job = service.get_notification("t-1", job_id)
        assert job.status == JobStatus.DELIVERED
        assert job.provider_name == "twilio"
        assert job.provider_message_id is None

        clock.advance(minutes=11)
        worker.run_once()

        assert http_session.post.call_count == 1


class TestClaims:
    """Test stale claims, lost claims and cancellation of in-flight jobs."""

    @pytest.fixture
    def other_worker(self, seeded, app_config, router, clock):
        return DeliveryWorker(app_config, "w-2", router=router, clock=clock)

    def test_stale_claim_released_and_redelivered(self, service, worker, other_worker, provider, admin, clock):
        job_id = enqueue(service)
        assert len(other_worker.claim_due_jobs(clock())) == 1

        assert worker.run_once().claimed == 0

        clock.advance(minutes=11)
        result = worker.run_once()

        assert result.released == 1
        assert result.delivered == 1
        job = service.get_notification("t-1", job_id)
        assert job.attempt_count == 2
        assert len(provider.calls) == 1

        report = admin.get_analytics("t-1", clock().date(), clock().date())
        assert (report.totals["sent"], report.totals["delivered"]) == (1, 1)
        assert report.delivery_rate == 1.0

    def test_release_lost_to_another_worker_not_reported(self, service, worker, other_worker, clock):
        """Test that a release another worker already performed is neither counted nor logged."""
        enqueue(service)
        other_worker.claim_due_jobs(clock())
        clock.advance(minutes=11)

        with patch("pulss_notify.queue.worker.JobRepository.release_claim", return_value=False), patch(
            "pulss_notify.queue.worker.logger"
        ) as mock_logger:
            released = worker._release_stale_claims(clock())

        assert released == 0
        events = [call.kwargs["extra"]["event"] for call in mock_logger.warning.call_args_list]
        assert "worker.claim.released" not in events

    def test_stale_claim_without_attempts_left_fails(self, service, worker, other_worker, app_config, clock):
        app_config.retry.max_retries = 0
        job_id = enqueue(service)
        other_worker.claim_due_jobs(clock())

        clock.advance(minutes=11)
        result = worker.run_once()

        assert result.released == 1
        assert result.claimed == 0
        assert service.get_notification("t-1", job_id).status == JobStatus.FAILED
        assert outcomes(service, job_id) == [DeliveryOutcome.FAILED]

    def test_late_result_after_release_discarded(self, service, worker, other_worker, provider, clock):
        job_id = enqueue(service)
        [stale] = other_worker.claim_due_jobs(clock())
        clock.advance(minutes=11)
        worker.run_once()

        assert other_worker.deliver(stale) is None

        assert outcomes(service, job_id) == [DeliveryOutcome.DELIVERED]
        assert service.get_notification("t-1", job_id).provider_message_id == "msg-1"

    def test_cancel_requested_mid_attempt(self, service, worker, other_worker, provider):
        provider.outcomes = [TransientProviderError("busy")]
        job_id = enqueue(service)
        [claimed] = other_worker.claim_due_jobs(service.clock())

        flagged = service.cancel_notification("t-1", job_id)
        assert flagged.status == JobStatus.SENDING
        assert flagged.cancel_requested

        assert other_worker.deliver(claimed) == DeliveryOutcome.RETRY_SCHEDULED
        result = worker.run_once()

        assert result.cancelled == 1
        assert result.claimed == 0
        job = service.get_notification("t-1", job_id)
        assert job.status == JobStatus.CANCELLED
        assert job.cancel_reason == "cancelled_by_request"
