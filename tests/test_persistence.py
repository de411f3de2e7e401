"""Unit tests for the persistence layer."""

import threading
from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import text

from pulss_notify.domain.models import (
    AdminAlert,
    Channel,
    DeliveryEvent,
    DeliveryOutcome,
    JobStatus,
    NotificationJob,
    NotificationTemplate,
    Priority,
    ProviderConfig,
    QuietHours,
    RecipientPreference,
    RecipientType,
    RenderedContent,
)
from pulss_notify.persistence import (
    AdminAlertRepository,
    AnalyticsRepository,
    DatabaseConnectionError,
    DeliveryEventRepository,
    JobRepository,
    PreferenceRepository,
    ProviderConfigRepository,
    TemplateRepository,
    TenantToggleRepository,
    close_database,
    get_engine,
    get_session,
    init_database,
    new_id,
)
from pulss_notify.persistence.schema import TIMESTAMP_FORMAT, _format_datetime, _parse_datetime

NOW = datetime(2025, 11, 4, 12, 0, tzinfo=timezone.utc)


def make_job(tenant_id="t-1", priority=Priority.MEDIUM, due=NOW, created=NOW, **overrides):
    data = dict(
        id=new_id(),
        tenant_id=tenant_id,
        recipient_id="c-1",
        recipient_type=RecipientType.CUSTOMER,
        recipient_address="c1@example.com",
        type_code="order_confirmed",
        channel=Channel.EMAIL,
        priority=priority,
        rendered_content=RenderedContent(subject="Hi", body="Body"),
        next_attempt_at=due,
        created_at=created,
    )
    data.update(overrides)
    return NotificationJob(**data)


def store(job):
    with get_session() as session:
        return JobRepository(session).create(job)


def fetch(job_id):
    with get_session() as session:
        return JobRepository(session).get(job_id)


class TestDatabaseInitialization:
    """Tests for database initialization."""

    def test_init_database_creates_file_and_parents(self, tmp_path):
        db_file = tmp_path / "nested" / "dir" / "notify.db"

        init_database(f"sqlite:///{db_file}")
        try:
            assert db_file.exists()
            with get_session() as session:
                assert session.execute(text("SELECT 1")).scalar() == 1
        finally:
            close_database()

    def test_init_database_in_memory(self):
        init_database("sqlite:///:memory:")
        try:
            with get_session() as session:
                assert session is not None
        finally:
            close_database()

    def test_invalid_url_raises(self):
        with pytest.raises(DatabaseConnectionError):
            init_database("")
        with pytest.raises(DatabaseConnectionError):
            init_database(None)
        with pytest.raises(DatabaseConnectionError):
            init_database("nosuchdialect://host/db")

    def test_schema_creation_is_idempotent(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'notify.db'}"
        init_database(url)
        init_database(url)
        try:
            with get_engine().connect() as conn:
                rows = conn.execute(text("SELECT name FROM sqlite_master WHERE type='table'"))
                tables = {row[0] for row in rows}
            assert {"notification_jobs", "delivery_events", "analytics_counters", "admin_alerts"} <= tables
        finally:
            close_database()

    def test_session_requires_init(self):
        close_database()
        with pytest.raises(DatabaseConnectionError):
            with get_session():
                pass

    def test_session_rolls_back_on_error(self, db):
        job = make_job()
        with pytest.raises(RuntimeError):
            with get_session() as session:
                JobRepository(session).create(job)
                raise RuntimeError("abort")

        assert fetch(job.id) is None


class TestTimestampStorage:
    def test_round_trip_keeps_utc(self):
        value = datetime(2025, 11, 4, 14, 0, tzinfo=timezone(timedelta(hours=2)))
        stored = _format_datetime(value)
        assert stored == "2025-11-04T12:00:00.000000Z"
        assert _parse_datetime(stored) == datetime(2025, 11, 4, 12, 0, tzinfo=timezone.utc)

    def test_lexical_order_matches_time_order(self):
        earlier = _format_datetime(datetime(2025, 11, 4, 9, 5, 1, tzinfo=timezone.utc))
        later = _format_datetime(datetime(2025, 11, 4, 10, 0, 0, 5, tzinfo=timezone.utc))
        assert earlier < later
        assert len(earlier) == len(later) == len(datetime(2025, 1, 1).strftime(TIMESTAMP_FORMAT))


class TestJobRepository:
    """Tests for job storage and lifecycle transitions."""

    def test_create_and_get_with_tenant_isolation(self, db):
        job = store(make_job(tenant_id="t-1"))

        with get_session() as session:
            repo = JobRepository(session)
            assert repo.get(job.id, tenant_id="t-1").id == job.id
            assert repo.get(job.id, tenant_id="t-2") is None

        loaded = fetch(job.id)
        assert loaded.status == JobStatus.PENDING
        assert loaded.rendered_content.subject == "Hi"
        assert loaded.created_at == NOW

    def test_due_jobs_ordered_by_priority_then_due_time(self, db):
        low = store(make_job(priority=Priority.LOW, due=NOW - timedelta(minutes=10)))
        urgent = store(make_job(priority=Priority.URGENT, due=NOW - timedelta(minutes=1)))
        high_old = store(make_job(priority=Priority.HIGH, due=NOW - timedelta(minutes=5)))
        high_new = store(make_job(priority=Priority.HIGH, due=NOW - timedelta(minutes=2)))
        store(make_job(due=NOW + timedelta(minutes=1)))
        store(make_job(due=None))

        with get_session() as session:
            ids = JobRepository(session).find_due_job_ids(NOW, limit=10)

        assert ids == [urgent.id, high_old.id, high_new.id, low.id]

    def test_claim_moves_job_to_sending(self, db):
        job = store(make_job())

        with get_session() as session:
            claimed = JobRepository(session).claim_job(job.id, "w-1", NOW)

        assert claimed.status == JobStatus.SENDING
        assert claimed.claimed_by == "w-1"
        assert claimed.attempt_count == 1
        assert claimed.version == job.version + 1

        with get_session() as session:
            assert JobRepository(session).claim_job(job.id, "w-2", NOW) is None

    def test_concurrent_claims_have_exactly_one_winner(self, db):
        """Test that N threads racing to claim one job produce one winner."""
        job = store(make_job())
        workers = 8
        barrier = threading.Barrier(workers)
        winners = []
        errors = []

        def race(worker_id):
            barrier.wait()
            try:
                with get_session() as session:
                    if JobRepository(session).claim_job(job.id, worker_id, NOW) is not None:
                        winners.append(worker_id)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=race, args=(f"w-{i}",)) for i in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert len(winners) == 1
        stored = fetch(job.id)
        assert stored.claimed_by == winners[0]
        assert stored.attempt_count == 1

    def test_finishing_requires_own_claim(self, db):
        job = store(make_job())
        with get_session() as session:
            JobRepository(session).claim_job(job.id, "w-1", NOW)

        with get_session() as session:
            repo = JobRepository(session)
            assert not repo.mark_delivered(job.id, "w-2", "smtp", "m-1", NOW)
            assert repo.mark_delivered(job.id, "w-1", "smtp", "m-1", NOW)
            assert not repo.mark_delivered(job.id, "w-1", "smtp", "m-1", NOW)

        stored = fetch(job.id)
        assert stored.status == JobStatus.DELIVERED
        assert stored.provider_message_id == "m-1"
        assert stored.claimed_by is None

    def test_schedule_retry_returns_job_to_pending(self, db):
        job = store(make_job())
        later = NOW + timedelta(minutes=1)
        with get_session() as session:
            repo = JobRepository(session)
            repo.claim_job(job.id, "w-1", NOW)
            assert repo.schedule_retry(job.id, "w-1", later, "HTTP 503", NOW, provider_name="twilio")

        stored = fetch(job.id)
        assert stored.status == JobStatus.PENDING
        assert stored.next_attempt_at == later
        assert stored.last_error == "HTTP 503"
        assert stored.claimed_by is None

    def test_mark_failed_without_worker_needs_pending(self, db):
        pending = store(make_job())
        sending = store(make_job())
        with get_session() as session:
            repo = JobRepository(session)
            repo.claim_job(sending.id, "w-1", NOW)
            assert repo.mark_failed(pending.id, "no template", NOW)
            assert not repo.mark_failed(sending.id, "no template", NOW)

        assert fetch(pending.id).status == JobStatus.FAILED
        assert fetch(sending.id).status == JobStatus.SENDING

    def test_cancel_pending_and_request_cancel(self, db):
        pending = store(make_job())
        sending = store(make_job())
        with get_session() as session:
            repo = JobRepository(session)
            repo.claim_job(sending.id, "w-1", NOW)

            assert not repo.cancel_pending(pending.id, "by_request", NOW, tenant_id="t-2")
            assert repo.cancel_pending(pending.id, "by_request", NOW, tenant_id="t-1")
            assert not repo.cancel_pending(sending.id, "by_request", NOW)
            assert repo.request_cancel(sending.id, "t-1", "by_request", NOW)

        assert fetch(pending.id).status == JobStatus.CANCELLED
        assert fetch(pending.id).cancel_reason == "by_request"
        flagged = fetch(sending.id)
        assert flagged.status == JobStatus.SENDING
        assert flagged.cancel_requested

    def test_flagged_job_cancelled_once_returned_to_pending(self, db):
        job = store(make_job())
        with get_session() as session:
            repo = JobRepository(session)
            repo.claim_job(job.id, "w-1", NOW)
            repo.request_cancel(job.id, "t-1", "by_request", NOW)
            repo.schedule_retry(job.id, "w-1", NOW, "timeout", NOW)
            assert repo.find_due_job_ids(NOW, 10) == []
            assert repo.cancel_flagged_pending(NOW) == 1

        assert fetch(job.id).status == JobStatus.CANCELLED

    def test_stale_claims_released_with_version_guard(self, db):
        job = store(make_job())
        with get_session() as session:
            JobRepository(session).claim_job(job.id, "w-dead", NOW)

        later = NOW + timedelta(minutes=15)
        with get_session() as session:
            repo = JobRepository(session)
            stale = repo.find_stale_claims(later - timedelta(minutes=10))
            assert [j.id for j in stale] == [job.id]
            assert repo.release_claim(stale[0], later)
            assert not repo.release_claim(stale[0], later)

        released = fetch(job.id)
        assert released.status == JobStatus.PENDING
        assert released.next_attempt_at == later
        assert released.attempt_count == 1

    def test_list_for_tenant_filters_and_pages(self, db):
        for i in range(5):
            store(make_job(created=NOW + timedelta(minutes=i)))
        store(make_job(channel=Channel.SMS, created=NOW + timedelta(minutes=10)))
        store(make_job(tenant_id="t-2"))

        with get_session() as session:
            repo = JobRepository(session)
            items, total = repo.list_for_tenant("t-1", limit=2, offset=0)
            assert total == 6
            assert [j.channel for j in items] == [Channel.SMS, Channel.EMAIL]

            items, total = repo.list_for_tenant("t-1", channel="email", limit=10)
            assert total == 5
            assert items[0].created_at > items[-1].created_at

            items, total = repo.list_for_tenant(
                "t-1", created_from=NOW + timedelta(minutes=1), created_to=NOW + timedelta(minutes=3)
            )
            assert total == 2

    def test_status_summary_zero_filled(self, db):
        store(make_job())
        store(make_job(tenant_id="t-2"))

        with get_session() as session:
            summary = JobRepository(session).status_summary("t-1")

        assert summary == {"pending": 1, "sending": 0, "delivered": 0, "failed": 0, "cancelled": 0}


class TestConfigurationRepositories:
    def test_template_upsert_and_scopes(self, db):
        with get_session() as session:
            repo = TemplateRepository(session)
            repo.upsert(NotificationTemplate(type_code="order_ready", channel=Channel.SMS, body="platform"), NOW)
            repo.upsert(
                NotificationTemplate(tenant_id="t-1", type_code="order_ready", channel=Channel.SMS, body="v1"), NOW
            )
            repo.upsert(
                NotificationTemplate(tenant_id="t-1", type_code="order_ready", channel=Channel.SMS, body="v2"), NOW
            )

        with get_session() as session:
            repo = TemplateRepository(session)
            assert repo.get("t-1", "order_ready", "sms").body == "v2"
            assert repo.get(None, "order_ready", "sms").body == "platform"
            assert repo.get("t-2", "order_ready", "sms") is None
            assert len(repo.list("t-1")) == 1
            assert len(repo.list("t-1", include_platform=True)) == 2
            assert repo.delete("t-1", "order_ready", "sms")
            assert not repo.delete("t-1", "order_ready", "sms")

    def test_inactive_template_hidden(self, db):
        with get_session() as session:
            TemplateRepository(session).upsert(
                NotificationTemplate(tenant_id="t-1", type_code="order_ready", channel="sms", body="x", is_active=False),
                NOW,
            )
        with get_session() as session:
            repo = TemplateRepository(session)
            assert repo.get("t-1", "order_ready", "sms") is None
            assert repo.get("t-1", "order_ready", "sms", active_only=False) is not None

    def test_provider_config_upsert(self, db):
        with get_session() as session:
            repo = ProviderConfigRepository(session)
            repo.upsert(ProviderConfig(tenant_id="t-1", channel=Channel.SMS, provider="twilio", credentials={"a": 1}), NOW)
            saved = repo.upsert(
                ProviderConfig(tenant_id="t-1", channel=Channel.SMS, provider="twilio", credentials={"a": 2}), NOW
            )
            assert saved.credentials == {"a": 2}
            assert len(repo.list("t-1")) == 1
            assert repo.get(None, "sms") is None

    def test_preferences_round_trip(self, db):
        pref = RecipientPreference(
            tenant_id="t-1",
            recipient_id="c-1",
            enabled_channels=[Channel.EMAIL],
            disabled_types=["promo_new_offer"],
            quiet_hours=QuietHours(start="22:00", end="07:00"),
            timezone="Asia/Kolkata",
            addresses={"email": "c1@example.com"},
        )
        with get_session() as session:
            PreferenceRepository(session).upsert(pref, NOW)
        with get_session() as session:
            loaded = PreferenceRepository(session).get("t-1", "c-1")

        assert loaded.enabled_channels == [Channel.EMAIL]
        assert loaded.quiet_hours.start.hour == 22
        assert loaded.timezone == "Asia/Kolkata"
        assert loaded.address_for("email") == "c1@example.com"

    def test_toggles_default_enabled(self, db):
        with get_session() as session:
            repo = TenantToggleRepository(session)
            assert repo.is_enabled("t-1", "channel", "sms")
            repo.set("t-1", "channel", "SMS", False, NOW)
            assert not repo.is_enabled("t-1", "channel", "sms")
            assert repo.is_enabled("t-2", "channel", "sms")
            assert [t.key for t in repo.list("t-1")] == ["sms"]

    def test_alerts_list_and_acknowledge(self, db):
        with get_session() as session:
            repo = AdminAlertRepository(session)
            alert = repo.create(AdminAlert(tenant_id="t-1", kind="template_missing", message="m", created_at=NOW))
            assert [a.id for a in repo.list("t-1")] == [alert.id]
            assert not repo.acknowledge("t-2", alert.id)
            assert repo.acknowledge("t-1", alert.id)
            assert repo.list("t-1") == []
            assert len(repo.list("t-1", include_acknowledged=True)) == 1


class TestEventsAndCounters:
    def _event(self, job_id, outcome=DeliveryOutcome.DELIVERED, attempt=1):
        return DeliveryEvent(
            tenant_id="t-1",
            job_id=job_id,
            channel=Channel.EMAIL,
            type_code="order_confirmed",
            attempt_number=attempt,
            outcome=outcome,
            occurred_at=NOW,
        )

    def test_duplicate_event_skipped_without_breaking_transaction(self, db):
        job = store(make_job())
        with get_session() as session:
            repo = DeliveryEventRepository(session)
            assert repo.append_if_new(self._event(job.id)) is not None
            assert repo.append_if_new(self._event(job.id)) is None
            assert repo.append_if_new(self._event(job.id, DeliveryOutcome.OPENED)) is not None

        with get_session() as session:
            events = DeliveryEventRepository(session).list_for_job("t-1", job.id)
            assert [e.outcome for e in events] == [DeliveryOutcome.DELIVERED, DeliveryOutcome.OPENED]
            assert DeliveryEventRepository(session).exists(f"{job.id}:delivered")

    def test_counter_increment_upserts(self, db):
        day = date(2025, 11, 4)
        with get_session() as session:
            repo = AnalyticsRepository(session)
            repo.increment("t-1", day, "email", "order_confirmed", "sent")
            repo.increment("t-1", day, "email", "order_confirmed", "sent", amount=2)
            repo.increment("t-2", day, "email", "order_confirmed", "sent")

        with get_session() as session:
            repo = AnalyticsRepository(session)
            counters = repo.query("t-1", day, day)
            assert [(c.metric.value, c.count) for c in counters] == [("sent", 3)]
            assert sum(c.count for c in repo.query(None, day, day)) == 4
            assert repo.query("t-1", day + timedelta(days=1), day + timedelta(days=2)) == []
