"""Tests for provider resolution per tenant and channel."""

from datetime import datetime, timezone
from unittest.mock import Mock

import pytest

from pulss_notify.config.models import AppConfig
from pulss_notify.domain import NoProviderConfigured
from pulss_notify.domain.models import Channel, ProviderConfig
from pulss_notify.persistence import ProviderConfigRepository, get_session
from pulss_notify.providers import ProviderRouter, UnknownProviderError

NOW = datetime(2025, 11, 4, 12, 0, tzinfo=timezone.utc)


def save_config(**fields):
    with get_session() as session:
        ProviderConfigRepository(session).upsert(ProviderConfig(**fields), NOW)


@pytest.fixture
def factory():
    return Mock(side_effect=lambda name, timeout=10: Mock(name=f"{name}-provider"))


class TestProviderRouter:
    """Test tenant, platform and configuration fallbacks."""

    def test_tenant_config_wins(self, db, app_config, factory):
        save_config(tenant_id=None, channel=Channel.SMS, provider="twilio", credentials={"account_sid": "platform"})
        save_config(tenant_id="t-1", channel=Channel.SMS, provider="twilio", credentials={"account_sid": "tenant"}, timeout_seconds=4)
        router = ProviderRouter(app_config, provider_factory=factory)

        with get_session() as session:
            resolved = router.resolve(session, "t-1", Channel.SMS)

        assert resolved.source == "tenant"
        assert resolved.credentials == {"account_sid": "tenant"}
        assert resolved.timeout == 4
        factory.assert_called_once_with("twilio", timeout=4)

    def test_platform_row_before_config_file(self, db, app_config, factory):
        save_config(tenant_id=None, channel=Channel.EMAIL, provider="sendgrid", credentials={"api_key": "k"})
        router = ProviderRouter(app_config, provider_factory=factory)

        with get_session() as session:
            resolved = router.resolve(session, "t-1", "email")

        assert resolved.source == "platform"
        assert resolved.name == "sendgrid"

    def test_config_file_fallback(self, db, app_config, factory):
        router = ProviderRouter(app_config, provider_factory=factory)

        with get_session() as session:
            resolved = router.resolve(session, "t-1", Channel.EMAIL)

        assert resolved.source == "config"
        assert resolved.name == "smtp"
        assert resolved.credentials["host"] == "smtp.test"
        assert resolved.timeout == app_config.worker.provider_timeout_seconds

    def test_inactive_tenant_config_skipped(self, db, app_config, factory):
        save_config(tenant_id="t-1", channel=Channel.PUSH, provider="fcm", is_active=False)
        router = ProviderRouter(app_config, provider_factory=factory)

        with get_session() as session:
            assert router.resolve(session, "t-1", Channel.PUSH).source == "config"

    def test_nothing_configured(self, db, app_config, factory):
        router = ProviderRouter(app_config, provider_factory=factory)

        with get_session() as session:
            with pytest.raises(NoProviderConfigured) as exc_info:
                router.resolve(session, "t-1", Channel.WEBHOOK)
            assert not router.has_provider(session, "t-1", Channel.WEBHOOK)

        assert exc_info.value.channel == "webhook"
        factory.assert_not_called()

    def test_unknown_provider_name(self, db, app_config, factory):
        save_config(tenant_id="t-1", channel=Channel.WEBHOOK, provider="pigeon")
        router = ProviderRouter(app_config, provider_factory=factory)

        with get_session() as session:
            assert router.has_provider(session, "t-1", Channel.WEBHOOK)
            with pytest.raises(UnknownProviderError):
                router.resolve(session, "t-1", Channel.WEBHOOK)

        factory.assert_not_called()

    def test_changes_apply_on_next_resolve(self, db, factory):
        router = ProviderRouter(AppConfig(), provider_factory=factory)
        save_config(tenant_id="t-1", channel=Channel.SMS, provider="twilio")

        with get_session() as session:
            assert router.resolve(session, "t-1", Channel.SMS).name == "twilio"

        save_config(tenant_id="t-1", channel=Channel.SMS, provider="webhook", credentials={"url": "https://x.pulss.app"})

        with get_session() as session:
            assert router.resolve(session, "t-1", Channel.SMS).name == "webhook"
