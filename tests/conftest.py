"""Shared fixtures: a fresh SQLite database per test and a seeded catalog."""

import pytest

from pulss_notify.admin import AdminService
from pulss_notify.config.models import AppConfig
from pulss_notify.logging.context import clear_log_context
from pulss_notify.persistence import close_database, init_database
from tests.helpers import FakeClock


@pytest.fixture
def db(tmp_path):
    """Initialise a file-backed SQLite database under tmp_path."""
    init_database(f"sqlite:///{tmp_path / 'notify.db'}")
    yield tmp_path / "notify.db"
    close_database()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def app_config():
    """Deterministic configuration: no jitter, sequential delivery, in-app fallback."""
    return AppConfig.model_validate(
        {
            "worker": {"concurrency": 1, "batch_size": 50, "claim_lease": "10m"},
            "retry": {"max_retries": 3, "backoff_schedule": ["1m", "5m", "30m", "2h"], "jitter_ratio": 0},
            "platform_providers": [
                {"channel": "email", "provider": "smtp", "credentials": {"host": "smtp.test", "from_address": "no-reply@pulss.app"}},
                {"channel": "sms", "provider": "twilio", "credentials": {"account_sid": "AC1", "auth_token": "t", "from_number": "+15550100000"}},
                {"channel": "push", "provider": "fcm", "credentials": {"server_key": "k"}},
                {"channel": "in_app", "provider": "in_app"},
            ],
        }
    )


@pytest.fixture
def seeded(db, app_config, clock):
    """Database with the bundled catalog and platform templates loaded."""
    AdminService(app_config, clock=clock).seed_platform_defaults()
    return db


@pytest.fixture(autouse=True)
def _reset_log_context():
    clear_log_context()
    yield
    clear_log_context()
