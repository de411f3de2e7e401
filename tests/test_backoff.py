"""Tests for the retry backoff policy."""

import random
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

from pulss_notify.config.models import RetryConfig
from pulss_notify.queue import BackoffPolicy

NOW = datetime(2025, 11, 4, 12, 0, tzinfo=timezone.utc)


class TestBackoffPolicy:
    """Test retry delay computation."""

    @pytest.mark.parametrize("retry_number,expected", [(1, 60), (2, 300), (3, 1800), (4, 7200), (9, 7200)])
    def test_schedule_delays(self, retry_number, expected):
        policy = BackoffPolicy(RetryConfig(jitter_ratio=0))
        assert policy.delay_seconds(retry_number) == expected

    def test_next_attempt_at(self):
        policy = BackoffPolicy(RetryConfig(jitter_ratio=0))
        assert policy.next_attempt_at(2, NOW) == NOW + timedelta(minutes=5)

    def test_exponential_without_schedule(self):
        policy = BackoffPolicy(
            RetryConfig(backoff_schedule=[], base_delay="30s", multiplier=2, max_delay="5m", jitter_ratio=0)
        )
        assert [policy.delay_seconds(n) for n in range(1, 6)] == [30, 60, 120, 240, 300]

    def test_schedule_capped_by_max_delay(self):
        policy = BackoffPolicy(RetryConfig(backoff_schedule=["1m", "3h"], max_delay="2h", jitter_ratio=0))
        assert policy.delay_seconds(2) == 7200

    def test_jitter_stays_within_ratio(self):
        policy = BackoffPolicy(RetryConfig(jitter_ratio=0.2), rng=random.Random(42))
        delays = [policy.delay_seconds(2) for _ in range(200)]
        assert all(240 <= d <= 360 for d in delays)
        assert len(set(delays)) > 1

    def test_delay_never_below_one_second(self):
        rng = Mock()
        rng.uniform.return_value = -0.5
        policy = BackoffPolicy(RetryConfig(backoff_schedule=["1s"], base_delay="1s", jitter_ratio=0.5), rng=rng)
        assert policy.delay_seconds(1) == 1.0

    def test_retry_number_floor(self):
        policy = BackoffPolicy(RetryConfig(jitter_ratio=0))
        assert policy.delay_seconds(0) == 60
