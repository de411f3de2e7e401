"""Retry delay policy for transient delivery failures."""

import random
from datetime import datetime, timedelta
from typing import Optional

from pulss_notify.config.duration import parse_duration
from pulss_notify.config.models import RetryConfig


class BackoffPolicy:
    """Computes when the next attempt of a job may run.

    ``retry_number`` is 1 for the first retry. With a schedule of 1m, 5m, 30m,
    2h the first three retries wait one, five and thirty minutes. Without a
    schedule the delay grows as ``base_delay * multiplier ** (retry_number - 1)``.
    Either way the delay is capped at ``max_delay`` and then spread by
    ``jitter_ratio`` so jobs that failed together do not retry together.
    """

    def __init__(self, retry_config: RetryConfig, rng: Optional[random.Random] = None):
        self.config = retry_config
        self.schedule = retry_config.schedule_seconds
        self.base_delay = parse_duration(retry_config.base_delay)
        self.max_delay = parse_duration(retry_config.max_delay)
        self.rng = rng or random.Random()

    def base_delay_seconds(self, retry_number: int) -> float:
        """Delay before jitter."""
        retry_number = max(1, retry_number)
        if self.schedule:
            delay = self.schedule[min(retry_number, len(self.schedule)) - 1]
        else:
            delay = self.base_delay * self.config.multiplier ** (retry_number - 1)
        return float(min(delay, self.max_delay))

    def delay_seconds(self, retry_number: int) -> float:
        delay = self.base_delay_seconds(retry_number)
        ratio = self.config.jitter_ratio
        if ratio:
            delay *= 1 + self.rng.uniform(-ratio, ratio)
        return max(1.0, delay)

    def next_attempt_at(self, retry_number: int, now: datetime) -> datetime:
        return now + timedelta(seconds=self.delay_seconds(retry_number))
