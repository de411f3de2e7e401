"""Periodic delivery passes driven by APScheduler."""

import threading
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from pulss_notify.logging import get_logger

logger = get_logger(__name__, component="scheduler")

JOB_ID = "delivery-worker"


class SchedulerService:
    """Runs a worker pass every ``poll_interval_seconds`` on a background thread.

    Passes never overlap within one process (``max_instances=1``) and missed
    ticks collapse into a single run. The main thread stays free to handle
    signals and wait on ``shutdown_event``.
    """

    def __init__(
        self,
        run_pass: Callable[[], Any],
        poll_interval_seconds: int,
        shutdown_event: Optional[threading.Event] = None,
    ):
        self.run_pass = run_pass
        self.poll_interval_seconds = poll_interval_seconds
        self.shutdown_event = shutdown_event
        self.scheduler = BackgroundScheduler(
            job_defaults={
                "max_instances": 1,
                "coalesce": True,
                "misfire_grace_time": poll_interval_seconds,
            },
            timezone=timezone.utc,
        )

    def _tick(self) -> None:
        try:
            self.run_pass()
        except Exception as e:
            # A failed pass must not unschedule the job; the next tick retries.
            logger.error(
                f"Worker pass failed: {e}",
                exc_info=True,
                extra={"event": "scheduler.pass.failed", "error_type": type(e).__name__},
            )

    def start(self) -> None:
        """Schedule the worker job, first run immediately, and start the scheduler thread."""
        if self.scheduler.running:
            logger.warning("Scheduler already running", extra={"event": "scheduler.already_running"})
            return

        first_run = datetime.now(timezone.utc)
        self.scheduler.add_job(
            func=self._tick,
            trigger=IntervalTrigger(seconds=self.poll_interval_seconds, timezone=timezone.utc),
            id=JOB_ID,
            name="Notification delivery pass",
            replace_existing=True,
            next_run_time=first_run,
        )
        self.scheduler.start()
        logger.info(
            f"Scheduler started, polling every {self.poll_interval_seconds} seconds",
            extra={
                "event": "scheduler.started",
                "poll_interval_seconds": self.poll_interval_seconds,
                "next_run_time": first_run.isoformat(),
            },
        )

    def shutdown(self, wait: bool = False) -> None:
        """Stop scheduling passes.

        Args:
            wait: Block until an in-progress pass finishes
        """
        logger.info("Stopping scheduler", extra={"event": "scheduler.stopping", "wait_for_jobs": wait})
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
        if self.shutdown_event:
            self.shutdown_event.set()
        logger.info("Scheduler stopped", extra={"event": "scheduler.stopped"})

    def trigger_now(self) -> Any:
        """Run one pass synchronously on the calling thread and return its result."""
        logger.info("Running worker pass on demand", extra={"event": "scheduler.trigger_now"})
        return self.run_pass()

    def is_running(self) -> bool:
        return self.scheduler.running

    def get_next_run_time(self) -> Optional[datetime]:
        job = self.scheduler.get_job(JOB_ID)
        return job.next_run_time if job else None
