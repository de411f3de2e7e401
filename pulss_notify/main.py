"""Command line entry point for the notification delivery service."""

from dotenv import load_dotenv
load_dotenv()

import argparse
import signal
import sys
import threading
import time
from datetime import date, timedelta
from pathlib import Path
from typing import Optional, Tuple

from pulss_notify.admin import AdminService
from pulss_notify.config.environment import EnvironmentConfig
from pulss_notify.config.exceptions import ConfigurationError
from pulss_notify.config.loader import load_config, validate_config_file
from pulss_notify.config.models import AppConfig
from pulss_notify.logging import get_logger
from pulss_notify.logging.config import configure_logging
from pulss_notify.persistence.database import close_database, init_database
from pulss_notify.queue import DeliveryWorker
from pulss_notify.scheduler import SchedulerService
from pulss_notify.utils.timestamps import utc_now

logger = get_logger(__name__, component="cli")

DEFAULT_EXPORT_DAYS = 30


def load_runtime_config(
    config_path: Optional[Path], log_level_override: Optional[str]
) -> Tuple[AppConfig, EnvironmentConfig]:
    """
    Load configuration and settle the effective log level.

    Log level priority: CLI flag, then LOG_LEVEL, then the config file.

    Raises:
        ConfigurationError: If configuration is invalid
    """
    app_config, env_config = load_config(config_path)

    if log_level_override:
        env_config.log_level = log_level_override
    elif not env_config.log_level:
        env_config.log_level = app_config.logging.level or "INFO"

    return app_config, env_config


def _parse_day(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Expected a date like 2025-11-04, got '{value}'")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pulss-notify",
        description="Pulss notification delivery service: queue worker, seeding and analytics export",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to configuration file (default: config.yaml, then config/config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Log level (overrides config and environment)",
    )

    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--manual-run",
        action="store_true",
        help="Run a single delivery pass and exit",
    )
    mode.add_argument(
        "--seed",
        action="store_true",
        help="Load the notification type catalog and platform templates, then exit",
    )
    mode.add_argument(
        "--export-analytics",
        metavar="TENANT",
        default=None,
        help="Print a tenant's analytics export and exit",
    )
    mode.add_argument(
        "--validate-config",
        action="store_true",
        help="Validate the configuration file and exit",
    )

    parser.add_argument("--format", dest="export_format", choices=["csv", "json"], default="csv")
    parser.add_argument("--since", type=_parse_day, default=None, help="First day of the export (YYYY-MM-DD)")
    parser.add_argument("--until", type=_parse_day, default=None, help="Last day of the export (YYYY-MM-DD)")
    return parser


def run_daemon(app_config: AppConfig, worker: DeliveryWorker) -> int:
    """Run worker passes on a schedule until SIGINT or SIGTERM."""
    shutdown_event = threading.Event()
    scheduler_service = SchedulerService(
        run_pass=worker.run_once,
        poll_interval_seconds=app_config.worker.poll_interval_seconds,
        shutdown_event=shutdown_event,
    )

    def signal_handler(signum, frame):
        logger.info(
            f"Received signal {signum}, shutting down",
            extra={"event": "service.signal_received", "signal": signum},
        )
        scheduler_service.shutdown(wait=False)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    scheduler_service.start()
    logger.info(
        "Delivery worker running. Press Ctrl+C to stop",
        extra={"event": "service.daemon_mode.started", "worker_id": worker.worker_id},
    )

    try:
        shutdown_event.wait()
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received, shutting down", extra={"event": "service.keyboard_interrupt"})
        scheduler_service.shutdown(wait=False)
    return 0


def main(argv=None) -> int:
    """
    Main entry point for pulss-notify.

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    start_time = time.time()
    args = build_parser().parse_args(argv)

    if args.validate_config:
        if args.config is None:
            print("--validate-config requires --config", file=sys.stderr)
            return 2
        return 0 if validate_config_file(args.config) else 1

    try:
        app_config, env_config = load_runtime_config(args.config, args.log_level)
        configure_logging(
            level=env_config.log_level,
            format_type=app_config.logging.format,
            environment=env_config.environment,
        )
        logger.info(
            "pulss-notify starting",
            extra={
                "event": "service.starting",
                "config_path": str(args.config) if args.config else None,
                "log_level": env_config.log_level,
                "worker_id": env_config.worker_id,
            },
        )

        init_database(env_config.database_url)
        try:
            if args.seed:
                counts = AdminService(app_config).seed_platform_defaults()
                print(f"Seeded {counts['types']} notification types and {counts['templates']} templates")
                return 0

            if args.export_analytics:
                until = args.until or utc_now().date()
                since = args.since or until - timedelta(days=DEFAULT_EXPORT_DAYS - 1)
                output = AdminService(app_config).export_analytics(
                    args.export_analytics, since, until, fmt=args.export_format
                )
                sys.stdout.write(output)
                return 0

            worker = DeliveryWorker(app_config, worker_id=env_config.worker_id)
            if args.manual_run:
                result = worker.run_once()
                logger.info(
                    f"Manual pass completed: {result.claimed} claimed, {result.delivered} delivered, "
                    f"{result.retried} retried, {result.failed} failed",
                    extra={"event": "service.manual_run.completed", **result.__dict__},
                )
                return 1 if result.errors else 0

            return run_daemon(app_config, worker)
        finally:
            close_database()
            logger.info(
                "pulss-notify stopped",
                extra={"event": "service.stopping", "uptime_seconds": round(time.time() - start_time, 2)},
            )

    except ConfigurationError as e:
        print(f"Configuration Error: {e}", file=sys.stderr)
        logger.error(f"Configuration error: {e}", extra={"event": "config.error"})
        return 1
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nShutdown requested by user", file=sys.stderr)
        return 0
    except Exception as e:
        print(f"Fatal error: {e}", file=sys.stderr)
        logger.critical(
            "Fatal error",
            exc_info=True,
            extra={"event": "service.startup.failed", "error_type": type(e).__name__},
        )
        return 1


if __name__ == "__main__":
    sys.exit(main())
