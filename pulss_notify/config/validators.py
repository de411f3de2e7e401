"""Soft configuration checks that warn instead of failing."""

import warnings
from typing import Any, Dict, List

from .duration import DurationParseError, parse_duration

# Providers that make no external call; fine in development, suspicious elsewhere.
_LOCAL_ONLY_PROVIDERS = {"in_app"}


def check_for_warnings(config_dict: Dict[str, Any]) -> List[str]:
    """
    Inspect a raw configuration mapping for settings that are legal but risky.

    Args:
        config_dict: Raw configuration dictionary

    Returns:
        List of warning messages
    """
    messages = []

    retry = config_dict.get("retry") or {}
    if isinstance(retry, dict):
        if retry.get("max_retries") == 0:
            messages.append("retry.max_retries is 0: transient failures will fail jobs immediately")

        jitter = retry.get("jitter_ratio")
        if isinstance(jitter, (int, float)) and jitter == 0:
            messages.append(
                "retry.jitter_ratio is 0: retries from many jobs may arrive at providers in bursts"
            )

        schedule = retry.get("backoff_schedule")
        if isinstance(schedule, list):
            try:
                delays = [parse_duration(entry) for entry in schedule]
            except DurationParseError:
                delays = []
            if any(later < earlier for earlier, later in zip(delays, delays[1:])):
                messages.append("retry.backoff_schedule is not non-decreasing")

    worker = config_dict.get("worker") or {}
    if isinstance(worker, dict):
        concurrency = worker.get("concurrency")
        batch_size = worker.get("batch_size")
        if isinstance(concurrency, int) and isinstance(batch_size, int) and concurrency > batch_size:
            messages.append(
                f"worker.concurrency ({concurrency}) exceeds worker.batch_size ({batch_size}); "
                "extra threads will sit idle"
            )

    providers = config_dict.get("platform_providers") or []
    if isinstance(providers, list):
        configured = set()
        for entry in providers:
            if not isinstance(entry, dict):
                continue
            configured.add(entry.get("channel"))
            if entry.get("provider") in _LOCAL_ONLY_PROVIDERS and entry.get("channel") != "in_app":
                messages.append(
                    f"Platform provider for '{entry.get('channel')}' is '{entry.get('provider')}', "
                    "which never reaches recipients"
                )
        if "email" not in configured:
            messages.append("No platform email provider: tenants without their own config cannot send email")

    return messages


def emit_warnings(warning_messages: List[str]) -> None:
    """Emit each message as a UserWarning."""
    for message in warning_messages:
        warnings.warn(message, UserWarning, stacklevel=2)
