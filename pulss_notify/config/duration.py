"""Duration strings used by the worker and retry settings.

Durations may be written as compact unit strings ("30s", "5m", "2h", "1h30m")
or ISO-8601 ("PT30S", "PT5M", "P1D"). Plain integers are read as seconds.
"""

import re
from datetime import timedelta
from typing import Union

_ISO_PATTERN = re.compile(
    r"^P(?:(\d+)D)?(?:T(?:(\d+)H)?(?:(\d+)M)?(?:(\d+(?:\.\d+)?)S)?)?$"
)
_UNIT_PATTERN = re.compile(r"(\d+)([smhd])")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


class DurationParseError(ValueError):
    """Raised when a duration string cannot be parsed."""


def parse_duration(value: Union[str, int, float]) -> int:
    """Parse a duration to whole seconds.

    Examples:
        >>> parse_duration("5m")
        300
        >>> parse_duration("PT2H")
        7200
        >>> parse_duration(45)
        45
    """
    if isinstance(value, bool):
        raise DurationParseError(f"Invalid duration: {value!r}")

    if isinstance(value, (int, float)):
        seconds = int(value)
        if seconds <= 0:
            raise DurationParseError(f"Duration must be positive, got {value}")
        return seconds

    text = str(value).strip()
    if not text:
        raise DurationParseError("Duration string cannot be empty")

    if text.isdigit():
        return parse_duration(int(text))

    if text.upper().startswith("P"):
        seconds = _parse_iso8601(text.upper())
    else:
        seconds = _parse_units(text.lower())

    if seconds == 0:
        raise DurationParseError(f"Duration cannot be zero: '{text}'")
    return seconds


def parse_timedelta(value: Union[str, int, float]) -> timedelta:
    """Parse a duration into a ``timedelta``."""
    return timedelta(seconds=parse_duration(value))


def _parse_iso8601(text: str) -> int:
    match = _ISO_PATTERN.match(text)
    if not match or text in ("P", "PT"):
        raise DurationParseError(
            f"Invalid ISO-8601 duration format: '{text}'. "
            "Expected format like 'P1D', 'PT1H30M', 'PT5M', or 'PT30S'"
        )

    days, hours, minutes, seconds = match.groups()
    return (
        int(days or 0) * 86400
        + int(hours or 0) * 3600
        + int(minutes or 0) * 60
        + int(float(seconds or 0))
    )


def _parse_units(text: str) -> int:
    compact = re.sub(r"\s+", "", text)
    matches = _UNIT_PATTERN.findall(compact)

    if not matches or "".join(f"{num}{unit}" for num, unit in matches) != compact:
        raise DurationParseError(
            f"Invalid duration format: '{text}'. "
            "Expected format like '30s', '5m', '2h', '1d' or combinations like '1h30m'"
        )

    return sum(int(num) * _UNIT_SECONDS[unit] for num, unit in matches)


def validate_duration_range(
    duration_seconds: int,
    min_seconds: int,
    max_seconds: int,
    label: str = "Duration",
) -> None:
    """Ensure a parsed duration falls inside [min_seconds, max_seconds].

    Raises:
        DurationParseError: If the duration is out of range
    """
    if duration_seconds < min_seconds:
        raise DurationParseError(
            f"{label} too short: {humanize_seconds(duration_seconds)}. "
            f"Minimum is {humanize_seconds(min_seconds)}."
        )
    if duration_seconds > max_seconds:
        raise DurationParseError(
            f"{label} too long: {humanize_seconds(duration_seconds)}. "
            f"Maximum is {humanize_seconds(max_seconds)}."
        )


def humanize_seconds(seconds: int) -> str:
    """Render seconds in the largest whole unit, e.g. "5 minutes"."""
    for unit, size in (("day", 86400), ("hour", 3600), ("minute", 60)):
        if seconds >= size:
            count = seconds // size
            return f"{count} {unit}{'s' if count != 1 else ''}"
    return f"{seconds} second{'s' if seconds != 1 else ''}"
