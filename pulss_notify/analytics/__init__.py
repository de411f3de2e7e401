"""Delivery analytics: event recording, reports and export."""

from .recorder import AnalyticsRecorder
from .reports import (
    EXPORT_COLUMNS,
    AnalyticsReport,
    build_report,
    export_report,
    get_analytics,
    get_platform_analytics,
)

__all__ = [
    "AnalyticsRecorder",
    "AnalyticsReport",
    "EXPORT_COLUMNS",
    "build_report",
    "export_report",
    "get_analytics",
    "get_platform_analytics",
]
