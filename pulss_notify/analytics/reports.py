"""Analytics reads, platform aggregation and CSV/JSON export."""

import csv
import io
import json
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from pulss_notify.domain.models import METRIC_COLUMNS, AnalyticsCounter, AnalyticsMetric
from pulss_notify.persistence.repositories import AnalyticsRepository

EXPORT_COLUMNS = ["day", "channel", "type_code"] + METRIC_COLUMNS
EXPORT_FORMATS = ("csv", "json")


@dataclass
class AnalyticsReport:
    """Counters for a date range.

    Attributes:
        start: First day included
        end: Last day included
        rows: One dict per (day, channel, type_code) with every metric column
        totals: Sum of each metric over all rows
        by_tenant: Per-tenant totals (platform reports only)
    """

    start: date
    end: date
    rows: List[Dict] = field(default_factory=list)
    totals: Dict[str, int] = field(default_factory=dict)
    by_tenant: Dict[str, Dict[str, int]] = field(default_factory=dict)

    @property
    def delivery_rate(self) -> float:
        return _ratio(self.totals.get("delivered", 0), self.totals.get("sent", 0))

    @property
    def open_rate(self) -> float:
        return _ratio(self.totals.get("opened", 0), self.totals.get("delivered", 0))

    @property
    def click_rate(self) -> float:
        return _ratio(self.totals.get("clicked", 0), self.totals.get("delivered", 0))

    def to_dict(self) -> Dict:
        data = {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "rows": self.rows,
            "totals": self.totals,
            "delivery_rate": self.delivery_rate,
            "open_rate": self.open_rate,
            "click_rate": self.click_rate,
        }
        if self.by_tenant:
            data["by_tenant"] = self.by_tenant
        return data


def _ratio(numerator: int, denominator: int) -> float:
    return round(numerator / denominator, 4) if denominator else 0.0


def _empty_metrics() -> Dict[str, int]:
    return {metric: 0 for metric in METRIC_COLUMNS}


def build_report(counters: List[AnalyticsCounter], start: date, end: date) -> AnalyticsReport:
    """Pivot counter rows into one row per (day, channel, type_code)."""
    grouped: Dict[tuple, Dict[str, int]] = defaultdict(_empty_metrics)
    by_tenant: Dict[str, Dict[str, int]] = defaultdict(_empty_metrics)
    totals = _empty_metrics()

    for counter in counters:
        metric = AnalyticsMetric(counter.metric).value
        key = (counter.day.isoformat(), getattr(counter.channel, "value", counter.channel), counter.type_code)
        grouped[key][metric] += counter.count
        by_tenant[counter.tenant_id][metric] += counter.count
        totals[metric] += counter.count

    rows = [
        {"day": day, "channel": channel, "type_code": type_code, **metrics}
        for (day, channel, type_code), metrics in sorted(grouped.items())
    ]
    return AnalyticsReport(start=start, end=end, rows=rows, totals=totals, by_tenant=dict(by_tenant))


def get_analytics(
    session: Session,
    tenant_id: str,
    start: date,
    end: date,
    channel: Optional[str] = None,
    type_code: Optional[str] = None,
) -> AnalyticsReport:
    """Per day/channel/type counters for one tenant, inclusive of both end days."""
    counters = AnalyticsRepository(session).query(tenant_id, start, end, channel=channel, type_code=type_code)
    report = build_report(counters, start, end)
    report.by_tenant = {}
    return report


def get_platform_analytics(session: Session, start: date, end: date) -> AnalyticsReport:
    """Counters across every tenant, with per-tenant totals."""
    counters = AnalyticsRepository(session).query(None, start, end)
    return build_report(counters, start, end)


def export_report(report: AnalyticsReport, fmt: str = "csv") -> str:
    """Serialise report rows with the stable export columns.

    Raises:
        ValueError: If fmt is not csv or json
    """
    fmt = fmt.lower()
    if fmt == "json":
        return json.dumps([{column: row[column] for column in EXPORT_COLUMNS} for row in report.rows], indent=2)
    if fmt == "csv":
        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=EXPORT_COLUMNS, extrasaction="ignore", lineterminator="\n")
        writer.writeheader()
        writer.writerows(report.rows)
        return buffer.getvalue()
    raise ValueError(f"Unsupported export format: {fmt}. Supported formats: {', '.join(EXPORT_FORMATS)}")
