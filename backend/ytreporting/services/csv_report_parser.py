"""CSV parser/normalizer for YouTube Reporting API report files.

WHAT:
    Turns the raw CSV payload of one report file into normalized daily metric
    rows, keeping every original column in `metric_payload`.

WHY:
    Report types differ in their column sets and the provider adds columns
    over time. The parser reads the few columns the metrics table needs by
    name (snake_case or camelCase) and never fails on an unexpected value:
    a malformed row is dropped, a malformed number becomes 0 (or None for
    revenue).

REFERENCES:
    - https://developers.google.com/youtube/reporting/v1/reports/channel_reports
    - ytreporting/services/report_ingestion_service.py (caller)
"""

from __future__ import annotations

import csv
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

_LINE_SPLIT = re.compile(r"\r?\n")
_COMPACT_DATE = re.compile(r"^\d{8}$")

# Column aliases, first present non-empty value wins
DATE_COLUMNS = ("day", "date")
CHANNEL_COLUMNS = ("channel_id", "channelId")
VIDEO_COLUMNS = ("video_id", "videoId")
VIEWS_COLUMNS = ("views",)
WATCH_TIME_COLUMNS = ("watch_time_minutes", "watchTimeMinutes")
REVENUE_COLUMNS = ("estimated_revenue", "estimatedRevenue", "estimated_partner_revenue")
SUBSCRIBERS_GAINED_COLUMNS = ("subscribers_gained", "subscribersGained")
SUBSCRIBERS_LOST_COLUMNS = ("subscribers_lost", "subscribersLost")


class ReportWindow(Protocol):
    """Anything carrying the report's time window (e.g. `ReportFile`)."""

    start_time: Optional[str]
    end_time: Optional[str]


@dataclass
class ParsedMetricRow:
    """One normalized CSV row, not yet bound to a ledger entry."""

    report_date: str
    channel_id: str
    video_id: Optional[str]
    views: int
    watch_time_minutes: float
    estimated_revenue: Optional[float]
    subscribers_gained: int
    subscribers_lost: int
    metric_payload: Dict[str, Any] = field(default_factory=dict)


def decode_report_body(body: bytes) -> str:
    """Decode a downloaded report body as UTF-8, dropping a leading BOM."""
    return body.decode("utf-8-sig", errors="replace")


def split_csv_line(line: str) -> List[str]:
    """Split one CSV line into cells (quoted fields, `""` as an escaped quote).

    A line the csv module rejects yields no cells, so the row is dropped.
    """
    try:
        return next(csv.reader([line]), [])
    except csv.Error:
        return []


def to_number(value: Any) -> float:
    """Coerce to a finite float; anything else (None, '', 'abc', 'NaN') is 0."""
    parsed = to_nullable_number(value)
    return 0.0 if parsed is None else parsed


def to_nullable_number(value: Any) -> Optional[float]:
    """Coerce to a finite float, or None when the value is absent or not numeric."""
    if value is None:
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    return parsed if math.isfinite(parsed) else None


def to_count(value: Any) -> int:
    """Coerce a counter column (views, subscribers) to an int, 0 on failure."""
    return int(to_number(value))


def normalize_report_date(value: str) -> str:
    """Normalize to `YYYY-MM-DD`.

    The Reporting API emits compact `YYYYMMDD` days; RFC3339 timestamps from
    the report window keep their first 10 characters.
    """
    value = value.strip()
    if _COMPACT_DATE.match(value):
        return f"{value[0:4]}-{value[4:6]}-{value[6:8]}"
    return value[:10]


def _first_value(payload: Dict[str, Any], columns: Sequence[str]) -> Optional[str]:
    for column in columns:
        value = payload.get(column)
        if value is not None and value != "":
            return value
    return None


def parse_csv_report(csv_text: str, report: Optional[ReportWindow] = None) -> List[ParsedMetricRow]:
    """Parse a report CSV into metric rows.

    Args:
        csv_text: Decoded report body; the first line is the header.
        report: Report file metadata; its window supplies the date when the
            CSV has no `day`/`date` column.

    Returns:
        Parsed rows. Rows whose cell count differs from the header, or that
        lack a date or channel id, are dropped. Never raises on bad data.
    """
    content = (csv_text or "").strip()
    if not content:
        return []

    header_line, *raw_lines = _LINE_SPLIT.split(content)
    headers = [cell.strip() for cell in split_csv_line(header_line)]

    fallback_date = None
    if report is not None:
        fallback_date = report.start_time or report.end_time

    rows: List[ParsedMetricRow] = []
    for line in raw_lines:
        cells = split_csv_line(line)
        if len(cells) != len(headers):
            continue

        payload: Dict[str, Any] = {
            header: cell.strip() for header, cell in zip(headers, cells)
        }

        report_date = _first_value(payload, DATE_COLUMNS) or fallback_date
        channel_id = _first_value(payload, CHANNEL_COLUMNS)
        if not report_date or not channel_id:
            continue

        rows.append(
            ParsedMetricRow(
                report_date=normalize_report_date(report_date),
                channel_id=channel_id,
                video_id=_first_value(payload, VIDEO_COLUMNS),
                views=to_count(_first_value(payload, VIEWS_COLUMNS)),
                watch_time_minutes=to_number(_first_value(payload, WATCH_TIME_COLUMNS)),
                estimated_revenue=to_nullable_number(_first_value(payload, REVENUE_COLUMNS)),
                subscribers_gained=to_count(_first_value(payload, SUBSCRIBERS_GAINED_COLUMNS)),
                subscribers_lost=to_count(_first_value(payload, SUBSCRIBERS_LOST_COLUMNS)),
                metric_payload=payload,
            )
        )

    return rows
