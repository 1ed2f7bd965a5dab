"""JSON rendering helpers for upstream payloads and local records."""

from __future__ import annotations

import datetime
from typing import Any

from airflow_gateway.utils.time import format_iso_millis, parse_iso_datetime

# Airflow fields carrying timestamps. Rendered as ISO-8601 with milliseconds.
TIMESTAMP_FIELDS = frozenset(
    {
        "last_parsed_time",
        "last_pickled",
        "last_expired",
        "next_dagrun",
        "next_dagrun_create_after",
        "next_dagrun_data_interval_start",
        "next_dagrun_data_interval_end",
        "logical_date",
        "execution_date",
        "start_date",
        "end_date",
        "data_interval_start",
        "data_interval_end",
        "last_scheduling_decision",
        "queued_when",
        "queued_at",
        "timestamp",
        "created_at",
        "updated_at",
        "latest_heartbeat",
        "operation_time",
    }
)


def _normalize_timestamp(value: Any) -> Any:
    if isinstance(value, datetime.datetime):
        return format_iso_millis(value)
    if isinstance(value, str):
        parsed = parse_iso_datetime(value)
        if parsed is not None:
            return format_iso_millis(parsed)
    return value


def render_payload(value: Any, _depth: int = 0) -> Any:
    """Drop ``None`` values and normalize known timestamp fields, recursively."""
    if _depth > 32:
        return value
    if isinstance(value, dict):
        rendered: dict[str, Any] = {}
        for key, item in value.items():
            if item is None:
                continue
            if key in TIMESTAMP_FIELDS:
                rendered[key] = _normalize_timestamp(item)
            else:
                rendered[key] = render_payload(item, _depth + 1)
        return rendered
    if isinstance(value, list):
        return [render_payload(item, _depth + 1) for item in value]
    return value
