from datetime import datetime, timedelta, timezone

import pytest
from starlette.requests import Request

from airflow_gateway.utils.env import substitute_env_vars
from airflow_gateway.utils.http import get_client_ip, normalize_base_url
from airflow_gateway.utils.serialization import render_payload
from airflow_gateway.utils.time import (
    format_iso_millis,
    format_utc_seconds,
    local_now,
    parse_iso_datetime,
)


def test_substitute_env_vars(monkeypatch):
    monkeypatch.setenv("GW_TEST_HOST", "airflow")
    data = {
        "url": "http://${GW_TEST_HOST}:8080",
        "list": ["$GW_TEST_HOST", 3],
        "missing": "${NOPE_X}",
    }
    assert substitute_env_vars(data) == {
        "url": "http://airflow:8080",
        "list": ["airflow", 3],
        "missing": "${NOPE_X}",
    }


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("http://airflow:8080/", "http://airflow:8080"),
        ("  HTTPS://idp.example.com/auth//  ", "https://idp.example.com/auth"),
    ],
)
def test_normalize_base_url(raw, expected):
    assert normalize_base_url(raw) == expected


@pytest.mark.parametrize(
    ("raw", "message"),
    [
        ("", "must not be empty"),
        ("ftp://host", "http or https"),
        ("http://", "must include host"),
        ("http://host/?q=1", "query or fragment"),
        ("http://user:pw@host", "userinfo"),
    ],
)
def test_normalize_base_url_rejects(raw, message):
    with pytest.raises(ValueError, match=message):
        normalize_base_url(raw, label="upstream.base_url")


def _request(headers=None, client=("10.0.0.5", 5000)):
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": [(k.encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
    }
    return Request(scope)


def test_get_client_ip():
    headers = {"x-forwarded-for": "198.51.100.1, 10.0.0.1"}
    assert get_client_ip(_request(headers)) == "10.0.0.5"
    assert get_client_ip(_request(client=None)) == "unknown"


def test_render_payload_drops_nulls_and_normalizes_timestamps():
    payload = {
        "dag_id": "demo",
        "owners": None,
        "start_date": "2025-01-01T00:00:00Z",
        "end_date": "not a date",
        "conf": {"start_date": None, "keep": [1, None]},
    }
    assert render_payload(payload) == {
        "dag_id": "demo",
        "start_date": "2025-01-01T00:00:00.000+00:00",
        "end_date": "not a date",
        "conf": {"keep": [1, None]},
    }


def test_time_helpers():
    now = local_now()
    assert now.tzinfo is None
    assert now.microsecond % 1000 == 0

    plus_two = timezone(timedelta(hours=2))
    assert format_iso_millis(datetime(2025, 1, 1, 10, 0, tzinfo=plus_two)) == (
        "2025-01-01T10:00:00.000+02:00"
    )
    assert format_utc_seconds(datetime(2025, 1, 1, 10, 0, tzinfo=plus_two)) == (
        "2025-01-01T08:00:00Z"
    )
    assert parse_iso_datetime("2025-01-01T00:00:00z") == datetime(
        2025, 1, 1, tzinfo=timezone.utc
    )
    assert parse_iso_datetime("   ") is None
    assert parse_iso_datetime("yesterday") is None
