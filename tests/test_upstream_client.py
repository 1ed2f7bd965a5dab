"""Tests for the Airflow REST client and its status mapping."""

from __future__ import annotations

import asyncio
import base64
import logging

import httpx
import pytest

from airflow_gateway.errors import BadRequest, Conflict, NotFound, UpstreamError
from airflow_gateway.upstream.client import AirflowClient, map_upstream_status


def _resp(status: int, **kwargs) -> httpx.Response:
    return httpx.Response(status, request=httpx.Request("GET", "http://airflow.test"), **kwargs)


NOT_FOUND = NotFound("DAG", "demo", "DAG not found: demo")


def test_404_returns_supplied_not_found():
    assert map_upstream_status(_resp(404), not_found=NOT_FOUND) is NOT_FOUND


def test_409_prefers_supplied_conflict():
    conflict = Conflict("DAG Run", "r1", "trigger", "already exists")
    assert map_upstream_status(_resp(409), not_found=NOT_FOUND, conflict=conflict) is conflict


def test_409_without_conflict_uses_upstream_detail():
    err = map_upstream_status(_resp(409, json={"detail": "busy"}), not_found=NOT_FOUND)
    assert isinstance(err, Conflict)
    assert err.detail == "busy"
    assert err.resource_id == "demo"


@pytest.mark.parametrize("status", [401, 403])
def test_rejected_gateway_credentials(status):
    err = map_upstream_status(_resp(status), not_found=NOT_FOUND)
    assert isinstance(err, UpstreamError)
    assert err.kind == "credentials"
    assert err.status == 500


def test_other_4xx_is_bad_request_with_detail():
    err = map_upstream_status(
        _resp(400, json={"title": "Bad Request", "detail": "Invalid state"}), not_found=NOT_FOUND
    )
    assert isinstance(err, BadRequest)
    assert err.detail == "Invalid state"


def test_4xx_without_body():
    err = map_upstream_status(_resp(422), not_found=NOT_FOUND)
    assert err.detail == "Upstream rejected the request (status 422)"


def test_5xx_is_transport():
    err = map_upstream_status(_resp(502, text="bad gateway"), not_found=NOT_FOUND)
    assert isinstance(err, UpstreamError)
    assert err.kind == "transport"


def _client(handler) -> AirflowClient:
    return AirflowClient(
        "http://airflow.test/", "airflow", "pw", transport=httpx.MockTransport(handler)
    )


@pytest.mark.asyncio
async def test_request_is_rooted_at_api_prefix():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"dag_id": "demo"})

    client = _client(handler)
    payload = await client.request_json("GET", "/dags/demo", not_found=NOT_FOUND)
    await client.aclose()

    assert payload == {"dag_id": "demo"}
    assert str(seen[0].url) == "http://airflow.test/api/v1/dags/demo"
    expected_auth = "Basic " + base64.b64encode(b"airflow:pw").decode()
    assert seen[0].headers["authorization"] == expected_auth
    assert "pw" not in repr(client)


@pytest.mark.asyncio
async def test_timeout_maps_to_timeout():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    client = _client(handler)
    with pytest.raises(UpstreamError) as exc_info:
        await client.request("GET", "/dags", not_found=NOT_FOUND)
    assert exc_info.value.kind == "timeout"


@pytest.mark.asyncio
async def test_connection_error_maps_to_transport():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    client = _client(handler)
    with pytest.raises(UpstreamError) as exc_info:
        await client.request("GET", "/dags", not_found=NOT_FOUND)
    assert exc_info.value.kind == "transport"


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [b"<html>", b"[1, 2]"])
async def test_non_object_json_is_invalid_response(body):
    client = _client(lambda request: httpx.Response(200, content=body))
    with pytest.raises(UpstreamError) as exc_info:
        await client.request_json("GET", "/dags", not_found=NOT_FOUND)
    assert exc_info.value.kind == "invalid_response"


@pytest.mark.asyncio
async def test_shielded_request_still_maps_errors():
    client = _client(lambda request: httpx.Response(404))
    with pytest.raises(NotFound):
        await client.request("DELETE", "/dags/demo", not_found=NOT_FOUND, shield=True)


@pytest.mark.asyncio
async def test_cancelled_caller_leaves_mutation_running_and_logs_outcome(caplog):
    caplog.set_level(logging.INFO, logger="airflow_gateway.upstream.client")
    release = asyncio.Event()
    seen: list[httpx.Request] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        await release.wait()
        return httpx.Response(503)

    client = _client(handler)
    caller = asyncio.create_task(
        client.request("DELETE", "/dags/demo", not_found=NOT_FOUND, shield=True)
    )
    await asyncio.sleep(0.01)
    caller.cancel()
    with pytest.raises(asyncio.CancelledError):
        await caller

    release.set()
    await client.aclose()

    assert len(seen) == 1
    assert "Caller cancelled; upstream DELETE /dags/demo keeps running" in caplog.text
    assert "completed after caller cancellation: status=503" in caplog.text
