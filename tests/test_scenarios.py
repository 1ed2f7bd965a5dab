"""End-to-end scenarios through the HTTP surface."""

from __future__ import annotations

import json
from datetime import datetime, timedelta

import httpx
import pytest

from airflow_gateway.audit.models import AuditLogRecord, Operation
from airflow_gateway.auth.token_client import TokenClient
from airflow_gateway.sync.user_sync import UserSyncService
from conftest import bearer


def _echo_run(request: httpx.Request) -> httpx.Response:
    body = json.loads(request.content) if request.content else {}
    return httpx.Response(
        200,
        json={
            "dag_id": "demo",
            "dag_run_id": body.get("dag_run_id", "scheduled__auto"),
            "logical_date": "2025-01-01T00:00:00+00:00",
            "state": "queued",
            "note": None,
        },
    )


def test_trigger_records_audit_row(make_gateway):
    gw = make_gateway(upstream=_echo_run)
    resp = gw.client.post(
        "/api/v1/dags/demo/dagRuns",
        json={"dag_run_id": "manual_1", "logical_date": "2025-01-01T00:00:00Z"},
        headers=bearer("alice-token"),
    )

    assert resp.status_code == 200
    assert resp.json() == {
        "dag_id": "demo",
        "dag_run_id": "manual_1",
        "logical_date": "2025-01-01T00:00:00.000+00:00",
        "state": "queued",
    }

    sent = gw.upstream_requests[0]
    assert sent.method == "POST"
    assert sent.url.path == "/api/v1/dags/demo/dagRuns"
    assert json.loads(sent.content) == {
        "dag_run_id": "manual_1",
        "logical_date": "2025-01-01T00:00:00Z",
        "execution_date": "2025-01-01T00:00:00Z",
    }

    (row,) = gw.store.list_audit_logs()
    assert row.subject_id == "u-7"
    assert row.username == "alice"
    assert row.dag_id == "demo"
    assert row.dag_run_id == "manual_1"
    assert row.operation is Operation.TRIGGER
    assert row.details == "Triggered DAG run for date: 2025-01-01T00:00:00Z"


def test_trigger_without_run_id_uses_upstream_id(make_gateway):
    gw = make_gateway(upstream=_echo_run)
    resp = gw.client.post("/api/v1/dags/demo/dagRuns", json={}, headers=bearer("alice-token"))
    assert resp.status_code == 200
    (row,) = gw.store.list_audit_logs()
    assert row.dag_run_id == "scheduled__auto"
    assert row.details == "Triggered DAG run"


def test_delete_is_audited_before_upstream_even_on_404(make_gateway):
    rows_seen_at_delete: list[int] = []

    def upstream(request: httpx.Request) -> httpx.Response:
        rows_seen_at_delete.append(len(gw.store.audit_logs_by_operation(Operation.DELETE)))
        return httpx.Response(404, json={"detail": "DAG not found"})

    gw = make_gateway(upstream=upstream)
    resp = gw.client.delete("/api/v1/dags/ghost", headers=bearer("alice-token"))

    assert resp.status_code == 404
    assert resp.json()["detail"] == "DAG not found: ghost"
    assert rows_seen_at_delete == [1]
    (row,) = gw.store.list_audit_logs()
    assert row.operation is Operation.DELETE
    assert row.dag_id == "ghost"
    assert row.subject_id == "u-7"
    assert row.details == "Deleted DAG: ghost"


def test_delete_run_success_returns_204(make_gateway):
    gw = make_gateway(upstream=lambda request: httpx.Response(204))
    resp = gw.client.delete(
        "/api/v1/dags/demo/dagRuns/manual__2025-01-01T00:00:00+00:00",
        headers=bearer("bob-token"),
    )
    assert resp.status_code == 204
    (row,) = gw.store.list_audit_logs()
    assert row.dag_run_id == "manual__2025-01-01T00:00:00+00:00"
    assert row.details == (
        "Deleted DAG run: manual__2025-01-01T00:00:00+00:00 for DAG: demo"
    )
    assert gw.upstream_requests[0].url.path == (
        "/api/v1/dags/demo/dagRuns/manual__2025-01-01T00:00:00+00:00"
    )


def test_delete_aborted_when_audit_write_fails(make_gateway):
    gw = make_gateway(upstream=lambda request: httpx.Response(204))
    gw.store.close()
    resp = gw.client.delete("/api/v1/dags/demo", headers=bearer("alice-token"))
    assert resp.status_code == 500
    assert resp.json()["message"] == "Storage Error"
    assert gw.upstream_requests == []


def test_mutation_conflict_is_409_and_not_audited(make_gateway):
    gw = make_gateway(upstream=lambda request: httpx.Response(409, json={"detail": "exists"}))
    resp = gw.client.post(
        "/api/v1/dags/demo/dagRuns", json={"dag_run_id": "dup"}, headers=bearer("alice-token")
    )
    assert resp.status_code == 409
    assert resp.json()["detail"] == "DAG Run already exists or conflict with execution date"
    assert gw.store.list_audit_logs() == []


def _seed(store, subject_id: str, username: str, dag_id: str, operation: Operation) -> None:
    store.insert_audit_log(
        AuditLogRecord(
            subject_id=subject_id,
            username=username,
            dag_id=dag_id,
            operation=operation,
            details="seeded",
        )
    )


def test_admin_sees_everyone_user_sees_self(make_gateway):
    gw = make_gateway()
    _seed(gw.store, "u-7", "alice", "a", Operation.TRIGGER)
    _seed(gw.store, "u-9", "bob", "a", Operation.TRIGGER)

    alice_rows = gw.client.get("/api/v1/audit-logs", headers=bearer("alice-token")).json()
    assert [row["username"] for row in alice_rows] == ["alice"]
    assert alice_rows[0]["user_id"] == "u-7"

    admin_rows = gw.client.get("/api/v1/audit-logs", headers=bearer("admin-token")).json()
    assert sorted(row["username"] for row in admin_rows) == ["alice", "bob"]

    no_role_rows = gw.client.get("/api/v1/audit-logs", headers=bearer("no-role-token")).json()
    assert no_role_rows == []


def test_audit_log_rendering(make_gateway):
    gw = make_gateway()
    _seed(gw.store, "u-7", "alice", "a", Operation.TRIGGER)
    (row,) = gw.client.get("/api/v1/audit-logs", headers=bearer("alice-token")).json()
    assert set(row) == {
        "id",
        "user_id",
        "username",
        "dag_id",
        "operation",
        "operation_time",
        "details",
    }
    # 2025-01-01T10:00:00.123+01:00
    assert len(row["operation_time"]) == 29
    assert row["operation_time"][19] == "."


def test_delete_listing_is_subset_of_visible_rows(make_gateway):
    gw = make_gateway()
    _seed(gw.store, "u-7", "alice", "a", Operation.DELETE)
    _seed(gw.store, "u-7", "alice", "b", Operation.TRIGGER)
    _seed(gw.store, "u-9", "bob", "a", Operation.DELETE)

    for token in ("alice-token", "admin-token"):
        visible = gw.client.get("/api/v1/audit-logs", headers=bearer(token)).json()
        deletes = gw.client.get(
            "/api/v1/audit-logs/operations/delete", headers=bearer(token)
        ).json()
        expected = {row["id"] for row in visible if row["operation"] == "DELETE"}
        assert {row["id"] for row in deletes} == expected

    per_dag = gw.client.get(
        "/api/v1/audit-logs/operations/delete/dag/a", headers=bearer("alice-token")
    ).json()
    assert [(row["user_id"], row["dag_id"]) for row in per_dag] == [("u-7", "a")]

    dag_rows = gw.client.get("/api/v1/audit-logs/dag/a", headers=bearer("admin-token")).json()
    assert {row["user_id"] for row in dag_rows} == {"u-7", "u-9"}


@pytest.mark.parametrize(
    ("body", "operation", "details"),
    [
        ({"is_paused": True}, Operation.PAUSE, "Updated DAG: paused"),
        ({"is_paused": False}, Operation.UNPAUSE, "Updated DAG: unpaused"),
        ({}, Operation.UPDATE_STATE, "Updated DAG: updated"),
    ],
)
def test_dag_update_classification(make_gateway, body, operation, details):
    gw = make_gateway(
        upstream=lambda request: httpx.Response(200, json={"dag_id": "demo", "is_paused": True})
    )
    resp = gw.client.patch("/api/v1/dags/demo", json=body, headers=bearer("alice-token"))
    assert resp.status_code == 200

    (row,) = gw.store.list_audit_logs()
    assert row.operation is operation
    assert row.details == details

    sent = gw.upstream_requests[0]
    assert json.loads(sent.content) == body
    if "is_paused" in body:
        assert sent.url.params["update_mask"] == "is_paused"
    else:
        assert "update_mask" not in sent.url.params


def test_mutation_time_falls_inside_request(make_gateway):
    gw = make_gateway(upstream=_echo_run)
    start = datetime.now() - timedelta(milliseconds=1)
    gw.client.post(
        "/api/v1/dags/demo/dagRuns/r1/clear", json={"dry_run": True}, headers=bearer("bob-token")
    )
    end = datetime.now()
    (row,) = gw.store.list_audit_logs()
    assert row.operation is Operation.CLEAR
    assert row.dag_run_id == "r1"
    assert start <= row.operation_time <= end


def test_list_filtering_and_pagination_are_local(make_gateway):
    dags = [
        {"dag_id": f"dag_{i:02d}", "is_active": i < 10, "is_paused": False}
        for i in range(25)
    ]

    def upstream(request: httpx.Request) -> httpx.Response:
        limit = int(request.url.params["limit"])
        offset = int(request.url.params["offset"])
        return httpx.Response(
            200, json={"dags": dags[offset:offset + limit], "total_entries": len(dags)}
        )

    gw = make_gateway(upstream=upstream)
    resp = gw.client.get(
        "/api/v1/dags?isActive=true&page=1&size=4", headers=bearer("alice-token")
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["total_entries"] == 10
    assert [dag["dag_id"] for dag in body["dags"]] == ["dag_04", "dag_05", "dag_06", "dag_07"]
    assert "isActive" not in gw.upstream_requests[0].url.params


def _idp(users: list[dict]) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/protocol/openid-connect/token"):
            return httpx.Response(200, json={"access_token": "admin-at", "expires_in": 60})
        return httpx.Response(200, json=users)

    return httpx.MockTransport(handler)


@pytest.mark.asyncio
async def test_user_sync_is_idempotent(store):
    users = [
        {"id": "u-7", "username": "alice", "enabled": True, "createdTimestamp": 1700000000000},
        {"id": "u-9", "username": "bob", "enabled": False},
    ]
    http_client = httpx.AsyncClient(transport=_idp(users))
    token_client = TokenClient(
        token_endpoint="http://idp.test/realms/airflow/protocol/openid-connect/token",
        client_id="airflow-gateway",
        client_secret="s3cret",
        admin_token_endpoint="http://idp.test/realms/master/protocol/openid-connect/token",
        admin_username="admin",
        admin_password="admin-pass",
        http_client=http_client,
    )
    service = UserSyncService(
        token_client, store, "http://idp.test/admin/realms/airflow/users", http_client=http_client
    )

    first = await service.sync_users()
    assert (first.inserted, first.skipped) == (2, 0)

    second = await service.sync_users()
    assert (second.total, second.inserted, second.skipped) == (2, 0, 2)
    assert store.count_users() == 2

    await http_client.aclose()
