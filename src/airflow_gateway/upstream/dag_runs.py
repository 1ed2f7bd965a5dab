"""DAG-run endpoints: trigger, state changes, clear, notes and delete."""

from __future__ import annotations

import logging
from typing import Any

from airflow_gateway.audit.models import Operation
from airflow_gateway.audit.service import AuditLogService
from airflow_gateway.auth.principal import Principal
from airflow_gateway.errors import Conflict, GatewayError, NotFound
from airflow_gateway.upstream.client import AirflowClient
from airflow_gateway.upstream.dags import segment
from airflow_gateway.upstream.models import (
    DagRunClear,
    DagRunCreate,
    DagRunNoteUpdate,
    DagRunStateUpdate,
)
from airflow_gateway.utils.serialization import render_payload

logger = logging.getLogger(__name__)

RUN_LIST_FILTERS = ("state", "dag_run_id")


def _run_path(dag_id: str, dag_run_id: str) -> str:
    return f"/dags/{segment(dag_id)}/dagRuns/{segment(dag_run_id)}"


def _run_not_found(dag_id: str, dag_run_id: str) -> NotFound:
    return NotFound(
        "DAG Run",
        dag_run_id,
        f"DAG Run not found: dagId={dag_id}, dagRunId={dag_run_id}",
    )


def _run_not_found_short(dag_run_id: str) -> NotFound:
    return NotFound("DAG Run", dag_run_id, f"DAG run not found: {dag_run_id}")


class DagRunService:
    def __init__(self, client: AirflowClient, audit: AuditLogService) -> None:
        self.client = client
        self.audit = audit

    async def list_runs(
        self, dag_id: str, filters: dict[str, str | None] | None = None
    ) -> dict[str, Any]:
        params = {
            key: value
            for key, value in (filters or {}).items()
            if key in RUN_LIST_FILTERS and value
        }
        payload = await self.client.request_json(
            "GET",
            f"/dags/{segment(dag_id)}/dagRuns",
            params=params or None,
            not_found=NotFound("DAG", dag_id, f"DAG not found: {dag_id}"),
        )
        return render_payload(payload)

    async def create_run(
        self, principal: Principal, dag_id: str, body: DagRunCreate
    ) -> dict[str, Any]:
        details = "Triggered DAG run"
        if body.logical_date_text:
            details += f" for date: {body.logical_date_text}"

        payload = await self.client.request_json(
            "POST",
            f"/dags/{segment(dag_id)}/dagRuns",
            json=body.to_upstream(),
            not_found=NotFound("DAG", dag_id, f"DAG not found: {dag_id}"),
            conflict=Conflict(
                "DAG Run",
                body.dag_run_id or dag_id,
                "trigger",
                "DAG Run already exists or conflict with execution date",
            ),
            shield=True,
        )
        # Upstream mints the run id when the caller did not supply one.
        dag_run_id = payload.get("dag_run_id") or body.dag_run_id
        await self.audit.record_after_mutation(
            principal, dag_id, Operation.TRIGGER, details, dag_run_id
        )
        return render_payload(payload)

    async def get_run(self, dag_id: str, dag_run_id: str) -> dict[str, Any]:
        payload = await self.client.request_json(
            "GET", _run_path(dag_id, dag_run_id), not_found=_run_not_found(dag_id, dag_run_id)
        )
        return render_payload(payload)

    async def delete_run(self, principal: Principal, dag_id: str, dag_run_id: str) -> None:
        audit_log = await self.audit.record_before_delete(
            principal,
            dag_id,
            f"Deleted DAG run: {dag_run_id} for DAG: {dag_id}",
            dag_run_id,
        )
        logger.info(
            "Audit log created for DELETE on DAG run %s: id=%s", dag_run_id, audit_log.id
        )
        try:
            await self.client.request(
                "DELETE",
                _run_path(dag_id, dag_run_id),
                not_found=_run_not_found_short(dag_run_id),
                shield=True,
            )
        except GatewayError as exc:
            logger.error("Failed to delete DAG run %s: %s", dag_run_id, exc.detail)
            raise
        logger.info("Successfully deleted DAG run: %s for DAG: %s", dag_run_id, dag_id)

    async def update_state(
        self,
        principal: Principal,
        dag_id: str,
        dag_run_id: str,
        body: DagRunStateUpdate,
    ) -> dict[str, Any]:
        payload = await self.client.request_json(
            "PATCH",
            _run_path(dag_id, dag_run_id),
            json=body.to_upstream(),
            not_found=_run_not_found_short(dag_run_id),
            shield=True,
        )
        await self.audit.record_after_mutation(
            principal,
            dag_id,
            Operation.UPDATE_STATE,
            f"Updated state to: {body.state}",
            dag_run_id,
        )
        return render_payload(payload)

    async def clear(
        self,
        principal: Principal,
        dag_id: str,
        dag_run_id: str,
        body: DagRunClear,
    ) -> dict[str, Any]:
        payload = await self.client.request_json(
            "POST",
            f"{_run_path(dag_id, dag_run_id)}/clear",
            json=body.to_upstream(),
            not_found=_run_not_found_short(dag_run_id),
            shield=True,
        )
        await self.audit.record_after_mutation(
            principal, dag_id, Operation.CLEAR, "Cleared DAG run", dag_run_id
        )
        return render_payload(payload)

    async def upstream_dataset_events(self, dag_id: str, dag_run_id: str) -> dict[str, Any]:
        payload = await self.client.request_json(
            "GET",
            f"{_run_path(dag_id, dag_run_id)}/upstreamDatasetEvents",
            not_found=_run_not_found(dag_id, dag_run_id),
        )
        return render_payload(payload)

    async def set_note(
        self, dag_id: str, dag_run_id: str, body: DagRunNoteUpdate
    ) -> dict[str, Any]:
        payload = await self.client.request_json(
            "PATCH",
            f"{_run_path(dag_id, dag_run_id)}/setNote",
            json=body.to_upstream(),
            not_found=_run_not_found(dag_id, dag_run_id),
        )
        return render_payload(payload)
