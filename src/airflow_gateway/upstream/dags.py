"""DAG endpoints: listing with local filtering, reads, pause/unpause and delete."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

from airflow_gateway.audit.models import Operation
from airflow_gateway.audit.service import AuditLogService
from airflow_gateway.auth.principal import Principal
from airflow_gateway.errors import BadRequest, Conflict, GatewayError, NotFound
from airflow_gateway.upstream.client import AirflowClient
from airflow_gateway.upstream.models import DagUpdate
from airflow_gateway.utils.serialization import render_payload

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 10
_UPSTREAM_PAGE_LIMIT = 100
_MAX_UPSTREAM_PAGES = 1000


def segment(value: str) -> str:
    """Quote a path parameter so run ids like ``manual__2024-01-01T00:00:00+00:00`` survive."""
    return quote(value, safe="")


def classify_dag_update(update: DagUpdate) -> tuple[Operation, str]:
    if update.is_paused is None:
        return Operation.UPDATE_STATE, "Updated DAG: updated"
    if update.is_paused:
        return Operation.PAUSE, "Updated DAG: paused"
    return Operation.UNPAUSE, "Updated DAG: unpaused"


def filter_dags(
    dags: list[dict[str, Any]],
    *,
    is_active: bool | None = None,
    is_paused: bool | None = None,
    search: str | None = None,
) -> list[dict[str, Any]]:
    needle = search.strip().lower() if search and search.strip() else None
    result = []
    for dag in dags:
        if is_active is not None and dag.get("is_active") is not is_active:
            continue
        if is_paused is not None and dag.get("is_paused") is not is_paused:
            continue
        if needle is not None:
            dag_id = str(dag.get("dag_id") or "").lower()
            description = str(dag.get("description") or "").lower()
            if needle not in dag_id and needle not in description:
                continue
        result.append(dag)
    return result


def paginate(items: list[Any], page: int, size: int) -> list[Any]:
    """Zero-based page slice; a page past the end is empty."""
    if page < 0:
        raise BadRequest("page must be zero or greater")
    if size < 1:
        raise BadRequest("size must be at least 1")
    start = page * size
    if start >= len(items):
        return []
    return items[start:start + size]


class DagService:
    def __init__(self, client: AirflowClient, audit: AuditLogService) -> None:
        self.client = client
        self.audit = audit

    @staticmethod
    def _dag_not_found(dag_id: str) -> NotFound:
        return NotFound("DAG", dag_id, f"DAG not found: {dag_id}")

    async def _fetch_all_dags(self) -> list[dict[str, Any]]:
        dags: list[dict[str, Any]] = []
        offset = 0
        previous_ids: list[Any] | None = None
        for _ in range(_MAX_UPSTREAM_PAGES):
            payload = await self.client.request_json(
                "GET",
                "/dags",
                params={"limit": _UPSTREAM_PAGE_LIMIT, "offset": offset},
                not_found=NotFound("DAG collection", "*", "DAG collection not found"),
            )
            batch = [dag for dag in payload.get("dags") or [] if isinstance(dag, dict)]
            batch_ids = [dag.get("dag_id") for dag in batch]
            if batch and batch_ids == previous_ids:
                logger.warning("Upstream repeated the DAG page at offset=%d; stopping", offset)
                break
            previous_ids = batch_ids
            dags.extend(batch)
            offset += len(batch)
            total = payload.get("total_entries")
            if len(batch) < _UPSTREAM_PAGE_LIMIT:
                break
            if isinstance(total, int) and offset >= total:
                break
        else:
            logger.warning("DAG listing truncated after %d upstream pages", _MAX_UPSTREAM_PAGES)
        return dags

    async def list_dags(
        self,
        *,
        is_active: bool | None = None,
        is_paused: bool | None = None,
        search: str | None = None,
        page: int = 0,
        size: int = DEFAULT_PAGE_SIZE,
    ) -> dict[str, Any]:
        """List DAGs; filters and pagination run locally over the full collection."""
        dags = await self._fetch_all_dags()
        filtered = filter_dags(dags, is_active=is_active, is_paused=is_paused, search=search)
        page_items = paginate(filtered, page, size)
        logger.debug(
            "Listed DAGs: upstream=%d filtered=%d page=%d size=%d",
            len(dags),
            len(filtered),
            page,
            size,
        )
        return {"dags": render_payload(page_items), "total_entries": len(filtered)}

    async def get_dag(self, dag_id: str) -> dict[str, Any]:
        payload = await self.client.request_json(
            "GET", f"/dags/{segment(dag_id)}", not_found=self._dag_not_found(dag_id)
        )
        return render_payload(payload)

    async def update_dag(
        self, principal: Principal, dag_id: str, update: DagUpdate
    ) -> dict[str, Any]:
        operation, details = classify_dag_update(update)
        params = {"update_mask": "is_paused"} if update.is_paused is not None else None
        payload = await self.client.request_json(
            "PATCH",
            f"/dags/{segment(dag_id)}",
            params=params,
            json=update.to_upstream(),
            not_found=self._dag_not_found(dag_id),
            conflict=Conflict("DAG", dag_id, "update", f"Conflict updating DAG: {dag_id}"),
            shield=True,
        )
        await self.audit.record_after_mutation(principal, dag_id, operation, details)
        return render_payload(payload)

    async def delete_dag(self, principal: Principal, dag_id: str) -> None:
        audit_log = await self.audit.record_before_delete(
            principal, dag_id, f"Deleted DAG: {dag_id}"
        )
        logger.info("Audit log created for DELETE on DAG %s: id=%s", dag_id, audit_log.id)
        try:
            await self.client.request(
                "DELETE",
                f"/dags/{segment(dag_id)}",
                not_found=self._dag_not_found(dag_id),
                conflict=Conflict(
                    "DAG",
                    dag_id,
                    "delete",
                    f"Cannot delete DAG with running instances: {dag_id}",
                ),
                shield=True,
            )
        except GatewayError as exc:
            logger.error("Failed to delete DAG %s: %s", dag_id, exc.detail)
            raise
        logger.info("Successfully deleted DAG: %s", dag_id)

    async def get_tasks(self, dag_id: str) -> dict[str, Any]:
        payload = await self.client.request_json(
            "GET", f"/dags/{segment(dag_id)}/tasks", not_found=self._dag_not_found(dag_id)
        )
        return render_payload(payload)

    async def get_details(self, dag_id: str) -> dict[str, Any]:
        payload = await self.client.request_json(
            "GET", f"/dags/{segment(dag_id)}/details", not_found=self._dag_not_found(dag_id)
        )
        return render_payload(payload)
