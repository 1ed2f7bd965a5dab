"""Task-instance reads and task log retrieval."""

from __future__ import annotations

from typing import Any

from airflow_gateway.errors import BadRequest, NotFound
from airflow_gateway.upstream.client import AirflowClient
from airflow_gateway.upstream.dags import segment
from airflow_gateway.utils.serialization import render_payload


class TaskInstanceService:
    def __init__(self, client: AirflowClient) -> None:
        self.client = client

    @staticmethod
    def _base_path(dag_id: str, dag_run_id: str) -> str:
        return f"/dags/{segment(dag_id)}/dagRuns/{segment(dag_run_id)}/taskInstances"

    async def list_task_instances(
        self,
        dag_id: str,
        dag_run_id: str,
        params: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        forwarded = {key: value for key, value in (params or {}).items() if value}
        payload = await self.client.request_json(
            "GET",
            self._base_path(dag_id, dag_run_id),
            params=forwarded or None,
            not_found=NotFound(
                "DAG Run",
                dag_run_id,
                f"DAG or DAG Run not found: dagId={dag_id}, dagRunId={dag_run_id}",
            ),
        )
        return render_payload(payload)

    async def get_task_instance(
        self, dag_id: str, dag_run_id: str, task_id: str
    ) -> dict[str, Any]:
        payload = await self.client.request_json(
            "GET",
            f"{self._base_path(dag_id, dag_run_id)}/{segment(task_id)}",
            not_found=NotFound(
                "Task instance",
                task_id,
                f"Task instance not found: dagId={dag_id}, dagRunId={dag_run_id}, "
                f"taskId={task_id}",
            ),
        )
        return render_payload(payload)

    async def get_log(
        self,
        dag_id: str,
        dag_run_id: str,
        task_id: str,
        try_number: int = 1,
    ) -> str:
        """Raw log text for one try of a task instance."""
        if try_number < 1:
            raise BadRequest("tryNumber must be a positive integer")
        resp = await self.client.request(
            "GET",
            f"{self._base_path(dag_id, dag_run_id)}/{segment(task_id)}/logs/{try_number}",
            accept="text/plain",
            not_found=NotFound(
                "Task log",
                task_id,
                f"Task instance not found: dagId={dag_id}, dagRunId={dag_run_id}, "
                f"taskId={task_id}, tryNumber={try_number}",
            ),
        )
        return resp.text
