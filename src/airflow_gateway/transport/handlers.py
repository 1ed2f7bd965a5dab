"""Route handlers for the ``/api/v1`` surface.

Handlers read their collaborators from ``request.app.state.context`` and the
caller from the request-scoped ``RequestContext`` set by the bearer
middleware. Errors are raised as ``GatewayError`` and rendered by the
application's exception handler.
"""

from __future__ import annotations

import json
import logging
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError, field_validator
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse, Response

from airflow_gateway.app import AppContext
from airflow_gateway.audit.models import AuditLogRecord, Operation
from airflow_gateway.auth.context import get_request_context
from airflow_gateway.auth.principal import Principal
from airflow_gateway.errors import BadRequest
from airflow_gateway.upstream.dags import DEFAULT_PAGE_SIZE
from airflow_gateway.upstream.models import (
    DagRunClear,
    DagRunCreate,
    DagRunNoteUpdate,
    DagRunStateUpdate,
    DagUpdate,
)

logger = logging.getLogger(__name__)

_Model = TypeVar("_Model", bound=BaseModel)

_TRUE_VALUES = frozenset({"true", "1", "yes"})
_FALSE_VALUES = frozenset({"false", "0", "no"})


class LoginRequest(BaseModel):
    username: str
    password: str

    @field_validator("username", "password")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value

    def __repr__(self) -> str:
        return f"LoginRequest(username={self.username!r})"


def _context(request: Request) -> AppContext:
    return request.app.state.context


def _principal() -> Principal:
    return get_request_context().principal


def _validation_detail(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ())) or "body"
        parts.append(f"{location}: {error.get('msg', 'invalid value')}")
    return "; ".join(parts) or "Invalid request body"


async def _read_json(request: Request) -> Any:
    raw = await request.body()
    if not raw.strip():
        return None
    try:
        return json.loads(raw)
    except ValueError as exc:
        raise BadRequest("Malformed JSON request body") from exc


async def _parse_body(request: Request, model: type[_Model]) -> _Model:
    data = await _read_json(request)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise BadRequest("Request body must be a JSON object")
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise BadRequest(_validation_detail(exc)) from exc


def _query_bool(request: Request, name: str) -> bool | None:
    raw = request.query_params.get(name)
    if raw is None or not raw.strip():
        return None
    lowered = raw.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise BadRequest(f"Invalid boolean value for {name}: {raw}")


def _query_int(request: Request, name: str, default: int) -> int:
    raw = request.query_params.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise BadRequest(f"Invalid integer value for {name}: {raw}") from exc


def _path(request: Request, name: str) -> str:
    return request.path_params[name]


def _audit_response(records: list[AuditLogRecord]) -> JSONResponse:
    return JSONResponse([record.to_dict() for record in records])


# Auth


async def login(request: Request) -> Response:
    body = await _parse_body(request, LoginRequest)
    tokens = await _context(request).token_client.login(body.username, body.password)
    return JSONResponse(tokens.to_response())


def _extract_refresh_token(raw: bytes) -> str:
    text = raw.decode("utf-8", errors="replace").strip()
    if text.startswith("{"):
        try:
            data = json.loads(text)
        except ValueError as exc:
            raise BadRequest("Malformed JSON request body") from exc
        value = data.get("refresh_token") if isinstance(data, dict) else None
        text = value.strip() if isinstance(value, str) else ""
    return text.strip().strip('"').strip()


async def refresh_token(request: Request) -> Response:
    token = _extract_refresh_token(await request.body())
    if not token:
        raise BadRequest("Refresh token is required")
    tokens = await _context(request).token_client.refresh(token)
    return JSONResponse(tokens.to_response())


async def verify(request: Request) -> Response:
    principal = _principal()
    return JSONResponse({"message": f"Authentication successful for {principal.username}"})


# DAGs


async def list_dags(request: Request) -> Response:
    result = await _context(request).dags.list_dags(
        is_active=_query_bool(request, "isActive"),
        is_paused=_query_bool(request, "isPaused"),
        search=request.query_params.get("search"),
        page=_query_int(request, "page", 0),
        size=_query_int(request, "size", DEFAULT_PAGE_SIZE),
    )
    return JSONResponse(result)


async def get_dag(request: Request) -> Response:
    return JSONResponse(await _context(request).dags.get_dag(_path(request, "dag_id")))


async def update_dag(request: Request) -> Response:
    body = await _parse_body(request, DagUpdate)
    result = await _context(request).dags.update_dag(_principal(), _path(request, "dag_id"), body)
    return JSONResponse(result)


async def delete_dag(request: Request) -> Response:
    await _context(request).dags.delete_dag(_principal(), _path(request, "dag_id"))
    return Response(status_code=204)


async def get_dag_tasks(request: Request) -> Response:
    return JSONResponse(await _context(request).dags.get_tasks(_path(request, "dag_id")))


async def get_dag_details(request: Request) -> Response:
    return JSONResponse(await _context(request).dags.get_details(_path(request, "dag_id")))


# DAG runs


async def list_dag_runs(request: Request) -> Response:
    filters = {
        "state": request.query_params.get("state"),
        "dag_run_id": request.query_params.get("dag_run_id"),
    }
    result = await _context(request).dag_runs.list_runs(_path(request, "dag_id"), filters)
    return JSONResponse(result)


async def create_dag_run(request: Request) -> Response:
    body = await _parse_body(request, DagRunCreate)
    result = await _context(request).dag_runs.create_run(
        _principal(), _path(request, "dag_id"), body
    )
    return JSONResponse(result)


async def get_dag_run(request: Request) -> Response:
    result = await _context(request).dag_runs.get_run(
        _path(request, "dag_id"), _path(request, "dag_run_id")
    )
    return JSONResponse(result)


async def delete_dag_run(request: Request) -> Response:
    await _context(request).dag_runs.delete_run(
        _principal(), _path(request, "dag_id"), _path(request, "dag_run_id")
    )
    return Response(status_code=204)


async def update_dag_run_state(request: Request) -> Response:
    body = await _parse_body(request, DagRunStateUpdate)
    result = await _context(request).dag_runs.update_state(
        _principal(), _path(request, "dag_id"), _path(request, "dag_run_id"), body
    )
    return JSONResponse(result)


async def clear_dag_run(request: Request) -> Response:
    body = await _parse_body(request, DagRunClear)
    result = await _context(request).dag_runs.clear(
        _principal(), _path(request, "dag_id"), _path(request, "dag_run_id"), body
    )
    return JSONResponse(result)


async def get_upstream_dataset_events(request: Request) -> Response:
    result = await _context(request).dag_runs.upstream_dataset_events(
        _path(request, "dag_id"), _path(request, "dag_run_id")
    )
    return JSONResponse(result)


async def set_dag_run_note(request: Request) -> Response:
    body = await _parse_body(request, DagRunNoteUpdate)
    result = await _context(request).dag_runs.set_note(
        _path(request, "dag_id"), _path(request, "dag_run_id"), body
    )
    return JSONResponse(result)


# Task instances


async def list_task_instances(request: Request) -> Response:
    result = await _context(request).task_instances.list_task_instances(
        _path(request, "dag_id"),
        _path(request, "dag_run_id"),
        dict(request.query_params),
    )
    return JSONResponse(result)


async def get_task_instance(request: Request) -> Response:
    result = await _context(request).task_instances.get_task_instance(
        _path(request, "dag_id"), _path(request, "dag_run_id"), _path(request, "task_id")
    )
    return JSONResponse(result)


async def get_task_log(request: Request) -> Response:
    text = await _context(request).task_instances.get_log(
        _path(request, "dag_id"),
        _path(request, "dag_run_id"),
        _path(request, "task_id"),
        try_number=_query_int(request, "tryNumber", 1),
    )
    return PlainTextResponse(text)


# Audit logs


async def list_audit_logs(request: Request) -> Response:
    return _audit_response(await _context(request).audit.list_visible(_principal()))


async def list_audit_logs_for_dag(request: Request) -> Response:
    records = await _context(request).audit.for_dag(_principal(), _path(request, "dag_id"))
    return _audit_response(records)


async def list_delete_audit_logs(request: Request) -> Response:
    records = await _context(request).audit.by_operation(_principal(), Operation.DELETE)
    return _audit_response(records)


async def list_delete_audit_logs_for_dag(request: Request) -> Response:
    records = await _context(request).audit.by_operation_for_dag(
        _principal(), Operation.DELETE, _path(request, "dag_id")
    )
    return _audit_response(records)
