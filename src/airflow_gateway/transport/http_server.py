"""Starlette HTTP server assembly for the Airflow gateway."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from http import HTTPStatus
from typing import Any

from starlette.applications import Starlette
from starlette.exceptions import HTTPException
from starlette.middleware import Middleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Mount, Route

from airflow_gateway.app import AppContext, get_app_context
from airflow_gateway.auth.access import API_PREFIX, is_public_path
from airflow_gateway.auth.context import (
    RequestContext,
    reset_request_context,
    set_request_context,
)
from airflow_gateway.auth.principal import resolve_principal
from airflow_gateway.auth.validator import TokenValidationError, TokenValidator
from airflow_gateway.errors import AuthError, GatewayError, InternalError
from airflow_gateway.middleware.request_log import RequestLogMiddleware
from airflow_gateway.transport import handlers

logger = logging.getLogger(__name__)

WWW_AUTHENTICATE = 'Bearer realm="airflow-gateway", error="invalid_token"'


def _unauthorized(detail: str) -> JSONResponse:
    error = AuthError("unauthenticated", detail)
    return JSONResponse(
        error.to_body(),
        status_code=error.status,
        headers={"WWW-Authenticate": WWW_AUTHENTICATE},
    )


class BearerAuthMiddleware(BaseHTTPMiddleware):
    """
    Route gate.

    Public paths pass through; everything else needs a valid bearer token.
    On success the resolved principal is published both as the request
    context and on ``request.state`` for the request-log middleware.
    """

    def __init__(self, app: Any, validator: TokenValidator) -> None:
        super().__init__(app)
        self.validator = validator

    async def dispatch(self, request: Request, call_next: Any) -> Response:
        if request.method == "OPTIONS" or is_public_path(request.url.path):
            return await call_next(request)

        auth_header = request.headers.get("authorization", "")
        if not auth_header.lower().startswith("bearer "):
            return _unauthorized("Authorization header with Bearer token required")

        token = auth_header[7:].strip()

        try:
            claims = await self.validator.validate(token)
        except TokenValidationError as e:
            logger.warning("Token validation failed: %s (%s)", e, e.code)
            return _unauthorized("Invalid or expired token")
        except Exception:
            logger.exception("Unexpected error during token validation")
            error = InternalError()
            return JSONResponse(error.to_body(), status_code=error.status)

        try:
            principal = resolve_principal(claims)
        except AuthError as e:
            logger.warning("Token rejected: %s", e.detail)
            return _unauthorized(e.detail)

        request_id = getattr(request.state, "request_id", None)
        context = (
            RequestContext(principal=principal, request_id=request_id)
            if request_id
            else RequestContext(principal=principal)
        )

        request.state.user_id = principal.subject_id
        request.state.principal = principal
        ctx_token = set_request_context(context)
        try:
            return await call_next(request)
        finally:
            reset_request_context(ctx_token)


async def gateway_error_handler(request: Request, exc: GatewayError) -> Response:
    if exc.status >= 500:
        logger.error(
            "Request failed: %s %s -> %s (%s)",
            request.method,
            request.url.path,
            exc.title,
            exc.detail,
        )
    headers = {"WWW-Authenticate": WWW_AUTHENTICATE} if exc.status == 401 else None
    return JSONResponse(exc.to_body(), status_code=exc.status, headers=headers)


_HTTP_TITLES = {
    400: "Bad Request",
    404: "Resource Not Found",
    405: "Method Not Allowed",
}


async def http_error_handler(request: Request, exc: HTTPException) -> Response:
    """Routing errors (unknown path, wrong method) in the gateway error shape."""
    if exc.status_code in (204, 304):
        return Response(status_code=exc.status_code, headers=exc.headers)
    if exc.status_code == 404:
        detail = f"No route for {request.method} {request.url.path}"
    elif exc.status_code == 405:
        detail = f"Method {request.method} is not allowed for {request.url.path}"
    else:
        detail = exc.detail
    title = _HTTP_TITLES.get(exc.status_code) or HTTPStatus(exc.status_code).phrase
    body = {"status": exc.status_code, "message": title, "detail": detail}
    return JSONResponse(body, status_code=exc.status_code, headers=exc.headers)


async def unexpected_error_handler(request: Request, exc: Exception) -> Response:
    logger.error(
        "Unhandled error: %s %s", request.method, request.url.path, exc_info=exc
    )
    error = InternalError()
    return JSONResponse(error.to_body(), status_code=error.status)


async def health_handler(request: Request) -> Response:
    return JSONResponse({"status": "healthy"})


async def ready_handler(request: Request) -> Response:
    return JSONResponse({"status": "ready"})


def _api_routes() -> list[Route]:
    return [
        Route("/auth/login", handlers.login, methods=["POST"]),
        Route("/auth/token", handlers.refresh_token, methods=["POST"]),
        Route("/auth/verify", handlers.verify, methods=["GET"]),
        Route("/dags", handlers.list_dags, methods=["GET"]),
        Route("/dags/{dag_id}", handlers.get_dag, methods=["GET"]),
        Route("/dags/{dag_id}", handlers.update_dag, methods=["PATCH"]),
        Route("/dags/{dag_id}", handlers.delete_dag, methods=["DELETE"]),
        Route("/dags/{dag_id}/tasks", handlers.get_dag_tasks, methods=["GET"]),
        Route("/dags/{dag_id}/details", handlers.get_dag_details, methods=["GET"]),
        Route("/dags/{dag_id}/dagRuns", handlers.list_dag_runs, methods=["GET"]),
        Route("/dags/{dag_id}/dagRuns", handlers.create_dag_run, methods=["POST"]),
        Route("/dags/{dag_id}/dagRuns/{dag_run_id}", handlers.get_dag_run, methods=["GET"]),
        Route(
            "/dags/{dag_id}/dagRuns/{dag_run_id}", handlers.delete_dag_run, methods=["DELETE"]
        ),
        Route(
            "/dags/{dag_id}/dagRuns/{dag_run_id}",
            handlers.update_dag_run_state,
            methods=["PATCH"],
        ),
        Route(
            "/dags/{dag_id}/dagRuns/{dag_run_id}/clear",
            handlers.clear_dag_run,
            methods=["POST"],
        ),
        Route(
            "/dags/{dag_id}/dagRuns/{dag_run_id}/upstreamDatasetEvents",
            handlers.get_upstream_dataset_events,
            methods=["GET"],
        ),
        Route(
            "/dags/{dag_id}/dagRuns/{dag_run_id}/setNote",
            handlers.set_dag_run_note,
            methods=["PATCH"],
        ),
        Route(
            "/dags/{dag_id}/dagRuns/{dag_run_id}/taskInstances",
            handlers.list_task_instances,
            methods=["GET"],
        ),
        Route(
            "/dags/{dag_id}/dagRuns/{dag_run_id}/taskInstances/{task_id}",
            handlers.get_task_instance,
            methods=["GET"],
        ),
        Route(
            "/logs/{dag_id}/dagRuns/{dag_run_id}/taskInstances/{task_id}",
            handlers.get_task_log,
            methods=["GET"],
        ),
        Route("/audit-logs", handlers.list_audit_logs, methods=["GET"]),
        Route("/audit-logs/dag/{dag_id}", handlers.list_audit_logs_for_dag, methods=["GET"]),
        Route(
            "/audit-logs/operations/delete",
            handlers.list_delete_audit_logs,
            methods=["GET"],
        ),
        Route(
            "/audit-logs/operations/delete/dag/{dag_id}",
            handlers.list_delete_audit_logs_for_dag,
            methods=["GET"],
        ),
    ]


def create_http_app(context: AppContext | None = None) -> Starlette:
    """Create the gateway application."""
    context = context or get_app_context()
    settings = context.settings

    # Order: CORS -> RequestLog -> BearerAuth
    middleware: list[Middleware] = [
        Middleware(RequestLogMiddleware),
        Middleware(BearerAuthMiddleware, validator=context.token_validator),
    ]

    # CORS MUST be outermost so preflight requests get CORS headers before auth runs.
    if settings.cors.allowed_origins:
        from starlette.middleware.cors import CORSMiddleware

        middleware.insert(
            0,
            Middleware(
                CORSMiddleware,
                allow_origins=list(settings.cors.allowed_origins),
                allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
                allow_headers=["*"],
                allow_credentials=True,
                max_age=3600,
            ),
        )

    routes = [
        Route("/health", endpoint=health_handler, methods=["GET"]),
        Route("/ready", endpoint=ready_handler, methods=["GET"]),
        Mount(API_PREFIX, routes=_api_routes()),
    ]

    @asynccontextmanager
    async def lifespan(app: Starlette):
        logger.info("Starting Airflow gateway...")
        try:
            await context.token_validator.initialize()
        except TokenValidationError:
            logger.warning(
                "IdP discovery failed at startup; will retry lazily on first request",
                exc_info=True,
            )
        if settings.idp.sync.enabled:
            context.sync_worker.start()
        logger.info("Airflow gateway started")
        try:
            yield
        finally:
            logger.info("Stopping Airflow gateway...")
            context.sync_worker.stop()
            await context.aclose()

    app = Starlette(
        routes=routes,
        middleware=middleware,
        exception_handlers={
            HTTPException: http_error_handler,
            GatewayError: gateway_error_handler,
            Exception: unexpected_error_handler,
        },
        lifespan=lifespan,
    )
    app.state.context = context
    return app
