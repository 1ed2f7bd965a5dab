"""HTTP client for the Airflow REST API with status-code mapping."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from airflow_gateway.errors import (
    BadRequest,
    Conflict,
    GatewayError,
    NotFound,
    UpstreamError,
)

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"


def _error_detail(resp: httpx.Response) -> str:
    """Best-effort human-readable message from an Airflow problem response."""
    try:
        body = resp.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for key in ("detail", "title", "message"):
            value = body.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    text = resp.text.strip()
    return text[:500] if text else f"Upstream rejected the request (status {resp.status_code})"


def map_upstream_status(
    resp: httpx.Response,
    *,
    not_found: NotFound,
    conflict: Conflict | None = None,
) -> GatewayError:
    """Map a non-2xx Airflow response to the gateway error taxonomy."""
    status = resp.status_code
    if status == 404:
        return not_found
    if status == 409:
        if conflict is not None:
            return conflict
        return Conflict(not_found.resource, not_found.resource_id, "modify", _error_detail(resp))
    if status in (401, 403):
        logger.warning("Upstream rejected gateway credentials: status=%s", status)
        return UpstreamError("credentials", "Upstream rejected the gateway credentials")
    if 400 <= status < 500:
        return BadRequest(_error_detail(resp))
    logger.warning("Upstream server error: status=%s", status)
    return UpstreamError("transport", f"Upstream returned status {status}")


class AirflowClient:
    """Thin async wrapper over ``httpx.AsyncClient`` rooted at ``<base_url>/api/v1``.

    Credentials are the gateway's own Basic-auth pair; the caller's bearer
    token is never forwarded.
    """

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_root = f"{base_url.rstrip('/')}{API_PREFIX}"
        self._client = httpx.AsyncClient(
            base_url=self.api_root,
            auth=httpx.BasicAuth(username, password),
            timeout=timeout_seconds,
            transport=transport,
            headers={"Accept": "application/json"},
        )
        self._shielded: set[asyncio.Task[httpx.Response]] = set()
        self._orphaned: set[asyncio.Task[httpx.Response]] = set()

    def __repr__(self) -> str:
        return f"AirflowClient(api_root={self.api_root!r})"

    async def aclose(self) -> None:
        if self._shielded:
            await asyncio.gather(*self._shielded, return_exceptions=True)
        await self._client.aclose()

    async def request(
        self,
        method: str,
        path: str,
        *,
        not_found: NotFound,
        conflict: Conflict | None = None,
        params: dict[str, Any] | None = None,
        json: Any = None,
        accept: str = "application/json",
        shield: bool = False,
    ) -> httpx.Response:
        """Send one request and raise a mapped error for any non-2xx status.

        With ``shield=True`` the round-trip is not cancelled if the calling
        request is; mutations run to completion once issued.
        """
        send = self._send(method, path, params=params, json=json, accept=accept)
        if shield:
            resp = await self._await_shielded(send, method, path)
        else:
            resp = await send
        if resp.is_success:
            return resp
        raise map_upstream_status(resp, not_found=not_found, conflict=conflict)

    async def _await_shielded(self, send: Any, method: str, path: str) -> httpx.Response:
        task = asyncio.ensure_future(send)
        self._shielded.add(task)
        task.add_done_callback(lambda t: self._finish_shielded(t, method, path))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.done():
                self._orphaned.add(task)
            logger.info("Caller cancelled; upstream %s %s keeps running", method, path)
            raise

    def _finish_shielded(self, task: asyncio.Task[httpx.Response], method: str, path: str) -> None:
        self._shielded.discard(task)
        orphaned = task in self._orphaned
        self._orphaned.discard(task)
        if task.cancelled():
            if orphaned:
                logger.warning("Upstream %s %s was cancelled", method, path)
            return
        exc = task.exception()
        if not orphaned:
            return
        if exc is not None:
            logger.warning(
                "Upstream %s %s failed after caller cancellation: %s", method, path, exc
            )
        else:
            logger.info(
                "Upstream %s %s completed after caller cancellation: status=%s",
                method,
                path,
                task.result().status_code,
            )

    async def _send(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None,
        json: Any,
        accept: str,
    ) -> httpx.Response:
        try:
            resp = await self._client.request(
                method,
                path,
                params=params,
                json=json,
                headers={"Accept": accept},
            )
        except httpx.TimeoutException as exc:
            logger.warning("Upstream %s %s timed out", method, path)
            raise UpstreamError("timeout", "Upstream request timed out") from exc
        except httpx.HTTPError as exc:
            logger.warning("Upstream %s %s failed: %s", method, path, exc)
            raise UpstreamError("transport", "Upstream is unreachable") from exc
        logger.debug("Upstream %s %s -> %s", method, path, resp.status_code)
        return resp

    async def request_json(
        self,
        method: str,
        path: str,
        *,
        not_found: NotFound,
        conflict: Conflict | None = None,
        params: dict[str, Any] | None = None,
        json: Any = None,
        shield: bool = False,
    ) -> dict[str, Any]:
        resp = await self.request(
            method,
            path,
            not_found=not_found,
            conflict=conflict,
            params=params,
            json=json,
            shield=shield,
        )
        try:
            payload = resp.json()
        except ValueError as exc:
            raise UpstreamError("invalid_response", "Upstream returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise UpstreamError("invalid_response", "Upstream returned an unexpected payload")
        return payload
