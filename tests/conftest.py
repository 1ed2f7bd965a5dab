from __future__ import annotations

import asyncio
import contextlib
import os
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx
import pytest
from starlette.testclient import TestClient

from airflow_gateway.app import AppContext
from airflow_gateway.audit.db import SqliteStore
from airflow_gateway.audit.service import AuditLogService
from airflow_gateway.auth.token_client import TokenClient
from airflow_gateway.auth.validator import TokenValidationError
from airflow_gateway.config import Settings
from airflow_gateway.sync.user_sync import UserSyncService, UserSyncWorker
from airflow_gateway.upstream.client import AirflowClient
from airflow_gateway.upstream.dag_runs import DagRunService
from airflow_gateway.upstream.dags import DagService
from airflow_gateway.upstream.task_instances import TaskInstanceService

ISSUER = "http://idp.test/realms/airflow"
UPSTREAM_BASE_URL = "http://airflow.test"
FAR_FUTURE = 4102444800  # 2100-01-01

ALICE_CLAIMS = {
    "iss": ISSUER,
    "sub": "u-7",
    "exp": FAR_FUTURE,
    "preferred_username": "alice",
    "realm_access": {"roles": ["airflow-user"]},
}
BOB_CLAIMS = {
    "iss": ISSUER,
    "sub": "u-9",
    "exp": FAR_FUTURE,
    "preferred_username": "bob",
    "realm_access": {"roles": ["airflow-user"]},
}
ADMIN_CLAIMS = {
    "iss": ISSUER,
    "sub": "u-1",
    "exp": FAR_FUTURE,
    "preferred_username": "root",
    "realm_access": {"roles": ["airflow-admin"]},
}
NO_ROLE_CLAIMS = {
    "iss": ISSUER,
    "sub": "u-3",
    "exp": FAR_FUTURE,
    "preferred_username": "carol",
}

TOKENS = {
    "alice-token": ALICE_CLAIMS,
    "bob-token": BOB_CLAIMS,
    "admin-token": ADMIN_CLAIMS,
    "no-role-token": NO_ROLE_CLAIMS,
}


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def pytest_sessionstart(session: pytest.Session) -> None:
    # Keep the background user sync off in any app built from env settings.
    os.environ.setdefault("IDP_SYNC_ENABLED", "false")


@pytest.fixture(autouse=True)
def _close_default_event_loop() -> None:
    yield
    policy = asyncio.get_event_loop_policy()
    local = getattr(policy, "_local", None)
    loop = getattr(local, "_loop", None) if local is not None else None
    if loop is not None and not loop.is_running() and not loop.is_closed():
        with contextlib.suppress(Exception):
            loop.close()
    if loop is not None:
        with contextlib.suppress(Exception):
            policy.set_event_loop(None)


class FakeTokenValidator:
    """Accepts the fixed tokens in ``TOKENS`` and nothing else."""

    def __init__(self, tokens: dict[str, dict[str, Any]] | None = None) -> None:
        self.tokens = dict(TOKENS if tokens is None else tokens)

    async def initialize(self) -> None:
        return None

    async def aclose(self) -> None:
        return None

    async def validate(self, token: str) -> dict[str, Any]:
        claims = self.tokens.get(token)
        if claims is None:
            raise TokenValidationError("Unknown token", "invalid_token")
        return dict(claims)


def _not_found(request: httpx.Request) -> httpx.Response:
    return httpx.Response(404, json={"detail": "not found"})


@dataclass
class Gateway:
    client: TestClient
    context: AppContext
    upstream_requests: list[httpx.Request] = field(default_factory=list)
    idp_requests: list[httpx.Request] = field(default_factory=list)

    @property
    def store(self) -> SqliteStore:
        return self.context.store


@pytest.fixture
def store(tmp_path):
    sqlite_store = SqliteStore(str(tmp_path / "gateway.sqlite"))
    yield sqlite_store
    sqlite_store.close()


@pytest.fixture
def make_gateway(tmp_path) -> Callable[..., Gateway]:
    """Build an app wired to mock upstream / IdP transports and a tmp SQLite store."""
    from airflow_gateway.transport.http_server import create_http_app

    built: list[Gateway] = []

    def build(
        upstream: Callable[[httpx.Request], httpx.Response] | None = None,
        idp: Callable[[httpx.Request], httpx.Response] | None = None,
        cors_origins: tuple[str, ...] = (),
        raise_server_exceptions: bool = True,
    ) -> Gateway:
        upstream_requests: list[httpx.Request] = []
        idp_requests: list[httpx.Request] = []

        def upstream_handler(request: httpx.Request) -> httpx.Response:
            upstream_requests.append(request)
            return (upstream or _not_found)(request)

        def idp_handler(request: httpx.Request) -> httpx.Response:
            idp_requests.append(request)
            return (idp or _not_found)(request)

        settings = Settings(
            idp={"base_url": "http://idp.test", "realm": "airflow", "sync": {"enabled": False}},
            cors={"allowed_origins": cors_origins},
        )
        store = SqliteStore(str(tmp_path / f"gateway-{len(built)}.sqlite"))
        idp_client = httpx.AsyncClient(transport=httpx.MockTransport(idp_handler))
        token_client = TokenClient(
            token_endpoint=settings.idp.token_endpoint,
            client_id="airflow-gateway",
            client_secret="s3cret",
            admin_token_endpoint=str(settings.idp.sync.endpoints.token),
            admin_username="admin",
            admin_password="admin-pass",
            http_client=idp_client,
        )
        upstream_client = AirflowClient(
            UPSTREAM_BASE_URL,
            "airflow",
            "airflow",
            transport=httpx.MockTransport(upstream_handler),
        )
        audit = AuditLogService(store)
        user_sync = UserSyncService(
            token_client, store, str(settings.idp.sync.endpoints.users), http_client=idp_client
        )
        context = AppContext(
            settings=settings,
            store=store,
            token_client=token_client,
            token_validator=FakeTokenValidator(),  # type: ignore[arg-type]
            upstream=upstream_client,
            audit=audit,
            dags=DagService(upstream_client, audit),
            dag_runs=DagRunService(upstream_client, audit),
            task_instances=TaskInstanceService(upstream_client),
            user_sync=user_sync,
            sync_worker=UserSyncWorker(user_sync, interval_seconds=900, initial_delay_seconds=60),
            idp_http=idp_client,
        )
        gateway = Gateway(
            client=TestClient(
                create_http_app(context), raise_server_exceptions=raise_server_exceptions
            ),
            context=context,
            upstream_requests=upstream_requests,
            idp_requests=idp_requests,
        )
        built.append(gateway)
        return gateway

    yield build

    for gateway in built:
        gateway.context.store.close()
