"""Application context assembly."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

import httpx

from airflow_gateway.audit.db import SqliteStore
from airflow_gateway.audit.service import AuditLogService
from airflow_gateway.auth.token_client import TokenClient
from airflow_gateway.auth.validator import TokenValidator
from airflow_gateway.config import Settings, load_settings
from airflow_gateway.sync.user_sync import UserSyncService, UserSyncWorker
from airflow_gateway.upstream.client import AirflowClient
from airflow_gateway.upstream.dag_runs import DagRunService
from airflow_gateway.upstream.dags import DagService
from airflow_gateway.upstream.task_instances import TaskInstanceService


@dataclass
class AppContext:
    """Application-wide dependency container.

    Initialized once at startup and cached for the lifetime of the process.
    The HTTP lifespan owns shutdown via ``aclose``.
    """

    settings: Settings
    store: SqliteStore
    token_client: TokenClient
    token_validator: TokenValidator
    upstream: AirflowClient
    audit: AuditLogService
    dags: DagService
    dag_runs: DagRunService
    task_instances: TaskInstanceService
    user_sync: UserSyncService
    sync_worker: UserSyncWorker
    idp_http: httpx.AsyncClient | None = None

    async def aclose(self) -> None:
        await self.user_sync.aclose()
        await self.token_client.aclose()
        await self.token_validator.aclose()
        if self.idp_http is not None:
            await self.idp_http.aclose()
        await self.upstream.aclose()
        self.store.close()


def build_app_context(settings: Settings) -> AppContext:
    store = SqliteStore(settings.storage.sqlite_path, wal=settings.storage.sqlite_wal)
    idp = settings.idp
    # Token, discovery, JWKS and user-list calls share one pool.
    idp_http = httpx.AsyncClient(timeout=idp.timeout_seconds)

    token_client = TokenClient(
        token_endpoint=idp.token_endpoint,
        client_id=idp.client_id,
        client_secret=idp.client_secret,
        admin_token_endpoint=str(idp.sync.endpoints.token),
        admin_username=idp.admin_username,
        admin_password=idp.admin_password,
        http_client=idp_http,
    )
    token_validator = TokenValidator(
        issuer=str(idp.issuer_uri),
        clock_skew_seconds=idp.clock_skew_seconds,
        jwks_ttl_seconds=idp.jwks_ttl_seconds,
        http_client=idp_http,
    )
    upstream = AirflowClient(
        settings.upstream.base_url,
        settings.upstream.username,
        settings.upstream.password,
        timeout_seconds=settings.upstream.timeout_seconds,
    )

    audit = AuditLogService(store)
    user_sync = UserSyncService(
        token_client, store, str(idp.sync.endpoints.users), http_client=idp_http
    )
    sync_worker = UserSyncWorker(
        user_sync,
        interval_seconds=idp.sync.interval_ms / 1000,
        initial_delay_seconds=idp.sync.initial_delay_ms / 1000,
    )

    return AppContext(
        settings=settings,
        store=store,
        token_client=token_client,
        token_validator=token_validator,
        upstream=upstream,
        audit=audit,
        dags=DagService(upstream, audit),
        dag_runs=DagRunService(upstream, audit),
        task_instances=TaskInstanceService(upstream),
        user_sync=user_sync,
        sync_worker=sync_worker,
        idp_http=idp_http,
    )


@lru_cache(maxsize=1)
def get_app_context() -> AppContext:
    """Get or create the process-wide application context."""
    return build_app_context(load_settings())
