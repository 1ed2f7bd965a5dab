"""Insert-only synchronization of IdP users into the local user table."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
from apscheduler.events import EVENT_JOB_MAX_INSTANCES, JobSubmissionEvent
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from airflow_gateway.audit.db import SqliteStore
from airflow_gateway.audit.models import UserRecord
from airflow_gateway.auth.token_client import TokenClient
from airflow_gateway.errors import GatewayError, UpstreamError

logger = logging.getLogger(__name__)

_USERS_PAGE_SIZE = 100
_MAX_USER_PAGES = 1000


@dataclass
class SyncSummary:
    total: int = 0
    inserted: int = 0
    skipped: int = 0
    failed: int = 0


def project_user(raw: dict[str, Any]) -> UserRecord | None:
    """Map a Keycloak user representation; ``None`` when it has no id."""
    subject_id = raw.get("id")
    if not isinstance(subject_id, str) or not subject_id:
        return None
    created = raw.get("createdTimestamp")
    return UserRecord(
        subject_id=subject_id,
        username=str(raw.get("username") or ""),
        enabled=bool(raw.get("enabled", False)),
        totp_enabled=bool(raw.get("totp", False)),
        email_verified=bool(raw.get("emailVerified", False)),
        email=raw.get("email"),
        display_name_first=raw.get("firstName"),
        display_name_last=raw.get("lastName"),
        created_at_external=int(created) if isinstance(created, (int, float)) else None,
    )


class UserSyncService:
    """One reconciliation cycle: admin token, list users, insert the new ones.

    Existing rows are never updated, so a user disabled or renamed in the IdP
    keeps the values from its first sighting.
    """

    def __init__(
        self,
        token_client: TokenClient,
        store: SqliteStore,
        users_endpoint: str,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        self.token_client = token_client
        self.store = store
        self.users_endpoint = users_endpoint
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout_seconds)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def fetch_users(self, admin_token: str) -> list[dict[str, Any]]:
        users: list[dict[str, Any]] = []
        first = 0
        previous_ids: list[Any] | None = None
        for _ in range(_MAX_USER_PAGES):
            try:
                resp = await self._client.get(
                    self.users_endpoint,
                    params={"first": first, "max": _USERS_PAGE_SIZE},
                    headers={"Authorization": f"Bearer {admin_token}"},
                )
            except httpx.HTTPError as exc:
                raise UpstreamError("transport", f"Failed to fetch users from IdP: {exc}") from exc
            if resp.status_code in (401, 403):
                raise UpstreamError("credentials", "IdP rejected the admin token")
            if not resp.is_success:
                raise UpstreamError(
                    "transport", f"IdP users endpoint returned status {resp.status_code}"
                )
            try:
                batch = resp.json()
            except ValueError as exc:
                raise UpstreamError("invalid_response", "IdP returned invalid JSON") from exc
            if not isinstance(batch, list):
                raise UpstreamError("invalid_response", "IdP users payload is not a list")
            batch_ids = [item.get("id") for item in batch if isinstance(item, dict)]
            if batch and batch_ids == previous_ids:
                logger.warning("IdP repeated the user page at first=%d; stopping", first)
                return users
            previous_ids = batch_ids
            users.extend(item for item in batch if isinstance(item, dict))
            if len(batch) < _USERS_PAGE_SIZE:
                return users
            first += len(batch)
        logger.warning("User listing truncated after %d IdP pages", _MAX_USER_PAGES)
        return users

    async def sync_users(self) -> SyncSummary:
        logger.info("Starting user synchronization")
        admin_token = await self.token_client.admin_token()
        raw_users = await self.fetch_users(admin_token)

        summary = SyncSummary(total=len(raw_users))
        for raw in raw_users:
            user = project_user(raw)
            if user is None:
                logger.warning("SKIP user without id: username=%s", raw.get("username"))
                summary.skipped += 1
                continue
            if await asyncio.to_thread(self.store.user_exists, user.subject_id):
                logger.debug("SKIP existing user: %s (%s)", user.username, user.subject_id)
                summary.skipped += 1
                continue
            try:
                inserted = await asyncio.to_thread(self.store.insert_user, user)
            except GatewayError as exc:
                logger.error("Failed to insert user %s: %s", user.subject_id, exc.detail)
                summary.failed += 1
                continue
            if inserted:
                logger.info("INSERT user: %s (%s)", user.username, user.subject_id)
                summary.inserted += 1
            else:
                summary.skipped += 1

        logger.info(
            "SUCCESS user synchronization: total=%d inserted=%d skipped=%d failed=%d",
            summary.total,
            summary.inserted,
            summary.skipped,
            summary.failed,
        )
        return summary


USER_SYNC_JOB_ID = "user-sync"


class UserSyncWorker:
    """Schedules ``UserSyncService.sync_users`` on an APScheduler interval job.

    The first run fires after the initial delay, later runs at a fixed rate
    from that point. ``max_instances=1`` makes the scheduler skip a tick while
    the previous cycle is still running.
    """

    def __init__(
        self,
        service: UserSyncService,
        interval_seconds: float,
        initial_delay_seconds: float,
        scheduler: AsyncIOScheduler | None = None,
    ) -> None:
        self.service = service
        self.interval_seconds = interval_seconds
        self.initial_delay_seconds = initial_delay_seconds
        self.skipped_ticks = 0
        self._scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
        self._scheduler.add_listener(self._on_tick_skipped, EVENT_JOB_MAX_INSTANCES)

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self) -> None:
        if self.running:
            return
        self._scheduler.start()
        self._scheduler.add_job(
            self.run_cycle,
            trigger="interval",
            seconds=self.interval_seconds,
            id=USER_SYNC_JOB_ID,
            name="User synchronization",
            next_run_time=datetime.now(timezone.utc)
            + timedelta(seconds=self.initial_delay_seconds),
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        logger.info(
            "User sync scheduled: initial_delay=%ss interval=%ss",
            self.initial_delay_seconds,
            self.interval_seconds,
        )

    def stop(self) -> None:
        """Shut the scheduler down; an in-flight cycle is cancelled."""
        if self.running:
            self._scheduler.shutdown(wait=False)
            logger.info("User sync stopped")

    def _on_tick_skipped(self, event: JobSubmissionEvent) -> None:
        if event.job_id == USER_SYNC_JOB_ID:
            self.skipped_ticks += 1
            logger.debug("User sync still running; skipping tick")

    async def run_cycle(self) -> None:
        try:
            await self.service.sync_users()
        except Exception:
            logger.exception("User synchronization failed")
