"""Audit-trail recording and role-gated read-back."""

from __future__ import annotations

import asyncio
import logging

from airflow_gateway.audit.db import SqliteStore
from airflow_gateway.audit.models import AuditLogRecord, Operation
from airflow_gateway.auth.access import audit_subject_filter
from airflow_gateway.auth.principal import Principal
from airflow_gateway.errors import GatewayError

logger = logging.getLogger(__name__)


class AuditLogService:
    """Writes audit rows for a principal and reads them back.

    Principals with ``airflow-admin`` see every row; everyone else gets a
    ``user_id = <their subject>`` filter on the query itself.
    """

    def __init__(self, store: SqliteStore) -> None:
        self.store = store

    async def record(
        self,
        principal: Principal,
        dag_id: str,
        operation: Operation,
        details: str,
        dag_run_id: str | None = None,
    ) -> AuditLogRecord:
        record = AuditLogRecord(
            subject_id=principal.subject_id,
            username=principal.username,
            dag_id=dag_id,
            dag_run_id=dag_run_id,
            operation=operation,
            details=details,
        )
        saved = await asyncio.to_thread(self.store.insert_audit_log, record)
        logger.info(
            "Audit log saved: id=%s user=%s dag_id=%s dag_run_id=%s operation=%s",
            saved.id,
            principal.username,
            dag_id,
            dag_run_id,
            operation.value,
        )
        return saved

    async def record_before_delete(
        self,
        principal: Principal,
        dag_id: str,
        details: str,
        dag_run_id: str | None = None,
    ) -> AuditLogRecord:
        """Commit the DELETE row ahead of the upstream call; failure aborts the delete."""
        try:
            saved = await self.record(principal, dag_id, Operation.DELETE, details, dag_run_id)
        except GatewayError as exc:
            logger.error(
                "Failed to create audit log for DELETE on dag_id=%s dag_run_id=%s: %s",
                dag_id,
                dag_run_id,
                exc,
            )
            raise
        return saved

    async def record_after_mutation(
        self,
        principal: Principal,
        dag_id: str,
        operation: Operation,
        details: str,
        dag_run_id: str | None = None,
    ) -> AuditLogRecord:
        """Record a mutation upstream already applied. It cannot be rolled back."""
        try:
            return await self.record(principal, dag_id, operation, details, dag_run_id)
        except GatewayError:
            logger.warning(
                "Upstream %s applied but audit write failed: dag_id=%s dag_run_id=%s user=%s",
                operation.value,
                dag_id,
                dag_run_id,
                principal.subject_id,
            )
            raise

    async def list_visible(self, principal: Principal) -> list[AuditLogRecord]:
        subject_id = audit_subject_filter(principal)
        if subject_id is None:
            return await asyncio.to_thread(self.store.list_audit_logs)
        return await asyncio.to_thread(self.store.audit_logs_by_subject, subject_id)

    async def for_dag(self, principal: Principal, dag_id: str) -> list[AuditLogRecord]:
        subject_id = audit_subject_filter(principal)
        if subject_id is None:
            return await asyncio.to_thread(self.store.audit_logs_by_dag, dag_id)
        return await asyncio.to_thread(
            self.store.audit_logs_by_subject_and_dag, subject_id, dag_id
        )

    async def by_operation(
        self, principal: Principal, operation: Operation
    ) -> list[AuditLogRecord]:
        return await asyncio.to_thread(
            self.store.audit_logs_by_operation, operation, audit_subject_filter(principal)
        )

    async def by_operation_for_dag(
        self, principal: Principal, operation: Operation, dag_id: str
    ) -> list[AuditLogRecord]:
        return await asyncio.to_thread(
            self.store.audit_logs_by_operation_and_dag,
            operation,
            dag_id,
            audit_subject_filter(principal),
        )
