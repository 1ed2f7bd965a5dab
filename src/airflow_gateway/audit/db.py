"""SQLite access layer for the audit trail and synchronized users."""

from __future__ import annotations

import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Mapping, Sequence

from airflow_gateway.audit.models import AuditLogRecord, Operation, UserRecord
from airflow_gateway.errors import BadRequest, StorageError
from airflow_gateway.utils.time import (
    format_local_timestamp,
    local_now,
    parse_local_timestamp,
)

_SqlValue = str | bytes | int | float | None
_SqlParams = Sequence[_SqlValue] | Mapping[str, _SqlValue]

_AUDIT_COLUMNS = (
    "id, user_id, username, dag_id, dag_run_id, operation, operation_time, details"
)
_USER_COLUMNS = (
    "id, created_timestamp, username, enabled, totp, email_verified, "
    "first_name, last_name, email"
)


class SqliteStore:
    """Append-only audit log and insert-only user table.

    No method updates or deletes rows in either table.
    """

    def __init__(self, path: str, wal: bool = True) -> None:
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._closed = False
        if wal:
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._init_schema()

    def _init_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                created_timestamp INTEGER,
                username TEXT,
                enabled INTEGER NOT NULL DEFAULT 0,
                totp INTEGER NOT NULL DEFAULT 0,
                email_verified INTEGER NOT NULL DEFAULT 0,
                first_name TEXT,
                last_name TEXT,
                email TEXT
            );

            CREATE TABLE IF NOT EXISTS audit_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                username TEXT,
                dag_id TEXT NOT NULL CHECK (length(trim(dag_id)) > 0),
                dag_run_id TEXT,
                operation TEXT NOT NULL,
                operation_time TEXT NOT NULL,
                details TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_audit_logs_user_id ON audit_logs(user_id);
            CREATE INDEX IF NOT EXISTS idx_audit_logs_dag_id ON audit_logs(dag_id);
            CREATE INDEX IF NOT EXISTS idx_audit_logs_operation_time
                ON audit_logs(operation, operation_time);
            CREATE INDEX IF NOT EXISTS idx_users_username ON users(username);
            CREATE INDEX IF NOT EXISTS idx_users_email ON users(email);
            """
        )
        self._conn.commit()

    def execute(
        self,
        query: str,
        params: _SqlParams,
    ) -> int:
        """Run a write statement and return the affected row count."""
        with self._lock:
            self._ensure_open()
            try:
                cursor = self._conn.execute(query, params)
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise StorageError("write_failed", f"Database write failed: {exc}") from exc
            return cursor.rowcount

    def _ensure_open(self) -> None:
        if self._closed:
            raise StorageError("closed", "Database connection is closed")

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._conn.close()
            self._closed = True

    def fetch_one(
        self,
        query: str,
        params: _SqlParams,
    ) -> sqlite3.Row | None:
        with self._lock:
            self._ensure_open()
            try:
                cur = self._conn.execute(query, params)
                return cur.fetchone()
            except sqlite3.Error as exc:
                raise StorageError("read_failed", f"Database read failed: {exc}") from exc

    def fetch_all(
        self,
        query: str,
        params: _SqlParams,
    ) -> list[sqlite3.Row]:
        with self._lock:
            self._ensure_open()
            try:
                cur = self._conn.execute(query, params)
                return cur.fetchall()
            except sqlite3.Error as exc:
                raise StorageError("read_failed", f"Database read failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    def insert_audit_log(self, record: AuditLogRecord) -> AuditLogRecord:
        """Persist a row, assigning ``id`` and ``operation_time``."""
        if not record.dag_id or not record.dag_id.strip():
            raise BadRequest("DAG ID cannot be empty")
        if record.operation is None:
            raise BadRequest("Audit operation is required")
        operation = Operation(record.operation)
        operation_time = local_now()

        with self._lock:
            self._ensure_open()
            try:
                cursor = self._conn.execute(
                    """
                    INSERT INTO audit_logs (
                        user_id, username, dag_id, dag_run_id, operation,
                        operation_time, details
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.subject_id,
                        record.username,
                        record.dag_id,
                        record.dag_run_id,
                        operation.value,
                        format_local_timestamp(operation_time),
                        record.details,
                    ),
                )
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise StorageError("write_failed", f"Failed to save audit log: {exc}") from exc

        record.id = cursor.lastrowid
        record.operation = operation
        record.operation_time = operation_time
        return record

    def _query_audit_logs(
        self,
        *,
        subject_id: str | None = None,
        username: str | None = None,
        dag_id: str | None = None,
        dag_run_id: str | None = None,
        operation: Operation | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[AuditLogRecord]:
        clauses: list[str] = []
        params: list[_SqlValue] = []
        if subject_id is not None:
            clauses.append("user_id = ?")
            params.append(subject_id)
        if username is not None:
            clauses.append("username = ?")
            params.append(username)
        if dag_id is not None:
            clauses.append("dag_id = ?")
            params.append(dag_id)
        if dag_run_id is not None:
            clauses.append("dag_run_id = ?")
            params.append(dag_run_id)
        if operation is not None:
            clauses.append("operation = ?")
            params.append(Operation(operation).value)
        if start is not None:
            clauses.append("operation_time >= ?")
            params.append(format_local_timestamp(start))
        if end is not None:
            clauses.append("operation_time <= ?")
            params.append(format_local_timestamp(end))

        query = f"SELECT {_AUDIT_COLUMNS} FROM audit_logs"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        if operation is not None or start is not None or end is not None:
            query += " ORDER BY operation_time DESC, id DESC"
        else:
            query += " ORDER BY id"
        return [_row_to_audit_log(row) for row in self.fetch_all(query, params)]

    def list_audit_logs(self) -> list[AuditLogRecord]:
        return self._query_audit_logs()

    def audit_logs_by_subject(self, subject_id: str) -> list[AuditLogRecord]:
        return self._query_audit_logs(subject_id=subject_id)

    def audit_logs_by_dag(self, dag_id: str) -> list[AuditLogRecord]:
        return self._query_audit_logs(dag_id=dag_id)

    def audit_logs_by_subject_and_dag(self, subject_id: str, dag_id: str) -> list[AuditLogRecord]:
        return self._query_audit_logs(subject_id=subject_id, dag_id=dag_id)

    def audit_logs_by_operation(
        self, operation: Operation, subject_id: str | None = None
    ) -> list[AuditLogRecord]:
        return self._query_audit_logs(operation=operation, subject_id=subject_id)

    def audit_logs_by_operation_and_dag(
        self, operation: Operation, dag_id: str, subject_id: str | None = None
    ) -> list[AuditLogRecord]:
        return self._query_audit_logs(operation=operation, dag_id=dag_id, subject_id=subject_id)

    def audit_logs_by_username(self, username: str) -> list[AuditLogRecord]:
        return self._query_audit_logs(username=username)

    def audit_logs_by_dag_run(self, dag_id: str, dag_run_id: str) -> list[AuditLogRecord]:
        return self._query_audit_logs(dag_id=dag_id, dag_run_id=dag_run_id)

    def audit_logs_between(self, start: datetime, end: datetime) -> list[AuditLogRecord]:
        return self._query_audit_logs(start=start, end=end)

    def count_by_operation(self, operation: Operation) -> int:
        row = self.fetch_one(
            "SELECT COUNT(*) AS total FROM audit_logs WHERE operation = ?",
            (Operation(operation).value,),
        )
        return int(row["total"]) if row else 0

    def count_by_subject_and_operation(self, subject_id: str, operation: Operation) -> int:
        row = self.fetch_one(
            "SELECT COUNT(*) AS total FROM audit_logs WHERE user_id = ? AND operation = ?",
            (subject_id, Operation(operation).value),
        )
        return int(row["total"]) if row else 0

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def insert_user(self, user: UserRecord) -> bool:
        """Insert a user unless the id is already present.

        Returns True when a row was written. An existing row is never touched.
        """
        inserted = self.execute(
            f"""
            INSERT OR IGNORE INTO users ({_USER_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                user.subject_id,
                user.created_at_external,
                user.username,
                int(user.enabled),
                int(user.totp_enabled),
                int(user.email_verified),
                user.display_name_first,
                user.display_name_last,
                user.email,
            ),
        )
        return inserted == 1

    def get_user(self, subject_id: str) -> UserRecord | None:
        row = self.fetch_one(f"SELECT {_USER_COLUMNS} FROM users WHERE id = ?", (subject_id,))
        if row is None:
            return None
        return _row_to_user(row)

    def user_exists(self, subject_id: str) -> bool:
        return self.fetch_one("SELECT 1 FROM users WHERE id = ?", (subject_id,)) is not None

    def find_user_by_username(self, username: str) -> UserRecord | None:
        row = self.fetch_one(
            f"SELECT {_USER_COLUMNS} FROM users WHERE username = ?", (username,)
        )
        return _row_to_user(row) if row else None

    def find_user_by_email(self, email: str) -> UserRecord | None:
        row = self.fetch_one(f"SELECT {_USER_COLUMNS} FROM users WHERE email = ?", (email,))
        return _row_to_user(row) if row else None

    def list_enabled_users(self) -> list[UserRecord]:
        rows = self.fetch_all(
            f"SELECT {_USER_COLUMNS} FROM users WHERE enabled = 1 ORDER BY username", ()
        )
        return [_row_to_user(row) for row in rows]

    def users_created_after(self, epoch_ms: int) -> list[UserRecord]:
        rows = self.fetch_all(
            f"SELECT {_USER_COLUMNS} FROM users WHERE created_timestamp > ? "
            "ORDER BY created_timestamp",
            (epoch_ms,),
        )
        return [_row_to_user(row) for row in rows]

    def count_users(self) -> int:
        row = self.fetch_one("SELECT COUNT(*) AS total FROM users", ())
        return int(row["total"]) if row else 0


def _row_to_audit_log(row: sqlite3.Row) -> AuditLogRecord:
    return AuditLogRecord(
        id=row["id"],
        subject_id=row["user_id"],
        username=row["username"],
        dag_id=row["dag_id"],
        dag_run_id=row["dag_run_id"],
        operation=Operation(row["operation"]),
        operation_time=parse_local_timestamp(row["operation_time"]),
        details=row["details"],
    )


def _row_to_user(row: sqlite3.Row) -> UserRecord:
    return UserRecord(
        subject_id=row["id"],
        created_at_external=row["created_timestamp"],
        username=row["username"],
        enabled=bool(row["enabled"]),
        totp_enabled=bool(row["totp"]),
        email_verified=bool(row["email_verified"]),
        display_name_first=row["first_name"],
        display_name_last=row["last_name"],
        email=row["email"],
    )
