"""Data models for audit-trail and synchronized user records."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from airflow_gateway.utils.time import format_iso_millis


class Operation(str, enum.Enum):
    PAUSE = "PAUSE"
    UNPAUSE = "UNPAUSE"
    DELETE = "DELETE"
    TRIGGER = "TRIGGER"
    CLEAR = "CLEAR"
    UPDATE_STATE = "UPDATE_STATE"


@dataclass
class AuditLogRecord:
    subject_id: str
    username: str
    dag_id: str
    operation: Operation
    details: str
    dag_run_id: str | None = None
    id: int | None = None
    operation_time: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """JSON form, omitting unset values."""
        result: dict[str, Any] = {
            "id": self.id,
            "user_id": self.subject_id,
            "username": self.username,
            "dag_id": self.dag_id,
            "dag_run_id": self.dag_run_id,
            "operation": self.operation.value,
            "operation_time": (
                format_iso_millis(self.operation_time) if self.operation_time else None
            ),
            "details": self.details,
        }
        return {k: v for k, v in result.items() if v is not None}


@dataclass
class UserRecord:
    """A principal discovered in the IdP. Inserted once, never updated."""

    subject_id: str
    username: str
    enabled: bool = False
    email_verified: bool = False
    totp_enabled: bool = False
    email: str | None = None
    display_name_first: str | None = None
    display_name_last: str | None = None
    created_at_external: int | None = None
