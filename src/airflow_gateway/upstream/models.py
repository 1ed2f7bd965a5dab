"""Request bodies accepted by the gateway and forwarded to Airflow."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from airflow_gateway.utils.time import format_utc_seconds


class _Body(BaseModel):
    model_config = ConfigDict(extra="ignore")


class DagUpdate(_Body):
    is_paused: bool | None = Field(default=None)

    def to_upstream(self) -> dict[str, Any]:
        if self.is_paused is None:
            return {}
        return {"is_paused": self.is_paused}


class DagRunCreate(_Body):
    """Trigger payload. ``logical_date`` and ``execution_date`` mirror each other."""

    dag_run_id: str | None = Field(default=None, min_length=1)
    logical_date: datetime | None = Field(default=None)
    execution_date: datetime | None = Field(default=None)
    data_interval_start: datetime | None = Field(default=None)
    data_interval_end: datetime | None = Field(default=None)
    conf: dict[str, Any] | None = Field(default=None)
    note: str | None = Field(default=None)

    @model_validator(mode="after")
    def _mirror_dates(self) -> "DagRunCreate":
        if self.logical_date is not None:
            self.execution_date = self.logical_date
        elif self.execution_date is not None:
            self.logical_date = self.execution_date
        return self

    @property
    def logical_date_text(self) -> str | None:
        return format_utc_seconds(self.logical_date) if self.logical_date else None

    def to_upstream(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "dag_run_id": self.dag_run_id,
            "logical_date": self.logical_date_text,
            "execution_date": (
                format_utc_seconds(self.execution_date) if self.execution_date else None
            ),
            "data_interval_start": (
                format_utc_seconds(self.data_interval_start) if self.data_interval_start else None
            ),
            "data_interval_end": (
                format_utc_seconds(self.data_interval_end) if self.data_interval_end else None
            ),
            "conf": self.conf,
            "note": self.note,
        }
        return {k: v for k, v in body.items() if v is not None}


class DagRunStateUpdate(_Body):
    state: Literal["queued", "success", "failed"]

    def to_upstream(self) -> dict[str, Any]:
        return {"state": self.state}


class DagRunClear(_Body):
    dry_run: bool = Field(default=False)

    def to_upstream(self) -> dict[str, Any]:
        return {"dry_run": self.dry_run}


class DagRunNoteUpdate(_Body):
    note: str

    def to_upstream(self) -> dict[str, Any]:
        return {"note": self.note}
