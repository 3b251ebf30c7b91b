from __future__ import annotations

from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator


class AggregateRangeRequest(BaseModel):
    start: date
    end: date

    @model_validator(mode="after")
    def _check_order(self) -> "AggregateRangeRequest":
        if self.start > self.end:
            raise ValueError("start must not be after end")
        return self


class RegenerateRequest(BaseModel):
    days: int = Field(default=7, ge=1, le=366)
    system_id: int | None = None


class PollRequest(BaseModel):
    dry_run: bool = False
    cause: Literal["ADMIN", "USER", "USER-TEST"] = "ADMIN"


class DayOutcomeResponse(BaseModel):
    system_id: int
    day: date
    version: int | None = None
    error: str | None = None


class RangeReportResponse(BaseModel):
    succeeded: list[DayOutcomeResponse] = Field(default_factory=list)
    no_data: list[DayOutcomeResponse] = Field(default_factory=list)
    failed: list[DayOutcomeResponse] = Field(default_factory=list)


class DailyAggregateResponse(BaseModel):
    system_id: int
    day: date
    version: int
    interval_count: int
    counter_resets: list[str] = Field(default_factory=list)
    values: dict[str, float | int | None] = Field(default_factory=dict)


class DeleteRangeResponse(BaseModel):
    system_id: int
    deleted: int


class LatestValuesMaintenanceResponse(BaseModel):
    system_id: int
    action: Literal["clear", "rebuild"]
    rows: int


class PollOutcomeResponse(BaseModel):
    system_id: int
    vendor_type: str
    action: Literal["polled", "skipped", "error"]
    dry_run: bool
    reason: str | None
    error: str | None
    session_id: int | None
    readings_count: int
    rejected_count: int
    duration_ms: int
    next_poll_time: datetime | None
    readings: list[dict[str, Any]] = Field(default_factory=list)


class CrossSystemRefsResponse(BaseModel):
    table: str
    rows: int
    sample: list[dict[str, int]] = Field(default_factory=list)


class IntegrityReportResponse(BaseModel):
    findings: list[CrossSystemRefsResponse] = Field(default_factory=list)


class IntegrityRepairResponse(BaseModel):
    repaired: dict[str, int] = Field(default_factory=dict)


class HeartbeatResponse(BaseModel):
    started_at: datetime
    finished_at: datetime
    polled: int
    skipped: int
    errored: int
    results: list[PollOutcomeResponse] = Field(default_factory=list)
