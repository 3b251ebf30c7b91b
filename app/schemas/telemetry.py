from __future__ import annotations

from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


class SystemResponse(BaseModel):
    id: int
    vendor_type: str
    vendor_site_id: str
    display_name: str | None
    status: str
    timezone_offset_min: int
    last_poll_time: datetime | None


class PointResponse(BaseModel):
    point_index: int
    point_key: str
    point_path: str
    display_name: str
    path_stem: str | None
    metric_type: str
    metric_unit: str
    active: bool


class SeriesPointResponse(BaseModel):
    ts: datetime | date
    value: float | str | None


class SeriesResponse(BaseModel):
    path: str
    point_index: int
    display_name: str
    metric_unit: str
    interval: Literal["5m", "1d"]
    points: list[SeriesPointResponse] = Field(default_factory=list)


class SeriesListResponse(BaseModel):
    system_id: int
    interval: Literal["5m", "1d"]
    start: datetime
    end: datetime
    series: list[SeriesResponse] = Field(default_factory=list)


class LatestValueResponse(BaseModel):
    point_path: str
    point_index: int
    display_name: str
    value: float | None
    value_str: str | None
    metric_unit: str
    measurement_time: datetime
    received_time: datetime


class PollingStatusResponse(BaseModel):
    system_id: int
    last_poll_time: datetime | None
    last_success_time: datetime | None
    last_error_time: datetime | None
    last_error: str | None
    last_response: Any | None
    consecutive_errors: int
    total_polls: int
    successful_polls: int
    next_poll_time: datetime | None
    schedule_hints: dict[str, Any] = Field(default_factory=dict)


class SessionResponse(BaseModel):
    id: int
    system_id: int
    label: str | None
    cause: str
    started_at: datetime
    duration_ms: int | None
    successful: bool | None
    error_code: str | None
    error: str | None
    response: Any | None
    num_rows: int
    created_at: datetime
