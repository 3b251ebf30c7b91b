from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class FroniusPushRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    apiKey: str = Field(min_length=1, max_length=128)
    action: Literal["test", "store"]
    timestamp: str | None = None
    sequence: str | None = Field(default=None, max_length=128)

    solarW: float | None = None
    solarLocalW: float | None = None
    solarRemoteW: float | None = None
    loadW: float | None = None
    batteryW: float | None = None
    gridW: float | None = None
    batterySOC: float | None = None
    faultCode: str | int | None = None
    faultTimestamp: str | int | None = None
    generatorStatus: bool | int | None = None
    solarWhInterval: float | None = None
    loadWhInterval: float | None = None
    batteryInWhInterval: float | None = None
    batteryOutWhInterval: float | None = None
    gridInWhInterval: float | None = None
    gridOutWhInterval: float | None = None

    @field_validator("apiKey", "timestamp", "sequence", mode="before")
    @classmethod
    def _trim_text(cls, value: str | None) -> str | None:
        if value is None or not isinstance(value, str):
            return value
        trimmed = value.strip()
        return trimmed or None

    @model_validator(mode="after")
    def _check_store_fields(self) -> "FroniusPushRequest":
        if self.action == "store":
            if not self.timestamp:
                raise ValueError("timestamp is required for store action")
            if not self.sequence:
                raise ValueError("sequence is required for store action")
        return self


class FroniusPushResponse(BaseModel):
    success: bool
    action: Literal["test", "store"]
    system_id: int
    session_id: int | None = None
    duplicate: bool = False
    inserted: int = 0
    rejected: int = 0
    measurement_time: datetime | None = None
