from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import text
from sqlalchemy.orm import Session

from app.db.models import PollingStatus


@dataclass(frozen=True)
class PollingStatusSnapshot:
    system_id: int
    last_poll_time: datetime | None
    last_success_time: datetime | None
    last_error_time: datetime | None
    last_error: str | None
    last_response: dict[str, Any] | list[Any] | None
    consecutive_errors: int
    total_polls: int
    successful_polls: int
    next_poll_time: datetime | None
    schedule_hints: dict[str, Any] = field(default_factory=dict)
    updated_at: datetime | None = None


def get_polling_status(db: Session, *, system_id: int) -> PollingStatusSnapshot | None:
    status = db.get(PollingStatus, system_id)
    if status is None:
        return None
    return PollingStatusSnapshot(
        system_id=status.system_id,
        last_poll_time=status.last_poll_time,
        last_success_time=status.last_success_time,
        last_error_time=status.last_error_time,
        last_error=status.last_error,
        last_response=status.last_response,
        consecutive_errors=status.consecutive_errors,
        total_polls=status.total_polls,
        successful_polls=status.successful_polls,
        next_poll_time=status.next_poll_time,
        schedule_hints=dict(status.schedule_hints or {}),
        updated_at=status.updated_at,
    )


def record_poll_success(
    db: Session,
    *,
    system_id: int,
    at: datetime,
    response: dict[str, Any] | list[Any] | None,
    next_poll_time: datetime | None = None,
    schedule_hints: dict[str, Any] | None = None,
) -> None:
    db.execute(
        text(
            """
            INSERT INTO polling_status
                (system_id, last_poll_time, last_success_time, last_response, consecutive_errors,
                 total_polls, successful_polls, next_poll_time, schedule_hints, updated_at)
            VALUES
                (:system_id, :at, :at, CAST(:response AS JSONB), 0,
                 1, 1, :next_poll_time, CAST(:schedule_hints AS JSONB), now())
            ON CONFLICT (system_id)
            DO UPDATE SET
                last_poll_time = EXCLUDED.last_poll_time,
                last_success_time = EXCLUDED.last_success_time,
                last_response = EXCLUDED.last_response,
                consecutive_errors = 0,
                total_polls = polling_status.total_polls + 1,
                successful_polls = polling_status.successful_polls + 1,
                next_poll_time = EXCLUDED.next_poll_time,
                schedule_hints = polling_status.schedule_hints || EXCLUDED.schedule_hints,
                updated_at = now()
            """
        ),
        {
            "system_id": system_id,
            "at": at,
            "response": _json_or_none(response),
            "next_poll_time": next_poll_time,
            "schedule_hints": json.dumps(schedule_hints or {}),
        },
    )


def record_poll_error(
    db: Session,
    *,
    system_id: int,
    at: datetime,
    error: str,
    response: dict[str, Any] | list[Any] | None = None,
) -> None:
    db.execute(
        text(
            """
            INSERT INTO polling_status
                (system_id, last_poll_time, last_error_time, last_error, last_response,
                 consecutive_errors, total_polls, successful_polls, schedule_hints, updated_at)
            VALUES
                (:system_id, :at, :at, :error, CAST(:response AS JSONB),
                 1, 1, 0, '{}'::jsonb, now())
            ON CONFLICT (system_id)
            DO UPDATE SET
                last_poll_time = EXCLUDED.last_poll_time,
                last_error_time = EXCLUDED.last_error_time,
                last_error = EXCLUDED.last_error,
                last_response = COALESCE(EXCLUDED.last_response, polling_status.last_response),
                consecutive_errors = polling_status.consecutive_errors + 1,
                total_polls = polling_status.total_polls + 1,
                updated_at = now()
            """
        ),
        {
            "system_id": system_id,
            "at": at,
            "error": error,
            "response": _json_or_none(response),
        },
    )


def record_poll_attempt(
    db: Session,
    *,
    system_id: int,
    at: datetime,
    response: dict[str, Any] | list[Any] | None = None,
    next_poll_time: datetime | None = None,
    schedule_hints: dict[str, Any] | None = None,
) -> None:
    """Vendor was contacted but returned nothing to store, e.g. a vehicle that stayed asleep."""
    db.execute(
        text(
            """
            INSERT INTO polling_status
                (system_id, last_poll_time, last_response, consecutive_errors,
                 total_polls, successful_polls, next_poll_time, schedule_hints, updated_at)
            VALUES
                (:system_id, :at, CAST(:response AS JSONB), 0,
                 1, 0, :next_poll_time, CAST(:schedule_hints AS JSONB), now())
            ON CONFLICT (system_id)
            DO UPDATE SET
                last_poll_time = EXCLUDED.last_poll_time,
                last_response = COALESCE(EXCLUDED.last_response, polling_status.last_response),
                total_polls = polling_status.total_polls + 1,
                next_poll_time = EXCLUDED.next_poll_time,
                schedule_hints = polling_status.schedule_hints || EXCLUDED.schedule_hints,
                updated_at = now()
            """
        ),
        {
            "system_id": system_id,
            "at": at,
            "response": _json_or_none(response),
            "next_poll_time": next_poll_time,
            "schedule_hints": json.dumps(schedule_hints or {}),
        },
    )


def record_poll_skipped(
    db: Session,
    *,
    system_id: int,
    next_poll_time: datetime | None,
) -> None:
    db.execute(
        text(
            """
            INSERT INTO polling_status (system_id, next_poll_time, schedule_hints, updated_at)
            VALUES (:system_id, :next_poll_time, '{}'::jsonb, now())
            ON CONFLICT (system_id)
            DO UPDATE SET
                next_poll_time = EXCLUDED.next_poll_time,
                updated_at = now()
            """
        ),
        {"system_id": system_id, "next_poll_time": next_poll_time},
    )


def _json_or_none(value: dict | list | None) -> str | None:
    if value is None:
        return None
    return json.dumps(value, separators=(",", ":"), ensure_ascii=True, default=str)
