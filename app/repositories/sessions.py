from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import text
from sqlalchemy.orm import Session


class SessionAlreadyFinalizedError(RuntimeError):
    def __init__(self, session_id: int):
        self.session_id = session_id
        super().__init__(f"session {session_id} already has a recorded outcome")


@dataclass(frozen=True)
class SessionInfo:
    id: int
    system_id: int
    cause: str
    started_at: datetime
    label: str | None = None


@dataclass(frozen=True)
class SessionSnapshot:
    id: int
    system_id: int
    label: str | None
    cause: str
    started_at: datetime
    duration_ms: int | None
    successful: bool | None
    error_code: str | None
    error: str | None
    response: dict[str, Any] | list[Any] | None
    num_rows: int
    created_at: datetime


_SESSION_COLUMNS = """
    id, system_id, label, cause, started_at, duration_ms, successful,
    error_code, error, response, num_rows, created_at
"""


def create_session(
    db: Session,
    *,
    system_id: int,
    cause: str,
    started_at: datetime,
    label: str | None = None,
) -> SessionInfo:
    row = db.execute(
        text(
            """
            INSERT INTO sessions (system_id, label, cause, started_at, num_rows, created_at)
            VALUES (:system_id, :label, :cause, :started_at, 0, now())
            RETURNING id
            """
        ),
        {
            "system_id": system_id,
            "label": label,
            "cause": cause,
            "started_at": started_at,
        },
    ).first()
    if row is None:
        raise RuntimeError(f"failed to create session for system {system_id}")
    return SessionInfo(
        id=int(row[0]),
        system_id=system_id,
        cause=cause,
        started_at=started_at,
        label=label,
    )


def update_session_result(
    db: Session,
    *,
    session_id: int,
    duration_ms: int,
    successful: bool,
    error_code: str | None = None,
    error: str | None = None,
    response: dict[str, Any] | list[Any] | None = None,
    num_rows: int = 0,
) -> None:
    result = db.execute(
        text(
            """
            UPDATE sessions
            SET duration_ms = :duration_ms,
                successful = :successful,
                error_code = :error_code,
                error = :error,
                response = CAST(:response AS JSONB),
                num_rows = :num_rows
            WHERE id = :session_id AND successful IS NULL
            """
        ),
        {
            "session_id": session_id,
            "duration_ms": max(0, int(duration_ms)),
            "successful": successful,
            "error_code": error_code,
            "error": error,
            "response": _json_or_none(response),
            "num_rows": max(0, int(num_rows)),
        },
    )
    if (result.rowcount or 0) == 0:
        raise SessionAlreadyFinalizedError(session_id)


def record_session(
    db: Session,
    *,
    system_id: int,
    cause: str,
    started_at: datetime,
    duration_ms: int,
    successful: bool,
    label: str | None = None,
    error_code: str | None = None,
    error: str | None = None,
    response: dict[str, Any] | list[Any] | None = None,
    num_rows: int = 0,
) -> int:
    row = db.execute(
        text(
            """
            INSERT INTO sessions
                (system_id, label, cause, started_at, duration_ms, successful,
                 error_code, error, response, num_rows, created_at)
            VALUES
                (:system_id, :label, :cause, :started_at, :duration_ms, :successful,
                 :error_code, :error, CAST(:response AS JSONB), :num_rows, now())
            RETURNING id
            """
        ),
        {
            "system_id": system_id,
            "label": label,
            "cause": cause,
            "started_at": started_at,
            "duration_ms": max(0, int(duration_ms)),
            "successful": successful,
            "error_code": error_code,
            "error": error,
            "response": _json_or_none(response),
            "num_rows": max(0, int(num_rows)),
        },
    ).first()
    if row is None:
        raise RuntimeError(f"failed to record session for system {system_id}")
    return int(row[0])


def get_session(db: Session, *, session_id: int) -> SessionSnapshot | None:
    row = db.execute(
        text(f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE id = :session_id"),
        {"session_id": session_id},
    ).mappings().first()
    return _row_to_snapshot(row) if row is not None else None


def get_session_by_label(db: Session, *, system_id: int, label: str) -> SessionSnapshot | None:
    row = db.execute(
        text(
            f"""
            SELECT {_SESSION_COLUMNS}
            FROM sessions
            WHERE system_id = :system_id AND label = :label
            ORDER BY (successful IS TRUE) DESC, id DESC
            LIMIT 1
            """
        ),
        {"system_id": system_id, "label": label},
    ).mappings().first()
    return _row_to_snapshot(row) if row is not None else None


def query_sessions(
    db: Session,
    *,
    system_id: int | None = None,
    cause: str | None = None,
    successful: bool | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int = 100,
) -> list[SessionSnapshot]:
    clauses: list[str] = []
    params: dict[str, Any] = {"limit": max(1, limit)}
    if system_id is not None:
        clauses.append("system_id = :system_id")
        params["system_id"] = system_id
    if cause is not None:
        clauses.append("cause = :cause")
        params["cause"] = cause
    if successful is not None:
        clauses.append("successful = :successful")
        params["successful"] = successful
    if start is not None:
        clauses.append("started_at >= :start")
        params["start"] = start
    if end is not None:
        clauses.append("started_at < :end")
        params["end"] = end
    where_sql = f"WHERE {' AND '.join(clauses)}" if clauses else ""

    rows = db.execute(
        text(
            f"""
            SELECT {_SESSION_COLUMNS}
            FROM sessions
            {where_sql}
            ORDER BY id DESC
            LIMIT :limit
            """
        ),
        params,
    ).mappings()
    return [_row_to_snapshot(row) for row in rows]


def _row_to_snapshot(row: Any) -> SessionSnapshot:
    return SessionSnapshot(
        id=int(row["id"]),
        system_id=int(row["system_id"]),
        label=row.get("label"),
        cause=str(row["cause"]),
        started_at=row["started_at"],
        duration_ms=row.get("duration_ms"),
        successful=row.get("successful"),
        error_code=row.get("error_code"),
        error=row.get("error"),
        response=row.get("response"),
        num_rows=int(row.get("num_rows") or 0),
        created_at=row["created_at"],
    )


def _json_or_none(value: dict | list | None) -> str | None:
    if value is None:
        return None
    return json.dumps(value, separators=(",", ":"), ensure_ascii=True, default=str)
