from datetime import date, datetime, timedelta, timezone
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from app.db.models import SESSION_CAUSES
from app.db.session import get_db
from app.repositories.daily_aggregates import DAILY_VALUE_COLUMNS, list_daily_aggregates
from app.repositories.latest_values import get_latest_values
from app.repositories.points import list_points
from app.repositories.polling_status import get_polling_status
from app.repositories.series import get_filtered_series, split_patterns
from app.repositories.sessions import SessionSnapshot, get_session, query_sessions
from app.repositories.systems import SystemRecord, get_system, list_active_systems
from app.schemas.admin import DailyAggregateResponse
from app.schemas.telemetry import (
    LatestValueResponse,
    PointResponse,
    PollingStatusResponse,
    SeriesListResponse,
    SeriesPointResponse,
    SeriesResponse,
    SessionResponse,
    SystemResponse,
)

MAX_SERIES_SPAN = {"5m": timedelta(days=31), "1d": timedelta(days=3660)}
DEFAULT_SERIES_SPAN = {"5m": timedelta(hours=24), "1d": timedelta(days=30)}

router = APIRouter(prefix="/api", tags=["systems"])


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _require_system(db: Session, system_id: int) -> SystemRecord:
    system = get_system(db, system_id=system_id)
    if system is None:
        raise HTTPException(status_code=404, detail=f"System {system_id} not found")
    return system


def _system_response(system: SystemRecord) -> SystemResponse:
    return SystemResponse(
        id=system.id,
        vendor_type=system.vendor_type,
        vendor_site_id=system.vendor_site_id,
        display_name=system.display_name,
        status=system.status,
        timezone_offset_min=system.timezone_offset_min,
        last_poll_time=system.last_poll_time,
    )


def _session_response(snapshot: SessionSnapshot) -> SessionResponse:
    return SessionResponse(
        id=snapshot.id,
        system_id=snapshot.system_id,
        label=snapshot.label,
        cause=snapshot.cause,
        started_at=snapshot.started_at,
        duration_ms=snapshot.duration_ms,
        successful=snapshot.successful,
        error_code=snapshot.error_code,
        error=snapshot.error,
        response=snapshot.response,
        num_rows=snapshot.num_rows,
        created_at=snapshot.created_at,
    )


@router.get("/systems", response_model=list[SystemResponse])
def get_systems(db: Session = Depends(get_db)) -> list[SystemResponse]:
    return [_system_response(system) for system in list_active_systems(db)]


@router.get("/systems/{system_id}", response_model=SystemResponse)
def get_system_detail(system_id: int, db: Session = Depends(get_db)) -> SystemResponse:
    return _system_response(_require_system(db, system_id))


@router.get("/systems/{system_id}/points", response_model=list[PointResponse])
def get_system_points(
    system_id: int,
    active_only: bool = Query(default=False),
    db: Session = Depends(get_db),
) -> list[PointResponse]:
    _require_system(db, system_id)
    return [
        PointResponse(
            point_index=point.point_index,
            point_key=point.point_key,
            point_path=point.point_path,
            display_name=point.display_name,
            path_stem=point.path_stem,
            metric_type=point.metric_type,
            metric_unit=point.metric_unit,
            active=point.active,
        )
        for point in list_points(db, system_id=system_id, active_only=active_only)
    ]


@router.get("/systems/{system_id}/series", response_model=SeriesListResponse)
def get_system_series(
    system_id: int,
    interval: Literal["5m", "1d"] = Query(default="5m"),
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
    series: str | None = Query(default=None, description="Comma separated glob patterns"),
    db: Session = Depends(get_db),
) -> SeriesListResponse:
    system = _require_system(db, system_id)
    end_utc = _to_utc(end) if end is not None else datetime.now(timezone.utc)
    start_utc = _to_utc(start) if start is not None else end_utc - DEFAULT_SERIES_SPAN[interval]
    if start_utc >= end_utc:
        raise HTTPException(status_code=400, detail="start must be before end")
    if end_utc - start_utc > MAX_SERIES_SPAN[interval]:
        raise HTTPException(status_code=400, detail=f"range too large for interval {interval}")

    results = get_filtered_series(
        db,
        system_id=system.id,
        timezone_offset_min=system.timezone_offset_min,
        start=start_utc,
        end=end_utc,
        interval=interval,
        patterns=split_patterns(series) if series else None,
    )
    return SeriesListResponse(
        system_id=system.id,
        interval=interval,
        start=start_utc,
        end=end_utc,
        series=[
            SeriesResponse(
                path=item.path,
                point_index=item.point_index,
                display_name=item.display_name,
                metric_unit=item.metric_unit,
                interval=item.interval,
                points=[SeriesPointResponse(ts=point.ts, value=point.value) for point in item.points],
            )
            for item in results
        ],
    )


@router.get("/systems/{system_id}/latest", response_model=list[LatestValueResponse])
def get_system_latest(system_id: int, db: Session = Depends(get_db)) -> list[LatestValueResponse]:
    _require_system(db, system_id)
    return [
        LatestValueResponse(
            point_path=entry.point_path,
            point_index=entry.point_index,
            display_name=entry.display_name,
            value=entry.value,
            value_str=entry.value_str,
            metric_unit=entry.metric_unit,
            measurement_time=entry.measurement_time,
            received_time=entry.received_time,
        )
        for entry in get_latest_values(db, system_id=system_id).values()
    ]


@router.get("/systems/{system_id}/polling-status", response_model=PollingStatusResponse)
def get_system_polling_status(system_id: int, db: Session = Depends(get_db)) -> PollingStatusResponse:
    _require_system(db, system_id)
    snapshot = get_polling_status(db, system_id=system_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail=f"System {system_id} has not been polled yet")
    return PollingStatusResponse(
        system_id=snapshot.system_id,
        last_poll_time=snapshot.last_poll_time,
        last_success_time=snapshot.last_success_time,
        last_error_time=snapshot.last_error_time,
        last_error=snapshot.last_error,
        last_response=snapshot.last_response,
        consecutive_errors=snapshot.consecutive_errors,
        total_polls=snapshot.total_polls,
        successful_polls=snapshot.successful_polls,
        next_poll_time=snapshot.next_poll_time,
        schedule_hints=snapshot.schedule_hints,
    )


@router.get("/systems/{system_id}/sessions", response_model=list[SessionResponse])
def get_system_sessions(
    system_id: int,
    cause: str | None = Query(default=None),
    successful: bool | None = Query(default=None),
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
) -> list[SessionResponse]:
    _require_system(db, system_id)
    if cause is not None and cause not in SESSION_CAUSES:
        raise HTTPException(status_code=400, detail=f"Unknown session cause '{cause}'")
    sessions = query_sessions(
        db,
        system_id=system_id,
        cause=cause,
        successful=successful,
        start=_to_utc(start) if start is not None else None,
        end=_to_utc(end) if end is not None else None,
        limit=limit,
    )
    return [_session_response(item) for item in sessions]


@router.get("/sessions/{session_id}", response_model=SessionResponse)
def get_session_detail(session_id: int, db: Session = Depends(get_db)) -> SessionResponse:
    snapshot = get_session(db, session_id=session_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return _session_response(snapshot)


@router.get("/systems/{system_id}/daily", response_model=list[DailyAggregateResponse])
def get_system_daily(
    system_id: int,
    start: date | None = Query(default=None),
    end: date | None = Query(default=None),
    db: Session = Depends(get_db),
) -> list[DailyAggregateResponse]:
    _require_system(db, system_id)
    if start is not None and end is not None and start > end:
        raise HTTPException(status_code=400, detail="start must not be after end")
    rows = list_daily_aggregates(db, system_id=system_id, start=start, end=end)
    return [
        DailyAggregateResponse(
            system_id=row.system_id,
            day=row.day,
            version=row.version,
            interval_count=row.interval_count,
            counter_resets=list(row.counter_resets or []),
            values={name: getattr(row, name) for name in DAILY_VALUE_COLUMNS},
        )
        for row in rows
    ]
