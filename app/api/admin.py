from datetime import date
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.dependencies import (
    get_adapter_registry,
    get_daily_aggregation_service,
    get_poll_scheduler_service,
)
from app.repositories.daily_aggregates import DAILY_VALUE_COLUMNS, DailyAggregateRow
from app.repositories.latest_values import clear_latest_values, rebuild_latest_values
from app.repositories.systems import get_system
from app.schemas.admin import (
    AggregateRangeRequest,
    CrossSystemRefsResponse,
    DailyAggregateResponse,
    DeleteRangeResponse,
    HeartbeatResponse,
    IntegrityRepairResponse,
    IntegrityReportResponse,
    LatestValuesMaintenanceResponse,
    PollOutcomeResponse,
    PollRequest,
    RangeReportResponse,
    RegenerateRequest,
)
from app.services.daily_aggregation import DailyAggregationService, RangeReport
from app.services.integrity import find_cross_system_session_refs, repair_cross_system_session_refs
from app.services.poll_scheduler import PollSchedulerService, SystemPollOutcome
from app.vendors.registry import AdapterRegistry, UnknownVendorError

router = APIRouter(prefix="/api/admin", tags=["admin"])


def _report_response(report: RangeReport) -> RangeReportResponse:
    return RangeReportResponse.model_validate(report.as_dict())


def _poll_response(outcome: SystemPollOutcome, *, dry_run: bool) -> PollOutcomeResponse:
    return PollOutcomeResponse(
        system_id=outcome.system_id,
        vendor_type=outcome.vendor_type,
        action=outcome.action,
        dry_run=dry_run,
        reason=outcome.reason,
        error=outcome.error,
        session_id=outcome.session_id,
        readings_count=outcome.readings_count,
        rejected_count=outcome.rejected_count,
        duration_ms=outcome.duration_ms,
        next_poll_time=outcome.next_poll_time,
        readings=outcome.readings,
    )


def _daily_response(row: DailyAggregateRow) -> DailyAggregateResponse:
    values = {name: getattr(row, name) for name in DAILY_VALUE_COLUMNS}
    return DailyAggregateResponse(
        system_id=row.system_id,
        day=row.day,
        version=row.version,
        interval_count=row.interval_count,
        counter_resets=row.counter_resets,
        values=values,
    )


@router.get("/vendors")
def get_vendors(registry: AdapterRegistry = Depends(get_adapter_registry)) -> list[dict[str, Any]]:
    return registry.describe()


@router.post("/systems/{system_id}/aggregate/{day}", response_model=DailyAggregateResponse)
def post_aggregate_day(
    system_id: int,
    day: date,
    service: DailyAggregationService = Depends(get_daily_aggregation_service),
) -> DailyAggregateResponse:
    try:
        row = service.aggregate_day(system_id, day)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if row is None:
        raise HTTPException(status_code=404, detail=f"No 5m data for system {system_id} on {day.isoformat()}")
    return _daily_response(row)


@router.post("/systems/{system_id}/aggregate", response_model=RangeReportResponse)
def post_aggregate_range(
    system_id: int,
    payload: AggregateRangeRequest,
    service: DailyAggregationService = Depends(get_daily_aggregation_service),
) -> RangeReportResponse:
    try:
        report = service.aggregate_range(system_id, payload.start, payload.end)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _report_response(report)


@router.delete("/systems/{system_id}/daily", response_model=DeleteRangeResponse)
def delete_daily(
    system_id: int,
    start: date | None = Query(default=None),
    end: date | None = Query(default=None),
    db: Session = Depends(get_db),
    service: DailyAggregationService = Depends(get_daily_aggregation_service),
) -> DeleteRangeResponse:
    if get_system(db, system_id=system_id) is None:
        raise HTTPException(status_code=404, detail=f"System {system_id} not found")
    try:
        deleted = service.delete_range(system_id, start, end)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return DeleteRangeResponse(system_id=system_id, deleted=deleted)


@router.post("/aggregate/regenerate-date/{day}", response_model=RangeReportResponse)
def post_regenerate_date(
    day: date,
    service: DailyAggregationService = Depends(get_daily_aggregation_service),
) -> RangeReportResponse:
    return _report_response(service.regenerate_date(day))


@router.post("/aggregate/regenerate", response_model=RangeReportResponse)
def post_regenerate_last_days(
    payload: RegenerateRequest,
    service: DailyAggregationService = Depends(get_daily_aggregation_service),
) -> RangeReportResponse:
    try:
        report = service.regenerate_last_n_days(payload.days, payload.system_id)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _report_response(report)


@router.post("/aggregate/missing", response_model=RangeReportResponse)
def post_aggregate_missing(
    system_id: int | None = Query(default=None),
    service: DailyAggregationService = Depends(get_daily_aggregation_service),
) -> RangeReportResponse:
    try:
        report = service.aggregate_missing_days(system_id)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return _report_response(report)


@router.post("/systems/{system_id}/latest/clear", response_model=LatestValuesMaintenanceResponse)
def post_clear_latest(system_id: int, db: Session = Depends(get_db)) -> LatestValuesMaintenanceResponse:
    if get_system(db, system_id=system_id) is None:
        raise HTTPException(status_code=404, detail=f"System {system_id} not found")
    rows = clear_latest_values(db, system_id=system_id)
    db.commit()
    return LatestValuesMaintenanceResponse(system_id=system_id, action="clear", rows=rows)


@router.post("/systems/{system_id}/latest/rebuild", response_model=LatestValuesMaintenanceResponse)
def post_rebuild_latest(system_id: int, db: Session = Depends(get_db)) -> LatestValuesMaintenanceResponse:
    if get_system(db, system_id=system_id) is None:
        raise HTTPException(status_code=404, detail=f"System {system_id} not found")
    rows = rebuild_latest_values(db, system_id=system_id)
    db.commit()
    return LatestValuesMaintenanceResponse(system_id=system_id, action="rebuild", rows=rows)


@router.post("/systems/{system_id}/poll", response_model=PollOutcomeResponse)
def post_poll_system(
    system_id: int,
    payload: PollRequest | None = None,
    service: PollSchedulerService = Depends(get_poll_scheduler_service),
) -> PollOutcomeResponse:
    request = payload or PollRequest()
    try:
        outcome = service.poll_system(system_id, cause=request.cause, dry_run=request.dry_run)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _poll_response(outcome, dry_run=request.dry_run)


@router.post("/systems/{system_id}/test-connection")
def post_test_connection(
    system_id: int,
    service: PollSchedulerService = Depends(get_poll_scheduler_service),
) -> dict[str, Any]:
    try:
        result = service.test_connection(system_id)
    except UnknownVendorError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"success": result.success, "error": result.error, "details": result.details}


@router.post("/heartbeat", response_model=HeartbeatResponse)
def post_heartbeat(service: PollSchedulerService = Depends(get_poll_scheduler_service)) -> HeartbeatResponse:
    summary = service.run_heartbeat_once()
    return HeartbeatResponse(
        started_at=summary.started_at,
        finished_at=summary.finished_at,
        polled=summary.polled,
        skipped=summary.skipped,
        errored=summary.errored,
        results=[_poll_response(item, dry_run=False) for item in summary.results],
    )


@router.get("/integrity/session-refs", response_model=IntegrityReportResponse)
def get_integrity_report(db: Session = Depends(get_db)) -> IntegrityReportResponse:
    findings = find_cross_system_session_refs(db)
    return IntegrityReportResponse(
        findings=[
            CrossSystemRefsResponse(table=item.table, rows=item.rows, sample=item.sample)
            for item in findings
        ]
    )


@router.post("/integrity/session-refs/repair", response_model=IntegrityRepairResponse)
def post_integrity_repair(db: Session = Depends(get_db)) -> IntegrityRepairResponse:
    repaired = repair_cross_system_session_refs(db)
    db.commit()
    return IntegrityRepairResponse(repaired=repaired)
