import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException
from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.dependencies import get_adapter_registry, get_push_ingest_service
from app.repositories.systems import get_system_by_vendor_site_id
from app.schemas.push import FroniusPushRequest, FroniusPushResponse
from app.services.ingestion import SessionSystemMismatchError
from app.services.push_ingest import PushIngestService
from app.vendors.fronius import FroniusAdapter, parse_push_timestamp
from app.vendors.registry import AdapterRegistry

router = APIRouter(prefix="/api/push", tags=["push"])
logger = logging.getLogger("app.push_api")


@router.get("/fronius")
def get_fronius_info() -> dict[str, Any]:
    return {
        "status": "ready",
        "required_fields": {
            "always": ["apiKey", "action"],
            "for_store_action": ["timestamp", "sequence"],
        },
        "note": "apiKey is the site identifier of the system. Use action=test to check it, action=store to save data.",
    }


@router.post("/fronius", response_model=FroniusPushResponse)
def post_fronius_push(
    body: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    registry: AdapterRegistry = Depends(get_adapter_registry),
    service: PushIngestService = Depends(get_push_ingest_service),
) -> FroniusPushResponse:
    try:
        payload = FroniusPushRequest.model_validate(body)
    except ValidationError as exc:
        messages = [f"{'.'.join(str(part) for part in error['loc']) or '$'}: {error['msg']}" for error in exc.errors()]
        raise HTTPException(status_code=400, detail="; ".join(messages)) from exc

    system = get_system_by_vendor_site_id(db, vendor_type="fronius", vendor_site_id=payload.apiKey)
    if system is None:
        raise HTTPException(status_code=404, detail="System not found")
    if system.status != "active":
        raise HTTPException(status_code=400, detail=f"System {system.id} is {system.status}")

    adapter = registry.get(system.vendor_type)
    if not isinstance(adapter, FroniusAdapter):
        raise HTTPException(status_code=400, detail=f"System {system.id} does not accept Fronius pushes")

    if payload.action == "test":
        session_id = service.record_test(system, response={"action": "test", "apiKey": payload.apiKey})
        return FroniusPushResponse(success=True, action="test", system_id=system.id, session_id=session_id)

    try:
        measurement_time = parse_push_timestamp(payload.timestamp or "")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid timestamp: {payload.timestamp}") from exc

    try:
        result = service.ingest_push(
            system=system,
            adapter=adapter,
            payload=payload.model_dump(exclude_none=True),
            label=payload.sequence or "",
            measurement_time=measurement_time,
        )
    except SessionSystemMismatchError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc

    if result.duplicate:
        raise HTTPException(
            status_code=409,
            detail=f"Duplicate sequence {payload.sequence} already stored in session {result.session_id}",
        )
    if result.inserted == 0 and result.rejected > 0:
        raise HTTPException(
            status_code=409,
            detail=f"Duplicate timestamp - data already exists for {measurement_time.isoformat()}",
        )
    logger.info(
        "fronius push stored system_id=%s session_id=%s inserted=%s",
        system.id,
        result.session_id,
        result.inserted,
    )
    return FroniusPushResponse(
        success=True,
        action="store",
        system_id=system.id,
        session_id=result.session_id,
        inserted=result.inserted,
        rejected=result.rejected,
        measurement_time=measurement_time,
    )
