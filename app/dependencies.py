from typing import TYPE_CHECKING

from fastapi import HTTPException, Request

if TYPE_CHECKING:
    from app.services.daily_aggregation import DailyAggregationService
    from app.services.poll_scheduler import PollSchedulerService
    from app.services.push_ingest import PushIngestService
    from app.vendors.registry import AdapterRegistry


def get_adapter_registry(request: Request) -> "AdapterRegistry":
    registry = getattr(request.app.state, "adapter_registry", None)
    if registry is None:
        raise HTTPException(status_code=503, detail="Adapter registry is not initialized")
    return registry


def get_poll_scheduler_service(request: Request) -> "PollSchedulerService":
    service = getattr(request.app.state, "poll_scheduler_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Poll scheduler service is not initialized")
    return service


def get_daily_aggregation_service(request: Request) -> "DailyAggregationService":
    service = getattr(request.app.state, "daily_aggregation_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Daily aggregation service is not initialized")
    return service


def get_push_ingest_service(request: Request) -> "PushIngestService":
    service = getattr(request.app.state, "push_ingest_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Push ingest service is not initialized")
    return service
