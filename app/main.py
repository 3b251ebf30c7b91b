from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, Request
from sqlalchemy.orm import Session

from app.api.admin import router as admin_router
from app.api.push import router as push_router
from app.api.systems import router as systems_router
from app.core.config import Settings, get_settings
from app.core.logging import configure_logging
from app.db.session import SessionLocal, check_db_connection, get_db
from app.services.credentials import FileCredentialsProvider
from app.services.daily_aggregation import DailyAggregationService
from app.services.ingestion import ReadingIngestionService
from app.services.poll_scheduler import PollSchedulerService
from app.services.push_ingest import PushIngestService
from app.vendors.registry import build_adapter_registry


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    settings = get_settings()
    ingestion_service = ReadingIngestionService(session_factory=SessionLocal)
    adapter_registry = build_adapter_registry(settings=settings, sink=ingestion_service)
    credentials_provider = FileCredentialsProvider(path=settings.credentials_file)
    poll_scheduler_service = PollSchedulerService(
        settings=settings,
        session_factory=SessionLocal,
        registry=adapter_registry,
        credentials=credentials_provider,
    )
    daily_aggregation_service = DailyAggregationService(
        settings=settings,
        session_factory=SessionLocal,
    )
    push_ingest_service = PushIngestService(
        session_factory=SessionLocal,
        ingestion=ingestion_service,
    )

    app.state.settings = settings
    app.state.ingestion_service = ingestion_service
    app.state.adapter_registry = adapter_registry
    app.state.poll_scheduler_service = poll_scheduler_service
    app.state.daily_aggregation_service = daily_aggregation_service
    app.state.push_ingest_service = push_ingest_service

    poll_scheduler_service.start()
    daily_aggregation_service.start()
    try:
        yield
    finally:
        daily_aggregation_service.stop()
        poll_scheduler_service.stop()


app = FastAPI(title="Telemetry Core Backend", lifespan=lifespan)
app.include_router(systems_router)
app.include_router(admin_router)
app.include_router(push_router)


@app.get("/health")
def health():
    return {"status": "ok", "service": "backend"}


@app.get("/status")
def status(request: Request, db: Session = Depends(get_db)):
    db_ok, db_error = check_db_connection(db)
    poll_scheduler_service: PollSchedulerService | None = getattr(
        request.app.state,
        "poll_scheduler_service",
        None,
    )
    daily_aggregation_service: DailyAggregationService | None = getattr(
        request.app.state,
        "daily_aggregation_service",
        None,
    )
    settings: Settings | None = getattr(request.app.state, "settings", None)

    db_status: dict[str, object] = {"ok": db_ok}
    if db_error:
        db_status["error"] = db_error

    if poll_scheduler_service is None:
        scheduler_status = {
            "enabled": False,
            "running": False,
            "last_error": "Poll scheduler service not initialized",
            "last_heartbeat": None,
        }
    else:
        scheduler_status = poll_scheduler_service.get_status_snapshot()

    if daily_aggregation_service is None:
        daily_status = {
            "enabled": False,
            "running": False,
            "last_error": "Daily aggregation service not initialized",
        }
    else:
        daily_status = daily_aggregation_service.get_status_snapshot()

    return {
        "status": "working",
        "service": "backend",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "db": db_status,
        "scheduler": scheduler_status,
        "daily_aggregation": daily_status,
        "config": {
            "scheduler_heartbeat_seconds": settings.scheduler_heartbeat_seconds if settings else None,
            "scheduler_max_workers": settings.scheduler_max_workers if settings else None,
            "vendor_http_timeout_seconds": settings.vendor_http_timeout_seconds if settings else None,
            "daily_aggregation_check_seconds": (
                settings.daily_aggregation_check_seconds if settings else None
            ),
            "point_stale_days": settings.point_stale_days if settings else None,
            "enphase_max_polls_per_heartbeat": (
                settings.enphase_max_polls_per_heartbeat if settings else None
            ),
        },
    }
