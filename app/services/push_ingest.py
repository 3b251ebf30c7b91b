from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping

from sqlalchemy.orm import sessionmaker

from app.repositories.polling_status import record_poll_error, record_poll_success
from app.repositories.sessions import (
    SessionInfo,
    create_session,
    get_session_by_label,
    record_session,
    update_session_result,
)
from app.repositories.systems import SystemRecord
from app.services.ingestion import IngestResult, ReadingIngestionService
from app.vendors.fronius import FroniusAdapter


@dataclass(frozen=True)
class PushIngestResult:
    system_id: int
    session_id: int | None
    duplicate: bool = False
    inserted: int = 0
    rejected: int = 0
    conflicts: list[dict[str, Any]] = field(default_factory=list)
    measurement_time: datetime | None = None


class PushIngestService:
    def __init__(self, *, session_factory: sessionmaker, ingestion: ReadingIngestionService) -> None:
        self._session_factory = session_factory
        self._ingestion = ingestion
        self._logger = logging.getLogger("app.push_ingest")

    def record_test(self, system: SystemRecord, *, response: dict[str, Any]) -> int:
        now = datetime.now(timezone.utc)
        with self._session_factory() as db:
            session_id = record_session(
                db,
                system_id=system.id,
                cause="PUSH",
                started_at=now,
                duration_ms=0,
                successful=True,
                response=response,
            )
            db.commit()
        self._logger.info("push test accepted system_id=%s session_id=%s", system.id, session_id)
        return session_id

    def ingest_push(
        self,
        *,
        system: SystemRecord,
        adapter: FroniusAdapter,
        payload: Mapping[str, Any],
        label: str,
        measurement_time: datetime,
    ) -> PushIngestResult:
        with self._session_factory() as db:
            existing = get_session_by_label(db, system_id=system.id, label=label)
        if existing is not None and existing.successful:
            self._logger.info(
                "duplicate push delivery system_id=%s label=%s session_id=%s",
                system.id,
                label,
                existing.id,
            )
            return PushIngestResult(
                system_id=system.id,
                session_id=existing.id,
                duplicate=True,
                measurement_time=measurement_time,
            )

        received = datetime.now(timezone.utc)
        started_monotonic = time.monotonic()
        with self._session_factory() as db:
            session = create_session(db, system_id=system.id, cause="PUSH", started_at=received, label=label)
            db.commit()

        result: IngestResult | None = None
        error: Exception | None = None
        try:
            readings = adapter.parse_push(payload, measurement_time)
            result = self._ingestion.ingest(
                system_id=system.id,
                session=session,
                readings=readings,
                received_time=received,
            )
        except Exception as exc:
            error = exc
            raise
        finally:
            self._finalize(
                system,
                session,
                result=result,
                error=error,
                duration_ms=int((time.monotonic() - started_monotonic) * 1000),
                at=received,
                measurement_time=measurement_time,
            )

        return PushIngestResult(
            system_id=system.id,
            session_id=session.id,
            inserted=result.inserted,
            rejected=result.rejected,
            conflicts=result.conflicts,
            measurement_time=measurement_time,
        )

    def _finalize(
        self,
        system: SystemRecord,
        session: SessionInfo,
        *,
        result: IngestResult | None,
        error: Exception | None,
        duration_ms: int,
        at: datetime,
        measurement_time: datetime,
    ) -> None:
        try:
            with self._session_factory() as db:
                if result is not None:
                    response = {
                        "action": "store",
                        "measurement_time": measurement_time.isoformat(),
                        "inserted": result.inserted,
                        "rejected": result.rejected,
                        "delay_seconds": int((at - measurement_time).total_seconds()),
                    }
                    update_session_result(
                        db,
                        session_id=session.id,
                        duration_ms=duration_ms,
                        successful=True,
                        response=response,
                        num_rows=result.inserted,
                    )
                    record_poll_success(db, system_id=system.id, at=at, response=response)
                else:
                    message = str(error) if error is not None else "push ingestion did not complete"
                    update_session_result(
                        db,
                        session_id=session.id,
                        duration_ms=duration_ms,
                        successful=False,
                        error_code=type(error).__name__ if error is not None else None,
                        error=message,
                    )
                    record_poll_error(db, system_id=system.id, at=at, error=message)
                db.commit()
        except Exception:
            self._logger.exception(
                "failed to record push outcome system_id=%s session_id=%s",
                system.id,
                session.id,
            )
