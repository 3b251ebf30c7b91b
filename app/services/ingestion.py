from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.orm import sessionmaker

from app.repositories.aggregates_5m import (
    BucketSummary,
    bucket_window,
    interval_end_for,
    summarize_bucket,
    upsert_bucket,
)
from app.repositories.latest_values import LatestValueEntry, upsert_latest_values
from app.repositories.points import PointRef, resolve_points
from app.repositories.readings import PreparedReading, fetch_window_samples, insert_raw_readings
from app.repositories.sessions import SessionInfo
from app.vendors.base import PreAggregatedReading, VendorReading

NON_NUMERIC_ERROR = "non-numeric value"


class SessionSystemMismatchError(ValueError):
    def __init__(self, *, session_id: int, session_system_id: int, system_id: int):
        self.session_id = session_id
        self.session_system_id = session_system_id
        self.system_id = system_id
        super().__init__(
            f"session {session_id} belongs to system {session_system_id}, not system {system_id}"
        )


@dataclass(frozen=True)
class ConvertedValue:
    value: float | None
    value_str: str | None = None
    error: str | None = None
    data_quality: str = "good"


@dataclass(frozen=True)
class IngestResult:
    system_id: int
    session_id: int | None
    inserted: int = 0
    rejected: int = 0
    conflicts: list[dict[str, Any]] = field(default_factory=list)
    buckets_updated: int = 0


def convert_value(raw: Any, *, metric_type: str, metric_unit: str) -> ConvertedValue:
    unit = metric_unit.strip().lower()
    if metric_type == "text" or unit == "text":
        if raw is None:
            return ConvertedValue(value=None)
        if isinstance(raw, bool):
            return ConvertedValue(value=None, value_str="true" if raw else "false")
        return ConvertedValue(value=None, value_str=str(raw))

    if unit == "epochms":
        if isinstance(raw, datetime):
            return ConvertedValue(value=float(int(_to_utc(raw).timestamp() * 1000)))
        if isinstance(raw, str) and raw.strip():
            try:
                parsed = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
            except ValueError:
                pass
            else:
                return ConvertedValue(value=float(int(_to_utc(parsed).timestamp() * 1000)))

    if isinstance(raw, bool):
        return ConvertedValue(value=1.0 if raw else 0.0)
    if isinstance(raw, (int, float)):
        numeric = float(raw)
        if math.isfinite(numeric):
            return ConvertedValue(value=numeric)
    elif isinstance(raw, str):
        try:
            numeric = float(raw.strip())
        except ValueError:
            pass
        else:
            if math.isfinite(numeric):
                return ConvertedValue(value=numeric)

    return ConvertedValue(
        value=None,
        value_str=None if raw is None else str(raw)[:255],
        error=NON_NUMERIC_ERROR,
        data_quality="error",
    )


class ReadingIngestionService:
    def __init__(self, *, session_factory: sessionmaker):
        self._session_factory = session_factory
        self._logger = logging.getLogger("app.ingestion")

    def ingest(
        self,
        *,
        system_id: int,
        session: SessionInfo,
        readings: list[VendorReading],
        received_time: datetime | None = None,
    ) -> IngestResult:
        _check_session(system_id=system_id, session=session)
        if not readings:
            return IngestResult(system_id=system_id, session_id=session.id)
        received = _to_utc(received_time or datetime.now(timezone.utc))

        with self._session_factory() as db:
            points = resolve_points(db, system_id=system_id, metadata=[item.point for item in readings])
            prepared: list[PreparedReading] = []
            for item in readings:
                point = points[item.point.point_key]
                converted = convert_value(
                    item.value,
                    metric_type=point.metric_type,
                    metric_unit=point.metric_unit,
                )
                prepared.append(
                    PreparedReading(
                        point=point,
                        measurement_time=_to_utc(item.measurement_time),
                        value=converted.value,
                        value_str=converted.value_str,
                        error=item.error or converted.error,
                        data_quality="error" if item.error else converted.data_quality,
                    )
                )

            outcome = insert_raw_readings(
                db,
                system_id=system_id,
                session_id=session.id,
                received_time=received,
                readings=prepared,
            )
            if outcome.rejected:
                self._logger.warning(
                    "rejected duplicate readings system_id=%s session_id=%s count=%s",
                    system_id,
                    session.id,
                    len(outcome.rejected),
                )

            affected: dict[tuple[int, datetime], PointRef] = {}
            for reading in outcome.inserted:
                key = (reading.point.point_index, interval_end_for(reading.measurement_time))
                affected[key] = reading.point
            for (point_index, interval_end), point in sorted(affected.items(), key=lambda item: item[0]):
                window_start, window_end = bucket_window(interval_end)
                samples = fetch_window_samples(
                    db,
                    system_id=system_id,
                    point_index=point_index,
                    window_start=window_start,
                    window_end=window_end,
                )
                upsert_bucket(
                    db,
                    system_id=system_id,
                    point_index=point_index,
                    interval_end=interval_end,
                    summary=summarize_bucket(point.metric_type, samples),
                    session_id=session.id,
                )

            upsert_latest_values(
                db,
                system_id=system_id,
                entries=[
                    LatestValueEntry(
                        point_path=reading.point.point_path,
                        point_index=reading.point.point_index,
                        value=reading.value,
                        value_str=reading.value_str,
                        measurement_time=reading.measurement_time,
                        received_time=received,
                        metric_unit=reading.point.metric_unit,
                        display_name=reading.point.display_name,
                    )
                    for reading in outcome.inserted
                    if reading.error is None
                ],
            )
            db.commit()

        return IngestResult(
            system_id=system_id,
            session_id=session.id,
            inserted=len(outcome.inserted),
            rejected=len(outcome.rejected),
            conflicts=[
                {
                    "point_key": reading.point.point_key,
                    "point_index": reading.point.point_index,
                    "measurement_time": reading.measurement_time.isoformat(),
                }
                for reading in outcome.rejected
            ],
            buckets_updated=len(affected),
        )

    def ingest_direct_5m(
        self,
        *,
        system_id: int,
        session: SessionInfo,
        readings: list[PreAggregatedReading],
        received_time: datetime | None = None,
    ) -> IngestResult:
        _check_session(system_id=system_id, session=session)
        if not readings:
            return IngestResult(system_id=system_id, session_id=session.id)
        received = _to_utc(received_time or datetime.now(timezone.utc))

        with self._session_factory() as db:
            points = resolve_points(db, system_id=system_id, metadata=[item.point for item in readings])
            latest: list[LatestValueEntry] = []
            for item in readings:
                point = points[item.point.point_key]
                interval_end = interval_end_for(item.interval_end)
                upsert_bucket(
                    db,
                    system_id=system_id,
                    point_index=point.point_index,
                    interval_end=interval_end,
                    summary=BucketSummary(
                        avg=item.avg,
                        min=item.min,
                        max=item.max,
                        last=item.last,
                        last_str=None,
                        delta=item.delta,
                        sample_count=item.sample_count,
                        error_count=0,
                    ),
                    session_id=session.id,
                )
                value = item.last if item.last is not None else item.avg
                if value is not None:
                    latest.append(
                        LatestValueEntry(
                            point_path=point.point_path,
                            point_index=point.point_index,
                            value=value,
                            value_str=None,
                            measurement_time=interval_end,
                            received_time=received,
                            metric_unit=point.metric_unit,
                            display_name=point.display_name,
                        )
                    )
            upsert_latest_values(db, system_id=system_id, entries=latest)
            db.commit()

        return IngestResult(
            system_id=system_id,
            session_id=session.id,
            inserted=len(readings),
            buckets_updated=len(readings),
        )


def _check_session(*, system_id: int, session: SessionInfo) -> None:
    if session.system_id != system_id:
        raise SessionSystemMismatchError(
            session_id=session.id,
            session_system_id=session.system_id,
            system_id=system_id,
        )


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
