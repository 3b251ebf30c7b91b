from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import text
from sqlalchemy.orm import Session

from app.repositories.points import PointRef


@dataclass(frozen=True)
class PreparedReading:
    point: PointRef
    measurement_time: datetime
    value: float | None
    value_str: str | None = None
    error: str | None = None
    data_quality: str = "good"


@dataclass(frozen=True)
class RawSample:
    measurement_time: datetime
    value: float | None
    value_str: str | None
    error: str | None


@dataclass(frozen=True)
class InsertOutcome:
    inserted: list[PreparedReading]
    rejected: list[PreparedReading]


def insert_raw_readings(
    db: Session,
    *,
    system_id: int,
    session_id: int | None,
    received_time: datetime,
    readings: list[PreparedReading],
) -> InsertOutcome:
    inserted: list[PreparedReading] = []
    rejected: list[PreparedReading] = []
    statement = text(
        """
        INSERT INTO point_readings
            (system_id, point_index, session_id, measurement_time, received_time,
             value, value_str, error, data_quality)
        VALUES
            (:system_id, :point_index, :session_id, :measurement_time, :received_time,
             :value, :value_str, :error, :data_quality)
        ON CONFLICT (system_id, point_index, measurement_time) DO NOTHING
        RETURNING id
        """
    )
    for reading in readings:
        row = db.execute(
            statement,
            {
                "system_id": system_id,
                "point_index": reading.point.point_index,
                "session_id": session_id,
                "measurement_time": reading.measurement_time,
                "received_time": received_time,
                "value": reading.value,
                "value_str": reading.value_str,
                "error": reading.error,
                "data_quality": reading.data_quality,
            },
        ).first()
        if row is None:
            rejected.append(reading)
        else:
            inserted.append(reading)
    return InsertOutcome(inserted=inserted, rejected=rejected)


def fetch_window_samples(
    db: Session,
    *,
    system_id: int,
    point_index: int,
    window_start: datetime,
    window_end: datetime,
) -> list[RawSample]:
    rows = db.execute(
        text(
            """
            SELECT measurement_time, value, value_str, error
            FROM point_readings
            WHERE system_id = :system_id
              AND point_index = :point_index
              AND measurement_time > :window_start
              AND measurement_time <= :window_end
            ORDER BY measurement_time ASC
            """
        ),
        {
            "system_id": system_id,
            "point_index": point_index,
            "window_start": window_start,
            "window_end": window_end,
        },
    ).mappings()
    return [
        RawSample(
            measurement_time=row["measurement_time"],
            value=row["value"],
            value_str=row["value_str"],
            error=row["error"],
        )
        for row in rows
    ]
