from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select, text
from sqlalchemy.orm import Session

from app.db.models import LatestValue


@dataclass(frozen=True)
class LatestValueEntry:
    point_path: str
    point_index: int
    value: float | None
    value_str: str | None
    measurement_time: datetime
    received_time: datetime
    metric_unit: str
    display_name: str


def upsert_latest_values(db: Session, *, system_id: int, entries: list[LatestValueEntry]) -> None:
    newest: dict[str, LatestValueEntry] = {}
    for entry in entries:
        current = newest.get(entry.point_path)
        if current is None or entry.measurement_time >= current.measurement_time:
            newest[entry.point_path] = entry

    statement = text(
        """
        INSERT INTO latest_values
            (system_id, point_path, point_index, value, value_str, measurement_time,
             received_time, metric_unit, display_name)
        VALUES
            (:system_id, :point_path, :point_index, :value, :value_str, :measurement_time,
             :received_time, :metric_unit, :display_name)
        ON CONFLICT (system_id, point_path)
        DO UPDATE SET
            point_index = EXCLUDED.point_index,
            value = EXCLUDED.value,
            value_str = EXCLUDED.value_str,
            measurement_time = EXCLUDED.measurement_time,
            received_time = EXCLUDED.received_time,
            metric_unit = EXCLUDED.metric_unit,
            display_name = EXCLUDED.display_name
        WHERE EXCLUDED.measurement_time >= latest_values.measurement_time
        """
    )
    for entry in newest.values():
        db.execute(
            statement,
            {
                "system_id": system_id,
                "point_path": entry.point_path,
                "point_index": entry.point_index,
                "value": entry.value,
                "value_str": entry.value_str,
                "measurement_time": entry.measurement_time,
                "received_time": entry.received_time,
                "metric_unit": entry.metric_unit,
                "display_name": entry.display_name,
            },
        )


def get_latest_values(db: Session, *, system_id: int) -> dict[str, LatestValueEntry]:
    rows = db.scalars(
        select(LatestValue)
        .where(LatestValue.system_id == system_id)
        .order_by(LatestValue.point_path.asc())
    ).all()
    return {row.point_path: _row_to_entry(row) for row in rows}


def clear_latest_values(db: Session, *, system_id: int) -> int:
    result = db.execute(
        text("DELETE FROM latest_values WHERE system_id = :system_id"),
        {"system_id": system_id},
    )
    return max(0, result.rowcount or 0)


def rebuild_latest_values(db: Session, *, system_id: int) -> int:
    clear_latest_values(db, system_id=system_id)
    result = db.execute(
        text(
            """
            INSERT INTO latest_values
                (system_id, point_path, point_index, value, value_str, measurement_time,
                 received_time, metric_unit, display_name)
            SELECT DISTINCT ON (point_path)
                r.system_id,
                COALESCE(p.path_stem, p.point_key) || '/' || p.metric_type AS point_path,
                p.point_index,
                r.value,
                r.value_str,
                r.measurement_time,
                r.received_time,
                p.metric_unit,
                p.display_name
            FROM point_readings r
            JOIN points p ON p.system_id = r.system_id AND p.point_index = r.point_index
            WHERE r.system_id = :system_id
              AND r.error IS NULL
            ORDER BY point_path, r.measurement_time DESC, p.point_index ASC
            """
        ),
        {"system_id": system_id},
    )
    return max(0, result.rowcount or 0)


def _row_to_entry(row: LatestValue) -> LatestValueEntry:
    return LatestValueEntry(
        point_path=row.point_path,
        point_index=row.point_index,
        value=row.value,
        value_str=row.value_str,
        measurement_time=row.measurement_time,
        received_time=row.received_time,
        metric_unit=row.metric_unit,
        display_name=row.display_name,
    )
