from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any

from sqlalchemy import select, text
from sqlalchemy.orm import Session

from app.db.models import Point


@dataclass(frozen=True)
class PointMetadata:
    point_key: str
    display_name: str
    metric_type: str
    metric_unit: str
    path_stem: str | None = None


@dataclass(frozen=True)
class PointRef:
    system_id: int
    point_index: int
    point_key: str
    display_name: str
    metric_type: str
    metric_unit: str
    path_stem: str | None
    active: bool = True

    @property
    def point_path(self) -> str:
        return point_path(self.path_stem, self.point_key, self.metric_type)


def point_path(path_stem: str | None, point_key: str, metric_type: str) -> str:
    return f"{path_stem or point_key}/{metric_type}"


def resolve_points(
    db: Session,
    *,
    system_id: int,
    metadata: list[PointMetadata],
) -> dict[str, PointRef]:
    unique: dict[str, PointMetadata] = {}
    for item in metadata:
        unique.setdefault(item.point_key, item)
    if not unique:
        return {}

    keys = list(unique.keys())
    resolved = _select_points_by_key(db, system_id=system_id, point_keys=keys)
    missing = [key for key in keys if key not in resolved]
    inactive = [key for key, ref in resolved.items() if not ref.active]

    if missing:
        # serializes index allocation per system for the rest of the transaction
        db.execute(text("SELECT pg_advisory_xact_lock(:system_id)"), {"system_id": system_id})
        resolved = _select_points_by_key(db, system_id=system_id, point_keys=keys)
        missing = [key for key in keys if key not in resolved]

    if missing:
        next_index = int(
            db.scalar(
                text("SELECT COALESCE(MAX(point_index), 0) FROM points WHERE system_id = :system_id"),
                {"system_id": system_id},
            )
            or 0
        )
        for key in missing:
            next_index += 1
            item = unique[key]
            db.execute(
                text(
                    """
                    INSERT INTO points
                        (system_id, point_index, point_key, display_name, path_stem,
                         metric_type, metric_unit, active, created_at)
                    VALUES
                        (:system_id, :point_index, :point_key, :display_name, :path_stem,
                         :metric_type, :metric_unit, true, now())
                    ON CONFLICT (system_id, point_key) DO NOTHING
                    """
                ),
                {
                    "system_id": system_id,
                    "point_index": next_index,
                    "point_key": key,
                    "display_name": item.display_name,
                    "path_stem": item.path_stem,
                    "metric_type": item.metric_type,
                    "metric_unit": item.metric_unit,
                },
            )
        resolved = _select_points_by_key(db, system_id=system_id, point_keys=keys)
        unresolved = [key for key in keys if key not in resolved]
        if unresolved:
            raise RuntimeError(f"failed to allocate points for system {system_id}: {unresolved}")

    if inactive:
        db.execute(
            text(
                """
                UPDATE points SET active = true
                WHERE system_id = :system_id AND point_key = ANY(:point_keys)
                """
            ),
            {"system_id": system_id, "point_keys": inactive},
        )
        for key in inactive:
            ref = resolved[key]
            resolved[key] = replace(ref, active=True)

    return resolved


def list_points(db: Session, *, system_id: int, active_only: bool = False) -> list[PointRef]:
    statement = select(Point).where(Point.system_id == system_id)
    if active_only:
        statement = statement.where(Point.active.is_(True))
    points = db.scalars(statement.order_by(Point.point_index.asc())).all()
    return [
        PointRef(
            system_id=point.system_id,
            point_index=point.point_index,
            point_key=point.point_key,
            display_name=point.display_name,
            metric_type=point.metric_type,
            metric_unit=point.metric_unit,
            path_stem=point.path_stem,
            active=point.active,
        )
        for point in points
    ]


def deactivate_stale_points(db: Session, *, system_id: int, stale_before: datetime) -> int:
    result = db.execute(
        text(
            """
            UPDATE points p
            SET active = false
            WHERE p.system_id = :system_id
              AND p.active = true
              AND p.created_at < :stale_before
              AND NOT EXISTS (
                  SELECT 1 FROM point_readings r
                  WHERE r.system_id = p.system_id
                    AND r.point_index = p.point_index
                    AND r.measurement_time >= :stale_before
              )
              AND NOT EXISTS (
                  SELECT 1 FROM point_readings_agg_5m a
                  WHERE a.system_id = p.system_id
                    AND a.point_index = p.point_index
                    AND a.interval_end >= :stale_before
              )
            """
        ),
        {"system_id": system_id, "stale_before": stale_before},
    )
    return max(0, result.rowcount or 0)


def _select_points_by_key(
    db: Session,
    *,
    system_id: int,
    point_keys: list[str],
) -> dict[str, PointRef]:
    rows = db.execute(
        text(
            """
            SELECT system_id, point_index, point_key, display_name, path_stem,
                   metric_type, metric_unit, active
            FROM points
            WHERE system_id = :system_id AND point_key = ANY(:point_keys)
            """
        ),
        {"system_id": system_id, "point_keys": point_keys},
    ).mappings()
    return {str(row["point_key"]): _row_to_point(row) for row in rows}


def _row_to_point(row: Any) -> PointRef:
    return PointRef(
        system_id=int(row["system_id"]),
        point_index=int(row["point_index"]),
        point_key=str(row["point_key"]),
        display_name=str(row["display_name"]),
        metric_type=str(row["metric_type"]),
        metric_unit=str(row["metric_unit"]),
        path_stem=row.get("path_stem"),
        active=bool(row.get("active", True)),
    )
