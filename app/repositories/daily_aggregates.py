from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any

from sqlalchemy import select, text
from sqlalchemy.orm import Session

from app.db.models import DailyAggregate
from app.repositories.aggregates_5m import BucketRow, round_half_up
from app.repositories.points import PointRef

ENERGY_ROLES: dict[str, str] = {
    "solar": "source.solar",
    "load": "load",
    "battery_in": "bidi.battery.charge",
    "battery_out": "bidi.battery.discharge",
    "grid_in": "bidi.grid.import",
    "grid_out": "bidi.grid.export",
}
POWER_ROLES: dict[str, str] = {
    "solar": "source.solar",
    "load": "load",
    "battery": "bidi.battery",
    "grid": "bidi.grid",
}
SOC_STEM = "bidi.battery"

_KWH_FACTORS = {"wh": 0.001, "kwh": 1.0, "mwh": 1000.0}


@dataclass(frozen=True)
class DailyAggregateRow:
    system_id: int
    day: date
    solar_kwh: float | None = None
    load_kwh: float | None = None
    battery_in_kwh: float | None = None
    battery_out_kwh: float | None = None
    grid_in_kwh: float | None = None
    grid_out_kwh: float | None = None
    solar_power_min_w: int | None = None
    solar_power_avg_w: int | None = None
    solar_power_max_w: int | None = None
    load_power_min_w: int | None = None
    load_power_avg_w: int | None = None
    load_power_max_w: int | None = None
    battery_power_min_w: int | None = None
    battery_power_avg_w: int | None = None
    battery_power_max_w: int | None = None
    grid_power_min_w: int | None = None
    grid_power_avg_w: int | None = None
    grid_power_max_w: int | None = None
    battery_soc_min: float | None = None
    battery_soc_avg: float | None = None
    battery_soc_max: float | None = None
    battery_soc_end: float | None = None
    solar_lifetime_kwh: float | None = None
    load_lifetime_kwh: float | None = None
    battery_in_lifetime_kwh: float | None = None
    battery_out_lifetime_kwh: float | None = None
    grid_in_lifetime_kwh: float | None = None
    grid_out_lifetime_kwh: float | None = None
    interval_count: int = 0
    counter_resets: list[str] = field(default_factory=list)
    version: int = 1


DAILY_VALUE_COLUMNS = [
    name
    for name in DailyAggregateRow.__dataclass_fields__
    if name not in {"system_id", "day", "interval_count", "counter_resets", "version"}
]
_VALUE_COLUMNS = [*DAILY_VALUE_COLUMNS, "interval_count"]


def day_bounds(day: date, timezone_offset_min: int) -> tuple[datetime, datetime]:
    local_tz = timezone(timedelta(minutes=timezone_offset_min))
    start_local = datetime.combine(day, time.min, tzinfo=local_tz)
    end_local = start_local + timedelta(days=1)
    return start_local.astimezone(timezone.utc), end_local.astimezone(timezone.utc)


def local_day_of_interval_end(interval_end: datetime, timezone_offset_min: int) -> date:
    # a bucket ending exactly at local midnight closes the previous day
    local_tz = timezone(timedelta(minutes=timezone_offset_min))
    return (interval_end - timedelta(microseconds=1)).astimezone(local_tz).date()


def local_today(now: datetime, timezone_offset_min: int) -> date:
    return now.astimezone(timezone(timedelta(minutes=timezone_offset_min))).date()


def to_kwh(value: float, unit: str) -> float | None:
    factor = _KWH_FACTORS.get(unit.strip().lower())
    if factor is None:
        return None
    return value * factor


def select_role_point(points: list[PointRef], stem: str, metric_types: set[str]) -> PointRef | None:
    candidates = [
        point for point in points
        if point.path_stem == stem and point.metric_type in metric_types
    ]
    if not candidates:
        return None
    return min(candidates, key=lambda point: point.point_index)


def compute_daily_aggregate(
    *,
    system_id: int,
    day: date,
    points: list[PointRef],
    buckets: list[BucketRow],
    baselines: dict[int, float],
) -> DailyAggregateRow | None:
    if not buckets:
        return None

    by_point: dict[int, list[BucketRow]] = {}
    for bucket in sorted(buckets, key=lambda row: row.interval_end):
        by_point.setdefault(bucket.point_index, []).append(bucket)

    values: dict[str, Any] = {}
    counter_resets: list[str] = []

    for role, stem in POWER_ROLES.items():
        point = select_role_point(points, stem, {"power"})
        if point is None:
            continue
        rows = by_point.get(point.point_index, [])
        mins = [row.min for row in rows if row.min is not None]
        maxs = [row.max for row in rows if row.max is not None]
        avgs = [row.avg for row in rows if row.avg is not None]
        if mins:
            values[f"{role}_power_min_w"] = round_half_up(min(mins))
        if maxs:
            values[f"{role}_power_max_w"] = round_half_up(max(maxs))
        if avgs:
            values[f"{role}_power_avg_w"] = round_half_up(sum(avgs) / len(avgs))

    soc_point = select_role_point(points, SOC_STEM, {"soc"})
    if soc_point is not None:
        soc_values = [
            float(row.last)
            for row in by_point.get(soc_point.point_index, [])
            if row.last is not None
        ]
        if soc_values:
            values["battery_soc_min"] = round(min(soc_values), 1)
            values["battery_soc_max"] = round(max(soc_values), 1)
            values["battery_soc_avg"] = round(sum(soc_values) / len(soc_values), 1)
            values["battery_soc_end"] = round(soc_values[-1], 1)

    for role, stem in ENERGY_ROLES.items():
        counter = select_role_point(points, stem, {"energy"})
        if counter is not None:
            lasts = [
                float(row.last)
                for row in by_point.get(counter.point_index, [])
                if row.last is not None
            ]
            if not lasts:
                continue
            end_kwh = to_kwh(lasts[-1], counter.metric_unit)
            if end_kwh is None:
                continue
            values[f"{role}_lifetime_kwh"] = round(end_kwh, 3)
            baseline = baselines.get(counter.point_index)
            baseline_kwh = to_kwh(baseline, counter.metric_unit) if baseline is not None else None
            if baseline_kwh is None:
                continue
            delta = round(end_kwh - baseline_kwh, 3)
            values[f"{role}_kwh"] = delta
            if delta < 0:
                counter_resets.append(role)
            continue

        interval_point = select_role_point(points, stem, {"interval_energy"})
        if interval_point is None:
            continue
        deltas = [
            float(row.delta)
            for row in by_point.get(interval_point.point_index, [])
            if row.delta is not None
        ]
        if not deltas:
            continue
        total_kwh = to_kwh(sum(deltas), interval_point.metric_unit)
        if total_kwh is not None:
            values[f"{role}_kwh"] = round(total_kwh, 3)

    return DailyAggregateRow(
        system_id=system_id,
        day=day,
        interval_count=len({row.interval_end for row in buckets}),
        counter_resets=counter_resets,
        **values,
    )


def upsert_daily_aggregate(db: Session, *, row: DailyAggregateRow) -> int:
    columns = ["system_id", "day", *_VALUE_COLUMNS, "counter_resets"]
    insert_values = ", ".join(
        "CAST(:counter_resets AS JSONB)" if column == "counter_resets" else f":{column}"
        for column in columns
    )
    update_values = ",\n                ".join(
        f"{column} = EXCLUDED.{column}" for column in [*_VALUE_COLUMNS, "counter_resets"]
    )
    params = asdict(row)
    params["counter_resets"] = json.dumps(row.counter_resets)
    params.pop("version", None)

    version = db.scalar(
        text(
            f"""
            INSERT INTO readings_agg_1d
                ({", ".join(columns)}, version, created_at, updated_at)
            VALUES
                ({insert_values}, 1, now(), now())
            ON CONFLICT (system_id, day)
            DO UPDATE SET
                {update_values},
                version = readings_agg_1d.version + 1,
                updated_at = now()
            RETURNING version
            """
        ),
        params,
    )
    return int(version or 1)


def list_daily_aggregates(
    db: Session,
    *,
    system_id: int,
    start: date | None = None,
    end: date | None = None,
) -> list[DailyAggregate]:
    statement = select(DailyAggregate).where(DailyAggregate.system_id == system_id)
    if start is not None:
        statement = statement.where(DailyAggregate.day >= start)
    if end is not None:
        statement = statement.where(DailyAggregate.day <= end)
    return list(db.scalars(statement.order_by(DailyAggregate.day.asc())).all())


def list_aggregated_days(db: Session, *, system_id: int) -> set[date]:
    rows = db.execute(
        text("SELECT day FROM readings_agg_1d WHERE system_id = :system_id"),
        {"system_id": system_id},
    )
    return {row[0] for row in rows}


def delete_daily_range(
    db: Session,
    *,
    system_id: int,
    start: date | None,
    end: date | None,
) -> int:
    if (start is None) != (end is None):
        raise ValueError("start and end must both be provided or both omitted")
    if start is not None and end is not None and start > end:
        raise ValueError("start must not be after end")
    if start is None:
        result = db.execute(
            text("DELETE FROM readings_agg_1d WHERE system_id = :system_id"),
            {"system_id": system_id},
        )
    else:
        result = db.execute(
            text(
                """
                DELETE FROM readings_agg_1d
                WHERE system_id = :system_id AND day >= :start AND day <= :end
                """
            ),
            {"system_id": system_id, "start": start, "end": end},
        )
    return max(0, result.rowcount or 0)
