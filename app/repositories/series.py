from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from fnmatch import fnmatchcase
from typing import Literal

from sqlalchemy.orm import Session

from app.repositories.aggregates_5m import BucketRow, fetch_buckets, round_half_up
from app.repositories.daily_aggregates import day_bounds, local_day_of_interval_end, to_kwh
from app.repositories.points import PointRef, list_points

SeriesInterval = Literal["5m", "1d"]

_FIVE_MINUTE_AGGS = {
    "power": ("avg",),
    "soc": ("last",),
    "energy": ("delta",),
    "interval_energy": ("delta",),
    "text": ("last",),
}
_DAILY_AGGS = {
    "power": ("avg", "min", "max"),
    "soc": ("avg", "min", "max", "last"),
    "energy": ("delta",),
    "interval_energy": ("delta",),
    "text": (),
}
_GAUGE_FIVE_MINUTE = ("avg",)
_GAUGE_DAILY = ("avg", "min", "max")


@dataclass(frozen=True)
class SeriesPoint:
    ts: datetime | date
    value: float | str | None


@dataclass(frozen=True)
class SeriesResult:
    path: str
    point_index: int
    metric_unit: str
    display_name: str
    interval: SeriesInterval
    points: list[SeriesPoint] = field(default_factory=list)


def split_patterns(raw: str) -> list[str]:
    patterns: list[str] = []
    depth = 0
    current = ""
    for char in raw:
        if char == "{":
            depth += 1
        elif char == "}":
            depth = max(0, depth - 1)
        if char == "," and depth == 0:
            if current.strip():
                patterns.append(current.strip())
            current = ""
            continue
        current += char
    if current.strip():
        patterns.append(current.strip())
    return patterns


def expand_braces(pattern: str) -> list[str]:
    start = pattern.find("{")
    if start < 0:
        return [pattern]
    depth = 0
    for index in range(start, len(pattern)):
        if pattern[index] == "{":
            depth += 1
        elif pattern[index] == "}":
            depth -= 1
            if depth == 0:
                inner = pattern[start + 1:index]
                prefix = pattern[:start]
                suffix = pattern[index + 1:]
                expanded: list[str] = []
                for option in split_patterns(inner) or [""]:
                    expanded.extend(expand_braces(prefix + option + suffix))
                return expanded
    return [pattern]


def matches_any(path: str, patterns: list[str] | None) -> bool:
    if not patterns:
        return True
    for pattern in patterns:
        for candidate in expand_braces(pattern):
            if fnmatchcase(path, candidate):
                return True
    return False


def series_paths_for(point: PointRef, interval: SeriesInterval) -> list[tuple[str, str]]:
    if interval == "5m":
        aggs = _FIVE_MINUTE_AGGS.get(point.metric_type, _GAUGE_FIVE_MINUTE)
    else:
        aggs = _DAILY_AGGS.get(point.metric_type, _GAUGE_DAILY)
    base = point.point_path
    return [(f"{base}.{agg}", agg) for agg in aggs]


def get_filtered_series(
    db: Session,
    *,
    system_id: int,
    timezone_offset_min: int,
    start: datetime,
    end: datetime,
    interval: SeriesInterval = "5m",
    patterns: list[str] | None = None,
) -> list[SeriesResult]:
    points = list_points(db, system_id=system_id)
    wanted: dict[int, list[tuple[str, str]]] = {}
    for point in points:
        selected = [
            (path, agg) for path, agg in series_paths_for(point, interval)
            if matches_any(path, patterns)
        ]
        if selected:
            wanted[point.point_index] = selected
    if not wanted:
        return []

    if interval == "1d":
        first_day = local_day_of_interval_end(start + timedelta(microseconds=1), timezone_offset_min)
        last_day = local_day_of_interval_end(end, timezone_offset_min)
        fetch_start, _ = day_bounds(first_day - timedelta(days=1), timezone_offset_min)
        _, fetch_end = day_bounds(last_day, timezone_offset_min)
    else:
        # one extra bucket so the first counter delta has a predecessor
        fetch_start = start - timedelta(minutes=5)
        fetch_end = end

    buckets = fetch_buckets(
        db,
        system_id=system_id,
        start=fetch_start,
        end=fetch_end,
        point_indexes=sorted(wanted.keys()),
    )
    return build_series(
        points=[point for point in points if point.point_index in wanted],
        wanted=wanted,
        buckets=buckets,
        interval=interval,
        timezone_offset_min=timezone_offset_min,
        start=start,
        end=end,
    )


def build_series(
    *,
    points: list[PointRef],
    wanted: dict[int, list[tuple[str, str]]],
    buckets: list[BucketRow],
    interval: SeriesInterval,
    timezone_offset_min: int,
    start: datetime,
    end: datetime,
) -> list[SeriesResult]:
    by_point: dict[int, list[BucketRow]] = {}
    for bucket in sorted(buckets, key=lambda row: row.interval_end):
        by_point.setdefault(bucket.point_index, []).append(bucket)

    results: list[SeriesResult] = []
    for point in sorted(points, key=lambda item: item.point_index):
        rows = by_point.get(point.point_index, [])
        for path, agg in wanted.get(point.point_index, []):
            if interval == "5m":
                series_points = _five_minute_points(point, rows, agg, start, end)
            else:
                series_points = _daily_points(point, rows, agg, timezone_offset_min, start, end)
            results.append(
                SeriesResult(
                    path=path,
                    point_index=point.point_index,
                    metric_unit=_series_unit(point, agg),
                    display_name=point.display_name,
                    interval=interval,
                    points=series_points,
                )
            )
    return results


def _five_minute_points(
    point: PointRef,
    rows: list[BucketRow],
    agg: str,
    start: datetime,
    end: datetime,
) -> list[SeriesPoint]:
    output: list[SeriesPoint] = []
    previous_last: float | None = None
    for row in rows:
        value: float | str | None
        if agg == "delta":
            value = _energy_delta(point, row, previous_last)
            if row.last is not None:
                previous_last = float(row.last)
        elif agg == "last":
            value = row.last_str if point.metric_type == "text" else row.last
        else:
            value = getattr(row, agg)
        if start < row.interval_end <= end:
            output.append(SeriesPoint(ts=row.interval_end, value=value))
    return output


def _daily_points(
    point: PointRef,
    rows: list[BucketRow],
    agg: str,
    timezone_offset_min: int,
    start: datetime,
    end: datetime,
) -> list[SeriesPoint]:
    by_day: dict[date, list[BucketRow]] = {}
    for row in rows:
        by_day.setdefault(local_day_of_interval_end(row.interval_end, timezone_offset_min), []).append(row)

    first_day = local_day_of_interval_end(start + timedelta(microseconds=1), timezone_offset_min)
    last_day = local_day_of_interval_end(end, timezone_offset_min)
    output: list[SeriesPoint] = []
    previous_last: float | None = None
    for day in sorted(by_day):
        day_rows = by_day[day]
        value = _daily_value(point, day_rows, agg, previous_last)
        lasts = [float(row.last) for row in day_rows if row.last is not None]
        if lasts:
            previous_last = lasts[-1]
        if first_day <= day <= last_day:
            output.append(SeriesPoint(ts=day, value=value))
    return output


def _daily_value(
    point: PointRef,
    rows: list[BucketRow],
    agg: str,
    previous_last: float | None,
) -> float | None:
    if agg == "delta":
        if point.metric_type == "interval_energy":
            deltas = [float(row.delta) for row in rows if row.delta is not None]
            total = to_kwh(sum(deltas), point.metric_unit) if deltas else None
            return round(total, 3) if total is not None else None
        lasts = [float(row.last) for row in rows if row.last is not None]
        if not lasts or previous_last is None:
            return None
        end_kwh = to_kwh(lasts[-1], point.metric_unit)
        base_kwh = to_kwh(previous_last, point.metric_unit)
        if end_kwh is None or base_kwh is None:
            return lasts[-1] - previous_last
        return round(end_kwh - base_kwh, 3)

    if point.metric_type == "soc":
        values = [float(row.last) for row in rows if row.last is not None]
        if not values:
            return None
        if agg == "last":
            return round(values[-1], 1)
        if agg == "min":
            return round(min(values), 1)
        if agg == "max":
            return round(max(values), 1)
        return round(sum(values) / len(values), 1)

    if agg == "min":
        mins = [float(row.min) for row in rows if row.min is not None]
        value = min(mins) if mins else None
    elif agg == "max":
        maxs = [float(row.max) for row in rows if row.max is not None]
        value = max(maxs) if maxs else None
    else:
        avgs = [float(row.avg) for row in rows if row.avg is not None]
        value = sum(avgs) / len(avgs) if avgs else None
    if value is not None and point.metric_type == "power":
        return round_half_up(value)
    return value


def _energy_delta(point: PointRef, row: BucketRow, previous_last: float | None) -> float | None:
    if point.metric_type == "interval_energy":
        if row.delta is None:
            return None
        converted = to_kwh(float(row.delta), point.metric_unit)
        return round(converted, 3) if converted is not None else float(row.delta)
    if row.last is None or previous_last is None:
        return None
    current_kwh = to_kwh(float(row.last), point.metric_unit)
    previous_kwh = to_kwh(previous_last, point.metric_unit)
    if current_kwh is None or previous_kwh is None:
        return float(row.last) - previous_last
    return round(current_kwh - previous_kwh, 3)


def _series_unit(point: PointRef, agg: str) -> str:
    if agg == "delta" and to_kwh(0.0, point.metric_unit) is not None:
        return "kWh"
    return point.metric_unit
