from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

from sqlalchemy import text
from sqlalchemy.orm import Session

from app.repositories.readings import RawSample

BUCKET_SECONDS = 300

POWER_METRICS = frozenset({"power"})
LAST_VALUE_METRICS = frozenset({"energy", "soc"})
INTERVAL_ENERGY_METRICS = frozenset({"interval_energy"})
TEXT_METRICS = frozenset({"text"})


@dataclass(frozen=True)
class BucketSummary:
    avg: float | None
    min: float | None
    max: float | None
    last: float | None
    last_str: str | None
    delta: float | None
    sample_count: int
    error_count: int


@dataclass(frozen=True)
class BucketRow:
    point_index: int
    interval_end: datetime
    avg: float | None
    min: float | None
    max: float | None
    last: float | None
    last_str: str | None
    delta: float | None
    sample_count: int
    error_count: int


def interval_end_for(ts: datetime) -> datetime:
    ts_utc = _to_utc(ts)
    epoch_seconds = ts_utc.timestamp()
    end_seconds = math.ceil(epoch_seconds / BUCKET_SECONDS) * BUCKET_SECONDS
    return datetime.fromtimestamp(end_seconds, tz=timezone.utc)


def bucket_window(interval_end: datetime) -> tuple[datetime, datetime]:
    end = _to_utc(interval_end)
    return end - timedelta(seconds=BUCKET_SECONDS), end


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def summarize_bucket(metric_type: str, samples: Iterable[RawSample]) -> BucketSummary:
    ordered = sorted(samples, key=lambda sample: sample.measurement_time)
    error_count = sum(1 for sample in ordered if sample.error is not None)
    valid = [sample for sample in ordered if sample.error is None]

    if metric_type in TEXT_METRICS:
        texts = [sample.value_str for sample in valid if sample.value_str is not None]
        return BucketSummary(
            avg=None,
            min=None,
            max=None,
            last=None,
            last_str=texts[-1] if texts else None,
            delta=None,
            sample_count=len(ordered),
            error_count=error_count,
        )

    values = [float(sample.value) for sample in valid if sample.value is not None]
    last = values[-1] if values else None

    if metric_type in LAST_VALUE_METRICS or not values:
        return BucketSummary(
            avg=None,
            min=None,
            max=None,
            last=last,
            last_str=None,
            delta=None,
            sample_count=len(ordered),
            error_count=error_count,
        )

    if metric_type in INTERVAL_ENERGY_METRICS:
        return BucketSummary(
            avg=None,
            min=None,
            max=None,
            last=last,
            last_str=None,
            delta=sum(values),
            sample_count=len(ordered),
            error_count=error_count,
        )

    avg = sum(values) / len(values)
    low = min(values)
    high = max(values)
    if metric_type in POWER_METRICS:
        avg, low, high = round_half_up(avg), round_half_up(low), round_half_up(high)
    return BucketSummary(
        avg=avg,
        min=low,
        max=high,
        last=last,
        last_str=None,
        delta=None,
        sample_count=len(ordered),
        error_count=error_count,
    )


def upsert_bucket(
    db: Session,
    *,
    system_id: int,
    point_index: int,
    interval_end: datetime,
    summary: BucketSummary,
    session_id: int | None,
) -> None:
    db.execute(
        text(
            """
            INSERT INTO point_readings_agg_5m
                (system_id, point_index, interval_end, avg, min, max, last, last_str, delta,
                 sample_count, error_count, session_id, created_at, updated_at)
            VALUES
                (:system_id, :point_index, :interval_end, :avg, :min, :max, :last, :last_str, :delta,
                 :sample_count, :error_count, :session_id, now(), now())
            ON CONFLICT (system_id, point_index, interval_end)
            DO UPDATE SET
                avg = EXCLUDED.avg,
                min = EXCLUDED.min,
                max = EXCLUDED.max,
                last = EXCLUDED.last,
                last_str = EXCLUDED.last_str,
                delta = EXCLUDED.delta,
                sample_count = EXCLUDED.sample_count,
                error_count = EXCLUDED.error_count,
                session_id = EXCLUDED.session_id,
                updated_at = now()
            """
        ),
        {
            "system_id": system_id,
            "point_index": point_index,
            "interval_end": _to_utc(interval_end),
            "avg": summary.avg,
            "min": summary.min,
            "max": summary.max,
            "last": summary.last,
            "last_str": summary.last_str,
            "delta": summary.delta,
            "sample_count": summary.sample_count,
            "error_count": summary.error_count,
            "session_id": session_id,
        },
    )


def fetch_buckets(
    db: Session,
    *,
    system_id: int,
    start: datetime,
    end: datetime,
    point_indexes: list[int] | None = None,
) -> list[BucketRow]:
    params: dict[str, Any] = {"system_id": system_id, "start": start, "end": end}
    point_filter = ""
    if point_indexes is not None:
        if not point_indexes:
            return []
        point_filter = "AND point_index = ANY(:point_indexes)"
        params["point_indexes"] = point_indexes
    rows = db.execute(
        text(
            f"""
            SELECT point_index, interval_end, avg, min, max, last, last_str, delta,
                   sample_count, error_count
            FROM point_readings_agg_5m
            WHERE system_id = :system_id
              AND interval_end > :start
              AND interval_end <= :end
              {point_filter}
            ORDER BY interval_end ASC, point_index ASC
            """
        ),
        params,
    ).mappings()
    return [_row_to_bucket(row) for row in rows]


def fetch_baselines(
    db: Session,
    *,
    system_id: int,
    point_indexes: list[int],
    at_or_before: datetime,
) -> dict[int, float]:
    if not point_indexes:
        return {}
    rows = db.execute(
        text(
            """
            SELECT DISTINCT ON (point_index) point_index, last
            FROM point_readings_agg_5m
            WHERE system_id = :system_id
              AND point_index = ANY(:point_indexes)
              AND interval_end <= :at_or_before
              AND last IS NOT NULL
            ORDER BY point_index, interval_end DESC
            """
        ),
        {
            "system_id": system_id,
            "point_indexes": point_indexes,
            "at_or_before": at_or_before,
        },
    ).mappings()
    return {int(row["point_index"]): float(row["last"]) for row in rows}


def first_bucket_end(db: Session, *, system_id: int) -> datetime | None:
    return db.scalar(
        text("SELECT MIN(interval_end) FROM point_readings_agg_5m WHERE system_id = :system_id"),
        {"system_id": system_id},
    )


def _row_to_bucket(row: Any) -> BucketRow:
    return BucketRow(
        point_index=int(row["point_index"]),
        interval_end=_to_utc(row["interval_end"]),
        avg=row["avg"],
        min=row["min"],
        max=row["max"],
        last=row["last"],
        last_str=row["last_str"],
        delta=row["delta"],
        sample_count=int(row["sample_count"] or 0),
        error_count=int(row["error_count"] or 0),
    )


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
