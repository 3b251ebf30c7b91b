from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta, timezone
from threading import Event, Lock, Thread
from typing import Any, Literal

from sqlalchemy.orm import Session, sessionmaker

from app.core.config import Settings
from app.repositories.aggregates_5m import fetch_baselines, fetch_buckets, first_bucket_end
from app.repositories.daily_aggregates import (
    DailyAggregateRow,
    compute_daily_aggregate,
    day_bounds,
    delete_daily_range,
    list_aggregated_days,
    local_day_of_interval_end,
    local_today,
    upsert_daily_aggregate,
)
from app.repositories.points import deactivate_stale_points, list_points
from app.repositories.systems import SystemRecord, get_system, list_active_systems

DayStatus = Literal["aggregated", "no_data", "failed"]


@dataclass(frozen=True)
class DayOutcome:
    system_id: int
    day: date
    status: DayStatus
    error: str | None = None
    version: int | None = None


@dataclass
class RangeReport:
    outcomes: list[DayOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> list[DayOutcome]:
        return [item for item in self.outcomes if item.status == "aggregated"]

    @property
    def no_data(self) -> list[DayOutcome]:
        return [item for item in self.outcomes if item.status == "no_data"]

    @property
    def failed(self) -> list[DayOutcome]:
        return [item for item in self.outcomes if item.status == "failed"]

    def extend(self, other: "RangeReport") -> None:
        self.outcomes.extend(other.outcomes)

    def as_dict(self) -> dict[str, Any]:
        return {
            "succeeded": [_outcome_dict(item) for item in self.succeeded],
            "no_data": [_outcome_dict(item) for item in self.no_data],
            "failed": [_outcome_dict(item) for item in self.failed],
        }


class DailyAggregationService:
    def __init__(self, *, settings: Settings, session_factory: sessionmaker) -> None:
        self._settings = settings
        self._session_factory = session_factory
        self._logger = logging.getLogger("app.daily_aggregation")
        self._stop_event = Event()
        self._thread: Thread | None = None

        self._lock = Lock()
        self._running = False
        self._next_due_ts: datetime | None = None
        self._last_error: str | None = None
        self._last_run_ts: datetime | None = None
        self._last_stale_check: date | None = None
        self._yesterday_state: dict[int, tuple[date, bool]] = {}

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
            self._next_due_ts = datetime.now(timezone.utc)
        self._stop_event.clear()
        self._thread = Thread(target=self._loop, name="daily-aggregation", daemon=True)
        self._thread.start()
        self._logger.info(
            "started daily aggregation enabled=%s check_seconds=%s",
            self._settings.daily_aggregation_enabled,
            self._settings.daily_aggregation_check_seconds,
        )

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5.0)
        with self._lock:
            self._running = False

    def get_status_snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "enabled": self._settings.daily_aggregation_enabled,
                "running": self._running and not self._stop_event.is_set(),
                "check_seconds": self._settings.daily_aggregation_check_seconds,
                "next_due_ts": _to_iso(self._next_due_ts),
                "last_run_ts": _to_iso(self._last_run_ts),
                "last_error": self._last_error,
                "systems_tracked": len(self._yesterday_state),
            }

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            if not self._settings.daily_aggregation_enabled:
                self._stop_event.wait(1.0)
                continue

            now = datetime.now(timezone.utc)
            with self._lock:
                next_due = self._next_due_ts
            if next_due is None or now >= next_due:
                try:
                    self.aggregate_yesterday_all(now)
                    self.deactivate_stale_points(now)
                    error = None
                except Exception as exc:
                    self._logger.exception("daily aggregation cycle failed")
                    error = str(exc)
                with self._lock:
                    self._last_error = error
                    self._last_run_ts = now
                    self._next_due_ts = now + timedelta(seconds=self._settings.daily_aggregation_check_seconds)

            self._stop_event.wait(1.0)

    def aggregate_day(self, system_id: int, day: date) -> DailyAggregateRow | None:
        with self._session_factory() as db:
            system = _require_system(db, system_id)
            row = self._aggregate_day(db, system, day)
            db.commit()
            return row

    def aggregate_range(self, system_id: int, start: date, end: date) -> RangeReport:
        if start > end:
            raise ValueError("start must not be after end")
        with self._session_factory() as db:
            system = _require_system(db, system_id)
        return self._aggregate_days(system, _days_between(start, end))

    def regenerate_date(self, day: date) -> RangeReport:
        with self._session_factory() as db:
            systems = list_active_systems(db)
        report = RangeReport()
        for system in systems:
            report.extend(self._aggregate_days(system, [day]))
        return report

    def regenerate_last_n_days(
        self,
        n: int,
        system_id: int | None = None,
        *,
        now: datetime | None = None,
    ) -> RangeReport:
        if n < 1:
            raise ValueError("n must be at least 1")
        current = now or datetime.now(timezone.utc)
        systems = self._target_systems(system_id)
        report = RangeReport()
        for system in systems:
            today = local_today(current, system.timezone_offset_min)
            start = today - timedelta(days=n - 1)
            with self._session_factory() as db:
                deleted = delete_daily_range(db, system_id=system.id, start=start, end=today)
                db.commit()
            self._logger.info(
                "regenerating system_id=%s days=%s..%s deleted=%s",
                system.id,
                start,
                today,
                deleted,
            )
            report.extend(self._aggregate_days(system, _days_between(start, today)))
        return report

    def delete_range(self, system_id: int, start: date | None = None, end: date | None = None) -> int:
        with self._session_factory() as db:
            deleted = delete_daily_range(db, system_id=system_id, start=start, end=end)
            db.commit()
        self._logger.info("deleted daily aggregates system_id=%s start=%s end=%s rows=%s", system_id, start, end, deleted)
        return deleted

    def aggregate_yesterday_all(self, now: datetime | None = None) -> RangeReport:
        current = now or datetime.now(timezone.utc)
        with self._session_factory() as db:
            systems = list_active_systems(db)
        report = RangeReport()
        for system in systems:
            yesterday = local_today(current, system.timezone_offset_min) - timedelta(days=1)
            settled = self._is_settled(current, system.timezone_offset_min)
            with self._lock:
                state = self._yesterday_state.get(system.id)
            # Vendors may refill yesterday until the settle time; one pass after it is final.
            if state is not None and state[0] == yesterday and (state[1] or not settled):
                continue
            outcome_report = self._aggregate_days(system, [yesterday])
            report.extend(outcome_report)
            if outcome_report.outcomes and len(outcome_report.succeeded) == len(outcome_report.outcomes):
                with self._lock:
                    self._yesterday_state[system.id] = (yesterday, settled)
        if report.outcomes:
            self._logger.info(
                "aggregated yesterday systems=%s succeeded=%s no_data=%s failed=%s",
                len(report.outcomes),
                len(report.succeeded),
                len(report.no_data),
                len(report.failed),
            )
        return report

    def aggregate_missing_days(
        self,
        system_id: int | None = None,
        *,
        now: datetime | None = None,
    ) -> RangeReport:
        current = now or datetime.now(timezone.utc)
        report = RangeReport()
        for system in self._target_systems(system_id):
            with self._session_factory() as db:
                first_end = first_bucket_end(db, system_id=system.id)
                existing = list_aggregated_days(db, system_id=system.id)
            if first_end is None:
                continue
            first_day = local_day_of_interval_end(first_end, system.timezone_offset_min)
            yesterday = local_today(current, system.timezone_offset_min) - timedelta(days=1)
            if first_day > yesterday:
                continue
            missing = [day for day in _days_between(first_day, yesterday) if day not in existing]
            if missing:
                self._logger.info("backfilling system_id=%s missing_days=%s", system.id, len(missing))
                report.extend(self._aggregate_days(system, missing))
        return report

    def deactivate_stale_points(self, now: datetime | None = None) -> int:
        current = now or datetime.now(timezone.utc)
        today = current.date()
        with self._lock:
            if self._last_stale_check == today:
                return 0
        stale_before = current - timedelta(days=self._settings.point_stale_days)
        total = 0
        with self._session_factory() as db:
            for system in list_active_systems(db):
                total += deactivate_stale_points(db, system_id=system.id, stale_before=stale_before)
            db.commit()
        with self._lock:
            self._last_stale_check = today
        if total:
            self._logger.info("deactivated stale points count=%s stale_before=%s", total, stale_before.isoformat())
        return total

    def _is_settled(self, current: datetime, offset_minutes: int) -> bool:
        local_now = current.astimezone(timezone.utc) + timedelta(minutes=offset_minutes)
        return local_now.time() >= self._settings.daily_settle_local_time

    def _aggregate_days(self, system: SystemRecord, days: list[date]) -> RangeReport:
        report = RangeReport()
        for day in days:
            try:
                with self._session_factory() as db:
                    row = self._aggregate_day(db, system, day)
                    db.commit()
            except Exception as exc:
                self._logger.exception("daily aggregation failed system_id=%s day=%s", system.id, day)
                report.outcomes.append(DayOutcome(system_id=system.id, day=day, status="failed", error=str(exc)))
                continue
            if row is None:
                report.outcomes.append(DayOutcome(system_id=system.id, day=day, status="no_data"))
            else:
                report.outcomes.append(
                    DayOutcome(system_id=system.id, day=day, status="aggregated", version=row.version)
                )
        return report

    def _aggregate_day(self, db: Session, system: SystemRecord, day: date) -> DailyAggregateRow | None:
        start, end = day_bounds(day, system.timezone_offset_min)
        buckets = fetch_buckets(db, system_id=system.id, start=start, end=end)
        if not buckets:
            return None
        points = list_points(db, system_id=system.id)
        baselines = fetch_baselines(
            db,
            system_id=system.id,
            point_indexes=[point.point_index for point in points if point.metric_type == "energy"],
            at_or_before=start,
        )
        row = compute_daily_aggregate(
            system_id=system.id,
            day=day,
            points=points,
            buckets=buckets,
            baselines=baselines,
        )
        if row is None:
            return None
        if row.counter_resets:
            self._logger.warning(
                "counter reset detected system_id=%s day=%s roles=%s",
                system.id,
                day,
                ",".join(row.counter_resets),
            )
        version = upsert_daily_aggregate(db, row=row)
        return replace(row, version=version)

    def _target_systems(self, system_id: int | None) -> list[SystemRecord]:
        with self._session_factory() as db:
            if system_id is None:
                return list_active_systems(db)
            return [_require_system(db, system_id)]


def _require_system(db: Session, system_id: int) -> SystemRecord:
    system = get_system(db, system_id=system_id)
    if system is None:
        raise LookupError(f"system {system_id} not found")
    return system


def _days_between(start: date, end: date) -> list[date]:
    return [start + timedelta(days=offset) for offset in range((end - start).days + 1)]


def _outcome_dict(outcome: DayOutcome) -> dict[str, Any]:
    payload: dict[str, Any] = {"system_id": outcome.system_id, "day": outcome.day.isoformat()}
    if outcome.error is not None:
        payload["error"] = outcome.error
    if outcome.version is not None:
        payload["version"] = outcome.version
    return payload


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat()
