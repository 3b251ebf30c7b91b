from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from threading import Event, Lock, Thread
from typing import Any

from sqlalchemy.orm import sessionmaker

from app.core.config import Settings
from app.repositories.points import point_path
from app.repositories.polling_status import (
    record_poll_attempt,
    record_poll_error,
    record_poll_skipped,
    record_poll_success,
)
from app.repositories.sessions import SessionInfo, create_session, update_session_result
from app.repositories.systems import SystemRecord, get_system, list_active_systems
from app.services.credentials import CredentialsError, FileCredentialsProvider
from app.vendors.base import ConnectionTestResult, PollingResult, VendorAdapter, VendorReading
from app.vendors.registry import AdapterRegistry, UnknownVendorError

MANUAL_CAUSES = frozenset({"ADMIN", "USER", "USER-TEST"})
BUDGET_EXHAUSTED = "call budget exhausted"


@dataclass(frozen=True)
class SystemPollOutcome:
    system_id: int
    vendor_type: str
    action: str
    reason: str | None = None
    error: str | None = None
    session_id: int | None = None
    readings_count: int = 0
    rejected_count: int = 0
    duration_ms: int = 0
    attempted: bool = False
    next_poll_time: datetime | None = None
    readings: list[dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class HeartbeatSummary:
    started_at: datetime
    finished_at: datetime
    polled: int
    skipped: int
    errored: int
    results: list[SystemPollOutcome] = field(default_factory=list)


class PollSchedulerService:
    def __init__(
        self,
        *,
        settings: Settings,
        session_factory: sessionmaker,
        registry: AdapterRegistry,
        credentials: FileCredentialsProvider,
    ) -> None:
        self._settings = settings
        self._session_factory = session_factory
        self._registry = registry
        self._credentials = credentials
        self._logger = logging.getLogger("app.poll_scheduler")
        self._stop_event = Event()
        self._thread: Thread | None = None
        self._executor = ThreadPoolExecutor(
            max_workers=settings.scheduler_max_workers,
            thread_name_prefix="poll-worker",
        )

        self._lock = Lock()
        self._running = False
        self._heartbeat_in_progress = False
        self._next_due_ts: datetime | None = None
        self._last_summary: HeartbeatSummary | None = None
        self._last_error: str | None = None

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
            self._next_due_ts = datetime.now(timezone.utc)
        self._stop_event.clear()
        self._thread = Thread(target=self._loop, name="poll-scheduler", daemon=True)
        self._thread.start()
        self._logger.info(
            "started poll scheduler enabled=%s heartbeat_seconds=%s workers=%s vendors=%s",
            self._settings.scheduler_enabled,
            self._settings.scheduler_heartbeat_seconds,
            self._settings.scheduler_max_workers,
            ",".join(self._registry.vendor_types()),
        )

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5.0)
        self._executor.shutdown(wait=False, cancel_futures=True)
        with self._lock:
            self._running = False

    def get_status_snapshot(self) -> dict[str, Any]:
        with self._lock:
            summary = self._last_summary
            return {
                "enabled": self._settings.scheduler_enabled,
                "running": self._running and not self._stop_event.is_set(),
                "heartbeat_seconds": self._settings.scheduler_heartbeat_seconds,
                "heartbeat_in_progress": self._heartbeat_in_progress,
                "next_due_ts": _to_iso(self._next_due_ts),
                "last_error": self._last_error,
                "vendors": self._registry.describe(),
                "last_heartbeat": None
                if summary is None
                else {
                    "started_at": _to_iso(summary.started_at),
                    "finished_at": _to_iso(summary.finished_at),
                    "polled": summary.polled,
                    "skipped": summary.skipped,
                    "errored": summary.errored,
                },
            }

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            if not self._settings.scheduler_enabled:
                self._stop_event.wait(1.0)
                continue

            now = datetime.now(timezone.utc)
            with self._lock:
                next_due = self._next_due_ts
            if next_due is None or now >= next_due:
                try:
                    self.run_heartbeat_once(now)
                except Exception as exc:
                    self._logger.exception("heartbeat failed")
                    with self._lock:
                        self._last_error = str(exc)
                with self._lock:
                    self._next_due_ts = now + timedelta(seconds=self._settings.scheduler_heartbeat_seconds)

            self._stop_event.wait(1.0)

    def run_heartbeat_once(self, now: datetime | None = None) -> HeartbeatSummary:
        started = now or datetime.now(timezone.utc)
        with self._lock:
            self._heartbeat_in_progress = True
        try:
            with self._session_factory() as db:
                systems = list_active_systems(db)

            outcomes: list[SystemPollOutcome] = []
            general: list[tuple[SystemRecord, VendorAdapter]] = []
            families: dict[str, list[tuple[SystemRecord, VendorAdapter]]] = {}
            for system in systems:
                try:
                    adapter = self._registry.get(system.vendor_type)
                except UnknownVendorError as exc:
                    outcomes.append(self._record_configuration_error(system, exc, started))
                    continue
                if adapter.data_source == "push":
                    outcomes.append(
                        SystemPollOutcome(
                            system_id=system.id,
                            vendor_type=system.vendor_type,
                            action="skipped",
                            reason="push-only source",
                        )
                    )
                elif adapter.rate_limited:
                    families.setdefault(adapter.vendor_type, []).append((system, adapter))
                else:
                    general.append((system, adapter))

            futures = [
                self._executor.submit(
                    self._attempt,
                    system,
                    adapter,
                    cause="CRON",
                    dry_run=False,
                    now=started,
                    check_schedule=True,
                )
                for system, adapter in general
            ]
            for future in futures:
                outcomes.append(future.result())

            for family, members in families.items():
                outcomes.extend(self._run_family_pass(family, members, started))

            summary = HeartbeatSummary(
                started_at=started,
                finished_at=datetime.now(timezone.utc),
                polled=sum(1 for item in outcomes if item.action == "polled"),
                skipped=sum(1 for item in outcomes if item.action == "skipped"),
                errored=sum(1 for item in outcomes if item.action == "error"),
                results=outcomes,
            )
            with self._lock:
                self._last_summary = summary
                self._last_error = None
            self._logger.info(
                "heartbeat finished systems=%s polled=%s skipped=%s errored=%s",
                len(outcomes),
                summary.polled,
                summary.skipped,
                summary.errored,
            )
            return summary
        finally:
            with self._lock:
                self._heartbeat_in_progress = False

    def poll_system(self, system_id: int, *, cause: str = "ADMIN", dry_run: bool = False) -> SystemPollOutcome:
        if not dry_run and cause not in MANUAL_CAUSES:
            raise ValueError(f"unsupported manual poll cause '{cause}'")
        with self._session_factory() as db:
            system = get_system(db, system_id=system_id)
        if system is None:
            raise LookupError(f"system {system_id} not found")

        now = datetime.now(timezone.utc)
        try:
            adapter = self._registry.get(system.vendor_type)
        except UnknownVendorError as exc:
            if dry_run:
                return SystemPollOutcome(
                    system_id=system.id,
                    vendor_type=system.vendor_type,
                    action="error",
                    error=str(exc),
                )
            return self._record_configuration_error(system, exc, now)
        return self._attempt(
            system,
            adapter,
            cause="ADMIN-DRYRUN" if dry_run else cause,
            dry_run=dry_run,
            now=now,
            check_schedule=False,
        )

    def test_connection(self, system_id: int) -> ConnectionTestResult:
        with self._session_factory() as db:
            system = get_system(db, system_id=system_id)
        if system is None:
            raise LookupError(f"system {system_id} not found")
        adapter = self._registry.get(system.vendor_type)
        try:
            credentials = self._credentials.get(system, adapter)
        except CredentialsError as exc:
            return ConnectionTestResult(success=False, error=str(exc))
        return adapter.test_connection(system, credentials)

    def _run_family_pass(
        self,
        family: str,
        members: list[tuple[SystemRecord, VendorAdapter]],
        now: datetime,
    ) -> list[SystemPollOutcome]:
        outcomes: list[SystemPollOutcome] = []
        calls = 0
        for system, adapter in members:
            budget = adapter.family_call_budget
            if budget is not None and calls >= budget:
                outcomes.append(
                    SystemPollOutcome(
                        system_id=system.id,
                        vendor_type=system.vendor_type,
                        action="skipped",
                        reason=BUDGET_EXHAUSTED,
                    )
                )
                continue
            outcome = self._attempt(
                system,
                adapter,
                cause="CRON",
                dry_run=False,
                now=now,
                check_schedule=True,
            )
            if outcome.attempted:
                calls += 1
            outcomes.append(outcome)
        exhausted = sum(1 for item in outcomes if item.reason == BUDGET_EXHAUSTED)
        if exhausted:
            self._logger.warning("family=%s call budget exhausted skipped=%s", family, exhausted)
        return outcomes

    def _attempt(
        self,
        system: SystemRecord,
        adapter: VendorAdapter,
        *,
        cause: str,
        dry_run: bool,
        now: datetime,
        check_schedule: bool,
    ) -> SystemPollOutcome:
        next_poll_time: datetime | None = None
        if check_schedule:
            try:
                decision = adapter.evaluate_schedule(system, system.last_poll_time, now)
            except Exception as exc:
                self._logger.exception("schedule evaluation failed system_id=%s", system.id)
                return SystemPollOutcome(
                    system_id=system.id,
                    vendor_type=system.vendor_type,
                    action="error",
                    error=str(exc),
                )
            next_poll_time = decision.next_poll_time
            if not decision.should_poll:
                self._store_skip(system, next_poll_time)
                return SystemPollOutcome(
                    system_id=system.id,
                    vendor_type=system.vendor_type,
                    action="skipped",
                    reason=decision.reason,
                    next_poll_time=next_poll_time,
                )

        started_monotonic = time.monotonic()
        session: SessionInfo | None = None
        result: PollingResult | None = None
        error_code: str | None = None
        try:
            if dry_run:
                session = SessionInfo(id=0, system_id=system.id, cause=cause, started_at=now)
            else:
                with self._session_factory() as db:
                    session = create_session(db, system_id=system.id, cause=cause, started_at=now)
                    db.commit()
            credentials = self._credentials.get(system, adapter)
            result = adapter.acquire(system, credentials, session, dry_run=dry_run, now=now)
            if result.action == "error":
                error_code = "ACQUIRE_FAILED"
        except Exception as exc:
            self._logger.exception("poll failed system_id=%s vendor=%s", system.id, system.vendor_type)
            error_code = type(exc).__name__
            result = PollingResult(action="error", error=str(exc), next_poll_time=next_poll_time)
        finally:
            duration_ms = int((time.monotonic() - started_monotonic) * 1000)
            if not dry_run and result is not None:
                self._finalize(system, session, result, error_code=error_code, duration_ms=duration_ms, at=now)

        return SystemPollOutcome(
            system_id=system.id,
            vendor_type=system.vendor_type,
            action=result.action,
            reason=result.reason,
            error=result.error,
            session_id=session.id if session is not None and not dry_run else None,
            readings_count=result.readings_count,
            rejected_count=result.rejected_count,
            duration_ms=duration_ms,
            attempted=True,
            next_poll_time=result.next_poll_time or next_poll_time,
            readings=[_reading_preview(item) for item in result.readings],
        )

    def _finalize(
        self,
        system: SystemRecord,
        session: SessionInfo | None,
        result: PollingResult,
        *,
        error_code: str | None,
        duration_ms: int,
        at: datetime,
    ) -> None:
        try:
            with self._session_factory() as db:
                if session is not None:
                    update_session_result(
                        db,
                        session_id=session.id,
                        duration_ms=duration_ms,
                        successful=result.action != "error",
                        error_code=error_code,
                        error=result.error,
                        response=_session_response(result),
                        num_rows=result.readings_count,
                    )
                if result.action == "polled":
                    record_poll_success(
                        db,
                        system_id=system.id,
                        at=at,
                        response=result.raw_response,
                        next_poll_time=result.next_poll_time,
                        schedule_hints=result.schedule_hints,
                    )
                elif result.action == "error":
                    record_poll_error(
                        db,
                        system_id=system.id,
                        at=at,
                        error=result.error or "unknown error",
                        response=result.raw_response,
                    )
                else:
                    record_poll_attempt(
                        db,
                        system_id=system.id,
                        at=at,
                        response=result.raw_response,
                        next_poll_time=result.next_poll_time,
                        schedule_hints=result.schedule_hints,
                    )
                db.commit()
        except Exception:
            self._logger.exception(
                "failed to record poll outcome system_id=%s session_id=%s",
                system.id,
                session.id if session is not None else None,
            )

    def _store_skip(self, system: SystemRecord, next_poll_time: datetime | None) -> None:
        try:
            with self._session_factory() as db:
                record_poll_skipped(db, system_id=system.id, next_poll_time=next_poll_time)
                db.commit()
        except Exception:
            self._logger.exception("failed to record skip system_id=%s", system.id)

    def _record_configuration_error(
        self,
        system: SystemRecord,
        exc: UnknownVendorError,
        at: datetime,
    ) -> SystemPollOutcome:
        self._logger.error("unknown vendor system_id=%s vendor=%s", system.id, exc.vendor_type)
        try:
            with self._session_factory() as db:
                record_poll_error(db, system_id=system.id, at=at, error=str(exc))
                db.commit()
        except Exception:
            self._logger.exception("failed to record configuration error system_id=%s", system.id)
        return SystemPollOutcome(
            system_id=system.id,
            vendor_type=system.vendor_type,
            action="error",
            error=str(exc),
        )


def _session_response(result: PollingResult) -> dict[str, Any]:
    response: dict[str, Any] = {"action": result.action}
    if result.reason:
        response["reason"] = result.reason
    if result.rejected_count:
        response["rejected"] = result.rejected_count
    if result.schedule_hints:
        response["schedule_hints"] = result.schedule_hints
    if result.raw_response is not None:
        response["raw_response"] = result.raw_response
    return response


def _reading_preview(reading: VendorReading) -> dict[str, Any]:
    return {
        "point_key": reading.point.point_key,
        "point_path": point_path(reading.point.path_stem, reading.point.point_key, reading.point.metric_type),
        "value": reading.value,
        "metric_unit": reading.point.metric_unit,
        "measurement_time": _to_iso(reading.measurement_time),
    }


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()
