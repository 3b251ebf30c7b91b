from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, ClassVar, Literal, Protocol

from app.repositories.points import PointMetadata
from app.repositories.sessions import SessionInfo
from app.repositories.systems import SystemRecord

if TYPE_CHECKING:
    from app.services.ingestion import IngestResult

DataSource = Literal["poll", "push"]
PollAction = Literal["polled", "skipped", "error"]

PREVIEW_LIMIT = 50


@dataclass(frozen=True)
class CredentialField:
    name: str
    label: str
    required: bool = True
    secret: bool = False


@dataclass(frozen=True)
class ScheduleDecision:
    should_poll: bool
    reason: str
    next_poll_time: datetime | None = None


@dataclass(frozen=True)
class VendorReading:
    point: PointMetadata
    measurement_time: datetime
    value: Any
    error: str | None = None


@dataclass(frozen=True)
class PreAggregatedReading:
    point: PointMetadata
    interval_end: datetime
    avg: float | None = None
    min: float | None = None
    max: float | None = None
    last: float | None = None
    delta: float | None = None
    sample_count: int = 1


@dataclass
class AcquiredBatch:
    readings: list[VendorReading] = field(default_factory=list)
    aggregated: list[PreAggregatedReading] = field(default_factory=list)
    raw_response: dict[str, Any] | list[Any] | None = None
    schedule_hints: dict[str, Any] = field(default_factory=dict)
    skip_reason: str | None = None


@dataclass(frozen=True)
class PollingResult:
    action: PollAction
    reason: str | None = None
    error: str | None = None
    readings_count: int = 0
    rejected_count: int = 0
    next_poll_time: datetime | None = None
    raw_response: dict[str, Any] | list[Any] | None = None
    schedule_hints: dict[str, Any] = field(default_factory=dict)
    readings: list[VendorReading] = field(default_factory=list)


@dataclass(frozen=True)
class ConnectionTestResult:
    success: bool
    error: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


class ReadingSink(Protocol):
    def ingest(
        self,
        *,
        system_id: int,
        session: SessionInfo,
        readings: list[VendorReading],
    ) -> "IngestResult": ...

    def ingest_direct_5m(
        self,
        *,
        system_id: int,
        session: SessionInfo,
        readings: list[PreAggregatedReading],
    ) -> "IngestResult": ...


def local_timezone(timezone_offset_min: int) -> timezone:
    return timezone(timedelta(minutes=timezone_offset_min))


def next_minute_boundary(interval_minutes: int, timezone_offset_min: int, now: datetime) -> datetime:
    interval = max(1, int(interval_minutes))
    local_now = now.astimezone(local_timezone(timezone_offset_min))
    midnight = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
    minutes_of_day = local_now.hour * 60 + local_now.minute
    slot = (minutes_of_day // interval + 1) * interval
    return (midnight + timedelta(minutes=slot)).astimezone(timezone.utc)


class VendorAdapter(ABC):
    vendor_type: ClassVar[str]
    display_name: ClassVar[str]
    data_source: ClassVar[DataSource] = "poll"
    poll_interval_minutes: ClassVar[int] = 5
    tolerance_seconds: ClassVar[int] = 30
    credential_fields: ClassVar[tuple[CredentialField, ...]] = ()
    rate_limited: ClassVar[bool] = False

    def __init__(self, *, sink: ReadingSink | None = None, family_call_budget: int | None = None) -> None:
        self._sink = sink
        self.family_call_budget = family_call_budget
        self._logger = logging.getLogger(f"app.vendors.{self.vendor_type}")

    def interval_minutes(self, system: SystemRecord) -> int:
        return self.poll_interval_minutes

    def evaluate_schedule(
        self,
        system: SystemRecord,
        last_poll_time: datetime | None,
        now: datetime,
    ) -> ScheduleDecision:
        interval = self.interval_minutes(system)
        next_poll = next_minute_boundary(interval, system.timezone_offset_min, now)
        if last_poll_time is None:
            return ScheduleDecision(should_poll=True, reason="never polled", next_poll_time=next_poll)

        elapsed = (now - last_poll_time).total_seconds()
        required = interval * 60 - self.tolerance_seconds
        if elapsed >= required:
            return ScheduleDecision(
                should_poll=True,
                reason=f"due after {int(elapsed)}s (interval {interval}m)",
                next_poll_time=next_poll,
            )
        return ScheduleDecision(
            should_poll=False,
            reason=f"next poll in {int(required - elapsed)}s",
            next_poll_time=next_poll,
        )

    def acquire(
        self,
        system: SystemRecord,
        credentials: dict[str, Any],
        session: SessionInfo,
        *,
        dry_run: bool = False,
        now: datetime | None = None,
    ) -> PollingResult:
        current = now or datetime.now(timezone.utc)
        next_poll = next_minute_boundary(
            self.interval_minutes(system),
            system.timezone_offset_min,
            current,
        )
        try:
            batch = self.fetch(system, credentials, current)
        except Exception as exc:
            self._logger.warning(
                "acquire failed vendor=%s system_id=%s error=%s",
                self.vendor_type,
                system.id,
                exc,
            )
            return PollingResult(action="error", error=str(exc), next_poll_time=next_poll)

        # hints may change the interval, e.g. charging state
        next_poll = next_minute_boundary(
            self.interval_minutes(system),
            system.timezone_offset_min,
            current,
        )
        preview = list(batch.readings[:PREVIEW_LIMIT])
        if batch.skip_reason is not None:
            return PollingResult(
                action="skipped",
                reason=batch.skip_reason,
                next_poll_time=next_poll,
                raw_response=batch.raw_response,
                schedule_hints=batch.schedule_hints,
            )

        total = len(batch.readings) + len(batch.aggregated)
        if dry_run or self._sink is None:
            return PollingResult(
                action="polled",
                reason="dry run" if dry_run else "no sink configured",
                readings_count=total,
                next_poll_time=next_poll,
                raw_response=batch.raw_response,
                schedule_hints=batch.schedule_hints,
                readings=preview,
            )

        try:
            stored = 0
            rejected = 0
            if batch.readings:
                outcome = self._sink.ingest(system_id=system.id, session=session, readings=batch.readings)
                stored += outcome.inserted
                rejected += outcome.rejected
            if batch.aggregated:
                outcome = self._sink.ingest_direct_5m(
                    system_id=system.id,
                    session=session,
                    readings=batch.aggregated,
                )
                stored += outcome.inserted
                rejected += outcome.rejected
        except Exception as exc:
            self._logger.exception("ingestion failed vendor=%s system_id=%s", self.vendor_type, system.id)
            return PollingResult(
                action="error",
                error=str(exc),
                next_poll_time=next_poll,
                raw_response=batch.raw_response,
                schedule_hints=batch.schedule_hints,
            )

        return PollingResult(
            action="polled",
            readings_count=stored,
            rejected_count=rejected,
            next_poll_time=next_poll,
            raw_response=batch.raw_response,
            schedule_hints=batch.schedule_hints,
            readings=preview,
        )

    @abstractmethod
    def fetch(self, system: SystemRecord, credentials: dict[str, Any], now: datetime) -> AcquiredBatch:
        raise NotImplementedError

    @abstractmethod
    def test_connection(self, system: SystemRecord, credentials: dict[str, Any]) -> ConnectionTestResult:
        raise NotImplementedError
