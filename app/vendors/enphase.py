from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Any

from app.repositories.points import PointMetadata
from app.repositories.systems import SystemRecord
from app.vendors.base import (
    AcquiredBatch,
    ConnectionTestResult,
    CredentialField,
    PreAggregatedReading,
    ReadingSink,
    ScheduleDecision,
    VendorAdapter,
    local_timezone,
    next_minute_boundary,
)
from app.vendors.http import VendorApiError, VendorHttpClient

SLOT_MINUTES = 30
MIN_GAP_MINUTES = 25
REFILL_HOURS = range(1, 6)

SOLAR_POWER_POINT = PointMetadata(
    point_key="production_power",
    display_name="Solar Power",
    metric_type="power",
    metric_unit="W",
    path_stem="source.solar",
)
SOLAR_ENERGY_POINT = PointMetadata(
    point_key="production_energy",
    display_name="Solar Energy",
    metric_type="interval_energy",
    metric_unit="Wh",
    path_stem="source.solar",
)


class EnphaseClient(VendorHttpClient):
    def __init__(self, *, base_url: str, api_key: str | None, timeout_seconds: float):
        super().__init__(base_url=base_url, timeout_seconds=timeout_seconds)
        self._api_key = api_key

    def get_production_micro(
        self,
        access_token: str,
        site_id: str,
        *,
        start_at: datetime | None = None,
        end_at: datetime | None = None,
    ) -> dict[str, Any]:
        query: dict[str, Any] = {"key": self._api_key}
        if start_at is not None:
            query["start_at"] = int(start_at.timestamp())
            # 'day' granularity still returns 5-minute intervals
            query["granularity"] = "day"
        if end_at is not None:
            query["end_at"] = int(end_at.timestamp())
        payload = self._request_json(
            "GET",
            f"/api/v4/systems/{site_id}/telemetry/production_micro",
            bearer_token=access_token,
            query=query,
        )
        if not isinstance(payload, dict):
            raise VendorApiError(status_code=502, detail="production_micro response is not an object")
        return payload

    def get_summary(self, access_token: str, site_id: str) -> dict[str, Any]:
        payload = self._request_json(
            "GET",
            f"/api/v4/systems/{site_id}/summary",
            bearer_token=access_token,
            query={"key": self._api_key},
        )
        if not isinstance(payload, dict):
            raise VendorApiError(status_code=502, detail="summary response is not an object")
        return payload


class EnphaseAdapter(VendorAdapter):
    vendor_type = "enphase"
    display_name = "Enphase"
    data_source = "poll"
    poll_interval_minutes = SLOT_MINUTES
    tolerance_seconds = (SLOT_MINUTES - MIN_GAP_MINUTES) * 60
    credential_fields = (CredentialField(name="access_token", label="Access token", secret=True),)
    rate_limited = True

    def __init__(
        self,
        *,
        client: EnphaseClient,
        active_start_hour: int,
        active_end_hour: int,
        family_call_budget: int,
        sink: ReadingSink | None = None,
    ) -> None:
        super().__init__(sink=sink, family_call_budget=family_call_budget)
        self._client = client
        self._active_start_hour = active_start_hour
        self._active_end_hour = active_end_hour

    def evaluate_schedule(
        self,
        system: SystemRecord,
        last_poll_time: datetime | None,
        now: datetime,
    ) -> ScheduleDecision:
        local_now = now.astimezone(local_timezone(system.timezone_offset_min))
        next_poll = next_minute_boundary(SLOT_MINUTES, system.timezone_offset_min, now)

        if last_poll_time is not None:
            gap = (now - last_poll_time).total_seconds()
            if gap < MIN_GAP_MINUTES * 60:
                return ScheduleDecision(
                    should_poll=False,
                    reason=f"last poll {int(gap)}s ago (minimum gap {MIN_GAP_MINUTES}m)",
                    next_poll_time=next_poll,
                )

        if local_now.hour in REFILL_HOURS and local_now.minute == 0:
            return ScheduleDecision(should_poll=True, reason="refill yesterday", next_poll_time=next_poll)

        if not self._active_start_hour <= local_now.hour < self._active_end_hour:
            return ScheduleDecision(
                should_poll=False,
                reason=f"outside active hours {self._active_start_hour:02d}:00-{self._active_end_hour:02d}:00",
                next_poll_time=next_poll,
            )
        if local_now.minute % SLOT_MINUTES != 0:
            return ScheduleDecision(should_poll=False, reason="between polling slots", next_poll_time=next_poll)
        return ScheduleDecision(
            should_poll=True,
            reason=f"slot {local_now.hour:02d}:{local_now.minute:02d}",
            next_poll_time=next_poll,
        )

    def fetch(self, system: SystemRecord, credentials: dict[str, Any], now: datetime) -> AcquiredBatch:
        access_token = str(credentials["access_token"])
        site_id = _clean_site_id(system.vendor_site_id)
        local_now = now.astimezone(local_timezone(system.timezone_offset_min))

        if local_now.hour in REFILL_HOURS:
            start_at, end_at = _day_fetch_window(local_now.date() - timedelta(days=1), system.timezone_offset_min)
            payload = self._client.get_production_micro(access_token, site_id, start_at=start_at, end_at=end_at)
        else:
            payload = self._client.get_production_micro(access_token, site_id)

        aggregated = map_production_intervals(payload)
        self._logger.info(
            "fetched production intervals system_id=%s intervals=%s",
            system.id,
            len(aggregated) // 2,
        )
        return AcquiredBatch(aggregated=aggregated, raw_response=_trim_payload(payload))

    def test_connection(self, system: SystemRecord, credentials: dict[str, Any]) -> ConnectionTestResult:
        try:
            summary = self._client.get_summary(
                str(credentials["access_token"]),
                _clean_site_id(system.vendor_site_id),
            )
        except (VendorApiError, KeyError) as exc:
            return ConnectionTestResult(success=False, error=str(exc))
        return ConnectionTestResult(
            success=True,
            details={
                "status": summary.get("status"),
                "current_power": summary.get("current_power"),
                "energy_today": summary.get("energy_today"),
            },
        )


def map_production_intervals(payload: dict[str, Any]) -> list[PreAggregatedReading]:
    intervals = payload.get("intervals")
    if not isinstance(intervals, list):
        return []
    readings: list[PreAggregatedReading] = []
    for interval in intervals:
        if not isinstance(interval, dict) or interval.get("end_at") is None:
            continue
        power = float(interval.get("powr") or 0)
        energy = float(interval.get("enwh") or 0)
        devices = int(interval.get("devices_reporting") or 0)
        if power == 0 and energy == 0 and devices == 0:
            continue
        interval_end = datetime.fromtimestamp(int(interval["end_at"]), tz=timezone.utc)
        readings.append(
            PreAggregatedReading(
                point=SOLAR_POWER_POINT,
                interval_end=interval_end,
                avg=power,
                min=power,
                max=power,
                last=power,
            )
        )
        readings.append(
            PreAggregatedReading(
                point=SOLAR_ENERGY_POINT,
                interval_end=interval_end,
                last=energy,
                delta=energy,
            )
        )
    return readings


def _day_fetch_window(day: date, timezone_offset_min: int) -> tuple[datetime, datetime]:
    tz = local_timezone(timezone_offset_min)
    start = datetime.combine(day, time.min, tzinfo=tz)
    return start.astimezone(timezone.utc), (start + timedelta(days=1)).astimezone(timezone.utc)


def _clean_site_id(value: str) -> str:
    return value.split(".")[0].strip()


def _trim_payload(payload: dict[str, Any]) -> dict[str, Any]:
    intervals = payload.get("intervals")
    trimmed = {key: value for key, value in payload.items() if key != "intervals"}
    trimmed["interval_count"] = len(intervals) if isinstance(intervals, list) else 0
    return trimmed
