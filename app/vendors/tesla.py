from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable

from app.repositories.points import PointMetadata
from app.repositories.systems import SystemRecord
from app.vendors.base import (
    AcquiredBatch,
    ConnectionTestResult,
    CredentialField,
    ReadingSink,
    VendorAdapter,
    VendorReading,
)
from app.vendors.http import VendorApiError, VendorHttpClient

DEFAULT_INTERVAL_MINUTES = 15
CHARGING_INTERVAL_MINUTES = 5
CHARGING_HINT = "charging"
WAKE_POLL_SECONDS = 2.0


@dataclass(frozen=True)
class TeslaPoint:
    section: str
    field_name: str
    metadata: PointMetadata


def _point(section: str, field_name: str, key: str, name: str, stem: str, metric: str, unit: str) -> TeslaPoint:
    return TeslaPoint(
        section=section,
        field_name=field_name,
        metadata=PointMetadata(
            point_key=key,
            display_name=name,
            metric_type=metric,
            metric_unit=unit,
            path_stem=stem,
        ),
    )


TESLA_POINTS: tuple[TeslaPoint, ...] = (
    _point("charge_state", "battery_level", "battery_soc", "Battery SoC", "ev.battery", "soc", "%"),
    _point("charge_state", "battery_range", "battery_range", "Battery Range", "ev.battery", "range", "miles"),
    _point("charge_state", "charging_state", "charging_state", "Charging State", "ev.charge", "text", "text"),
    _point("charge_state", "charge_amps", "charge_amps", "Charge Current", "ev.charge", "current", "A"),
    _point("charge_state", "charger_power", "charge_power_kw", "Charge Power", "ev.charge", "power", "kW"),
    _point("charge_state", "charge_rate", "charge_rate", "Charge Rate", "ev.charge", "rate", "mi/hr"),
    _point("charge_state", "time_to_full_charge", "time_to_full", "Time to Full", "ev.charge", "remaining", "hours"),
    _point("drive_state", "latitude", "latitude", "Latitude", "ev.location", "latitude", "deg"),
    _point("drive_state", "longitude", "longitude", "Longitude", "ev.location", "longitude", "deg"),
    _point("drive_state", "speed", "speed", "Speed", "ev", "speed", "mph"),
    _point("vehicle_state", "odometer", "odometer", "Odometer", "ev", "odometer", "miles"),
)


class TeslaClient(VendorHttpClient):
    def __init__(
        self,
        *,
        base_url: str,
        timeout_seconds: float,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        super().__init__(base_url=base_url, timeout_seconds=timeout_seconds)
        self._sleep = sleep
        self._monotonic = monotonic

    def get_vehicles(self, access_token: str) -> list[dict[str, Any]]:
        payload = self._request_json("GET", "/api/1/vehicles", bearer_token=access_token)
        response = payload.get("response") if isinstance(payload, dict) else None
        if not isinstance(response, list):
            raise VendorApiError(status_code=502, detail="vehicle list missing 'response' array")
        return [item for item in response if isinstance(item, dict)]

    def get_vehicle(self, access_token: str, vehicle_id: str) -> dict[str, Any] | None:
        for vehicle in self.get_vehicles(access_token):
            if str(vehicle.get("id")) == vehicle_id or str(vehicle.get("id_s")) == vehicle_id:
                return vehicle
        return None

    def wake_up(self, access_token: str, vehicle_id: str, *, max_wait_seconds: float) -> bool:
        started = self._monotonic()
        self._request_json("POST", f"/api/1/vehicles/{vehicle_id}/wake_up", bearer_token=access_token)
        while True:
            remaining = max_wait_seconds - (self._monotonic() - started)
            if remaining <= 0:
                return False
            vehicle = self.get_vehicle(access_token, vehicle_id)
            if vehicle is not None and vehicle.get("state") == "online":
                return True
            remaining = max_wait_seconds - (self._monotonic() - started)
            if remaining > 0:
                self._sleep(min(WAKE_POLL_SECONDS, remaining))

    def get_vehicle_data(self, access_token: str, vehicle_id: str) -> dict[str, Any]:
        payload = self._request_json(
            "GET",
            f"/api/1/vehicles/{vehicle_id}/vehicle_data",
            bearer_token=access_token,
        )
        response = payload.get("response") if isinstance(payload, dict) else None
        if not isinstance(response, dict):
            raise VendorApiError(status_code=502, detail="vehicle data missing 'response' object")
        return response


class TeslaAdapter(VendorAdapter):
    vendor_type = "tesla"
    display_name = "Tesla"
    data_source = "poll"
    poll_interval_minutes = DEFAULT_INTERVAL_MINUTES
    tolerance_seconds = 60
    credential_fields = (
        CredentialField(name="access_token", label="Access token", secret=True),
        CredentialField(name="vehicle_id", label="Vehicle ID"),
    )

    def __init__(self, *, client: TeslaClient, wake_timeout_seconds: float, sink: ReadingSink | None = None) -> None:
        super().__init__(sink=sink)
        self._client = client
        self._wake_timeout_seconds = wake_timeout_seconds
        self._charging_lock = Lock()
        self._charging: dict[int, bool] = {}

    def is_charging(self, system: SystemRecord) -> bool:
        with self._charging_lock:
            cached = self._charging.get(system.id)
        if cached is not None:
            return cached
        # persisted hint survives restarts
        return bool(system.schedule_hints.get(CHARGING_HINT, False))

    def interval_minutes(self, system: SystemRecord) -> int:
        return CHARGING_INTERVAL_MINUTES if self.is_charging(system) else DEFAULT_INTERVAL_MINUTES

    def fetch(self, system: SystemRecord, credentials: dict[str, Any], now: datetime) -> AcquiredBatch:
        access_token = str(credentials["access_token"])
        vehicle_id = str(credentials["vehicle_id"])

        vehicle = self._client.get_vehicle(access_token, vehicle_id)
        if vehicle is None:
            raise VendorApiError(status_code=404, detail=f"vehicle {vehicle_id} not found on account")
        if vehicle.get("state") != "online":
            self._logger.info("waking vehicle system_id=%s state=%s", system.id, vehicle.get("state"))
            awake = self._client.wake_up(
                access_token,
                vehicle_id,
                max_wait_seconds=self._wake_timeout_seconds,
            )
            if not awake:
                return AcquiredBatch(skip_reason="Vehicle did not wake up")

        data = self._client.get_vehicle_data(access_token, vehicle_id)
        charge_state = data.get("charge_state") or {}
        charging = charge_state.get("charging_state") == "Charging"
        with self._charging_lock:
            self._charging[system.id] = charging

        return AcquiredBatch(
            readings=map_vehicle_data(data, now),
            raw_response=data,
            schedule_hints={CHARGING_HINT: charging},
        )

    def test_connection(self, system: SystemRecord, credentials: dict[str, Any]) -> ConnectionTestResult:
        try:
            vehicle = self._client.get_vehicle(str(credentials["access_token"]), str(credentials["vehicle_id"]))
        except (VendorApiError, KeyError) as exc:
            return ConnectionTestResult(success=False, error=str(exc))
        if vehicle is None:
            return ConnectionTestResult(success=False, error="vehicle not found on account")
        return ConnectionTestResult(
            success=True,
            details={"state": vehicle.get("state"), "display_name": vehicle.get("display_name")},
        )


def map_vehicle_data(data: dict[str, Any], now: datetime) -> list[VendorReading]:
    charge_state = data.get("charge_state") or {}
    measured_at = _timestamp_ms(charge_state.get("timestamp")) or now
    readings: list[VendorReading] = []
    for point in TESLA_POINTS:
        section = data.get(point.section)
        if not isinstance(section, dict):
            continue
        value = section.get(point.field_name)
        if value is None:
            if point.field_name == "speed":
                value = 0
            else:
                continue
        readings.append(VendorReading(point=point.metadata, measurement_time=measured_at, value=value))

    latch = charge_state.get("charge_port_latch")
    if latch is not None:
        readings.append(
            VendorReading(
                point=PointMetadata(
                    point_key="plugged_in",
                    display_name="Plugged In",
                    metric_type="engaged",
                    metric_unit="boolean",
                    path_stem="ev.charge",
                ),
                measurement_time=measured_at,
                value=latch == "Engaged",
            )
        )
    return readings


def _timestamp_ms(value: Any) -> datetime | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return datetime.fromtimestamp(float(value) / 1000.0, tz=timezone.utc)
