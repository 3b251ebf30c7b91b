from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping

from app.repositories.points import PointMetadata
from app.repositories.systems import SystemRecord
from app.vendors.base import (
    AcquiredBatch,
    ConnectionTestResult,
    ScheduleDecision,
    VendorAdapter,
    VendorReading,
)

PUSH_CONTROL_FIELDS = frozenset({"apiKey", "action", "timestamp", "sequence"})


def _meta(key: str, name: str, stem: str, metric: str, unit: str) -> PointMetadata:
    return PointMetadata(point_key=key, display_name=name, metric_type=metric, metric_unit=unit, path_stem=stem)


FRONIUS_FIELDS: dict[str, PointMetadata] = {
    "solarW": _meta("solar_w", "Solar", "source.solar", "power", "W"),
    "solarLocalW": _meta("solar_local_w", "Solar Local", "source.solar.local", "power", "W"),
    "solarRemoteW": _meta("solar_remote_w", "Solar Remote", "source.solar.remote", "power", "W"),
    "loadW": _meta("load_w", "Load", "load", "power", "W"),
    "batteryW": _meta("battery_w", "Battery", "bidi.battery", "power", "W"),
    "gridW": _meta("grid_w", "Grid", "bidi.grid", "power", "W"),
    "batterySOC": _meta("battery_soc", "Battery", "bidi.battery", "soc", "%"),
    "faultCode": _meta("fault_code", "Fault", "system.fault", "text", "text"),
    "faultTimestamp": _meta("fault_timestamp", "Fault Time", "system.fault", "timestamp", "epochMs"),
    "generatorStatus": _meta("generator_status", "Generator", "generator", "status", "bool"),
    "solarWhInterval": _meta("solar_wh_interval", "Solar", "source.solar", "interval_energy", "Wh"),
    "loadWhInterval": _meta("load_wh_interval", "Load", "load", "interval_energy", "Wh"),
    "batteryInWhInterval": _meta(
        "battery_in_wh_interval", "Battery Charge", "bidi.battery.charge", "interval_energy", "Wh"
    ),
    "batteryOutWhInterval": _meta(
        "battery_out_wh_interval", "Battery Discharge", "bidi.battery.discharge", "interval_energy", "Wh"
    ),
    "gridInWhInterval": _meta("grid_in_wh_interval", "Import", "bidi.grid.import", "interval_energy", "Wh"),
    "gridOutWhInterval": _meta("grid_out_wh_interval", "Export", "bidi.grid.export", "interval_energy", "Wh"),
}


class FroniusAdapter(VendorAdapter):
    vendor_type = "fronius"
    display_name = "Fronius"
    data_source = "push"

    def evaluate_schedule(
        self,
        system: SystemRecord,
        last_poll_time: datetime | None,
        now: datetime,
    ) -> ScheduleDecision:
        return ScheduleDecision(should_poll=False, reason="push-only source", next_poll_time=None)

    def fetch(self, system: SystemRecord, credentials: dict[str, Any], now: datetime) -> AcquiredBatch:
        return AcquiredBatch(skip_reason="push-only source")

    def test_connection(self, system: SystemRecord, credentials: dict[str, Any]) -> ConnectionTestResult:
        return ConnectionTestResult(
            success=True,
            details={"mode": "push", "site_id": system.vendor_site_id},
        )

    def parse_push(self, payload: Mapping[str, Any], measurement_time: datetime) -> list[VendorReading]:
        readings: list[VendorReading] = []
        for field_name, value in payload.items():
            if field_name in PUSH_CONTROL_FIELDS or value is None:
                continue
            metadata = FRONIUS_FIELDS.get(field_name)
            if metadata is None:
                self._logger.debug("ignoring unknown push field=%s", field_name)
                continue
            readings.append(VendorReading(point=metadata, measurement_time=measurement_time, value=value))
        return readings


def parse_push_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)
