from __future__ import annotations

from datetime import datetime
from threading import Lock
from typing import Any

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

POLL_INTERVAL_MINUTES = 5
CURRENT_INTERVAL = "CurrentInterval"

CHANNEL_EXTENSIONS = {
    "general": ("import", "Grid import"),
    "feedIn": ("export", "Grid export"),
    "controlledLoad": ("controlled", "Controlled load"),
}
TARIFF_ABBREVIATIONS = {
    "peak": "pk",
    "offPeak": "op",
    "shoulder": "sh",
    "solarSponge": "ss",
}

SPOT_PRICE_POINT = PointMetadata(
    point_key="spot_price",
    display_name="Grid spot price",
    metric_type="rate",
    metric_unit="cents_kWh",
    path_stem="bidi.grid.spot",
)
RENEWABLES_POINT = PointMetadata(
    point_key="renewables",
    display_name="Grid renewables",
    metric_type="proportion",
    metric_unit="%",
    path_stem="bidi.grid.renewables",
)
TARIFF_PERIOD_POINT = PointMetadata(
    point_key="tariff_period",
    display_name="Tariff period",
    metric_type="code",
    metric_unit="text",
    path_stem="bidi.grid.tariff",
)


def channel_price_point(channel_type: str) -> PointMetadata | None:
    config = CHANNEL_EXTENSIONS.get(channel_type)
    if config is None:
        return None
    extension, name = config
    return PointMetadata(
        point_key=f"{extension}_price",
        display_name=f"{name} price",
        metric_type="rate",
        metric_unit="cents_kWh",
        path_stem=f"bidi.grid.{extension}",
    )


def abbreviate_tariff_period(period: str | None) -> str | None:
    if not period:
        return None
    return TARIFF_ABBREVIATIONS.get(period, period)


class AmberClient(VendorHttpClient):
    def get_sites(self, api_key: str) -> list[dict[str, Any]]:
        payload = self._request_json("GET", "/sites", bearer_token=api_key)
        if not isinstance(payload, list):
            raise VendorApiError(status_code=502, detail="site list is not an array")
        return [item for item in payload if isinstance(item, dict)]

    def get_current_prices(self, api_key: str, site_id: str) -> list[dict[str, Any]]:
        payload = self._request_json("GET", f"/sites/{site_id}/prices/current", bearer_token=api_key)
        if not isinstance(payload, list):
            raise VendorApiError(status_code=502, detail="current prices response is not an array")
        return [item for item in payload if isinstance(item, dict)]


class AmberAdapter(VendorAdapter):
    vendor_type = "amber"
    display_name = "Amber Electric"
    data_source = "poll"
    poll_interval_minutes = POLL_INTERVAL_MINUTES
    tolerance_seconds = 60
    credential_fields = (
        CredentialField(name="api_key", label="API key", secret=True),
        CredentialField(name="site_id", label="Site ID", required=False),
    )

    def __init__(self, *, client: AmberClient, sink: ReadingSink | None = None) -> None:
        super().__init__(sink=sink)
        self._client = client
        self._site_lock = Lock()
        self._discovered_sites: dict[str, str] = {}

    def fetch(self, system: SystemRecord, credentials: dict[str, Any], now: datetime) -> AcquiredBatch:
        api_key = str(credentials["api_key"])
        site_id = self._resolve_site_id(system, credentials)
        records = self._client.get_current_prices(api_key, site_id)
        readings = map_price_records(records, now)
        if not readings:
            return AcquiredBatch(raw_response=records, skip_reason="No current price interval")
        self._logger.info("fetched current prices system_id=%s site=%s readings=%s", system.id, site_id, len(readings))
        return AcquiredBatch(readings=readings, raw_response=records)

    def test_connection(self, system: SystemRecord, credentials: dict[str, Any]) -> ConnectionTestResult:
        try:
            sites = self._client.get_sites(str(credentials["api_key"]))
        except (VendorApiError, KeyError) as exc:
            return ConnectionTestResult(success=False, error=str(exc))
        if not sites:
            return ConnectionTestResult(success=False, error="no sites found for this account")
        return ConnectionTestResult(
            success=True,
            details={"sites": [{"id": site.get("id"), "nmi": site.get("nmi")} for site in sites]},
        )

    def _resolve_site_id(self, system: SystemRecord, credentials: dict[str, Any]) -> str:
        configured = (system.vendor_site_id or "").strip() or str(credentials.get("site_id") or "").strip()
        if configured:
            return configured
        api_key = str(credentials["api_key"])
        with self._site_lock:
            cached = self._discovered_sites.get(api_key)
        if cached is not None:
            return cached
        sites = self._client.get_sites(api_key)
        if not sites or not sites[0].get("id"):
            raise VendorApiError(status_code=404, detail="no sites found for this account")
        site_id = str(sites[0]["id"])
        with self._site_lock:
            self._discovered_sites[api_key] = site_id
        return site_id


def map_price_records(records: list[dict[str, Any]], now: datetime) -> list[VendorReading]:
    """Readings for the interval in progress; actual and forecast intervals are ignored."""
    readings: list[VendorReading] = []
    market_done = False
    for record in records:
        if record.get("type") != CURRENT_INTERVAL:
            continue
        channel_type = record.get("channelType")
        point = channel_price_point(str(channel_type))
        if point is not None and record.get("perKwh") is not None:
            readings.append(VendorReading(point=point, measurement_time=now, value=record["perKwh"]))

        # market values are identical on every channel
        if not market_done:
            market_done = True
            if record.get("spotPerKwh") is not None:
                readings.append(VendorReading(point=SPOT_PRICE_POINT, measurement_time=now, value=record["spotPerKwh"]))
            if record.get("renewables") is not None:
                readings.append(VendorReading(point=RENEWABLES_POINT, measurement_time=now, value=record["renewables"]))

        if channel_type == "general":
            tariff = record.get("tariffInformation") or {}
            period = abbreviate_tariff_period(tariff.get("period") if isinstance(tariff, dict) else None)
            if period is not None:
                readings.append(VendorReading(point=TARIFF_PERIOD_POINT, measurement_time=now, value=period))
    return readings
