from __future__ import annotations

from typing import Iterable, Literal, get_args

from app.core.config import Settings
from app.vendors.amber import AmberAdapter, AmberClient
from app.vendors.base import ReadingSink, VendorAdapter
from app.vendors.enphase import EnphaseAdapter, EnphaseClient
from app.vendors.fronius import FroniusAdapter
from app.vendors.tesla import TeslaAdapter, TeslaClient

VendorType = Literal["tesla", "enphase", "fronius", "amber"]
VENDOR_TYPES: tuple[str, ...] = get_args(VendorType)


class UnknownVendorError(LookupError):
    def __init__(self, vendor_type: str):
        self.vendor_type = vendor_type
        super().__init__(f"no adapter registered for vendor type '{vendor_type}'")


class AdapterRegistry:
    def __init__(self, adapters: Iterable[VendorAdapter]):
        self._adapters: dict[str, VendorAdapter] = {}
        for adapter in adapters:
            if adapter.vendor_type in self._adapters:
                raise ValueError(f"duplicate adapter for vendor type '{adapter.vendor_type}'")
            self._adapters[adapter.vendor_type] = adapter

    def get(self, vendor_type: str) -> VendorAdapter:
        adapter = self._adapters.get(vendor_type)
        if adapter is None:
            raise UnknownVendorError(vendor_type)
        return adapter

    def vendor_types(self) -> list[str]:
        return sorted(self._adapters)

    def adapters(self) -> list[VendorAdapter]:
        return [self._adapters[key] for key in sorted(self._adapters)]

    def rate_limited_families(self) -> list[str]:
        return [adapter.vendor_type for adapter in self.adapters() if adapter.rate_limited]

    def describe(self) -> list[dict[str, object]]:
        return [
            {
                "vendor_type": adapter.vendor_type,
                "display_name": adapter.display_name,
                "data_source": adapter.data_source,
                "poll_interval_minutes": adapter.poll_interval_minutes,
                "rate_limited": adapter.rate_limited,
                "family_call_budget": adapter.family_call_budget,
                "credential_fields": [field.name for field in adapter.credential_fields],
            }
            for adapter in self.adapters()
        ]


def build_adapter_registry(*, settings: Settings, sink: ReadingSink | None) -> AdapterRegistry:
    registry = AdapterRegistry(
        [
            TeslaAdapter(
                client=TeslaClient(
                    base_url=settings.tesla_api_base_url,
                    timeout_seconds=settings.vendor_http_timeout_seconds,
                ),
                wake_timeout_seconds=settings.tesla_wake_timeout_seconds,
                sink=sink,
            ),
            EnphaseAdapter(
                client=EnphaseClient(
                    base_url=settings.enphase_api_base_url,
                    api_key=settings.enphase_api_key,
                    timeout_seconds=settings.vendor_http_timeout_seconds,
                ),
                active_start_hour=settings.enphase_active_start_hour,
                active_end_hour=settings.enphase_active_end_hour,
                family_call_budget=settings.enphase_max_polls_per_heartbeat,
                sink=sink,
            ),
            FroniusAdapter(sink=sink),
            AmberAdapter(
                client=AmberClient(
                    base_url=settings.amber_api_base_url,
                    timeout_seconds=settings.vendor_http_timeout_seconds,
                ),
                sink=sink,
            ),
        ]
    )
    missing = [vendor_type for vendor_type in VENDOR_TYPES if vendor_type not in registry.vendor_types()]
    if missing:
        raise RuntimeError(f"adapter registry is missing vendor types: {missing}")
    return registry
