from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any
from unittest import TestCase

from app.repositories.sessions import SessionInfo
from app.repositories.systems import SystemRecord
from app.vendors.amber import AmberAdapter, AmberClient, abbreviate_tariff_period, map_price_records
from app.vendors.base import next_minute_boundary
from app.vendors.enphase import EnphaseAdapter, EnphaseClient, map_production_intervals
from app.vendors.fronius import FroniusAdapter, parse_push_timestamp
from app.vendors.tesla import TeslaAdapter, TeslaClient, map_vehicle_data


def _system(
    vendor_type: str,
    *,
    offset: int = 0,
    hints: dict[str, Any] | None = None,
    system_id: int = 11,
) -> SystemRecord:
    return SystemRecord(
        id=system_id,
        vendor_type=vendor_type,
        vendor_site_id="site-1",
        status="active",
        timezone_offset_min=offset,
        schedule_hints=hints or {},
    )


def _utc(hour: int, minute: int, second: int = 0) -> datetime:
    return datetime(2026, 3, 1, hour, minute, second, tzinfo=timezone.utc)


class _FakeTeslaClient:
    def __init__(self, *, state: str, wakes: bool = True, data: dict[str, Any] | None = None) -> None:
        self.state = state
        self.wakes = wakes
        self.data = data or {}
        self.wake_calls = 0

    def get_vehicle(self, access_token: str, vehicle_id: str) -> dict[str, Any] | None:
        return {"id": vehicle_id, "state": self.state}

    def wake_up(self, access_token: str, vehicle_id: str, *, max_wait_seconds: float) -> bool:
        self.wake_calls += 1
        return self.wakes

    def get_vehicle_data(self, access_token: str, vehicle_id: str) -> dict[str, Any]:
        return self.data


def _tesla(client: Any = None) -> TeslaAdapter:
    return TeslaAdapter(
        client=client or TeslaClient(base_url="http://tesla.invalid", timeout_seconds=1.0),
        wake_timeout_seconds=1.0,
    )


def _enphase() -> EnphaseAdapter:
    return EnphaseAdapter(
        client=EnphaseClient(base_url="http://enphase.invalid", api_key="key", timeout_seconds=1.0),
        active_start_hour=5,
        active_end_hour=22,
        family_call_budget=2,
    )


class NextMinuteBoundaryTest(TestCase):
    def test_rounds_up_to_next_slot(self) -> None:
        self.assertEqual(next_minute_boundary(5, 0, _utc(10, 2, 30)), _utc(10, 5))

    def test_exact_boundary_moves_to_following_slot(self) -> None:
        self.assertEqual(next_minute_boundary(5, 0, _utc(10, 5)), _utc(10, 10))

    def test_slots_are_aligned_in_local_time(self) -> None:
        # local 11:07 at +01:00 -> next quarter is local 11:15
        self.assertEqual(next_minute_boundary(15, 60, _utc(10, 7)), _utc(10, 15))

    def test_rolls_over_midnight(self) -> None:
        self.assertEqual(
            next_minute_boundary(5, 0, _utc(23, 58)),
            datetime(2026, 3, 2, 0, 0, tzinfo=timezone.utc),
        )


class TeslaScheduleTest(TestCase):
    def test_idle_vehicle_uses_default_interval(self) -> None:
        adapter = _tesla()
        system = _system("tesla")
        self.assertEqual(adapter.interval_minutes(system), 15)
        decision = adapter.evaluate_schedule(system, _utc(10, 0), _utc(10, 10))
        self.assertFalse(decision.should_poll)

    def test_persisted_charging_hint_shortens_interval(self) -> None:
        adapter = _tesla()
        system = _system("tesla", hints={"charging": True})
        self.assertEqual(adapter.interval_minutes(system), 5)
        self.assertTrue(adapter.evaluate_schedule(system, _utc(10, 0), _utc(10, 4)).should_poll)
        self.assertFalse(adapter.evaluate_schedule(system, _utc(10, 0), _utc(10, 3)).should_poll)

    def test_never_polled_is_due(self) -> None:
        decision = _tesla().evaluate_schedule(_system("tesla"), None, _utc(10, 1))
        self.assertTrue(decision.should_poll)
        self.assertEqual(decision.reason, "never polled")
        self.assertEqual(decision.next_poll_time, _utc(10, 15))

    def test_fetch_updates_charging_state_in_memory(self) -> None:
        client = _FakeTeslaClient(
            state="online",
            data={"charge_state": {"charging_state": "Charging", "battery_level": 55}},
        )
        adapter = _tesla(client)
        system = _system("tesla")
        batch = adapter.fetch(system, {"access_token": "t", "vehicle_id": "v1"}, _utc(10, 0))
        self.assertEqual(batch.schedule_hints, {"charging": True})
        self.assertEqual(adapter.interval_minutes(system), 5)
        self.assertEqual(client.wake_calls, 0)

    def test_sleeping_vehicle_that_does_not_wake_is_skipped(self) -> None:
        adapter = _tesla(_FakeTeslaClient(state="asleep", wakes=False))
        system = _system("tesla")
        session = SessionInfo(id=1, system_id=system.id, cause="CRON", started_at=_utc(10, 0))
        result = adapter.acquire(
            system,
            {"access_token": "t", "vehicle_id": "v1"},
            session,
            now=_utc(10, 0),
        )
        self.assertEqual(result.action, "skipped")
        self.assertEqual(result.reason, "Vehicle did not wake up")


class _FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class _SlowTeslaClient(TeslaClient):
    """Every request takes 1.5 s of fake time; the vehicle comes online after `online_after` checks."""

    def __init__(self, clock: _FakeClock, *, online_after: int | None = None) -> None:
        super().__init__(
            base_url="http://tesla.invalid",
            timeout_seconds=1.0,
            sleep=clock.sleep,
            monotonic=clock.monotonic,
        )
        self.clock = clock
        self.online_after = online_after
        self.checks = 0

    def _request_json(self, method: str, path: str, **_kwargs: Any) -> Any:
        self.clock.now += 1.5
        return {"response": {}}

    def get_vehicle(self, access_token: str, vehicle_id: str) -> dict[str, Any] | None:
        self.clock.now += 1.5
        self.checks += 1
        online = self.online_after is not None and self.checks >= self.online_after
        return {"id": vehicle_id, "state": "online" if online else "asleep"}


class TeslaWakeTest(TestCase):
    def test_wake_wait_never_exceeds_its_deadline(self) -> None:
        clock = _FakeClock()
        client = _SlowTeslaClient(clock)

        awake = client.wake_up("t", "v1", max_wait_seconds=4.0)

        self.assertFalse(awake)
        self.assertLessEqual(clock.now, 4.0)
        self.assertEqual(clock.sleeps, [1.0])
        self.assertEqual(client.checks, 1)

    def test_wake_returns_once_vehicle_is_online(self) -> None:
        clock = _FakeClock()
        client = _SlowTeslaClient(clock, online_after=2)

        self.assertTrue(client.wake_up("t", "v1", max_wait_seconds=10.0))
        self.assertEqual(client.checks, 2)
        self.assertEqual(clock.sleeps, [2.0])


class TeslaMappingTest(TestCase):
    def test_maps_vehicle_sections(self) -> None:
        data = {
            "charge_state": {
                "timestamp": 1772359200000,
                "battery_level": 80,
                "charging_state": "Stopped",
                "charge_port_latch": "Engaged",
            },
            "drive_state": {"latitude": 52.5, "longitude": 13.4, "speed": None},
            "vehicle_state": {"odometer": 12345.6},
        }
        readings = {item.point.point_key: item for item in map_vehicle_data(data, _utc(12, 0))}
        self.assertEqual(readings["battery_soc"].value, 80)
        self.assertEqual(readings["charging_state"].value, "Stopped")
        self.assertEqual(readings["speed"].value, 0)
        self.assertTrue(readings["plugged_in"].value)
        self.assertEqual(readings["odometer"].value, 12345.6)
        self.assertNotIn("charge_amps", readings)
        self.assertEqual(
            readings["battery_soc"].measurement_time,
            datetime.fromtimestamp(1772359200, tz=timezone.utc),
        )


class EnphaseScheduleTest(TestCase):
    def test_polls_on_half_hour_slot_inside_active_hours(self) -> None:
        decision = _enphase().evaluate_schedule(_system("enphase"), _utc(9, 30), _utc(10, 0))
        self.assertTrue(decision.should_poll)
        self.assertEqual(decision.reason, "slot 10:00")

    def test_skips_between_slots(self) -> None:
        decision = _enphase().evaluate_schedule(_system("enphase"), None, _utc(10, 15))
        self.assertFalse(decision.should_poll)
        self.assertEqual(decision.reason, "between polling slots")

    def test_minimum_gap_blocks_early_slot(self) -> None:
        decision = _enphase().evaluate_schedule(_system("enphase"), _utc(10, 20), _utc(10, 30))
        self.assertFalse(decision.should_poll)

    def test_night_refill_hour(self) -> None:
        decision = _enphase().evaluate_schedule(_system("enphase"), None, _utc(2, 0))
        self.assertTrue(decision.should_poll)
        self.assertEqual(decision.reason, "refill yesterday")

    def test_outside_active_hours(self) -> None:
        self.assertFalse(_enphase().evaluate_schedule(_system("enphase"), None, _utc(23, 0)).should_poll)
        self.assertFalse(_enphase().evaluate_schedule(_system("enphase"), None, _utc(2, 30)).should_poll)

    def test_active_hours_use_local_time(self) -> None:
        # 04:30 UTC is 05:30 at +01:00
        decision = _enphase().evaluate_schedule(_system("enphase", offset=60), None, _utc(4, 30))
        self.assertTrue(decision.should_poll)
        self.assertEqual(decision.reason, "slot 05:30")


class EnphaseMappingTest(TestCase):
    def test_maps_intervals_and_skips_empty_ones(self) -> None:
        end_at = int(_utc(10, 5).timestamp())
        readings = map_production_intervals(
            {
                "intervals": [
                    {"end_at": end_at, "powr": 1200, "enwh": 100, "devices_reporting": 12},
                    {"end_at": end_at + 300, "powr": 0, "enwh": 0, "devices_reporting": 0},
                ]
            }
        )
        self.assertEqual(len(readings), 2)
        power, energy = readings
        self.assertEqual(power.point.metric_type, "power")
        self.assertEqual((power.avg, power.min, power.max, power.last), (1200.0, 1200.0, 1200.0, 1200.0))
        self.assertEqual(energy.point.metric_type, "interval_energy")
        self.assertEqual(energy.delta, 100.0)
        self.assertEqual(power.interval_end, _utc(10, 5))

    def test_missing_intervals_yield_nothing(self) -> None:
        self.assertEqual(map_production_intervals({"system_id": 1}), [])


class FroniusAdapterTest(TestCase):
    def test_never_polls(self) -> None:
        decision = FroniusAdapter().evaluate_schedule(_system("fronius"), None, _utc(10, 0))
        self.assertFalse(decision.should_poll)
        self.assertEqual(decision.reason, "push-only source")

    def test_parse_push_ignores_control_and_unknown_fields(self) -> None:
        at = _utc(10, 0)
        readings = FroniusAdapter().parse_push(
            {
                "apiKey": "site-1",
                "action": "store",
                "sequence": "abc",
                "solarW": 1500,
                "batterySOC": 64.5,
                "gridInWhInterval": 12.5,
                "mystery": 1,
                "loadW": None,
            },
            at,
        )
        keys = sorted(item.point.point_key for item in readings)
        self.assertEqual(keys, ["battery_soc", "grid_in_wh_interval", "solar_w"])
        self.assertTrue(all(item.measurement_time == at for item in readings))

    def test_parse_push_timestamp(self) -> None:
        self.assertEqual(parse_push_timestamp("2026-03-01T10:00:00Z"), _utc(10, 0))
        self.assertEqual(parse_push_timestamp("2026-03-01T11:00:00+01:00"), _utc(10, 0))
        with self.assertRaises(ValueError):
            parse_push_timestamp("yesterday")

    def test_adapter_reports_rate_limited_families(self) -> None:
        self.assertTrue(_enphase().rate_limited)
        self.assertFalse(_tesla().rate_limited)
        self.assertEqual(_enphase().family_call_budget, 2)
        self.assertEqual(
            _tesla().evaluate_schedule(_system("tesla"), None, _utc(10, 0)).next_poll_time,
            _utc(10, 0) + timedelta(minutes=15),
        )


def _price(
    channel_type: str,
    per_kwh: float,
    *,
    kind: str = "CurrentInterval",
    period: str | None = None,
) -> dict[str, Any]:
    record: dict[str, Any] = {
        "type": kind,
        "startTime": "2026-03-01T09:55:01Z",
        "endTime": "2026-03-01T10:00:00Z",
        "perKwh": per_kwh,
        "spotPerKwh": 7.5,
        "renewables": 41.2,
        "channelType": channel_type,
    }
    if period is not None:
        record["tariffInformation"] = {"period": period}
    return record


class _FakeAmberClient(AmberClient):
    def __init__(self, *, sites: list[dict[str, Any]], prices: list[dict[str, Any]]) -> None:
        super().__init__(base_url="http://amber.invalid", timeout_seconds=1.0)
        self.sites = sites
        self.prices = prices
        self.site_calls = 0
        self.price_sites: list[str] = []

    def get_sites(self, api_key: str) -> list[dict[str, Any]]:
        self.site_calls += 1
        return self.sites

    def get_current_prices(self, api_key: str, site_id: str) -> list[dict[str, Any]]:
        self.price_sites.append(site_id)
        return self.prices


class AmberMappingTest(TestCase):
    def test_maps_channels_and_market_values(self) -> None:
        records = [
            _price("general", 28.4, period="offPeak"),
            _price("feedIn", -5.1),
            _price("general", 99.0, kind="ForecastInterval"),
        ]
        readings = {item.point.point_key: item for item in map_price_records(records, _utc(10, 0))}

        self.assertEqual(
            sorted(readings),
            ["export_price", "import_price", "renewables", "spot_price", "tariff_period"],
        )
        self.assertEqual(readings["import_price"].value, 28.4)
        self.assertEqual(readings["import_price"].point.metric_unit, "cents_kWh")
        self.assertEqual(readings["export_price"].value, -5.1)
        self.assertEqual(readings["export_price"].point.path_stem, "bidi.grid.export")
        self.assertEqual(readings["renewables"].value, 41.2)
        self.assertEqual(readings["renewables"].point.metric_unit, "%")
        self.assertEqual(readings["spot_price"].value, 7.5)
        self.assertEqual(readings["tariff_period"].value, "op")
        self.assertEqual(readings["tariff_period"].measurement_time, _utc(10, 0))

    def test_unknown_channel_still_yields_market_values(self) -> None:
        readings = map_price_records([_price("battery", 12.0)], _utc(10, 0))
        self.assertEqual([item.point.point_key for item in readings], ["spot_price", "renewables"])

    def test_tariff_abbreviations(self) -> None:
        self.assertEqual(abbreviate_tariff_period("solarSponge"), "ss")
        self.assertEqual(abbreviate_tariff_period("peak"), "pk")
        self.assertEqual(abbreviate_tariff_period("critical"), "critical")
        self.assertIsNone(abbreviate_tariff_period(None))


class AmberAdapterTest(TestCase):
    def test_polls_every_five_minutes(self) -> None:
        adapter = AmberAdapter(client=_FakeAmberClient(sites=[], prices=[]))
        decision = adapter.evaluate_schedule(_system("amber"), _utc(9, 55), _utc(10, 0))
        self.assertTrue(decision.should_poll)
        self.assertEqual(decision.next_poll_time, _utc(10, 5))
        self.assertFalse(adapter.evaluate_schedule(_system("amber"), _utc(9, 58), _utc(10, 0)).should_poll)

    def test_site_is_discovered_once_when_not_configured(self) -> None:
        client = _FakeAmberClient(sites=[{"id": "01ABC"}], prices=[_price("general", 20.0)])
        adapter = AmberAdapter(client=client)
        system = replace(_system("amber"), vendor_site_id="")

        adapter.fetch(system, {"api_key": "psk_1"}, _utc(10, 0))
        batch = adapter.fetch(system, {"api_key": "psk_1"}, _utc(10, 5))

        self.assertEqual(client.site_calls, 1)
        self.assertEqual(client.price_sites, ["01ABC", "01ABC"])
        self.assertEqual(batch.raw_response, [_price("general", 20.0)])

    def test_configured_site_skips_discovery(self) -> None:
        client = _FakeAmberClient(sites=[{"id": "01ABC"}], prices=[_price("general", 20.0)])
        AmberAdapter(client=client).fetch(_system("amber"), {"api_key": "psk_1"}, _utc(10, 0))
        self.assertEqual((client.site_calls, client.price_sites), (0, ["site-1"]))

    def test_missing_current_interval_is_skipped(self) -> None:
        client = _FakeAmberClient(sites=[], prices=[_price("general", 20.0, kind="ActualInterval")])
        adapter = AmberAdapter(client=client)
        session = SessionInfo(id=1, system_id=11, cause="CRON", started_at=_utc(10, 0))
        result = adapter.acquire(_system("amber"), {"api_key": "psk_1"}, session, now=_utc(10, 0))
        self.assertEqual(result.action, "skipped")
        self.assertEqual(result.reason, "No current price interval")

    def test_connection_requires_a_site(self) -> None:
        adapter = AmberAdapter(client=_FakeAmberClient(sites=[], prices=[]))
        result = adapter.test_connection(_system("amber"), {"api_key": "psk_1"})
        self.assertFalse(result.success)
        self.assertIn("no sites", result.error or "")
