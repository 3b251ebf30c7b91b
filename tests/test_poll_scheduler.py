from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any
from unittest import TestCase
from unittest.mock import MagicMock, patch

from app.core.config import Settings
from app.repositories.points import PointMetadata
from app.repositories.sessions import SessionInfo
from app.repositories.systems import SystemRecord
from app.services.credentials import CredentialsError
from app.services.ingestion import IngestResult
from app.services.poll_scheduler import BUDGET_EXHAUSTED, PollSchedulerService
from app.vendors.base import (
    AcquiredBatch,
    ConnectionTestResult,
    VendorAdapter,
    VendorReading,
)
from app.vendors.fronius import FroniusAdapter
from app.vendors.http import VendorApiError
from app.vendors.registry import AdapterRegistry
from app.vendors.tesla import TeslaAdapter

NOW = datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)
POWER = PointMetadata(point_key="power", display_name="Power", metric_type="power", metric_unit="W")


@contextmanager
def _fake_db_context():
    yield MagicMock()


class _FakeSessionFactory:
    def __call__(self):
        return _fake_db_context()


class _FakeSink:
    def __init__(self) -> None:
        self.calls: list[int] = []

    def ingest(self, *, system_id: int, session: SessionInfo, readings: list[VendorReading]) -> IngestResult:
        self.calls.append(system_id)
        return IngestResult(system_id=system_id, session_id=session.id, inserted=len(readings))

    def ingest_direct_5m(self, *, system_id: int, session: SessionInfo, readings: list[Any]) -> IngestResult:
        return IngestResult(system_id=system_id, session_id=session.id, inserted=len(readings))


class _StaticCredentials:
    def __init__(self) -> None:
        self.missing: set[int] = set()

    def get(self, system: SystemRecord, adapter: VendorAdapter) -> dict[str, Any]:
        if system.id in self.missing:
            raise CredentialsError(system_id=system.id, detail="no entry in credentials file")
        return {"access_token": "token", "vehicle_id": "v1"}


class _AsleepTeslaClient:
    def __init__(self) -> None:
        self.wake_calls = 0

    def get_vehicle(self, access_token: str, vehicle_id: str) -> dict[str, Any] | None:
        return {"id": vehicle_id, "state": "asleep"}

    def wake_up(self, access_token: str, vehicle_id: str, *, max_wait_seconds: float) -> bool:
        self.wake_calls += 1
        return False

    def get_vehicle_data(self, access_token: str, vehicle_id: str) -> dict[str, Any]:
        raise AssertionError("vehicle never woke up")


class _CountingAdapter(VendorAdapter):
    vendor_type = "meter"
    display_name = "Meter"

    def __init__(self, *, failing: set[int] | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.failing = failing or set()
        self.timing_out: set[int] = set()
        self.fetched: list[int] = []

    def fetch(self, system: SystemRecord, credentials: dict[str, Any], now: datetime) -> AcquiredBatch:
        self.fetched.append(system.id)
        if system.id in self.failing:
            raise RuntimeError("vendor unavailable")
        if system.id in self.timing_out:
            raise VendorApiError(status_code=504, detail="timed out")
        return AcquiredBatch(
            readings=[VendorReading(point=POWER, measurement_time=now, value=1500)],
            raw_response={"ok": True},
        )

    def test_connection(self, system: SystemRecord, credentials: dict[str, Any]) -> ConnectionTestResult:
        return ConnectionTestResult(success=True)


class _LimitedAdapter(_CountingAdapter):
    vendor_type = "cloud"
    display_name = "Cloud"
    rate_limited = True


def _system(system_id: int, vendor_type: str, *, last_poll_time: datetime | None = None) -> SystemRecord:
    return SystemRecord(
        id=system_id,
        vendor_type=vendor_type,
        vendor_site_id=f"site-{system_id}",
        status="active",
        timezone_offset_min=0,
        last_poll_time=last_poll_time,
    )


class PollSchedulerServiceTest(TestCase):
    def setUp(self) -> None:
        self.sink = _FakeSink()
        self.meter = _CountingAdapter(failing={2}, sink=self.sink)
        self.cloud = _LimitedAdapter(sink=self.sink, family_call_budget=1)
        self.tesla_client = _AsleepTeslaClient()
        self.tesla = TeslaAdapter(
            client=self.tesla_client,  # type: ignore[arg-type]
            wake_timeout_seconds=1.0,
            sink=self.sink,
        )
        self.credentials = _StaticCredentials()
        self.service = PollSchedulerService(
            settings=Settings(scheduler_max_workers=2),
            session_factory=_FakeSessionFactory(),
            registry=AdapterRegistry([self.meter, self.cloud, self.tesla, FroniusAdapter()]),
            credentials=self.credentials,  # type: ignore[arg-type]
        )
        self._session_ids = iter(range(100, 200))
        self.patchers = {
            name: patch(f"app.services.poll_scheduler.{name}")
            for name in (
                "list_active_systems",
                "get_system",
                "create_session",
                "update_session_result",
                "record_poll_success",
                "record_poll_attempt",
                "record_poll_error",
                "record_poll_skipped",
            )
        }
        self.mocks = {name: patcher.start() for name, patcher in self.patchers.items()}
        self.mocks["create_session"].side_effect = lambda _db, *, system_id, cause, started_at: SessionInfo(
            id=next(self._session_ids),
            system_id=system_id,
            cause=cause,
            started_at=started_at,
        )

    def tearDown(self) -> None:
        for patcher in self.patchers.values():
            patcher.stop()
        self.service.stop()

    def test_failing_system_does_not_block_others(self) -> None:
        self.mocks["list_active_systems"].return_value = [_system(1, "meter"), _system(2, "meter")]

        summary = self.service.run_heartbeat_once(NOW)

        by_id = {item.system_id: item for item in summary.results}
        self.assertEqual(by_id[1].action, "polled")
        self.assertEqual(by_id[1].readings_count, 1)
        self.assertEqual(by_id[2].action, "error")
        self.assertEqual(by_id[2].error, "vendor unavailable")
        self.assertEqual((summary.polled, summary.errored), (1, 1))
        self.assertEqual(self.mocks["record_poll_success"].call_count, 1)
        self.assertEqual(self.mocks["record_poll_error"].call_args.kwargs["system_id"], 2)
        results = [call.kwargs["successful"] for call in self.mocks["update_session_result"].call_args_list]
        self.assertEqual(sorted(results), [False, True])
        responses = {
            call.kwargs["successful"]: call.kwargs["response"]
            for call in self.mocks["update_session_result"].call_args_list
        }
        self.assertEqual(responses[True]["raw_response"], {"ok": True})
        self.assertEqual(responses[True]["action"], "polled")

    def test_family_budget_limits_calls_per_heartbeat(self) -> None:
        self.mocks["list_active_systems"].return_value = [
            _system(10, "cloud", last_poll_time=NOW),
            _system(11, "cloud"),
            _system(12, "cloud"),
        ]

        summary = self.service.run_heartbeat_once(NOW)

        by_id = {item.system_id: item for item in summary.results}
        self.assertEqual(by_id[10].action, "skipped")
        self.assertNotEqual(by_id[10].reason, BUDGET_EXHAUSTED)
        self.assertEqual(by_id[11].action, "polled")
        self.assertEqual(by_id[12].action, "skipped")
        self.assertEqual(by_id[12].reason, BUDGET_EXHAUSTED)
        self.assertEqual(self.cloud.fetched, [11])

    def test_unknown_vendor_and_push_sources(self) -> None:
        self.mocks["list_active_systems"].return_value = [_system(20, "solaredge"), _system(21, "fronius")]

        summary = self.service.run_heartbeat_once(NOW)

        by_id = {item.system_id: item for item in summary.results}
        self.assertEqual(by_id[20].action, "error")
        self.assertIn("solaredge", by_id[20].error or "")
        self.assertEqual(by_id[21].action, "skipped")
        self.assertEqual(by_id[21].reason, "push-only source")
        self.mocks["create_session"].assert_not_called()
        self.assertEqual(self.mocks["record_poll_error"].call_args.kwargs["system_id"], 20)

    def test_dry_run_does_not_persist(self) -> None:
        self.mocks["get_system"].return_value = _system(1, "meter")

        outcome = self.service.poll_system(1, dry_run=True)

        self.assertEqual(outcome.action, "polled")
        self.assertIsNone(outcome.session_id)
        self.assertEqual(outcome.readings_count, 1)
        self.assertEqual(outcome.readings[0]["point_key"], "power")
        self.assertEqual(self.sink.calls, [])
        self.mocks["create_session"].assert_not_called()
        self.mocks["update_session_result"].assert_not_called()
        self.mocks["record_poll_success"].assert_not_called()

    def test_manual_poll_ignores_schedule(self) -> None:
        self.mocks["get_system"].return_value = _system(1, "meter", last_poll_time=NOW)

        outcome = self.service.poll_system(1, cause="USER")

        self.assertEqual(outcome.action, "polled")
        self.assertEqual(outcome.session_id, 100)
        self.assertEqual(self.mocks["create_session"].call_args.kwargs["cause"], "USER")
        self.assertEqual(self.sink.calls, [1])

    def test_manual_poll_validation(self) -> None:
        with self.assertRaises(ValueError):
            self.service.poll_system(1, cause="CRON")
        self.mocks["get_system"].return_value = None
        with self.assertRaises(LookupError):
            self.service.poll_system(99)

    def test_sleeping_vehicle_is_not_woken_on_every_heartbeat(self) -> None:
        last_polls: dict[int, datetime] = {}
        self.mocks["list_active_systems"].side_effect = lambda _db: [
            _system(30, "tesla", last_poll_time=last_polls.get(30))
        ]
        self.mocks["record_poll_attempt"].side_effect = lambda _db, *, system_id, at, **_kwargs: last_polls.update(
            {system_id: at}
        )

        summaries = [self.service.run_heartbeat_once(NOW + timedelta(minutes=minute)) for minute in range(5)]

        self.assertEqual([item.results[0].action for item in summaries], ["skipped"] * 5)
        self.assertEqual(summaries[0].results[0].reason, "Vehicle did not wake up")
        self.assertTrue(summaries[0].results[0].attempted)
        self.assertFalse(any(item.results[0].attempted for item in summaries[1:]))
        self.assertEqual(self.tesla_client.wake_calls, 1)
        self.assertEqual(self.mocks["create_session"].call_count, 1)
        self.assertEqual(self.mocks["record_poll_attempt"].call_args.kwargs["at"], NOW)
        finalized = self.mocks["update_session_result"].call_args.kwargs
        self.assertEqual((finalized["session_id"], finalized["successful"]), (100, True))
        self.mocks["record_poll_error"].assert_not_called()

        self.service.run_heartbeat_once(NOW + timedelta(minutes=15))

        self.assertEqual(self.tesla_client.wake_calls, 2)
        self.assertEqual(self.mocks["update_session_result"].call_count, 2)

    def test_session_creation_failure_is_recorded_as_error(self) -> None:
        self.mocks["list_active_systems"].return_value = [_system(1, "meter")]
        self.mocks["create_session"].side_effect = RuntimeError("database unavailable")

        summary = self.service.run_heartbeat_once(NOW)

        outcome = summary.results[0]
        self.assertEqual(outcome.action, "error")
        self.assertEqual(outcome.error, "database unavailable")
        self.assertIsNone(outcome.session_id)
        self.assertEqual(self.meter.fetched, [])
        self.mocks["update_session_result"].assert_not_called()
        self.assertEqual(self.mocks["record_poll_error"].call_args.kwargs["system_id"], 1)

    def test_missing_credentials_close_the_session(self) -> None:
        self.mocks["list_active_systems"].return_value = [_system(1, "meter")]
        self.credentials.missing.add(1)

        summary = self.service.run_heartbeat_once(NOW)

        outcome = summary.results[0]
        self.assertEqual(outcome.action, "error")
        self.assertEqual(outcome.session_id, 100)
        self.assertEqual(self.meter.fetched, [])
        finalized = self.mocks["update_session_result"].call_args.kwargs
        self.assertEqual(finalized["session_id"], 100)
        self.assertFalse(finalized["successful"])
        self.assertEqual(finalized["error_code"], "CredentialsError")
        self.assertIn("no entry in credentials file", finalized["error"])
        self.mocks["record_poll_error"].assert_called_once()

    def test_vendor_timeout_closes_the_session(self) -> None:
        self.mocks["list_active_systems"].return_value = [_system(1, "meter")]
        self.meter.timing_out.add(1)

        summary = self.service.run_heartbeat_once(NOW)

        outcome = summary.results[0]
        self.assertEqual(outcome.action, "error")
        self.assertIn("timed out", outcome.error or "")
        finalized = self.mocks["update_session_result"].call_args.kwargs
        self.assertEqual(finalized["session_id"], 100)
        self.assertFalse(finalized["successful"])
        self.assertEqual(finalized["error_code"], "ACQUIRE_FAILED")
        self.assertEqual(self.mocks["record_poll_error"].call_args.kwargs["system_id"], 1)
        self.mocks["record_poll_success"].assert_not_called()
