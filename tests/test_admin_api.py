from __future__ import annotations

from datetime import date, datetime, timezone
from unittest import TestCase
from unittest.mock import MagicMock, patch

from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.api.admin import router as admin_router
from app.api.systems import router as systems_router
from app.db.models import DailyAggregate
from app.db.session import get_db
from app.repositories.daily_aggregates import DailyAggregateRow
from app.repositories.systems import SystemRecord
from app.services.daily_aggregation import DayOutcome, RangeReport
from app.services.poll_scheduler import HeartbeatSummary, SystemPollOutcome

SYSTEM = SystemRecord(id=4, vendor_type="tesla", vendor_site_id="v1", status="active", timezone_offset_min=0)
NOW = datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)


class _FakeScheduler:
    def __init__(self) -> None:
        self.polls: list[tuple[int, str, bool]] = []

    def poll_system(self, system_id: int, *, cause: str = "ADMIN", dry_run: bool = False) -> SystemPollOutcome:
        if system_id != SYSTEM.id:
            raise LookupError(f"system {system_id} not found")
        self.polls.append((system_id, cause, dry_run))
        return SystemPollOutcome(
            system_id=system_id,
            vendor_type="tesla",
            action="polled",
            reason="dry run" if dry_run else None,
            session_id=None if dry_run else 77,
            readings_count=11,
            attempted=True,
            readings=[{"point_key": "battery_soc", "value": 80}],
        )

    def run_heartbeat_once(self) -> HeartbeatSummary:
        return HeartbeatSummary(
            started_at=NOW,
            finished_at=NOW,
            polled=1,
            skipped=0,
            errored=0,
            results=[SystemPollOutcome(system_id=4, vendor_type="tesla", action="polled", attempted=True)],
        )


class _FakeDailyService:
    def __init__(self) -> None:
        self.regenerated: list[tuple[int, int | None]] = []

    def aggregate_day(self, system_id: int, day: date) -> DailyAggregateRow | None:
        if day == date(2026, 2, 1):
            return None
        return DailyAggregateRow(system_id=system_id, day=day, solar_kwh=12.5, interval_count=288, version=2)

    def aggregate_range(self, system_id: int, start: date, end: date) -> RangeReport:
        return RangeReport(
            outcomes=[
                DayOutcome(system_id=system_id, day=start, status="aggregated", version=1),
                DayOutcome(system_id=system_id, day=end, status="failed", error="boom"),
            ]
        )

    def regenerate_last_n_days(self, n: int, system_id: int | None = None) -> RangeReport:
        self.regenerated.append((n, system_id))
        return RangeReport()

    def delete_range(self, system_id: int, start: date | None = None, end: date | None = None) -> int:
        if (start is None) != (end is None):
            raise ValueError("start and end must both be provided or both omitted")
        return 5


class AdminApiTest(TestCase):
    def setUp(self) -> None:
        self.scheduler = _FakeScheduler()
        self.daily = _FakeDailyService()
        app = FastAPI()
        app.include_router(admin_router)
        app.include_router(systems_router)
        app.state.poll_scheduler_service = self.scheduler
        app.state.daily_aggregation_service = self.daily

        def _override_db():
            yield MagicMock()

        app.dependency_overrides[get_db] = _override_db
        self.client = TestClient(app)

    def test_dry_run_poll(self) -> None:
        response = self.client.post("/api/admin/systems/4/poll", json={"dry_run": True})

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertTrue(payload["dry_run"])
        self.assertIsNone(payload["session_id"])
        self.assertEqual(payload["readings"][0]["point_key"], "battery_soc")
        self.assertEqual(self.scheduler.polls, [(4, "ADMIN", True)])

    def test_poll_without_body_uses_admin_cause(self) -> None:
        response = self.client.post("/api/admin/systems/4/poll")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["session_id"], 77)

    def test_poll_unknown_system(self) -> None:
        response = self.client.post("/api/admin/systems/99/poll")
        self.assertEqual(response.status_code, 404)

    def test_poll_rejects_scheduler_cause(self) -> None:
        response = self.client.post("/api/admin/systems/4/poll", json={"cause": "CRON"})
        self.assertEqual(response.status_code, 422)

    def test_heartbeat(self) -> None:
        response = self.client.post("/api/admin/heartbeat")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["polled"], 1)

    def test_aggregate_day(self) -> None:
        response = self.client.post("/api/admin/systems/4/aggregate/2026-02-02")
        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["version"], 2)
        self.assertEqual(payload["values"]["solar_kwh"], 12.5)
        self.assertNotIn("interval_count", payload["values"])

    def test_aggregate_day_without_data(self) -> None:
        response = self.client.post("/api/admin/systems/4/aggregate/2026-02-01")
        self.assertEqual(response.status_code, 404)

    def test_aggregate_range_reports_failures(self) -> None:
        response = self.client.post(
            "/api/admin/systems/4/aggregate",
            json={"start": "2026-02-01", "end": "2026-02-02"},
        )
        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(len(payload["succeeded"]), 1)
        self.assertEqual(payload["failed"][0]["error"], "boom")

    def test_aggregate_range_validates_order(self) -> None:
        response = self.client.post(
            "/api/admin/systems/4/aggregate",
            json={"start": "2026-02-05", "end": "2026-02-02"},
        )
        self.assertEqual(response.status_code, 422)

    def test_regenerate_bounds(self) -> None:
        self.assertEqual(self.client.post("/api/admin/aggregate/regenerate", json={"days": 0}).status_code, 422)
        response = self.client.post("/api/admin/aggregate/regenerate", json={"days": 7, "system_id": 4})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.daily.regenerated, [(7, 4)])

    def test_delete_daily_range(self) -> None:
        with patch("app.api.admin.get_system", return_value=SYSTEM):
            ok = self.client.delete("/api/admin/systems/4/daily", params={"start": "2026-02-01", "end": "2026-02-03"})
            half = self.client.delete("/api/admin/systems/4/daily", params={"start": "2026-02-01"})
        self.assertEqual(ok.status_code, 200)
        self.assertEqual(ok.json()["deleted"], 5)
        self.assertEqual(half.status_code, 400)

    def test_sessions_reject_unknown_cause(self) -> None:
        with patch("app.api.systems.get_system", return_value=SYSTEM):
            response = self.client.get("/api/systems/4/sessions", params={"cause": "NIGHTLY"})
        self.assertEqual(response.status_code, 400)

    def test_series_range_limit(self) -> None:
        with patch("app.api.systems.get_system", return_value=SYSTEM):
            response = self.client.get(
                "/api/systems/4/series",
                params={"start": "2026-01-01T00:00:00Z", "end": "2026-03-01T00:00:00Z"},
            )
        self.assertEqual(response.status_code, 400)

    def test_series_passes_glob_patterns(self) -> None:
        with (
            patch("app.api.systems.get_system", return_value=SYSTEM),
            patch("app.api.systems.get_filtered_series", return_value=[]) as series_mock,
        ):
            response = self.client.get(
                "/api/systems/4/series",
                params={"series": "ev.battery/*,ev.{charge,location}/*", "interval": "5m"},
            )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            series_mock.call_args.kwargs["patterns"],
            ["ev.battery/*", "ev.{charge,location}/*"],
        )

    def test_daily_listing(self) -> None:
        rows = [
            DailyAggregate(
                system_id=4,
                day=date(2026, 2, 1),
                version=1,
                interval_count=288,
                counter_resets=[],
                solar_kwh=9.1,
            )
        ]
        with (
            patch("app.api.systems.get_system", return_value=SYSTEM),
            patch("app.api.systems.list_daily_aggregates", return_value=rows),
        ):
            response = self.client.get("/api/systems/4/daily")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()[0]["values"]["solar_kwh"], 9.1)
        self.assertIsNone(response.json()[0]["values"]["load_kwh"])
