from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any
from unittest import TestCase
from unittest.mock import patch

from app.repositories.points import PointMetadata, PointRef
from app.repositories.readings import InsertOutcome, PreparedReading
from app.repositories.sessions import SessionInfo
from app.services.ingestion import (
    NON_NUMERIC_ERROR,
    ReadingIngestionService,
    SessionSystemMismatchError,
    convert_value,
)
from app.vendors.base import PreAggregatedReading, VendorReading

SOLAR = PointMetadata(
    point_key="solar_w",
    display_name="Solar",
    metric_type="power",
    metric_unit="W",
    path_stem="source.solar",
)
SOLAR_REF = PointRef(
    system_id=3,
    point_index=1,
    point_key="solar_w",
    display_name="Solar",
    metric_type="power",
    metric_unit="W",
    path_stem="source.solar",
)


class _FakeDb:
    def __init__(self) -> None:
        self.commits = 0

    def commit(self) -> None:
        self.commits += 1


class _FakeSessionFactory:
    def __init__(self) -> None:
        self.db = _FakeDb()

    def __call__(self):
        return self._context()

    @contextmanager
    def _context(self):
        yield self.db


def _at(minute: int) -> datetime:
    return datetime(2026, 3, 1, 10, minute, tzinfo=timezone.utc)


def _session(system_id: int = 3) -> SessionInfo:
    return SessionInfo(id=42, system_id=system_id, cause="CRON", started_at=_at(0))


class ConvertValueTest(TestCase):
    def test_numeric_inputs(self) -> None:
        self.assertEqual(convert_value(12, metric_type="power", metric_unit="W").value, 12.0)
        self.assertEqual(convert_value(" 3.5 ", metric_type="power", metric_unit="W").value, 3.5)
        self.assertEqual(convert_value(True, metric_type="status", metric_unit="bool").value, 1.0)

    def test_text_metric_keeps_string(self) -> None:
        converted = convert_value("Charging", metric_type="text", metric_unit="text")
        self.assertIsNone(converted.value)
        self.assertEqual(converted.value_str, "Charging")

    def test_epoch_ms_accepts_iso_strings(self) -> None:
        converted = convert_value("2026-03-01T10:00:00Z", metric_type="timestamp", metric_unit="epochMs")
        self.assertEqual(converted.value, float(int(_at(0).timestamp() * 1000)))

    def test_non_numeric_value_is_marked_as_error(self) -> None:
        converted = convert_value("n/a", metric_type="power", metric_unit="W")
        self.assertIsNone(converted.value)
        self.assertEqual(converted.error, NON_NUMERIC_ERROR)
        self.assertEqual(converted.data_quality, "error")
        self.assertEqual(convert_value(float("nan"), metric_type="power", metric_unit="W").error, NON_NUMERIC_ERROR)


class ReadingIngestionServiceTest(TestCase):
    def test_session_of_other_system_is_rejected(self) -> None:
        service = ReadingIngestionService(session_factory=_FakeSessionFactory())
        with self.assertRaises(SessionSystemMismatchError) as ctx:
            service.ingest(
                system_id=3,
                session=_session(system_id=4),
                readings=[VendorReading(point=SOLAR, measurement_time=_at(1), value=100)],
            )
        self.assertEqual(ctx.exception.session_system_id, 4)

    def test_conflicts_are_reported_and_buckets_recomputed(self) -> None:
        factory = _FakeSessionFactory()
        service = ReadingIngestionService(session_factory=factory)
        buckets: list[dict[str, Any]] = []
        latest: list[Any] = []

        def _insert(_db: Any, *, readings: list[PreparedReading], **_kwargs: Any) -> InsertOutcome:
            return InsertOutcome(inserted=readings[:2], rejected=readings[2:])

        def _upsert_bucket(_db: Any, **kwargs: Any) -> None:
            buckets.append(kwargs)

        def _upsert_latest(_db: Any, *, system_id: int, entries: list[Any]) -> None:
            latest.extend(entries)

        readings = [
            VendorReading(point=SOLAR, measurement_time=_at(1), value=1000),
            VendorReading(point=SOLAR, measurement_time=_at(2), value="bad"),
            VendorReading(point=SOLAR, measurement_time=_at(3), value=900),
        ]
        with (
            patch("app.services.ingestion.resolve_points", return_value={"solar_w": SOLAR_REF}),
            patch("app.services.ingestion.insert_raw_readings", side_effect=_insert),
            patch("app.services.ingestion.fetch_window_samples", return_value=[]),
            patch("app.services.ingestion.upsert_bucket", side_effect=_upsert_bucket),
            patch("app.services.ingestion.upsert_latest_values", side_effect=_upsert_latest),
        ):
            result = service.ingest(system_id=3, session=_session(), readings=readings)

        self.assertEqual(result.inserted, 2)
        self.assertEqual(result.rejected, 1)
        self.assertEqual(result.conflicts[0]["point_key"], "solar_w")
        self.assertEqual(result.buckets_updated, 1)
        self.assertEqual(buckets[0]["interval_end"], _at(5))
        self.assertEqual(buckets[0]["session_id"], 42)
        # error readings never reach the latest-value cache
        self.assertEqual([entry.value for entry in latest], [1000.0])
        self.assertEqual(factory.db.commits, 1)

    def test_direct_5m_readings_are_aligned(self) -> None:
        factory = _FakeSessionFactory()
        service = ReadingIngestionService(session_factory=factory)
        buckets: list[dict[str, Any]] = []
        with (
            patch("app.services.ingestion.resolve_points", return_value={"solar_w": SOLAR_REF}),
            patch("app.services.ingestion.upsert_bucket", side_effect=lambda _db, **kw: buckets.append(kw)),
            patch("app.services.ingestion.upsert_latest_values"),
        ):
            result = service.ingest_direct_5m(
                system_id=3,
                session=_session(),
                readings=[
                    PreAggregatedReading(point=SOLAR, interval_end=_at(5), avg=800.0, last=800.0),
                ],
            )
        self.assertEqual(result.inserted, 1)
        self.assertEqual(buckets[0]["interval_end"], _at(5))
        self.assertEqual(buckets[0]["summary"].avg, 800.0)
        self.assertEqual(factory.db.commits, 1)

    def test_empty_batch_skips_database(self) -> None:
        factory = _FakeSessionFactory()
        result = ReadingIngestionService(session_factory=factory).ingest(
            system_id=3,
            session=_session(),
            readings=[],
        )
        self.assertEqual(result.inserted, 0)
        self.assertEqual(factory.db.commits, 0)
