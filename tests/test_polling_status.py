from __future__ import annotations

import json
from datetime import datetime, timezone
from unittest import TestCase
from unittest.mock import MagicMock

from app.repositories.polling_status import record_poll_attempt, record_poll_skipped

AT = datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)


class RecordPollAttemptTest(TestCase):
    def test_counts_the_poll_without_touching_errors(self) -> None:
        db = MagicMock()

        record_poll_attempt(
            db,
            system_id=7,
            at=AT,
            response={"state": "asleep"},
            next_poll_time=datetime(2026, 3, 1, 10, 15, tzinfo=timezone.utc),
            schedule_hints={"charging": False},
        )

        statement, params = db.execute.call_args.args
        sql = str(statement)
        self.assertIn("last_poll_time = EXCLUDED.last_poll_time", sql)
        self.assertIn("total_polls = polling_status.total_polls + 1", sql)
        self.assertNotIn("consecutive_errors = polling_status.consecutive_errors", sql)
        self.assertNotIn("successful_polls = polling_status.successful_polls", sql)
        self.assertEqual(params["at"], AT)
        self.assertEqual(json.loads(params["response"]), {"state": "asleep"})
        self.assertEqual(json.loads(params["schedule_hints"]), {"charging": False})

    def test_schedule_skip_leaves_last_poll_time_alone(self) -> None:
        db = MagicMock()

        record_poll_skipped(db, system_id=7, next_poll_time=AT)

        statement, params = db.execute.call_args.args
        self.assertNotIn("last_poll_time", str(statement))
        self.assertNotIn("total_polls", str(statement))
        self.assertEqual(params, {"system_id": 7, "next_poll_time": AT})
