from __future__ import annotations

import tempfile
import unittest
from datetime import datetime, timedelta, timezone

from research_orchestrator.errors import (
    PermanentError,
    RateLimitedError,
    StorageError,
    TransientError,
    is_rate_limit_error,
    is_retryable,
)
from research_orchestrator.gateway import GatewayResult
from research_orchestrator.schemas import QueueItem, QueueStatus, WorkKind
from research_orchestrator.state_store import StateStore, from_db_ts, to_db_ts

NOW = datetime(2025, 1, 7, 15, 0, tzinfo=timezone.utc)


class TestStateStore(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.store = StateStore(f"{self.tmpdir.name}/jobs.db")

    def tearDown(self) -> None:
        self.tmpdir.cleanup()

    def _item(self, **overrides) -> QueueItem:
        fields = dict(
            kind=WorkKind.SNAPSHOT_SYNC,
            payload={"symbol": "AAPL"},
            next_attempt_at=NOW,
            created_at=NOW,
            updated_at=NOW,
        )
        fields.update(overrides)
        return QueueItem(**fields)

    def test_timestamps_round_trip_in_utc(self):
        local = datetime(2025, 1, 7, 16, 0, tzinfo=timezone(timedelta(hours=1)))
        self.assertEqual(from_db_ts(to_db_ts(local)), NOW)
        self.assertLess(to_db_ts(NOW), to_db_ts(NOW + timedelta(microseconds=1)))

    def test_guarded_updates(self):
        item = self._item()
        self.store.insert_queue_item(item)

        self.assertFalse(self.store.complete_queue_item(item.id, NOW))
        self.assertTrue(self.store.claim_queue_item(item.id, NOW))
        self.assertFalse(self.store.claim_queue_item(item.id, NOW))
        self.assertTrue(self.store.fail_queue_item(item.id, attempts=1, error="x", now=NOW))
        self.assertFalse(
            self.store.retry_queue_item(item.id, attempts=2, next_attempt_at=NOW, error="y", now=NOW)
        )
        stored = self.store.get_queue_item(item.id)
        self.assertEqual(stored.status, QueueStatus.FAILED)
        self.assertEqual(stored.last_error, "x")

    def test_retry_never_moves_next_attempt_backwards(self):
        item = self._item(next_attempt_at=NOW + timedelta(hours=1))
        self.store.insert_queue_item(item)
        self.store.claim_queue_item(item.id, NOW)

        self.store.retry_queue_item(item.id, attempts=1, next_attempt_at=NOW, error="e", now=NOW)

        self.assertEqual(self.store.get_queue_item(item.id).next_attempt_at, NOW + timedelta(hours=1))

    def test_queue_counts(self):
        self.store.insert_queue_item(self._item())
        done = self._item()
        self.store.insert_queue_item(done)
        self.store.claim_queue_item(done.id, NOW)
        self.store.complete_queue_item(done.id, NOW)
        self.assertEqual(
            self.store.queue_counts(),
            {"pending": 1, "processing": 0, "completed": 1, "failed": 0},
        )

    def test_job_runs_newest_first(self):
        self.store.record_job_run("drain", "timer", "ok", NOW, NOW, {"claimed": 1})
        self.store.record_job_run("drain", "manual", "error", NOW, NOW, {"error": "boom"})
        runs = self.store.list_job_runs("drain")
        self.assertEqual([r["trigger"] for r in runs], ["manual", "timer"])
        self.assertEqual(runs[1]["summary"], {"claimed": 1})
        self.assertEqual(self.store.list_job_runs("reaper"), [])

    def test_unopenable_database_raises_storage_error(self):
        with self.assertRaises(StorageError):
            StateStore(f"{self.tmpdir.name}/missing-dir/jobs.db")


class TestErrorClassification(unittest.TestCase):
    def test_rate_limit_detection(self):
        self.assertTrue(is_rate_limit_error(RateLimitedError()))
        self.assertTrue(is_rate_limit_error(RuntimeError("HTTP 429 Too Many Requests")))
        self.assertTrue(is_rate_limit_error(RuntimeError("Rate limit reached for gpt-4o-mini")))
        self.assertFalse(is_rate_limit_error(RuntimeError("connection reset")))

    def test_only_permanent_errors_are_final(self):
        self.assertFalse(is_retryable(PermanentError("gone")))
        self.assertTrue(is_retryable(TransientError("timeout")))
        self.assertTrue(is_retryable(ValueError("bad row")))

    def test_unwrap(self):
        self.assertEqual(GatewayResult.success(5).unwrap(), 5)
        with self.assertRaises(RateLimitedError):
            GatewayResult.rate_limited().unwrap()
        with self.assertRaises(PermanentError):
            GatewayResult.failure("404", permanent=True).unwrap()
        with self.assertRaises(TransientError):
            GatewayResult.failure("503").unwrap()


if __name__ == "__main__":
    unittest.main()
