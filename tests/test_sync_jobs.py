from __future__ import annotations

import tempfile
import unittest
from datetime import datetime, timedelta, timezone

from research_orchestrator.errors import PermanentError, RateLimitedError, StorageError, TransientError
from research_orchestrator.gateway import GatewayResult, StaticCatalog
from research_orchestrator.market_status import MarketStatusService
from research_orchestrator.request_queue import RequestQueue
from research_orchestrator.research_worker import ResearchWorker
from research_orchestrator.runner import JobRunner
from research_orchestrator.schemas import AnalysisRecord, QueueStatus, SyncTarget, TicketStatus, WorkKind
from research_orchestrator.state_store import StateStore
from research_orchestrator.sync_jobs import ALL_MARKETS_CLOSED, SyncJobs, is_stale
from research_orchestrator.tickets import TicketLifecycle

# Wednesday 15:45 UTC in winter: US and EU regular sessions both open.
BOTH_OPEN = datetime(2025, 1, 8, 15, 45, tzinfo=timezone.utc)
# Wednesday 17:00 UTC: US open, EU closed.
US_ONLY = datetime(2025, 1, 8, 17, 0, tzinfo=timezone.utc)
WEEKEND = datetime(2025, 1, 11, 15, 0, tzinfo=timezone.utc)


class _FakeGateway:
    def __init__(self) -> None:
        self.snapshot_results: dict[str, GatewayResult] = {}
        self.history_results: dict[str, GatewayResult] = {}
        self.calls: list[tuple[str, str]] = []

    def fetch_snapshot(self, symbol: str) -> GatewayResult:
        self.calls.append(("snapshot", symbol))
        return self.snapshot_results.get(symbol, GatewayResult.success({"price": 100.0}, source="fake"))

    def fetch_history(self, symbol: str, days: int) -> GatewayResult:
        self.calls.append(("history", symbol))
        return self.history_results.get(symbol, GatewayResult.success([], source="fake"))


class _CountingCatalog(StaticCatalog):
    def __init__(self, targets) -> None:
        super().__init__(targets)
        self.list_calls = 0

    def list_tracked_instruments(self):
        self.list_calls += 1
        return super().list_tracked_instruments()


class _BrokenCatalog:
    def list_tracked_instruments(self):
        raise RuntimeError("catalog unavailable")


class _FullQueue:
    def enqueue(self, kind, payload):
        raise StorageError("disk full")


class _ExplodingWorker:
    def process(self, ticket_id):
        raise RuntimeError("worker crashed")


class _StubProvider:
    name = "stub"

    def __init__(self) -> None:
        self.prompts: list[str] = []
        self.fail_for: set[str] = set()

    def generate_analysis(self, prompt: str) -> GatewayResult:
        self.prompts.append(prompt)
        if any(symbol in prompt for symbol in self.fail_for):
            return GatewayResult.failure("model error", source=self.name)
        return GatewayResult.success({"text": "ok"}, source=self.name)


class TestSyncJobs(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.store = StateStore(f"{self.tmpdir.name}/jobs.db")
        self.now = BOTH_OPEN
        self.sleeps: list[float] = []
        self.gateway = _FakeGateway()
        self.provider = _StubProvider()
        self.catalog = _CountingCatalog(
            [
                SyncTarget(symbol="AAPL", exchange="NASDAQ"),
                SyncTarget(symbol="MC.PA"),
                SyncTarget(symbol="MSFT"),
            ]
        )

    def tearDown(self) -> None:
        self.tmpdir.cleanup()

    def _jobs(self, catalog=None) -> SyncJobs:
        now_fn = lambda: self.now  # noqa: E731
        lifecycle = TicketLifecycle(self.store, now_fn=now_fn)
        queue = RequestQueue(self.store, now_fn=now_fn)
        jobs = SyncJobs(
            self.store,
            self.gateway,
            catalog or self.catalog,
            MarketStatusService(now_fn=now_fn),
            queue,
            lifecycle,
            ResearchWorker(lifecycle, self.provider, self.store, now_fn=now_fn),
            staleness_window=timedelta(days=14),
            now_fn=now_fn,
            sleep_fn=self.sleeps.append,
        )
        jobs.register_queue_handlers()
        return jobs

    def _pending(self) -> list:
        return self.store.list_queue_items(status=QueueStatus.PENDING)

    # -- full sync ---------------------------------------------------------

    def test_full_sync_fetches_snapshot_and_history_with_pacing(self):
        report = self._jobs().run_full_sync()

        self.assertEqual(report.processed, 3)
        self.assertEqual(report.success, 3)
        self.assertEqual(report.failed, 0)
        self.assertEqual(len(self.gateway.calls), 6)
        self.assertEqual(self.sleeps, [1.5, 1.5])

    def test_full_sync_continues_past_failures(self):
        self.gateway.snapshot_results["AAPL"] = GatewayResult.failure("not found", permanent=True)
        self.gateway.history_results["MC.PA"] = GatewayResult.rate_limited()

        report = self._jobs().run_full_sync()

        self.assertEqual(report.processed, 3)
        self.assertEqual(report.success, 1)
        self.assertEqual(report.failed, 2)
        self.assertEqual(report.deferred, 1)
        pending = self._pending()
        self.assertEqual(len(pending), 1)
        self.assertEqual(pending[0].kind, WorkKind.HISTORY_BACKFILL)
        self.assertEqual(pending[0].payload["symbol"], "MC.PA")

    def test_rate_limited_snapshot_defers_whole_instrument(self):
        self.gateway.snapshot_results["MSFT"] = GatewayResult.rate_limited()

        report = self._jobs().run_full_sync()

        self.assertEqual(report.deferred, 1)
        self.assertEqual(self._pending()[0].kind, WorkKind.ADD_INSTRUMENT)
        self.assertNotIn(("history", "MSFT"), self.gateway.calls)

    def test_full_sync_propagates_catalog_errors(self):
        with self.assertRaises(RuntimeError):
            self._jobs(catalog=_BrokenCatalog()).run_full_sync()

    # -- snapshot sync -----------------------------------------------------

    def test_snapshot_sync_short_circuits_when_all_markets_closed(self):
        self.now = WEEKEND

        report = self._jobs().run_snapshot_sync()

        self.assertTrue(report.skipped)
        self.assertEqual(report.reason, ALL_MARKETS_CLOSED)
        self.assertEqual(self.gateway.calls, [])
        self.assertEqual(self.catalog.list_calls, 0)

    def test_snapshot_sync_skips_closed_regions(self):
        self.now = US_ONLY

        report = self._jobs().run_snapshot_sync()

        self.assertFalse(report.skipped)
        self.assertEqual(report.skipped_market_closed, 1)
        self.assertEqual(report.success, 2)
        self.assertNotIn(("snapshot", "MC.PA"), self.gateway.calls)
        self.assertEqual(self.sleeps, [0.5])

    def test_forced_snapshot_sync_ignores_calendar(self):
        self.now = WEEKEND

        report = self._jobs().run_snapshot_sync(force=True)

        self.assertFalse(report.skipped)
        self.assertEqual(report.success, 3)
        self.assertEqual(report.skipped_market_closed, 0)

    def test_snapshot_sync_counts_failures(self):
        self.gateway.snapshot_results["AAPL"] = GatewayResult.failure("timeout")
        self.gateway.snapshot_results["MSFT"] = GatewayResult.failure("delisted", permanent=True)

        report = self._jobs().run_snapshot_sync()

        self.assertEqual(report.success, 1)
        self.assertEqual(report.failed, 2)
        self.assertEqual(report.deferred, 1)
        self.assertEqual(self._pending()[0].kind, WorkKind.SNAPSHOT_SYNC)

    # -- risk scan ---------------------------------------------------------

    def _analysed(self, symbol: str, age: timedelta) -> None:
        self.store.record_analysis(AnalysisRecord(symbol=symbol, provider="stub", created_at=self.now - age))

    def test_staleness_boundary_is_inclusive(self):
        window = timedelta(days=14)
        self.assertTrue(is_stale(None, BOTH_OPEN, window))
        self.assertTrue(is_stale(BOTH_OPEN - window, BOTH_OPEN, window))
        self.assertFalse(is_stale(BOTH_OPEN - window + timedelta(seconds=1), BOTH_OPEN, window))

    def test_risk_scan_processes_only_stale_targets(self):
        self._analysed("AAPL", timedelta(days=14))
        self._analysed("MC.PA", timedelta(days=14) - timedelta(seconds=1))

        report = self._jobs().run_risk_scan()

        self.assertEqual(report.processed, 2)
        self.assertEqual(report.skipped, 1)
        self.assertEqual(report.failed, 0)
        self.assertEqual(len(self.provider.prompts), 2)
        self.assertEqual(self.store.get_latest_analysis("AAPL").created_at, self.now)
        self.assertEqual(self.store.get_latest_analysis("MSFT").created_at, self.now)
        self.assertEqual(self.sleeps, [2.0])

    def test_risk_scan_keeps_going_after_failed_ticket(self):
        self.provider.fail_for = {"AAPL"}

        report = self._jobs().run_risk_scan()

        self.assertEqual(report.processed, 3)
        self.assertEqual(report.failed, 1)
        self.assertIsNone(self.store.get_latest_analysis("AAPL"))
        failed = self.store.list_non_terminal_tickets()
        self.assertEqual(failed, [])

    def test_risk_scan_tickets_end_terminal(self):
        self._jobs().run_risk_scan()
        latest = self.store.get_latest_analysis("MSFT")
        ticket = self.store.get_ticket(latest.ticket_id)
        self.assertEqual(ticket.status, TicketStatus.COMPLETED)
        self.assertEqual(ticket.payload["source"], "risk_scan")

    def test_risk_scan_counts_tickets_whose_processing_raises(self):
        jobs = self._jobs()
        jobs.worker = _ExplodingWorker()

        report = jobs.run_risk_scan()

        self.assertEqual(report.processed, 3)
        self.assertEqual(report.failed, 3)

    def test_forced_trigger_runs_snapshot_sync_on_closed_calendar(self):
        self.now = WEEKEND
        jobs = self._jobs()
        runner = JobRunner({"snapshot_sync": jobs.run_snapshot_sync}, self.store, cron_secret="s3cret")

        self.assertTrue(runner.trigger("snapshot_sync", "s3cret")["skipped"])

        summary = runner.trigger("snapshot_sync", "s3cret", force=True)
        self.assertFalse(summary["skipped"])
        self.assertEqual(summary["success"], 3)
        self.assertEqual(len(self.store.list_job_runs("snapshot_sync")), 2)

    # -- deferral failures -------------------------------------------------

    def test_enqueue_failure_counts_target_once(self):
        self.gateway.snapshot_results["MSFT"] = GatewayResult.rate_limited()
        jobs = self._jobs()
        jobs.queue = _FullQueue()

        report = jobs.run_full_sync()

        self.assertEqual(report.processed, 3)
        self.assertEqual(report.success, 2)
        self.assertEqual(report.failed, 1)
        self.assertEqual(report.deferred, 0)

    def test_snapshot_enqueue_failure_counts_target_once(self):
        self.gateway.snapshot_results["AAPL"] = GatewayResult.failure("upstream 503")
        jobs = self._jobs()
        jobs.queue = _FullQueue()

        report = jobs.run_snapshot_sync(force=True)

        self.assertEqual(report.failed, 1)
        self.assertEqual(report.deferred, 0)
        self.assertEqual(report.success, 2)

    # -- queue handlers ----------------------------------------------------

    def test_deferred_work_is_retried_by_drain(self):
        self.gateway.snapshot_results["AAPL"] = GatewayResult.rate_limited()
        jobs = self._jobs()
        jobs.run_snapshot_sync(force=True)
        self.assertEqual(len(self._pending()), 1)

        del self.gateway.snapshot_results["AAPL"]
        report = jobs.queue.drain(now=self.now)

        self.assertEqual(report.completed, 1)
        self.assertEqual(self._pending(), [])

    def test_handlers_raise_matching_errors(self):
        jobs = self._jobs()
        self.gateway.snapshot_results["AAPL"] = GatewayResult.rate_limited()
        self.gateway.history_results["AAPL"] = GatewayResult.failure("timeout")

        with self.assertRaises(RateLimitedError):
            jobs.handle_snapshot_sync({"symbol": "AAPL"})
        with self.assertRaises(TransientError):
            jobs.handle_history_backfill({"symbol": "aapl", "days": 30})
        with self.assertRaises(PermanentError):
            jobs.handle_add_instrument({})


if __name__ == "__main__":
    unittest.main()
