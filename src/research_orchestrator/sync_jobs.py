"""Periodic sync jobs over the tracked instrument list.

Each run walks the targets one at a time with a fixed pause between provider
calls; that pause is the only rate limiting. A failing target is logged and
counted, never allowed to stop the run. Rate-limited and transient failures
are handed to the retry queue so the work is not lost.
"""
from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from research_orchestrator.errors import PermanentError
from research_orchestrator.gateway import GatewayResult, InstrumentCatalog, MarketDataGateway
from research_orchestrator.market_status import MarketStatusService
from research_orchestrator.request_queue import RequestQueue
from research_orchestrator.research_worker import ResearchWorker
from research_orchestrator.schemas import ScanReport, SyncReport, SyncTarget, TicketStatus, WorkKind
from research_orchestrator.state_store import StateStore
from research_orchestrator.tickets import TicketLifecycle

logger = logging.getLogger(__name__)

ALL_MARKETS_CLOSED = "All markets closed"


def is_stale(last_analysis_at: datetime | None, now: datetime, window: timedelta) -> bool:
    if last_analysis_at is None:
        return True
    return now - last_analysis_at >= window


def _symbol_from(payload: dict[str, Any]) -> str:
    symbol = str(payload.get("symbol") or "").strip().upper()
    if not symbol:
        raise PermanentError(f"queue payload has no symbol: {payload!r}")
    return symbol


class _Pacer:
    def __init__(self, delay_sec: float, sleep_fn: Callable[[float], None]) -> None:
        self.delay_sec = delay_sec
        self.sleep_fn = sleep_fn
        self._started = False

    def wait(self) -> None:
        if self._started and self.delay_sec > 0:
            self.sleep_fn(self.delay_sec)
        self._started = True


class SyncJobs:
    def __init__(
        self,
        state_store: StateStore,
        gateway: MarketDataGateway,
        catalog: InstrumentCatalog,
        market_status: MarketStatusService,
        queue: RequestQueue,
        lifecycle: TicketLifecycle,
        worker: ResearchWorker,
        full_sync_delay_sec: float = 1.5,
        snapshot_sync_delay_sec: float = 0.5,
        risk_scan_delay_sec: float = 2.0,
        history_days: int = 365,
        staleness_window: timedelta = timedelta(days=14),
        now_fn: Callable[[], datetime] | None = None,
        sleep_fn: Callable[[float], None] = time.sleep,
    ) -> None:
        self.state_store = state_store
        self.gateway = gateway
        self.catalog = catalog
        self.market_status = market_status
        self.queue = queue
        self.lifecycle = lifecycle
        self.worker = worker
        self.full_sync_delay_sec = full_sync_delay_sec
        self.snapshot_sync_delay_sec = snapshot_sync_delay_sec
        self.risk_scan_delay_sec = risk_scan_delay_sec
        self.history_days = history_days
        self.staleness_window = staleness_window
        self.now_fn = now_fn or (lambda: datetime.now(timezone.utc))
        self.sleep_fn = sleep_fn

    # -- queue handlers ----------------------------------------------------

    def register_queue_handlers(self, queue: RequestQueue | None = None) -> None:
        queue = queue or self.queue
        queue.register(WorkKind.SNAPSHOT_SYNC, self.handle_snapshot_sync)
        queue.register(WorkKind.HISTORY_BACKFILL, self.handle_history_backfill)
        queue.register(WorkKind.ADD_INSTRUMENT, self.handle_add_instrument)

    def handle_snapshot_sync(self, payload: dict[str, Any]) -> Any:
        return self.gateway.fetch_snapshot(_symbol_from(payload)).unwrap()

    def handle_history_backfill(self, payload: dict[str, Any]) -> Any:
        days = int(payload.get("days") or self.history_days)
        return self.gateway.fetch_history(_symbol_from(payload), days).unwrap()

    def handle_add_instrument(self, payload: dict[str, Any]) -> None:
        symbol = _symbol_from(payload)
        self.gateway.fetch_snapshot(symbol).unwrap()
        days = int(payload.get("days") or self.history_days)
        self.gateway.fetch_history(symbol, days).unwrap()

    # -- runs --------------------------------------------------------------

    def run_full_sync(self) -> SyncReport:
        logger.info("Starting full sync...")
        targets = self.catalog.list_tracked_instruments()
        logger.info("Found %s instruments to sync.", len(targets))

        report = SyncReport()
        pacer = _Pacer(self.full_sync_delay_sec, self.sleep_fn)
        for target in targets:
            if not target.symbol:
                continue
            pacer.wait()
            report.processed += 1
            try:
                self._sync_full_target(target, report)
            except Exception as exc:
                report.failed += 1
                logger.error("Failed to sync %s: %s", target.symbol, exc)

        logger.info(
            "Full sync completed: processed=%s success=%s failed=%s deferred=%s",
            report.processed,
            report.success,
            report.failed,
            report.deferred,
        )
        return report

    def _sync_full_target(self, target: SyncTarget, report: SyncReport) -> None:
        snapshot = self.gateway.fetch_snapshot(target.symbol)
        if not snapshot.ok:
            self._record_miss(
                target, snapshot, report, WorkKind.ADD_INSTRUMENT, {"days": self.history_days}
            )
            return

        history = self.gateway.fetch_history(target.symbol, self.history_days)
        if not history.ok:
            self._record_miss(
                target, history, report, WorkKind.HISTORY_BACKFILL, {"days": self.history_days}
            )
            return

        report.success += 1
        logger.debug("Synced %s", target.symbol)

    def run_snapshot_sync(self, force: bool = False) -> SyncReport:
        if not force and not self.market_status.any_market_open():
            logger.info("Snapshot sync skipped: %s", ALL_MARKETS_CLOSED)
            return SyncReport(skipped=True, reason=ALL_MARKETS_CLOSED)

        targets = self.catalog.list_tracked_instruments()
        report = SyncReport()
        pacer = _Pacer(self.snapshot_sync_delay_sec, self.sleep_fn)
        for target in targets:
            if not target.symbol:
                continue
            try:
                if not force and not self.market_status.is_open(target.symbol, target.exchange):
                    report.skipped_market_closed += 1
                    continue
                pacer.wait()
                report.processed += 1
                result = self.gateway.fetch_snapshot(target.symbol)
                if result.ok:
                    report.success += 1
                else:
                    self._record_miss(target, result, report, WorkKind.SNAPSHOT_SYNC, {})
            except Exception as exc:
                report.failed += 1
                logger.error("Snapshot sync failed for %s: %s", target.symbol, exc)

        logger.info(
            "Snapshot sync completed: success=%s failed=%s deferred=%s skipped_market_closed=%s",
            report.success,
            report.failed,
            report.deferred,
            report.skipped_market_closed,
        )
        return report

    def run_risk_scan(self) -> ScanReport:
        logger.info("Starting risk/reward scanner...")
        targets = self.catalog.list_tracked_instruments()
        logger.info("Found %s instruments to scan.", len(targets))

        report = ScanReport()
        pacer = _Pacer(self.risk_scan_delay_sec, self.sleep_fn)
        for target in targets:
            if not target.symbol:
                continue
            try:
                last = self.state_store.get_latest_analysis(target.symbol)
                now = self.now_fn()
                if not is_stale(last.created_at if last else None, now, self.staleness_window):
                    report.skipped += 1
                    continue

                pacer.wait()
                report.processed += 1
                ticket = self.lifecycle.create(
                    {"symbol": target.symbol, "exchange": target.exchange, "source": "risk_scan"}
                )
                done = self.worker.process(ticket.id)
                if done.status != TicketStatus.COMPLETED:
                    report.failed += 1
                logger.debug("Scanned %s -> %s", target.symbol, done.status.value)
            except Exception as exc:
                report.failed += 1
                logger.error("Failed to scan %s: %s", target.symbol, exc)

        logger.info(
            "Risk/reward scanner completed: processed=%s skipped=%s failed=%s",
            report.processed,
            report.skipped,
            report.failed,
        )
        return report

    def _record_miss(
        self,
        target: SyncTarget,
        result: GatewayResult,
        report: SyncReport,
        retry_kind: WorkKind,
        extra: dict[str, Any],
    ) -> None:
        report.failed += 1
        if result.permanent:
            logger.error("Failed to sync %s (permanent): %s", target.symbol, result.error)
            return
        payload = {"symbol": target.symbol, **extra}
        if target.exchange:
            payload["exchange"] = target.exchange
        try:
            self.queue.enqueue(retry_kind, payload)
        except Exception as exc:
            logger.error("Could not defer %s for %s: %s", retry_kind.value, target.symbol, exc)
            return
        report.deferred += 1
        logger.warning(
            "Deferred %s for %s to retry queue (%s): %s",
            retry_kind.value,
            target.symbol,
            result.outcome.value,
            result.error,
        )
