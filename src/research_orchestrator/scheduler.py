"""In-process scheduler for the background jobs.

One daemon thread per enabled task calls ``JobRunner.run`` on a fixed
interval. An external cron service can own triggering instead: disable the
task here and call the trigger entry point, which runs the same code.

Environment Variables:
    DRAIN_ENABLED / FULL_SYNC_ENABLED / SNAPSHOT_SYNC_ENABLED /
    RISK_SCAN_ENABLED / REAPER_ENABLED: Run the task on an in-process timer (default: true)
    <TASK>_INTERVAL_SEC: Seconds between runs (defaults: 60 / 86400 / 900 / 86400 / 300)
    JOBS_DB_PATH: SQLite file for queue, tickets and run history (default: jobs.db)
"""
from __future__ import annotations

import dataclasses
import logging
import threading
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from research_orchestrator.gateway import (
    AnalysisProvider,
    InstrumentCatalog,
    MarketDataGateway,
    MarketStatusSource,
    StaticCatalog,
)
from research_orchestrator.llm_factory import build_analysis_chain, load_llm_runtime_config
from research_orchestrator.market_status import MarketStatusService, load_exchange_calendar
from research_orchestrator.request_queue import RequestQueue
from research_orchestrator.research_worker import ResearchWorker
from research_orchestrator.runner import JobRunner
from research_orchestrator.settings import JobsConfig, load_jobs_config
from research_orchestrator.state_store import StateStore
from research_orchestrator.sync_jobs import SyncJobs
from research_orchestrator.tickets import TicketLifecycle
from research_orchestrator.tools.finnhub_tools import FinnhubClient, has_real_credentials

logger = logging.getLogger(__name__)


@dataclass
class JobServices:
    config: JobsConfig
    state_store: StateStore
    market_status: MarketStatusService
    queue: RequestQueue
    lifecycle: TicketLifecycle
    worker: ResearchWorker
    sync: SyncJobs
    runner: JobRunner


def build_services(
    config: JobsConfig | None = None,
    gateway: MarketDataGateway | None = None,
    analysis: AnalysisProvider | None = None,
    status_source: MarketStatusSource | None = None,
    catalog: InstrumentCatalog | None = None,
) -> JobServices:
    """Wire every component from config. Collaborators can be swapped for tests."""
    config = config or load_jobs_config()
    state_store = StateStore(config.db_path)

    if gateway is None or status_source is None:
        finnhub = FinnhubClient()
        gateway = gateway or finnhub
        if status_source is None and has_real_credentials():
            status_source = finnhub
    if analysis is None:
        llm_cfg = dataclasses.replace(load_llm_runtime_config(), models=config.analysis_models)
        analysis = build_analysis_chain(llm_cfg)

    market_status = MarketStatusService(
        source=status_source,
        calendar=load_exchange_calendar(config.calendar_file),
        cache_ttl_sec=config.status_cache_ttl_sec,
    )
    queue = RequestQueue(
        state_store,
        max_attempts=config.queue_max_attempts,
        base_backoff_sec=config.queue_base_backoff_sec,
        batch_size=config.drain_batch_size,
    )
    lifecycle = TicketLifecycle(state_store, timeout_minutes=config.reaper_timeout_minutes)
    worker = ResearchWorker(lifecycle, analysis, state_store)
    sync = SyncJobs(
        state_store,
        gateway,
        catalog or StaticCatalog(config.targets()),
        market_status,
        queue,
        lifecycle,
        worker,
        full_sync_delay_sec=config.full_sync_delay_sec,
        snapshot_sync_delay_sec=config.snapshot_sync_delay_sec,
        risk_scan_delay_sec=config.risk_scan_delay_sec,
        history_days=config.history_days,
        staleness_window=timedelta(days=config.staleness_window_days),
    )
    sync.register_queue_handlers()

    runner = JobRunner(
        {
            "drain": queue.drain,
            "full_sync": sync.run_full_sync,
            "snapshot_sync": sync.run_snapshot_sync,
            "risk_scan": sync.run_risk_scan,
            "reaper": lifecycle.reap_stuck,
        },
        state_store=state_store,
        cron_secret=config.cron_secret,
    )
    return JobServices(
        config=config,
        state_store=state_store,
        market_status=market_status,
        queue=queue,
        lifecycle=lifecycle,
        worker=worker,
        sync=sync,
        runner=runner,
    )


def reconcile_startup(services: JobServices) -> dict[str, int]:
    """Clear work orphaned by the previous process before any timer starts."""
    summary = {
        "failed_tickets": services.lifecycle.reap_stuck(timeout_minutes=0),
        "requeued_items": services.queue.requeue_abandoned(),
    }
    logger.info(
        "Startup reconcile: failed_tickets=%s requeued_items=%s",
        summary["failed_tickets"],
        summary["requeued_items"],
    )
    return summary


class JobScheduler:
    def __init__(self, runner: JobRunner, config: JobsConfig) -> None:
        self.runner = runner
        self.config = config
        self.stop_event = threading.Event()
        self._threads: list[threading.Thread] = []

    def enabled_tasks(self) -> list[str]:
        return [name for name in self.runner.task_names() if self.config.is_enabled(name)]

    def start(self) -> None:
        for task in self.enabled_tasks():
            interval = self.config.interval_for(task)
            thread = threading.Thread(
                target=self._loop, args=(task, interval), daemon=True, name=f"job-{task}"
            )
            self._threads.append(thread)
            thread.start()
            logger.info("Scheduled %s every %ss", task, interval)
        if not self._threads:
            logger.warning("No tasks enabled for in-process scheduling")

    def stop(self, timeout: float | None = 5.0) -> None:
        self.stop_event.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []

    def _loop(self, task: str, interval: int) -> None:
        while not self.stop_event.is_set():
            try:
                self.runner.run(task, trigger="timer")
            except Exception as exc:
                logger.error("Timer for %s hit an error: %s", task, exc)
            if self.stop_event.wait(interval):
                break


def run_auto_scheduler(config: JobsConfig | None = None, services: JobServices | None = None) -> dict[str, Any]:
    services = services or build_services(config)
    reconcile_startup(services)

    scheduler = JobScheduler(services.runner, services.config)
    logger.info("Starting job scheduler (db=%s)", services.config.db_path)
    scheduler.start()
    try:
        while not scheduler.stop_event.wait(1.0):
            pass
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        scheduler.stop()
        logger.info("Scheduler stopped. Queue: %s", services.queue.stats())
    return services.queue.stats()
