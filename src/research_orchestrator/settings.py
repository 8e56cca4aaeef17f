"""Runtime knobs for the background job service.

Everything is read from the environment so that the same build runs under the
in-process timers (development) and under an external cron service that calls
the trigger entry points (production).
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field

from research_orchestrator.schemas import SyncTarget

TASK_NAMES = ("drain", "full_sync", "snapshot_sync", "risk_scan", "reaper")

DEFAULT_INTERVALS_SEC = {
    "drain": 60,
    "full_sync": 86400,
    "snapshot_sync": 900,
    "risk_scan": 86400,
    "reaper": 300,
}


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _env_true(name: str, default: str = "true") -> bool:
    return _env(name, default).lower() == "true"


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    return max(int(_env(name, str(default))), minimum)


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    return max(float(_env(name, str(default))), minimum)


def parse_targets(raw: str) -> list[SyncTarget]:
    """Parse ``AAPL,MC.PA,SAP:XETRA`` into sync targets, dropping duplicates."""
    targets: list[SyncTarget] = []
    seen: set[str] = set()
    for token in raw.split(","):
        token = token.strip()
        if not token:
            continue
        symbol, _, exchange = token.partition(":")
        target = SyncTarget(symbol=symbol, exchange=exchange.strip() or None)
        if target.symbol in seen:
            continue
        seen.add(target.symbol)
        targets.append(target)
    return targets


@dataclass(frozen=True)
class JobsConfig:
    db_path: str = "jobs.db"
    queue_max_attempts: int = 10
    queue_base_backoff_sec: int = 30
    drain_batch_size: int = 10
    reaper_timeout_minutes: int = 20
    staleness_window_days: int = 14
    full_sync_delay_sec: float = 1.5
    snapshot_sync_delay_sec: float = 0.5
    risk_scan_delay_sec: float = 2.0
    history_days: int = 365
    status_cache_ttl_sec: int = 60
    calendar_file: str | None = None
    cron_secret: str = ""
    tracked_symbols: str = "AAPL,MSFT"
    analysis_models: tuple[str, ...] = ("openai/gpt-4o-mini", "gemini/gemini-2.0-flash")
    task_enabled: dict[str, bool] = field(default_factory=lambda: {name: True for name in TASK_NAMES})
    task_interval_sec: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_INTERVALS_SEC))

    def is_enabled(self, task: str) -> bool:
        return self.task_enabled.get(task, False)

    def interval_for(self, task: str) -> int:
        return self.task_interval_sec.get(task, DEFAULT_INTERVALS_SEC.get(task, 60))

    def targets(self) -> list[SyncTarget]:
        return parse_targets(self.tracked_symbols)


def load_jobs_config() -> JobsConfig:
    models = tuple(
        m.strip()
        for m in _env("ANALYSIS_MODELS", "openai/gpt-4o-mini,gemini/gemini-2.0-flash").split(",")
        if m.strip()
    )
    task_enabled = {name: _env_true(f"{name.upper()}_ENABLED", "true") for name in TASK_NAMES}
    task_interval = {
        name: _env_int(f"{name.upper()}_INTERVAL_SEC", DEFAULT_INTERVALS_SEC[name], minimum=1)
        for name in TASK_NAMES
    }
    return JobsConfig(
        db_path=_env("JOBS_DB_PATH", "jobs.db"),
        queue_max_attempts=_env_int("QUEUE_MAX_ATTEMPTS", 10, minimum=1),
        queue_base_backoff_sec=_env_int("QUEUE_BASE_BACKOFF_SEC", 30, minimum=1),
        drain_batch_size=_env_int("QUEUE_DRAIN_BATCH_SIZE", 10, minimum=1),
        reaper_timeout_minutes=_env_int("REAPER_TIMEOUT_MINUTES", 20),
        staleness_window_days=_env_int("SCAN_STALENESS_DAYS", 14),
        full_sync_delay_sec=_env_float("FULL_SYNC_DELAY_SEC", 1.5),
        snapshot_sync_delay_sec=_env_float("SNAPSHOT_SYNC_DELAY_SEC", 0.5),
        risk_scan_delay_sec=_env_float("RISK_SCAN_DELAY_SEC", 2.0),
        history_days=_env_int("HISTORY_BACKFILL_DAYS", 365, minimum=1),
        status_cache_ttl_sec=_env_int("MARKET_STATUS_CACHE_TTL_SEC", 60, minimum=1),
        calendar_file=_env("EXCHANGE_CALENDAR_FILE") or None,
        cron_secret=_env("CRON_SECRET"),
        tracked_symbols=_env("TRACKED_SYMBOLS", "AAPL,MSFT"),
        analysis_models=models,
        task_enabled=task_enabled,
        task_interval_sec=task_interval,
    )
