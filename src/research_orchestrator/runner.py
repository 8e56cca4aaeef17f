from __future__ import annotations

import hmac
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

from pydantic import BaseModel

from research_orchestrator.errors import UnauthorizedTriggerError, UnknownTaskError
from research_orchestrator.state_store import StateStore

logger = logging.getLogger(__name__)

ALREADY_RUNNING = {"skipped": True, "reason": "already running"}


def summarize(result: Any) -> dict[str, Any]:
    if result is None:
        return {}
    if isinstance(result, BaseModel):
        return result.model_dump()
    if isinstance(result, dict):
        return dict(result)
    if isinstance(result, int):
        return {"count": result}
    return {"result": str(result)}


class JobRunner:
    """Single entry point for every scheduled task.

    Timer threads and on-demand triggers both go through ``run`` so the two
    paths behave the same. A task already in progress is not started again;
    the second caller gets ``ALREADY_RUNNING`` back. Extra keyword arguments
    are passed to the task, e.g. ``force=True`` for ``snapshot_sync``.
    """

    def __init__(
        self,
        tasks: Mapping[str, Callable[[], Any]],
        state_store: StateStore | None = None,
        cron_secret: str = "",
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        self.tasks = dict(tasks)
        self.state_store = state_store
        self.cron_secret = cron_secret
        self.now_fn = now_fn or (lambda: datetime.now(timezone.utc))
        self._locks = {name: threading.Lock() for name in self.tasks}

    def task_names(self) -> list[str]:
        return list(self.tasks)

    def is_running(self, task: str) -> bool:
        lock = self._locks.get(task)
        return lock is not None and lock.locked()

    def run(self, task: str, trigger: str = "timer", **kwargs: Any) -> dict[str, Any]:
        fn = self.tasks.get(task)
        if fn is None:
            raise UnknownTaskError(f"unknown task: {task}")

        lock = self._locks[task]
        if not lock.acquire(blocking=False):
            logger.info("Task %s already running, skipping %s run", task, trigger)
            return dict(ALREADY_RUNNING)

        started_at = self.now_fn()
        status = "ok"
        try:
            logger.info("Running task %s (trigger=%s)", task, trigger)
            summary = summarize(fn(**kwargs))
        except Exception as exc:
            status = "error"
            summary = {"error": f"{type(exc).__name__}: {exc}"}
            logger.error("Task %s failed: %s", task, exc)
        finally:
            lock.release()

        self._record(task, trigger, status, started_at, summary)
        return summary

    def trigger(self, task: str, secret: str | None, **kwargs: Any) -> dict[str, Any]:
        if not self.cron_secret or not hmac.compare_digest(
            (secret or "").encode("utf-8"), self.cron_secret.encode("utf-8")
        ):
            logger.warning("Unauthorized trigger attempt for %s", task)
            raise UnauthorizedTriggerError("invalid cron secret")
        return self.run(task, trigger="manual", **kwargs)

    def _record(
        self, task: str, trigger: str, status: str, started_at: datetime, summary: dict[str, Any]
    ) -> None:
        if self.state_store is None:
            return
        try:
            self.state_store.record_job_run(task, trigger, status, started_at, self.now_fn(), summary)
        except Exception as exc:
            logger.error("Could not record run of %s: %s", task, exc)
