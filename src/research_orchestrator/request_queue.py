"""Durable retry queue backed by the ``request_queue`` table.

Producers that hit a retryable failure enqueue the work instead of failing.
``drain`` claims due items oldest-first, marks each one processing before
running it, and either completes it, reschedules it with exponential backoff,
or fails it for good once ``max_attempts`` is reached.

Delivery is at-least-once: a handler may see the same payload again after a
crash, so handlers must be safe to re-run. Only one drain loop may be active
at a time; the processing mark is the only guard against double work.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping

from research_orchestrator.errors import PermanentError, UnknownWorkKindError, is_retryable
from research_orchestrator.schemas import DrainReport, QueueItem, QueueStatus, WorkKind
from research_orchestrator.state_store import StateStore

logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any]], Any]


def backoff_seconds(attempts: int, base_sec: float = 30) -> float:
    """Delay before the next try after ``attempts`` failures: base * 2^(n-1)."""
    n = max(int(attempts), 1)
    return float(base_sec) * (2 ** (n - 1))


class HandlerRegistry:
    def __init__(self, handlers: Mapping[WorkKind, Handler] | None = None) -> None:
        self._handlers: dict[WorkKind, Handler] = dict(handlers or {})

    def register(self, kind: WorkKind, handler: Handler) -> None:
        self._handlers[WorkKind(kind)] = handler

    def resolve(self, kind: WorkKind) -> Handler:
        try:
            return self._handlers[kind]
        except KeyError:
            raise UnknownWorkKindError(f"no handler registered for {kind.value}") from None

    def kinds(self) -> list[WorkKind]:
        return sorted(self._handlers, key=lambda k: k.value)


class RequestQueue:
    def __init__(
        self,
        state_store: StateStore,
        registry: HandlerRegistry | None = None,
        max_attempts: int = 10,
        base_backoff_sec: float = 30,
        batch_size: int = 10,
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        self.state_store = state_store
        self.registry = registry or HandlerRegistry()
        self.max_attempts = max(int(max_attempts), 1)
        self.base_backoff_sec = base_backoff_sec
        self.batch_size = max(int(batch_size), 1)
        self.now_fn = now_fn or (lambda: datetime.now(timezone.utc))

    def register(self, kind: WorkKind, handler: Handler) -> None:
        self.registry.register(kind, handler)

    def enqueue(self, kind: WorkKind, payload: dict[str, Any], now: datetime | None = None) -> QueueItem:
        now = now or self.now_fn()
        item = QueueItem(
            kind=WorkKind(kind),
            payload=dict(payload),
            status=QueueStatus.PENDING,
            attempts=0,
            next_attempt_at=now,
            created_at=now,
            updated_at=now,
        )
        self.state_store.insert_queue_item(item)
        logger.info("Enqueued %s %s payload=%s", item.kind.value, item.id, item.payload)
        return item

    def drain(self, batch_size: int | None = None, now: datetime | None = None) -> DrainReport:
        now = now or self.now_fn()
        limit = max(int(batch_size or self.batch_size), 1)
        report = DrainReport()

        try:
            due = self.state_store.list_due_queue_items(now=now, limit=limit)
        except Exception as exc:
            logger.error("Queue drain could not list due items: %s", exc)
            report.error = str(exc)
            return report

        for item in due:
            try:
                self._process(item, now, report)
            except Exception as exc:
                # Storage trouble while recording an outcome; leave the row for the next tick.
                logger.error("Queue item %s could not be recorded: %s", item.id, exc)
                report.skipped += 1

        if due:
            logger.info(
                "Queue drain: claimed=%s completed=%s retried=%s failed=%s skipped=%s",
                report.claimed,
                report.completed,
                report.retried,
                report.failed,
                report.skipped,
            )
        return report

    def _process(self, item: QueueItem, now: datetime, report: DrainReport) -> None:
        if not self.state_store.claim_queue_item(item.id, now):
            report.skipped += 1
            return
        report.claimed += 1

        try:
            handler = self.registry.resolve(item.kind)
            handler(dict(item.payload))
        except Exception as exc:
            self._record_failure(item, exc, now, report)
            return

        self.state_store.complete_queue_item(item.id, now)
        report.completed += 1
        logger.debug("Queue item %s (%s) completed", item.id, item.kind.value)

    def _record_failure(self, item: QueueItem, exc: Exception, now: datetime, report: DrainReport) -> None:
        attempts = item.attempts + 1
        error = f"{type(exc).__name__}: {exc}"

        if not is_retryable(exc) or attempts >= self.max_attempts:
            self.state_store.fail_queue_item(item.id, attempts=attempts, error=error, now=now)
            report.failed += 1
            reason = "permanent error" if isinstance(exc, PermanentError) else "max attempts reached"
            logger.error(
                "Queue item %s (%s) failed after %s attempt(s), %s: %s",
                item.id,
                item.kind.value,
                attempts,
                reason,
                error,
            )
            return

        delay = backoff_seconds(attempts, self.base_backoff_sec)
        retry_after = getattr(exc, "retry_after_sec", None)
        if retry_after:
            delay = max(delay, retry_after)
        next_attempt_at = max(now + timedelta(seconds=delay), item.next_attempt_at)
        self.state_store.retry_queue_item(
            item.id,
            attempts=attempts,
            next_attempt_at=next_attempt_at,
            error=error,
            now=now,
        )
        report.retried += 1
        logger.warning(
            "Queue item %s (%s) attempt %s/%s failed, retry at %s: %s",
            item.id,
            item.kind.value,
            attempts,
            self.max_attempts,
            next_attempt_at.isoformat(),
            error,
        )

    def requeue_abandoned(self, older_than: timedelta = timedelta(0), now: datetime | None = None) -> int:
        """Return items stuck in processing (drain crashed mid-handler) to the retry path.

        The interrupted run counts as an attempt, so an item that keeps
        crashing the worker still ends up failed after ``max_attempts``.
        """
        now = now or self.now_fn()
        try:
            stuck = self.state_store.list_queue_items(
                status=QueueStatus.PROCESSING,
                updated_before=now - older_than if older_than else None,
            )
        except Exception as exc:
            logger.error("Could not list abandoned queue items: %s", exc)
            return 0

        requeued = 0
        for item in stuck:
            try:
                report = DrainReport()
                self._record_failure(item, RuntimeError("worker interrupted while processing"), now, report)
                requeued += report.retried + report.failed
            except Exception as exc:
                logger.error("Could not requeue abandoned item %s: %s", item.id, exc)
        if requeued:
            logger.warning("Recovered %s abandoned queue item(s)", requeued)
        return requeued

    def stats(self) -> dict[str, int]:
        return self.state_store.queue_counts()
