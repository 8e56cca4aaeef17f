from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from research_orchestrator.errors import StorageError
from research_orchestrator.schemas import (
    AnalysisRecord,
    NON_TERMINAL_TICKET_STATES,
    QueueItem,
    QueueStatus,
    ResearchTicket,
    TicketTransition,
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_db_ts(value: datetime) -> str:
    # Fixed-width UTC text so that SQL string comparison matches time order.
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def from_db_ts(value: str) -> datetime:
    return datetime.fromisoformat(value)


class StateStore:
    def __init__(self, db_path: str = "jobs.db") -> None:
        self.db_path = Path(db_path)
        self._initialize()

    @contextmanager
    def _conn(self):
        try:
            conn = sqlite3.connect(self.db_path)
        except sqlite3.Error as exc:
            raise StorageError(f"cannot open {self.db_path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise StorageError(str(exc)) from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _initialize(self) -> None:
        with self._conn() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS request_queue (
                    id TEXT PRIMARY KEY,
                    kind TEXT NOT NULL,
                    payload_json TEXT NOT NULL,
                    status TEXT NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    next_attempt_at TEXT NOT NULL,
                    last_error TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_request_queue_due
                ON request_queue(status, next_attempt_at);

                CREATE TABLE IF NOT EXISTS research_tickets (
                    id TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    payload_json TEXT NOT NULL,
                    result_json TEXT,
                    error TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_research_tickets_status
                ON research_tickets(status, updated_at);

                CREATE TABLE IF NOT EXISTS ticket_transitions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    ticket_id TEXT NOT NULL,
                    from_state TEXT NOT NULL,
                    to_state TEXT NOT NULL,
                    at TEXT NOT NULL,
                    metadata_json TEXT NOT NULL,
                    FOREIGN KEY(ticket_id) REFERENCES research_tickets(id)
                );

                CREATE TABLE IF NOT EXISTS analyses (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    symbol TEXT NOT NULL,
                    ticket_id TEXT,
                    provider TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_analyses_symbol
                ON analyses(symbol, created_at);

                CREATE TABLE IF NOT EXISTS job_runs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    task TEXT NOT NULL,
                    trigger TEXT NOT NULL,
                    status TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    finished_at TEXT NOT NULL,
                    summary_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_job_runs_task
                ON job_runs(task, started_at);
                """
            )

    # -- request queue -----------------------------------------------------

    def insert_queue_item(self, item: QueueItem) -> None:
        with self._conn() as conn:
            conn.execute(
                """
                INSERT INTO request_queue
                (id, kind, payload_json, status, attempts, next_attempt_at, last_error, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    item.id,
                    item.kind.value,
                    json.dumps(item.payload),
                    item.status.value,
                    item.attempts,
                    to_db_ts(item.next_attempt_at),
                    item.last_error,
                    to_db_ts(item.created_at),
                    to_db_ts(item.updated_at),
                ),
            )

    def get_queue_item(self, item_id: str) -> QueueItem | None:
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM request_queue WHERE id = ?", (item_id,)).fetchone()
        if not row:
            return None
        return self._row_to_queue_item(row)

    def list_due_queue_items(self, now: datetime, limit: int) -> list[QueueItem]:
        with self._conn() as conn:
            rows = conn.execute(
                """
                SELECT * FROM request_queue
                WHERE status = ? AND next_attempt_at <= ?
                ORDER BY next_attempt_at ASC, created_at ASC
                LIMIT ?
                """,
                (QueueStatus.PENDING.value, to_db_ts(now), max(int(limit), 0)),
            ).fetchall()
        return [self._row_to_queue_item(row) for row in rows]

    def list_queue_items(
        self,
        status: QueueStatus | None = None,
        updated_before: datetime | None = None,
    ) -> list[QueueItem]:
        clauses: list[str] = []
        params: list[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if updated_before is not None:
            clauses.append("updated_at < ?")
            params.append(to_db_ts(updated_before))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._conn() as conn:
            rows = conn.execute(
                f"SELECT * FROM request_queue {where} ORDER BY created_at ASC",  # noqa: S608
                tuple(params),
            ).fetchall()
        return [self._row_to_queue_item(row) for row in rows]

    def claim_queue_item(self, item_id: str, now: datetime) -> bool:
        with self._conn() as conn:
            cur = conn.execute(
                """
                UPDATE request_queue
                SET status = ?, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (QueueStatus.PROCESSING.value, to_db_ts(now), item_id, QueueStatus.PENDING.value),
            )
        return cur.rowcount == 1

    def complete_queue_item(self, item_id: str, now: datetime) -> bool:
        with self._conn() as conn:
            cur = conn.execute(
                """
                UPDATE request_queue
                SET status = ?, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (QueueStatus.COMPLETED.value, to_db_ts(now), item_id, QueueStatus.PROCESSING.value),
            )
        return cur.rowcount == 1

    def fail_queue_item(self, item_id: str, attempts: int, error: str, now: datetime) -> bool:
        with self._conn() as conn:
            cur = conn.execute(
                """
                UPDATE request_queue
                SET status = ?, attempts = MAX(attempts, ?), last_error = ?, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    QueueStatus.FAILED.value,
                    attempts,
                    error,
                    to_db_ts(now),
                    item_id,
                    QueueStatus.PROCESSING.value,
                ),
            )
        return cur.rowcount == 1

    def retry_queue_item(
        self,
        item_id: str,
        attempts: int,
        next_attempt_at: datetime,
        error: str,
        now: datetime,
    ) -> bool:
        with self._conn() as conn:
            cur = conn.execute(
                """
                UPDATE request_queue
                SET status = ?, attempts = MAX(attempts, ?),
                    next_attempt_at = MAX(next_attempt_at, ?),
                    last_error = ?, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    QueueStatus.PENDING.value,
                    attempts,
                    to_db_ts(next_attempt_at),
                    error,
                    to_db_ts(now),
                    item_id,
                    QueueStatus.PROCESSING.value,
                ),
            )
        return cur.rowcount == 1

    def queue_counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in QueueStatus}
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS n FROM request_queue GROUP BY status"
            ).fetchall()
        for row in rows:
            counts[row["status"]] = row["n"]
        return counts

    def _row_to_queue_item(self, row: sqlite3.Row) -> QueueItem:
        return QueueItem(
            id=row["id"],
            kind=row["kind"],
            payload=json.loads(row["payload_json"]),
            status=row["status"],
            attempts=row["attempts"],
            next_attempt_at=from_db_ts(row["next_attempt_at"]),
            last_error=row["last_error"],
            created_at=from_db_ts(row["created_at"]),
            updated_at=from_db_ts(row["updated_at"]),
        )

    # -- research tickets --------------------------------------------------

    def insert_ticket(self, ticket: ResearchTicket) -> None:
        with self._conn() as conn:
            conn.execute(
                """
                INSERT INTO research_tickets
                (id, status, payload_json, result_json, error, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    ticket.id,
                    ticket.status.value,
                    json.dumps(ticket.payload),
                    json.dumps(ticket.result) if ticket.result is not None else None,
                    ticket.error,
                    to_db_ts(ticket.created_at),
                    to_db_ts(ticket.updated_at),
                ),
            )

    def get_ticket(self, ticket_id: str) -> ResearchTicket | None:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM research_tickets WHERE id = ?", (ticket_id,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_ticket(row)

    def list_non_terminal_tickets(self, updated_before: datetime | None = None) -> list[ResearchTicket]:
        states = tuple(state.value for state in NON_TERMINAL_TICKET_STATES)
        placeholders = ",".join(["?"] * len(states))
        query = f"SELECT * FROM research_tickets WHERE status IN ({placeholders})"  # noqa: S608
        params: list[Any] = list(states)
        if updated_before is not None:
            query += " AND updated_at < ?"
            params.append(to_db_ts(updated_before))
        query += " ORDER BY updated_at ASC"
        with self._conn() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [self._row_to_ticket(row) for row in rows]

    def transition_ticket(
        self,
        transition: TicketTransition,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> bool:
        with self._conn() as conn:
            cur = conn.execute(
                """
                UPDATE research_tickets
                SET status = ?, updated_at = ?,
                    result_json = COALESCE(?, result_json),
                    error = COALESCE(?, error)
                WHERE id = ? AND status = ?
                """,
                (
                    transition.to_state.value,
                    to_db_ts(transition.at),
                    json.dumps(result) if result is not None else None,
                    error,
                    transition.ticket_id,
                    transition.from_state.value,
                ),
            )
            if cur.rowcount != 1:
                return False
            conn.execute(
                """
                INSERT INTO ticket_transitions
                (ticket_id, from_state, to_state, at, metadata_json)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    transition.ticket_id,
                    transition.from_state.value,
                    transition.to_state.value,
                    to_db_ts(transition.at),
                    json.dumps(transition.metadata),
                ),
            )
        return True

    def list_ticket_transitions(self, ticket_id: str) -> list[TicketTransition]:
        with self._conn() as conn:
            rows = conn.execute(
                """
                SELECT ticket_id, from_state, to_state, at, metadata_json
                FROM ticket_transitions
                WHERE ticket_id = ?
                ORDER BY id ASC
                """,
                (ticket_id,),
            ).fetchall()
        return [
            TicketTransition(
                ticket_id=row["ticket_id"],
                from_state=row["from_state"],
                to_state=row["to_state"],
                at=from_db_ts(row["at"]),
                metadata=json.loads(row["metadata_json"]),
            )
            for row in rows
        ]

    def _row_to_ticket(self, row: sqlite3.Row) -> ResearchTicket:
        result = row["result_json"]
        return ResearchTicket(
            id=row["id"],
            status=row["status"],
            payload=json.loads(row["payload_json"]),
            result=json.loads(result) if result else None,
            error=row["error"],
            created_at=from_db_ts(row["created_at"]),
            updated_at=from_db_ts(row["updated_at"]),
        )

    # -- analyses ----------------------------------------------------------

    def record_analysis(self, record: AnalysisRecord) -> None:
        with self._conn() as conn:
            conn.execute(
                """
                INSERT INTO analyses (symbol, ticket_id, provider, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (record.symbol, record.ticket_id, record.provider, to_db_ts(record.created_at)),
            )

    def get_latest_analysis(self, symbol: str) -> AnalysisRecord | None:
        with self._conn() as conn:
            row = conn.execute(
                """
                SELECT symbol, ticket_id, provider, created_at
                FROM analyses
                WHERE symbol = ?
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (symbol,),
            ).fetchone()
        if not row:
            return None
        return AnalysisRecord(
            symbol=row["symbol"],
            ticket_id=row["ticket_id"],
            provider=row["provider"],
            created_at=from_db_ts(row["created_at"]),
        )

    # -- job runs ----------------------------------------------------------

    def record_job_run(
        self,
        task: str,
        trigger: str,
        status: str,
        started_at: datetime,
        finished_at: datetime,
        summary: dict[str, Any],
    ) -> None:
        with self._conn() as conn:
            conn.execute(
                """
                INSERT INTO job_runs (task, trigger, status, started_at, finished_at, summary_json)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    task,
                    trigger,
                    status,
                    to_db_ts(started_at),
                    to_db_ts(finished_at),
                    json.dumps(summary, default=str),
                ),
            )

    def list_job_runs(self, task: str | None = None, limit: int = 20) -> list[dict[str, Any]]:
        with self._conn() as conn:
            if task:
                rows = conn.execute(
                    """
                    SELECT task, trigger, status, started_at, finished_at, summary_json
                    FROM job_runs WHERE task = ?
                    ORDER BY id DESC LIMIT ?
                    """,
                    (task, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT task, trigger, status, started_at, finished_at, summary_json
                    FROM job_runs
                    ORDER BY id DESC LIMIT ?
                    """,
                    (limit,),
                ).fetchall()
        out: list[dict[str, Any]] = []
        for row in rows:
            data = dict(row)
            data["summary"] = json.loads(data.pop("summary_json"))
            out.append(data)
        return out
