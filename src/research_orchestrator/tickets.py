from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from research_orchestrator.errors import InvalidTransitionError
from research_orchestrator.schemas import ResearchTicket, TicketStatus, TicketTransition
from research_orchestrator.state_store import StateStore

logger = logging.getLogger(__name__)

RESTART_ERROR = "System restart: research interrupted."


def timeout_error(timeout_minutes: int) -> str:
    return f"Research timed out: no progress for {timeout_minutes} minute(s)."


class TicketLifecycle:
    """State machine for long-running research tickets.

    pending -> processing -> completed | failed. Terminal tickets are never
    touched again. ``reap_stuck`` is the only way a non-terminal ticket ends
    without a worker finishing it.
    """

    def __init__(
        self,
        state_store: StateStore,
        timeout_minutes: int = 20,
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        self.state_store = state_store
        self.timeout_minutes = max(int(timeout_minutes), 0)
        self.now_fn = now_fn or (lambda: datetime.now(timezone.utc))

    def create(self, payload: dict[str, Any], now: datetime | None = None) -> ResearchTicket:
        now = now or self.now_fn()
        ticket = ResearchTicket(
            status=TicketStatus.PENDING,
            payload=dict(payload),
            created_at=now,
            updated_at=now,
        )
        self.state_store.insert_ticket(ticket)
        logger.info("Created research ticket %s", ticket.id)
        return ticket

    def get(self, ticket_id: str) -> ResearchTicket | None:
        return self.state_store.get_ticket(ticket_id)

    def claim(self, ticket_id: str, now: datetime | None = None) -> ResearchTicket:
        return self._move(ticket_id, TicketStatus.PENDING, TicketStatus.PROCESSING, now)

    def complete(self, ticket_id: str, result: dict[str, Any], now: datetime | None = None) -> ResearchTicket:
        return self._move(ticket_id, TicketStatus.PROCESSING, TicketStatus.COMPLETED, now, result=result)

    def fail(self, ticket_id: str, error: str, now: datetime | None = None) -> ResearchTicket:
        return self._move(ticket_id, TicketStatus.PROCESSING, TicketStatus.FAILED, now, error=error)

    def reap_stuck(self, timeout_minutes: int | None = None, now: datetime | None = None) -> int:
        """Fail tickets left pending/processing longer than the timeout.

        A timeout of 0 fails every non-terminal ticket, which is what startup
        does to clear work orphaned by the previous process. Never raises.
        """
        minutes = self.timeout_minutes if timeout_minutes is None else max(int(timeout_minutes), 0)
        now = now or self.now_fn()
        error = RESTART_ERROR if minutes == 0 else timeout_error(minutes)
        try:
            stuck = self.state_store.list_non_terminal_tickets(
                updated_before=now - timedelta(minutes=minutes) if minutes > 0 else None
            )
        except Exception as exc:
            logger.error("Stuck ticket scan failed: %s", exc)
            return 0

        reaped = 0
        for ticket in stuck:
            try:
                moved = self.state_store.transition_ticket(
                    TicketTransition(
                        ticket_id=ticket.id,
                        from_state=ticket.status,
                        to_state=TicketStatus.FAILED,
                        at=now,
                        metadata={"reason": "reaper", "timeout_minutes": minutes},
                    ),
                    error=error,
                )
            except Exception as exc:
                logger.error("Could not reap ticket %s: %s", ticket.id, exc)
                continue
            if moved:
                reaped += 1

        if reaped:
            logger.warning("Cleaned up %s stuck research ticket(s).", reaped)
        return reaped

    def _move(
        self,
        ticket_id: str,
        from_state: TicketStatus,
        to_state: TicketStatus,
        now: datetime | None,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> ResearchTicket:
        now = now or self.now_fn()
        moved = self.state_store.transition_ticket(
            TicketTransition(ticket_id=ticket_id, from_state=from_state, to_state=to_state, at=now),
            result=result,
            error=error,
        )
        ticket = self.state_store.get_ticket(ticket_id)
        if not moved or ticket is None:
            current = ticket.status.value if ticket is not None else None
            raise InvalidTransitionError("ticket", ticket_id, current, to_state.value)
        return ticket
