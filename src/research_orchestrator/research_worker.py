from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable

from research_orchestrator.gateway import AnalysisProvider
from research_orchestrator.schemas import AnalysisRecord, ResearchTicket, TicketStatus
from research_orchestrator.state_store import StateStore
from research_orchestrator.tickets import TicketLifecycle

logger = logging.getLogger(__name__)


def build_risk_prompt(payload: dict[str, Any]) -> str:
    symbol = payload.get("symbol", "")
    question = payload.get("question") or "Assess the current risk/reward profile."
    return f"Ticker: {symbol}\n{question}"


class ResearchWorker:
    """Runs one research ticket end to end: claim, generate, complete or fail."""

    def __init__(
        self,
        lifecycle: TicketLifecycle,
        provider: AnalysisProvider,
        state_store: StateStore,
        prompt_builder: Callable[[dict[str, Any]], str] = build_risk_prompt,
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        self.lifecycle = lifecycle
        self.provider = provider
        self.state_store = state_store
        self.prompt_builder = prompt_builder
        self.now_fn = now_fn or (lambda: datetime.now(timezone.utc))

    def process(self, ticket_id: str) -> ResearchTicket:
        ticket = self.lifecycle.claim(ticket_id, now=self.now_fn())

        try:
            result = self.provider.generate_analysis(self.prompt_builder(ticket.payload))
        except Exception as exc:
            logger.error("Research ticket %s crashed: %s", ticket_id, exc)
            return self.lifecycle.fail(ticket_id, f"{type(exc).__name__}: {exc}", now=self.now_fn())

        if not result.ok:
            logger.warning("Research ticket %s failed (%s): %s", ticket_id, result.outcome.value, result.error)
            return self.lifecycle.fail(ticket_id, result.error or result.outcome.value, now=self.now_fn())

        now = self.now_fn()
        done = self.lifecycle.complete(
            ticket_id,
            {"analysis": result.data, "provider": result.source},
            now=now,
        )
        symbol = ticket.payload.get("symbol")
        if symbol and done.status == TicketStatus.COMPLETED:
            self.state_store.record_analysis(
                AnalysisRecord(symbol=symbol, ticket_id=ticket_id, provider=result.source, created_at=now)
            )
        return done
