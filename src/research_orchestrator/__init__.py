"""Background job orchestration for market data sync and AI research tickets."""

from research_orchestrator.schemas import (
    DrainReport,
    MarketStatus,
    QueueItem,
    QueueStatus,
    Region,
    ResearchTicket,
    ScanReport,
    Session,
    SyncReport,
    SyncTarget,
    TicketStatus,
    WorkKind,
)

__all__ = [
    "QueueItem",
    "QueueStatus",
    "WorkKind",
    "ResearchTicket",
    "TicketStatus",
    "SyncTarget",
    "MarketStatus",
    "Region",
    "Session",
    "DrainReport",
    "SyncReport",
    "ScanReport",
]
