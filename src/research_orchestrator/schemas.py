from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator


def _ensure_tz(value):
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class WorkKind(str, Enum):
    ADD_INSTRUMENT = "add_instrument"
    SNAPSHOT_SYNC = "snapshot_sync"
    HISTORY_BACKFILL = "history_backfill"


class QueueStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_QUEUE_STATES = {QueueStatus.COMPLETED, QueueStatus.FAILED}


class TicketStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_TICKET_STATES = {TicketStatus.COMPLETED, TicketStatus.FAILED}
NON_TERMINAL_TICKET_STATES = {TicketStatus.PENDING, TicketStatus.PROCESSING}


class Region(str, Enum):
    US = "US"
    EU = "EU"
    OTHER = "OTHER"


class Session(str, Enum):
    PRE = "pre"
    REGULAR = "regular"
    POST = "post"
    CLOSED = "closed"


class QueueItem(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    kind: WorkKind
    payload: dict[str, Any] = Field(default_factory=dict)
    status: QueueStatus = QueueStatus.PENDING
    attempts: int = Field(default=0, ge=0)
    next_attempt_at: datetime
    created_at: datetime
    updated_at: datetime
    last_error: str | None = None

    @field_validator("next_attempt_at", "created_at", "updated_at", mode="before")
    @classmethod
    def ensure_tz(cls, value):
        return _ensure_tz(value)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_QUEUE_STATES


class ResearchTicket(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    status: TicketStatus = TicketStatus.PENDING
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime
    result: dict[str, Any] | None = None
    error: str | None = None

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def ensure_tz(cls, value):
        return _ensure_tz(value)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TICKET_STATES


class TicketTransition(BaseModel):
    ticket_id: str
    from_state: TicketStatus
    to_state: TicketStatus
    at: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)


class SyncTarget(BaseModel):
    symbol: str
    exchange: str | None = None

    @field_validator("symbol")
    @classmethod
    def normalize_symbol(cls, value: str) -> str:
        return value.strip().upper()


class MarketStatus(BaseModel):
    is_open: bool
    session: Session
    region: Region
    exchange: str | None = None
    timezone: str
    fallback: bool = False
    holiday: str | None = None
    checked_at: datetime

    @field_validator("checked_at", mode="before")
    @classmethod
    def ensure_tz(cls, value):
        return _ensure_tz(value)


class AnalysisRecord(BaseModel):
    symbol: str
    ticket_id: str | None = None
    provider: str | None = None
    created_at: datetime

    @field_validator("created_at", mode="before")
    @classmethod
    def ensure_tz(cls, value):
        return _ensure_tz(value)


class DrainReport(BaseModel):
    claimed: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0
    error: str | None = None


class SyncReport(BaseModel):
    processed: int = 0
    success: int = 0
    failed: int = 0
    deferred: int = 0
    skipped_market_closed: int = 0
    skipped: bool = False
    reason: str | None = None


class ScanReport(BaseModel):
    processed: int = 0
    skipped: int = 0
    failed: int = 0
