"""Trading calendar gate.

Answers "is this market open right now?" for a symbol, exchange or region.
A live status source is asked first; any error from it (timeouts, restricted
access, bad payloads) drops to a time-based answer computed from the region's
canonical trading hours in its own timezone. The gate never raises.

Environment Variables:
    EXCHANGE_CALENDAR_FILE: YAML file with region hours and exchange markers
    MARKET_STATUS_CACHE_TTL_SEC: How long a status is reused (default: 60)
"""
from __future__ import annotations

import logging
import re
import time as time_module
from dataclasses import dataclass, field
from datetime import datetime, time, timezone
from pathlib import Path
from typing import Any, Callable
from zoneinfo import ZoneInfo

import yaml

from research_orchestrator.gateway import MarketStatusSource
from research_orchestrator.schemas import MarketStatus, Region, Session
from research_orchestrator.status_cache import TTLCache

logger = logging.getLogger(__name__)

DEFAULT_CALENDAR_FILE = Path(__file__).resolve().parent / "config" / "exchanges.yaml"

_LIVE_SESSION_MAP = {
    "pre-market": Session.PRE,
    "pre": Session.PRE,
    "regular": Session.REGULAR,
    "post-market": Session.POST,
    "post": Session.POST,
}


@dataclass(frozen=True)
class RegionHours:
    timezone: str
    sessions: dict[Session, tuple[time, time]]

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


@dataclass(frozen=True)
class ExchangeCalendar:
    regions: dict[Region, RegionHours]
    eu_suffixes: frozenset[str] = field(default_factory=frozenset)
    eu_exchanges: frozenset[str] = field(default_factory=frozenset)
    us_exchanges: frozenset[str] = field(default_factory=frozenset)

    def hours_for(self, region: Region) -> RegionHours:
        # OTHER has no calendar of its own and follows the EU hours.
        if region == Region.OTHER:
            return self.regions[Region.EU]
        return self.regions[region]


DEFAULT_CALENDAR = ExchangeCalendar(
    regions={
        Region.US: RegionHours(
            timezone="America/New_York",
            sessions={
                Session.PRE: (time(4, 0), time(9, 30)),
                Session.REGULAR: (time(9, 30), time(16, 0)),
                Session.POST: (time(16, 0), time(20, 0)),
            },
        ),
        Region.EU: RegionHours(
            timezone="Europe/Berlin",
            sessions={Session.REGULAR: (time(8, 0), time(17, 30))},
        ),
    },
    eu_suffixes=frozenset(
        {".PA", ".DE", ".L", ".AS", ".MI", ".MC", ".BR", ".SW", ".ST", ".HE", ".CO", ".OL", ".LS", ".VI", ".F"}
    ),
    eu_exchanges=frozenset(
        {"LSE", "XETRA", "EURONEXT", "PARIS", "FRANKFURT", "AMSTERDAM", "MILAN", "MADRID", "SIX", "LONDON"}
    ),
    us_exchanges=frozenset({"NASDAQ", "NYSE", "AMEX", "ARCA", "BATS", "US"}),
)


def _parse_hhmm(value: Any) -> time:
    hours, minutes = str(value).split(":", 1)
    return time(int(hours), int(minutes))


def _parse_region_hours(entry: dict[str, Any]) -> RegionHours:
    sessions: dict[Session, tuple[time, time]] = {}
    for name, bounds in (entry.get("sessions") or {}).items():
        start, end = bounds
        sessions[Session(str(name))] = (_parse_hhmm(start), _parse_hhmm(end))
    if Session.REGULAR not in sessions:
        raise ValueError("region calendar needs a regular session")
    tz_name = str(entry["timezone"])
    ZoneInfo(tz_name)
    return RegionHours(timezone=tz_name, sessions=sessions)


def load_exchange_calendar(path: str | Path | None = None) -> ExchangeCalendar:
    """Load region hours from YAML, falling back to the built-in calendar."""
    calendar_path = Path(path) if path else DEFAULT_CALENDAR_FILE
    if not calendar_path.exists():
        return DEFAULT_CALENDAR
    try:
        data = yaml.safe_load(calendar_path.read_text()) or {}
        regions = dict(DEFAULT_CALENDAR.regions)
        for name, entry in (data.get("regions") or {}).items():
            regions[Region(str(name).upper())] = _parse_region_hours(entry)
        markers = data.get("markers") or {}
        eu = markers.get("EU") or {}
        us = markers.get("US") or {}
        return ExchangeCalendar(
            regions=regions,
            eu_suffixes=frozenset(s.upper() for s in eu.get("suffixes", DEFAULT_CALENDAR.eu_suffixes)),
            eu_exchanges=frozenset(s.upper() for s in eu.get("exchanges", DEFAULT_CALENDAR.eu_exchanges)),
            us_exchanges=frozenset(s.upper() for s in us.get("exchanges", DEFAULT_CALENDAR.us_exchanges)),
        )
    except Exception as exc:
        logger.warning("Exchange calendar %s unreadable, using defaults: %s", calendar_path, exc)
        return DEFAULT_CALENDAR


def resolve_region(
    symbol_or_region: str,
    exchange: str | None = None,
    calendar: ExchangeCalendar = DEFAULT_CALENDAR,
) -> Region:
    token = (symbol_or_region or "").strip().upper()
    if token in {r.value for r in Region}:
        return Region(token)

    hint_tokens = {t for t in re.split(r"[^A-Z0-9]+", (exchange or "").upper()) if t}
    if hint_tokens & calendar.eu_exchanges:
        return Region.EU
    if hint_tokens & calendar.us_exchanges:
        return Region.US

    if "." not in token:
        return Region.US
    suffix = token[token.rfind("."):]
    if suffix in calendar.eu_suffixes:
        return Region.EU
    return Region.OTHER


def fallback_status(
    region: Region,
    now: datetime,
    calendar: ExchangeCalendar = DEFAULT_CALENDAR,
) -> MarketStatus:
    """Time-based status from canonical hours; a pure function of ``now``."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    hours = calendar.hours_for(region)
    local = now.astimezone(hours.tz)
    t = local.time()

    session = Session.CLOSED
    if local.weekday() < 5:
        for name in (Session.REGULAR, Session.PRE, Session.POST):
            bounds = hours.sessions.get(name)
            if bounds is None:
                continue
            start, end = bounds
            if start <= t < end:
                session = name
                break

    return MarketStatus(
        is_open=session == Session.REGULAR,
        session=session,
        region=region,
        exchange=region.value,
        timezone=hours.timezone,
        fallback=True,
        checked_at=now.astimezone(timezone.utc),
    )


def status_from_live(region: Region, payload: dict[str, Any], now: datetime, default_tz: str) -> MarketStatus:
    if "isOpen" not in payload and "is_open" not in payload:
        raise ValueError(f"market status payload missing isOpen: {payload!r}")
    is_open = bool(payload.get("isOpen", payload.get("is_open")))
    raw_session = payload.get("session")
    session = _LIVE_SESSION_MAP.get(str(raw_session).lower(), Session.CLOSED) if raw_session else Session.CLOSED
    if is_open and session == Session.CLOSED:
        session = Session.REGULAR
    return MarketStatus(
        is_open=is_open,
        session=session,
        region=region,
        exchange=payload.get("exchange") or region.value,
        timezone=payload.get("timezone") or default_tz,
        fallback=False,
        holiday=payload.get("holiday"),
        checked_at=now,
    )


class MarketStatusService:
    def __init__(
        self,
        source: MarketStatusSource | None = None,
        calendar: ExchangeCalendar | None = None,
        cache_ttl_sec: float = 60,
        now_fn: Callable[[], datetime] | None = None,
        clock: Callable[[], float] = time_module.monotonic,
    ) -> None:
        self.source = source
        self.calendar = calendar or DEFAULT_CALENDAR
        self.now_fn = now_fn or (lambda: datetime.now(timezone.utc))
        self.cache: TTLCache[MarketStatus] = TTLCache(cache_ttl_sec, clock=clock)

    def get_status(self, symbol_or_region: str, exchange: str | None = None) -> MarketStatus:
        region = resolve_region(symbol_or_region, exchange, self.calendar)
        try:
            return self.cache.get_or_load(region.value, lambda: self._load(region))
        except Exception as exc:
            logger.error("Market status lookup for %s failed, using time fallback: %s", region.value, exc)
            return fallback_status(region, self.now_fn(), self.calendar)

    def is_open(self, symbol_or_region: str, exchange: str | None = None) -> bool:
        return self.get_status(symbol_or_region, exchange).is_open

    def get_all_statuses(self) -> dict[str, MarketStatus]:
        return {
            "us": self.get_status(Region.US.value),
            "eu": self.get_status(Region.EU.value),
        }

    def any_market_open(self) -> bool:
        return any(status.is_open for status in self.get_all_statuses().values())

    def _load(self, region: Region) -> MarketStatus:
        now = self.now_fn()
        if self.source is not None:
            try:
                payload = self.source.fetch_market_status(region)
                status = status_from_live(region, payload, now, self.calendar.hours_for(region).timezone)
                logger.info(
                    "Market status [%s]: %s (%s)",
                    region.value,
                    "OPEN" if status.is_open else "CLOSED",
                    status.session.value,
                )
                return status
            except Exception as exc:
                logger.warning("Live market status for %s unavailable, using time fallback: %s", region.value, exc)
        return fallback_status(region, now, self.calendar)
