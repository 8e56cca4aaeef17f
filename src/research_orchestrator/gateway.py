"""Contracts for the market-data and AI providers the jobs depend on.

Every provider call reports one of three outcomes: success, rate limited or
failure. Callers branch on the outcome; ``unwrap`` turns a non-success
outcome into the matching exception for code paths that prefer raising.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol, Sequence, runtime_checkable

from research_orchestrator.errors import (
    PermanentError,
    RateLimitedError,
    TransientError,
    is_rate_limit_error,
)
from research_orchestrator.schemas import Region, SyncTarget

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    SUCCESS = "success"
    RATE_LIMITED = "rate_limited"
    FAILURE = "failure"


@dataclass(frozen=True)
class GatewayResult:
    outcome: Outcome
    data: Any = None
    error: str | None = None
    permanent: bool = False
    source: str | None = None
    retry_after_sec: float | None = None

    @classmethod
    def success(cls, data: Any, source: str | None = None) -> "GatewayResult":
        return cls(outcome=Outcome.SUCCESS, data=data, source=source)

    @classmethod
    def rate_limited(
        cls,
        detail: str = "rate limited",
        source: str | None = None,
        retry_after_sec: float | None = None,
    ) -> "GatewayResult":
        return cls(outcome=Outcome.RATE_LIMITED, error=detail, source=source, retry_after_sec=retry_after_sec)

    @classmethod
    def failure(
        cls,
        error: str | BaseException,
        permanent: bool = False,
        source: str | None = None,
    ) -> "GatewayResult":
        return cls(outcome=Outcome.FAILURE, error=str(error), permanent=permanent, source=source)

    @classmethod
    def from_exception(cls, exc: BaseException, source: str | None = None) -> "GatewayResult":
        if is_rate_limit_error(exc):
            return cls.rate_limited(str(exc), source=source, retry_after_sec=getattr(exc, "retry_after_sec", None))
        return cls.failure(exc, permanent=isinstance(exc, PermanentError), source=source)

    @property
    def ok(self) -> bool:
        return self.outcome == Outcome.SUCCESS

    @property
    def is_rate_limited(self) -> bool:
        return self.outcome == Outcome.RATE_LIMITED

    def unwrap(self) -> Any:
        if self.outcome == Outcome.SUCCESS:
            return self.data
        if self.outcome == Outcome.RATE_LIMITED:
            raise RateLimitedError(self.error or "rate limited", retry_after_sec=self.retry_after_sec)
        if self.permanent:
            raise PermanentError(self.error or "permanent failure")
        raise TransientError(self.error or "transient failure")


@runtime_checkable
class MarketDataGateway(Protocol):
    def fetch_snapshot(self, symbol: str) -> GatewayResult:
        ...

    def fetch_history(self, symbol: str, days: int) -> GatewayResult:
        ...


@runtime_checkable
class AnalysisProvider(Protocol):
    name: str

    def generate_analysis(self, prompt: str) -> GatewayResult:
        ...


@runtime_checkable
class MarketStatusSource(Protocol):
    """Live exchange status; raises on any error so the caller can fall back."""

    def fetch_market_status(self, region: Region) -> dict[str, Any]:
        ...


@runtime_checkable
class InstrumentCatalog(Protocol):
    def list_tracked_instruments(self) -> list[SyncTarget]:
        ...


class StaticCatalog:
    def __init__(self, targets: Sequence[SyncTarget]) -> None:
        self._targets = list(targets)

    def list_tracked_instruments(self) -> list[SyncTarget]:
        return list(self._targets)


class ProviderChain:
    """Try analysis providers in order until one succeeds.

    A rate-limited or failed provider falls through to the next one. When
    every provider fails the chain reports rate limited only if all of them
    were rate limited, otherwise it reports the last failure.
    """

    name = "chain"

    def __init__(self, providers: Sequence[AnalysisProvider]) -> None:
        if not providers:
            raise ValueError("provider chain needs at least one provider")
        self.providers = list(providers)

    def generate_analysis(self, prompt: str) -> GatewayResult:
        last: GatewayResult | None = None
        all_rate_limited = True
        for provider in self.providers:
            try:
                result = provider.generate_analysis(prompt)
            except Exception as exc:
                result = GatewayResult.from_exception(exc, source=provider.name)
            if result.ok:
                if result.source is None:
                    result = GatewayResult.success(result.data, source=provider.name)
                return result
            logger.warning(
                "Analysis provider %s returned %s: %s", provider.name, result.outcome.value, result.error
            )
            all_rate_limited = all_rate_limited and result.is_rate_limited
            last = result

        if last is None:
            return GatewayResult.failure("no analysis provider ran", source=self.name)
        if all_rate_limited:
            return GatewayResult.rate_limited("all analysis providers rate limited", source=self.name)
        return GatewayResult.failure(
            f"all analysis providers failed: {last.error}",
            permanent=last.permanent,
            source=self.name,
        )
