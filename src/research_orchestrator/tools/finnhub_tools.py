from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from typing import Any

import pandas as pd
import requests

from research_orchestrator.errors import PermanentError, RateLimitedError, TransientError
from research_orchestrator.gateway import GatewayResult
from research_orchestrator.schemas import Region

FINNHUB_BASE_URL = "https://finnhub.io/api/v1"

# Finnhub market-status exchange codes per calendar region.
STATUS_EXCHANGE_BY_REGION = {
    Region.US: "US",
    Region.EU: "L",
    Region.OTHER: "L",
}


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def has_real_credentials() -> bool:
    key = _env("FINNHUB_API_KEY")
    return bool(key and key != "your_finnhub_api_key_here")


def candles_to_frame(payload: dict[str, Any]) -> pd.DataFrame:
    if payload.get("s") != "ok":
        return pd.DataFrame(columns=["timestamp", "open", "high", "low", "close", "volume"])
    return pd.DataFrame(
        {
            "timestamp": pd.to_datetime(payload["t"], unit="s", utc=True),
            "open": payload["o"],
            "high": payload["h"],
            "low": payload["l"],
            "close": payload["c"],
            "volume": payload["v"],
        }
    )


class FinnhubClient:
    """Finnhub-backed market data gateway and live market-status source."""

    name = "finnhub"

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout_sec: float | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else _env("FINNHUB_API_KEY")
        self.base_url = (base_url or _env("FINNHUB_BASE_URL", FINNHUB_BASE_URL)).rstrip("/")
        self.timeout_sec = timeout_sec or float(_env("FINNHUB_TIMEOUT_SEC", "10"))
        self.session = session or requests.Session()

    def _get(self, path: str, params: dict[str, Any]) -> Any:
        query = dict(params)
        query["token"] = self.api_key
        try:
            resp = self.session.get(f"{self.base_url}{path}", params=query, timeout=self.timeout_sec)
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise TransientError(f"finnhub {path}: {exc}") from exc

        if resp.status_code == 429:
            retry_after = resp.headers.get("Retry-After")
            raise RateLimitedError(
                f"finnhub {path}: 429 too many requests",
                retry_after_sec=float(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if resp.status_code in (401, 403, 404):
            raise PermanentError(f"finnhub {path}: HTTP {resp.status_code} {resp.text[:200]}")
        if resp.status_code >= 400:
            raise TransientError(f"finnhub {path}: HTTP {resp.status_code}")
        try:
            return resp.json()
        except ValueError as exc:
            raise TransientError(f"finnhub {path}: invalid JSON") from exc

    def fetch_snapshot(self, symbol: str) -> GatewayResult:
        try:
            quote = self._get("/quote", {"symbol": symbol})
        except Exception as exc:
            return GatewayResult.from_exception(exc, source=self.name)
        if not isinstance(quote, dict) or not quote.get("c"):
            return GatewayResult.failure(f"no quote for {symbol}", permanent=True, source=self.name)
        return GatewayResult.success(
            {
                "symbol": symbol,
                "price": float(quote["c"]),
                "change": quote.get("d"),
                "change_pct": quote.get("dp"),
                "high": quote.get("h"),
                "low": quote.get("l"),
                "open": quote.get("o"),
                "previous_close": quote.get("pc"),
                "as_of": datetime.fromtimestamp(int(quote.get("t") or 0), tz=timezone.utc),
            },
            source=self.name,
        )

    def fetch_history(self, symbol: str, days: int) -> GatewayResult:
        end = datetime.now(timezone.utc)
        start = end - timedelta(days=max(int(days), 1))
        try:
            payload = self._get(
                "/stock/candle",
                {
                    "symbol": symbol,
                    "resolution": "D",
                    "from": int(start.timestamp()),
                    "to": int(end.timestamp()),
                },
            )
        except Exception as exc:
            return GatewayResult.from_exception(exc, source=self.name)
        return GatewayResult.success(candles_to_frame(payload or {}), source=self.name)

    def fetch_market_status(self, region: Region) -> dict[str, Any]:
        exchange = STATUS_EXCHANGE_BY_REGION.get(region, "US")
        payload = self._get("/stock/market-status", {"exchange": exchange})
        if not isinstance(payload, dict):
            raise TransientError("finnhub market-status: unexpected payload")
        return payload
