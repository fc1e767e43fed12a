"""KuCoin Futures public market data."""

from __future__ import annotations

from typing import Any

import httpx
import pandas as pd  # type: ignore[import-untyped]
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from perp_trading.errors import DataValidationError, ExternalCallFailure
from perp_trading.exchange.kucoin import KUCOIN_FUTURES_URL, check_base_url, to_kucoin_symbol
from perp_trading.signals.quality import spread_bps
from perp_trading.utils.logging import get_logger

_GRANULARITY_MINUTES = {
    "1m": 1,
    "5m": 5,
    "15m": 15,
    "30m": 30,
    "1h": 60,
    "2h": 120,
    "4h": 240,
    "8h": 480,
    "12h": 720,
    "1d": 1440,
    "1w": 10080,
}


class MarketDataError(ExternalCallFailure):
    """Public endpoint unavailable or returned an error code."""


class KuCoinMarketData:
    """Read-only client for klines, funding rate and ticker."""

    def __init__(
        self,
        base_url: str = KUCOIN_FUTURES_URL,
        *,
        timeout: float = 10.0,
        client: httpx.Client | None = None,
    ) -> None:
        self._base_url = check_base_url(base_url)
        self._client = client or httpx.Client(base_url=self._base_url, timeout=timeout)
        self._logger = get_logger("perp_trading.data.kucoin")

    def close(self) -> None:
        self._client.close()

    @retry(
        retry=retry_if_exception_type(MarketDataError),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        try:
            response = self._client.get(f"{self._base_url}{path}", params=params)
            response.raise_for_status()
        except (httpx.HTTPError, httpx.TimeoutException) as exc:
            raise MarketDataError(str(exc)) from exc
        data = response.json()
        if str(data.get("code")) != "200000":
            raise MarketDataError(f"kucoin_error_{data.get('code')}: {data.get('msg')}")
        return data.get("data")

    def fetch_ohlcv(self, symbol: str, interval: str, limit: int) -> pd.DataFrame:
        """Fetch klines as an ascending frame of open_time/open/high/low/close/volume."""
        granularity = _GRANULARITY_MINUTES.get(interval.lower())
        if granularity is None:
            raise ValueError(f"unsupported_interval: {interval}")

        rows = self._get(
            "/api/v1/kline/query",
            {"symbol": to_kucoin_symbol(symbol), "granularity": granularity},
        )
        if not rows:
            raise DataValidationError(f"empty_ohlcv_response: {symbol}")

        df = pd.DataFrame(
            [row[:6] for row in rows],
            columns=["open_time", "open", "high", "low", "close", "volume"],
        )
        numeric_cols = ["open", "high", "low", "close", "volume"]
        for col in numeric_cols:
            df[col] = pd.to_numeric(df[col], errors="coerce")
        df["open_time"] = pd.to_datetime(pd.to_numeric(df["open_time"]), unit="ms", utc=True)
        df = df.dropna(subset=numeric_cols)
        df = df.sort_values("open_time").drop_duplicates("open_time").tail(limit)
        return df.reset_index(drop=True)

    def fetch_funding_rate(self, symbol: str) -> float | None:
        """Current funding rate, or None when unavailable."""
        try:
            data = self._get(f"/api/v1/funding-rate/{to_kucoin_symbol(symbol)}/current")
        except ExternalCallFailure as exc:
            self._logger.warning("funding_fetch_failed", symbol=symbol, error=str(exc))
            return None
        if not isinstance(data, dict) or data.get("value") is None:
            return None
        return float(data["value"])

    def fetch_last_price(self, symbol: str) -> float | None:
        try:
            data = self._get("/api/v1/ticker", {"symbol": to_kucoin_symbol(symbol)})
        except ExternalCallFailure as exc:
            self._logger.warning("ticker_fetch_failed", symbol=symbol, error=str(exc))
            return None
        if not isinstance(data, dict) or data.get("price") is None:
            return None
        return float(data["price"])

    def fetch_spread_bps(self, symbol: str) -> float | None:
        """Top-of-book spread in basis points, or None when unavailable."""
        try:
            data = self._get("/api/v1/ticker", {"symbol": to_kucoin_symbol(symbol)})
        except ExternalCallFailure as exc:
            self._logger.warning("ticker_fetch_failed", symbol=symbol, error=str(exc))
            return None
        if not isinstance(data, dict):
            return None
        bid, ask = data.get("bestBidPrice"), data.get("bestAskPrice")
        if bid is None or ask is None:
            return None
        return spread_bps(float(bid), float(ask))
