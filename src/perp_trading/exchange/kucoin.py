"""KuCoin Futures REST client (signed endpoints)."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from datetime import datetime, timezone
from typing import Any, Callable
from urllib.parse import urlencode

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from perp_trading.errors import ConfigurationError, ExternalCallFailure
from perp_trading.execution.policy import canonicalize_symbol
from perp_trading.types import OrderIntent, OrderResult, Position
from perp_trading.utils.logging import get_logger, log_order_execution

KUCOIN_FUTURES_URL = "https://api-futures.kucoin.com"
KUCOIN_SANDBOX_URL = "https://api-sandbox-futures.kucoin.com"
ALLOWED_BASE_URLS = frozenset({KUCOIN_FUTURES_URL, KUCOIN_SANDBOX_URL})
_SUCCESS_CODE = "200000"


class KuCoinAPIError(ExternalCallFailure):
    """KuCoin rejected a request or returned a non-success code."""

    def __init__(self, message: str, *, api_code: str | None = None) -> None:
        super().__init__(message)
        self.api_code = api_code


class KuCoinTransportError(KuCoinAPIError):
    """Network or HTTP-level failure. Retried."""


def sign(secret: str, message: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def signed_headers(
    *,
    api_key: str,
    api_secret: str,
    passphrase: str,
    method: str,
    path: str,
    body: str = "",
    timestamp: str | None = None,
    key_version: str = "2",
) -> dict[str, str]:
    """Headers for a private request; ``path`` includes any query string."""
    ts = timestamp or str(int(time.time() * 1000))
    return {
        "KC-API-KEY": api_key,
        "KC-API-SIGN": sign(api_secret, ts + method.upper() + path + body),
        "KC-API-TIMESTAMP": ts,
        "KC-API-PASSPHRASE": sign(api_secret, passphrase),
        "KC-API-KEY-VERSION": key_version,
        "Content-Type": "application/json",
    }


def to_kucoin_symbol(symbol: str) -> str:
    """BTCUSDT / BTC-USDT -> XBTUSDTM; ETHUSDT -> ETHUSDTM."""
    canonical = canonicalize_symbol(symbol)
    if canonical.startswith("BTC"):
        canonical = "XBT" + canonical[3:]
    if canonical.endswith("USDT"):
        canonical += "M"
    return canonical


def check_base_url(base_url: str) -> str:
    normalized = base_url.rstrip("/")
    if normalized not in ALLOWED_BASE_URLS:
        raise ConfigurationError(f"exchange endpoint not allowed: {base_url}", code="E_ENDPOINT_NOT_ALLOWED")
    return normalized


class KuCoinFuturesClient:
    """Signed KuCoin Futures adapter. Construction fails closed on an unknown endpoint."""

    def __init__(
        self,
        *,
        api_key: str,
        api_secret: str,
        passphrase: str,
        base_url: str = KUCOIN_FUTURES_URL,
        key_version: str = "2",
        timeout: float = 10.0,
        client: httpx.Client | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._base_url = check_base_url(base_url)
        missing = [
            name
            for name, value in (
                ("KUCOIN_API_KEY", api_key),
                ("KUCOIN_API_SECRET", api_secret),
                ("KUCOIN_API_PASSPHRASE", passphrase),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(f"KuCoin client requires {', '.join(missing)}")
        self._api_key = api_key
        self._api_secret = api_secret
        self._passphrase = passphrase
        self._key_version = key_version
        self._clock = clock
        self._client = client or httpx.Client(base_url=self._base_url, timeout=timeout)
        self._logger = get_logger("perp_trading.exchange.kucoin")

    @property
    def base_url(self) -> str:
        return self._base_url

    def close(self) -> None:
        self._client.close()

    @retry(
        retry=retry_if_exception_type(KuCoinTransportError),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    def _request(
        self,
        method: str,
        endpoint: str,
        *,
        params: dict[str, Any] | None = None,
        payload: dict[str, Any] | None = None,
    ) -> Any:
        path = endpoint
        if params:
            path = f"{endpoint}?{urlencode(params)}"
        body = json.dumps(payload, separators=(",", ":")) if payload is not None else ""
        headers = signed_headers(
            api_key=self._api_key,
            api_secret=self._api_secret,
            passphrase=self._passphrase,
            method=method,
            path=path,
            body=body,
            timestamp=str(int(self._clock() * 1000)),
            key_version=self._key_version,
        )
        try:
            response = self._client.request(
                method,
                f"{self._base_url}{path}",
                headers=headers,
                content=body or None,
            )
            response.raise_for_status()
        except (httpx.HTTPError, httpx.TimeoutException) as exc:
            raise KuCoinTransportError(str(exc)) from exc

        data = response.json()
        code = str(data.get("code", ""))
        if code != _SUCCESS_CODE:
            raise KuCoinAPIError(data.get("msg") or f"kucoin_error_{code}", api_code=code)
        return data.get("data")

    def place_order(self, intent: OrderIntent) -> OrderResult:
        payload: dict[str, Any] = {
            "clientOid": intent.client_oid,
            "side": intent.side,
            "symbol": to_kucoin_symbol(intent.symbol),
            "leverage": str(intent.leverage),
            "reduceOnly": intent.reduce_only,
        }
        if intent.reduce_only:
            payload["size"] = max(1, int(round(intent.size)))
        else:
            payload["valueQty"] = f"{intent.size * intent.leverage:.2f}"
        if intent.order_type == "stop":
            payload["type"] = "market"
            payload["stop"] = "down" if intent.side == "sell" else "up"
            payload["stopPriceType"] = "MP"
            payload["stopPrice"] = f"{intent.price}"
        elif intent.order_type == "limit":
            payload["type"] = "limit"
            payload["price"] = f"{intent.price}"
        else:
            payload["type"] = "market"

        try:
            data = self._request("POST", "/api/v1/orders", payload=payload)
        except KuCoinAPIError as exc:
            log_order_execution(
                self._logger,
                symbol=intent.symbol,
                side=intent.side,
                quantity=intent.size,
                status="failed",
                error=str(exc),
            )
            return OrderResult(success=False, error=str(exc))
        order_id = (data or {}).get("orderId")
        log_order_execution(
            self._logger,
            symbol=intent.symbol,
            side=intent.side,
            quantity=intent.size,
            price=intent.price,
            order_id=order_id,
            status="accepted",
        )
        return OrderResult(success=True, order_id=order_id, price=intent.price)

    def cancel_order(self, order_id: str) -> bool:
        try:
            self._request("DELETE", f"/api/v1/orders/{order_id}")
        except KuCoinAPIError as exc:
            self._logger.warning("cancel_failed", order_id=order_id, error=str(exc))
            return False
        return True

    def get_position(self, symbol: str) -> Position | None:
        data = self._request("GET", "/api/v1/position", params={"symbol": to_kucoin_symbol(symbol)})
        return _parse_position(data) if data else None

    def list_positions(self) -> list[Position]:
        rows = self._request("GET", "/api/v1/positions") or []
        positions = [_parse_position(row) for row in rows]
        return [p for p in positions if p is not None]

    def get_balance(self) -> float:
        data = self._request("GET", "/api/v1/account-overview", params={"currency": "USDT"}) or {}
        return float(data.get("marginBalance") or data.get("accountEquity") or 0.0)


def _parse_position(row: dict[str, Any]) -> Position | None:
    qty = float(row.get("currentQty") or 0)
    if not row.get("isOpen", qty != 0) or qty == 0:
        return None
    opened_ms = row.get("openingTimestamp") or 0
    entry_price = float(row.get("avgEntryPrice") or 0)
    return Position(
        symbol=canonicalize_symbol(str(row.get("symbol", ""))),
        side="long" if qty > 0 else "short",
        size=abs(qty),
        leverage=float(row.get("realLeverage") or row.get("leverage") or 1),
        entry_price=entry_price,
        timestamp=datetime.fromtimestamp(float(opened_ms) / 1000, tz=timezone.utc),
        pnl_percent=float(row.get("unrealisedRoePcnt") or 0) * 100,
        pnl=float(row.get("unrealisedPnl") or 0),
        notional_value=_quote_notional(row, qty, entry_price),
    )


def _quote_notional(row: dict[str, Any], qty: float, entry_price: float) -> float | None:
    """Quote value of a position. ``currentQty`` counts contracts, not coins."""
    mark_value = row.get("markValue")
    if mark_value not in (None, ""):
        return abs(float(mark_value))
    multiplier = row.get("multiplier")
    if multiplier not in (None, ""):
        return abs(qty * float(multiplier) * entry_price)
    return None
