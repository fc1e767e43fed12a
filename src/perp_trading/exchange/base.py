"""Exchange adapter contract used by the order dispatcher and pipeline."""

from __future__ import annotations

from typing import Protocol

from perp_trading.types import OrderIntent, OrderResult, Position


class ExchangeAdapter(Protocol):
    """``OrderIntent.size`` is quote margin for entries and base quantity when ``reduce_only``."""

    def place_order(self, intent: OrderIntent) -> OrderResult: ...

    def get_position(self, symbol: str) -> Position | None: ...

    def cancel_order(self, order_id: str) -> bool: ...

    def list_positions(self) -> list[Position]: ...

    def get_balance(self) -> float: ...
