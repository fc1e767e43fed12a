"""Paper exchange with persistent local state."""

from __future__ import annotations

import json
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from perp_trading.execution.policy import canonicalize_symbol
from perp_trading.types import OrderIntent, OrderResult, Position, Side
from perp_trading.utils.logging import get_logger


@dataclass(slots=True)
class _PaperPosition:
    symbol: str
    side: Side
    qty: float
    leverage: float
    entry_price: float
    margin: float
    opened_at: str
    mark_price: float
    stop_loss: float | None = None
    take_profit: float | None = None

    def pnl(self, price: float) -> float:
        direction = 1.0 if self.side == "long" else -1.0
        return (price - self.entry_price) * self.qty * direction

    def to_position(self) -> Position:
        pnl = self.pnl(self.mark_price)
        return Position(
            symbol=self.symbol,
            side=self.side,
            size=self.qty,
            leverage=self.leverage,
            entry_price=self.entry_price,
            timestamp=datetime.fromisoformat(self.opened_at),
            pnl_percent=pnl / self.margin * 100 if self.margin > 0 else 0.0,
            pnl=pnl,
            stop_loss=self.stop_loss,
            take_profit=self.take_profit,
        )


@dataclass(slots=True)
class _RestingOrder:
    order_id: str
    symbol: str
    kind: str
    price: float
    qty: float


@dataclass(slots=True)
class _PaperState:
    balance: float
    initial_balance: float
    positions: dict[str, _PaperPosition] = field(default_factory=dict)
    resting: dict[str, _RestingOrder] = field(default_factory=dict)
    realized: list[dict[str, Any]] = field(default_factory=list)


class PaperExchange:
    """Simulated perpetual-futures exchange.

    Entries fill at the last mark with slippage. Stop and limit reduce-only
    orders rest until :meth:`mark_to_market` crosses them. State survives
    restarts through a JSON file in the journal directory.
    """

    def __init__(
        self,
        journal_dir: Path,
        *,
        slippage_bps: float = 2.0,
        initial_balance: float = 10_000.0,
    ) -> None:
        self._slippage_bps = slippage_bps
        self._state_file = journal_dir / "paper_state.json"
        self._lock = threading.RLock()
        self._logger = get_logger("perp_trading.exchange.paper")
        self._marks: dict[str, float] = {}
        self._state = self._load_state(initial_balance)

    # -- ExchangeAdapter ------------------------------------------------------

    def get_balance(self) -> float:
        """Wallet balance: free cash plus margin locked in open positions."""
        with self._lock:
            return self._state.balance + sum(p.margin for p in self._state.positions.values())

    def get_position(self, symbol: str) -> Position | None:
        with self._lock:
            paper = self._state.positions.get(canonicalize_symbol(symbol))
            return paper.to_position() if paper else None

    def list_positions(self) -> list[Position]:
        with self._lock:
            return [p.to_position() for p in self._state.positions.values()]

    def cancel_order(self, order_id: str) -> bool:
        with self._lock:
            order = self._state.resting.pop(order_id, None)
            if order is None:
                return False
            self._detach(order)
            self._persist()
            return True

    def place_order(self, intent: OrderIntent) -> OrderResult:
        if intent.size <= 0:
            return OrderResult(success=False, error="size_must_be_positive")
        key = canonicalize_symbol(intent.symbol)
        with self._lock:
            if intent.order_type in ("stop", "limit") and intent.reduce_only:
                return self._rest(key, intent)
            mark = self._marks.get(key)
            if mark is None and intent.price is not None:
                mark = intent.price
            if mark is None:
                return OrderResult(success=False, error=f"no_mark_price: {intent.symbol}")
            if intent.reduce_only:
                return self._reduce(key, intent.size, mark, reason="order")
            return self._open(key, intent, mark)

    # -- market simulation ----------------------------------------------------

    def mark_to_market(self, symbol: str, price: float) -> list[dict[str, Any]]:
        """Update the mark and fill any resting stop/target it crosses."""
        key = canonicalize_symbol(symbol)
        fills: list[dict[str, Any]] = []
        with self._lock:
            self._marks[key] = price
            paper = self._state.positions.get(key)
            if paper is None:
                return fills
            paper.mark_price = price
            for order in list(self._state.resting.values()):
                if order.symbol != key or key not in self._state.positions:
                    continue
                if self._triggered(paper, order, price):
                    self._state.resting.pop(order.order_id, None)
                    result = self._reduce(key, order.qty, order.price, reason=order.kind)
                    fills.append({"order_id": order.order_id, "kind": order.kind, "success": result.success})
            self._persist()
        return fills

    def realized_trades(self) -> list[dict[str, Any]]:
        with self._lock:
            return list(self._state.realized)

    def equity(self) -> float:
        with self._lock:
            unrealized = sum(p.pnl(p.mark_price) for p in self._state.positions.values())
            return self.get_balance() + unrealized

    # -- internals -------------------------------------------------------------

    def _open(self, key: str, intent: OrderIntent, mark: float) -> OrderResult:
        side: Side = "long" if intent.side == "buy" else "short"
        existing = self._state.positions.get(key)
        if existing is not None and existing.side != side:
            return OrderResult(success=False, error="opposite_position_open")
        if intent.size > self._state.balance:
            return OrderResult(success=False, error="insufficient_balance")
        slip = self._slippage_bps / 10_000.0
        fill_price = mark * (1.0 + slip) if side == "long" else mark * (1.0 - slip)
        qty = intent.size * intent.leverage / fill_price
        if existing is None:
            self._state.positions[key] = _PaperPosition(
                symbol=key,
                side=side,
                qty=qty,
                leverage=intent.leverage,
                entry_price=fill_price,
                margin=intent.size,
                opened_at=datetime.now(timezone.utc).isoformat(),
                mark_price=mark,
            )
        else:
            total_qty = existing.qty + qty
            existing.entry_price = (existing.entry_price * existing.qty + fill_price * qty) / total_qty
            existing.qty = total_qty
            existing.margin += intent.size
        self._state.balance -= intent.size
        self._persist()
        return OrderResult(
            success=True,
            order_id=f"paper-{uuid.uuid4().hex[:12]}",
            price=fill_price,
            filled_size=qty,
        )

    def _reduce(self, key: str, qty: float, price: float, *, reason: str) -> OrderResult:
        paper = self._state.positions.get(key)
        if paper is None:
            return OrderResult(success=False, error="no_open_position")
        slip = self._slippage_bps / 10_000.0
        fill_price = price * (1.0 - slip) if paper.side == "long" else price * (1.0 + slip)
        qty = min(qty, paper.qty)
        fraction = qty / paper.qty
        released_margin = paper.margin * fraction
        pnl = (fill_price - paper.entry_price) * qty * (1.0 if paper.side == "long" else -1.0)
        self._state.balance += released_margin + pnl
        paper.qty -= qty
        paper.margin -= released_margin
        self._state.realized.append(
            {
                "symbol": key,
                "side": paper.side,
                "qty": qty,
                "price": fill_price,
                "pnl": pnl,
                "pnl_percent": pnl / released_margin * 100 if released_margin > 0 else 0.0,
                "reason": reason,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        )
        if paper.qty <= 1e-12:
            del self._state.positions[key]
            for order_id in [o.order_id for o in self._state.resting.values() if o.symbol == key]:
                del self._state.resting[order_id]
        self._persist()
        return OrderResult(
            success=True,
            order_id=f"paper-{uuid.uuid4().hex[:12]}",
            price=fill_price,
            filled_size=qty,
        )

    def _rest(self, key: str, intent: OrderIntent) -> OrderResult:
        paper = self._state.positions.get(key)
        if paper is None:
            return OrderResult(success=False, error="no_open_position")
        if intent.price is None:
            return OrderResult(success=False, error="price_required")
        kind = "stop" if intent.order_type == "stop" else "take_profit"
        # One resting order per kind per symbol; a new one replaces the old.
        for order in [o for o in self._state.resting.values() if o.symbol == key and o.kind == kind]:
            del self._state.resting[order.order_id]
        order = _RestingOrder(
            order_id=f"paper-{kind}-{uuid.uuid4().hex[:12]}",
            symbol=key,
            kind=kind,
            price=intent.price,
            qty=min(intent.size, paper.qty),
        )
        self._state.resting[order.order_id] = order
        if kind == "stop":
            paper.stop_loss = intent.price
        else:
            paper.take_profit = intent.price
        self._persist()
        return OrderResult(success=True, order_id=order.order_id, price=intent.price)

    def _detach(self, order: _RestingOrder) -> None:
        paper = self._state.positions.get(order.symbol)
        if paper is None:
            return
        if order.kind == "stop":
            paper.stop_loss = None
        else:
            paper.take_profit = None

    @staticmethod
    def _triggered(paper: _PaperPosition, order: _RestingOrder, price: float) -> bool:
        if paper.side == "long":
            return price <= order.price if order.kind == "stop" else price >= order.price
        return price >= order.price if order.kind == "stop" else price <= order.price

    def _load_state(self, initial_balance: float) -> _PaperState:
        if not self._state_file.exists():
            return _PaperState(balance=initial_balance, initial_balance=initial_balance)

        try:
            raw = json.loads(self._state_file.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            self._logger.warning("paper_state_unreadable", path=str(self._state_file), error=str(exc))
            return _PaperState(balance=initial_balance, initial_balance=initial_balance)
        positions = {
            key: _PaperPosition(**payload) for key, payload in (raw.get("positions") or {}).items()
        }
        resting = {
            key: _RestingOrder(**payload) for key, payload in (raw.get("resting") or {}).items()
        }
        for paper in positions.values():
            self._marks.setdefault(paper.symbol, paper.mark_price)
        return _PaperState(
            balance=float(raw.get("balance", initial_balance)),
            initial_balance=float(raw.get("initial_balance", initial_balance)),
            positions=positions,
            resting=resting,
            realized=list(raw.get("realized") or []),
        )

    def _persist(self) -> None:
        payload: dict[str, Any] = {
            "balance": self._state.balance,
            "initial_balance": self._state.initial_balance,
            "positions": {key: asdict(p) for key, p in self._state.positions.items()},
            "resting": {key: asdict(o) for key, o in self._state.resting.items()},
            "realized": self._state.realized[-500:],
        }
        try:
            self._state_file.parent.mkdir(parents=True, exist_ok=True)
            serialized = json.dumps(payload, ensure_ascii=True, indent=2)
            self._state_file.write_text(serialized, encoding="utf-8")
        except OSError as exc:
            self._logger.warning("paper_state_write_failed", path=str(self._state_file), error=str(exc))
