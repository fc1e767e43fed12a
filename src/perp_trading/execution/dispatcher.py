"""Applies action descriptors to an exchange adapter."""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, assert_never

from perp_trading.errors import ExternalCallFailure, PolicyRejection
from perp_trading.exchange.base import ExchangeAdapter
from perp_trading.execution.actions import (
    ActionDescriptor,
    ClosePositionAction,
    EmergencyCloseAllAction,
    HoldAction,
    OpenPositionAction,
    PartialTakeProfitAction,
    ReversePositionAction,
    SetBreakEvenAction,
    TrailTakeProfitAction,
    WaitAction,
    action_payload,
)
from perp_trading.execution.idempotency import manual_order_key
from perp_trading.execution.machine import ExecutionStateMachine
from perp_trading.execution.policy import canonicalize_symbol
from perp_trading.journal.store import AuditJournal, Severity
from perp_trading.types import OrderIntent, OrderResult, OrderSide, Side
from perp_trading.utils.logging import get_logger, log_order_execution


@dataclass(slots=True)
class DispatchResult:
    kind: str
    symbol: str | None
    success: bool
    code: str | None = None
    error: str | None = None
    orders: list[dict[str, Any]] = field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "symbol": self.symbol,
            "success": self.success,
            "code": self.code,
            "error": self.error,
            "orders": list(self.orders),
        }


def _entry_side(side: Side) -> OrderSide:
    return "buy" if side == "long" else "sell"


def _exit_side(side: Side) -> OrderSide:
    return "sell" if side == "long" else "buy"


def _client_oid() -> str:
    return uuid.uuid4().hex


class OrderDispatcher:
    """Serializes side effects per symbol.

    The idempotency key of an entry is recorded only after the exchange
    confirms it. Companion stop/target orders are best-effort and never roll
    back a live entry.
    """

    def __init__(
        self,
        exchange: ExchangeAdapter,
        machine: ExecutionStateMachine,
        journal: AuditJournal | None = None,
    ) -> None:
        self._exchange = exchange
        self._machine = machine
        self._journal = journal
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._emergency_lock = threading.Lock()
        self._logger = get_logger("perp_trading.execution.dispatcher")

    def _lock_for(self, symbol: str) -> threading.Lock:
        key = canonicalize_symbol(symbol)
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def dispatch(
        self,
        action: ActionDescriptor,
        *,
        correlation_id: str | None = None,
        now: datetime | None = None,
    ) -> DispatchResult:
        now = now or datetime.now(timezone.utc)
        if isinstance(action, (WaitAction, HoldAction)):
            return DispatchResult(
                kind=action.kind,
                symbol=action.symbol,
                success=True,
                code=action.code if isinstance(action, WaitAction) else None,
            )
        if isinstance(action, EmergencyCloseAllAction):
            result = self._emergency_close_all(action, now)
        else:
            with self._lock_for(action.symbol):
                result = self._dispatch_locked(action, now)
        self._audit(
            "order" if result.success else "order_failed",
            {"action": action_payload(action), "result": result.to_payload()},
            severity="info" if result.success else "warning",
            correlation_id=correlation_id,
        )
        return result

    def _dispatch_locked(self, action: ActionDescriptor, now: datetime) -> DispatchResult:
        if isinstance(action, OpenPositionAction):
            return self._open(action, now)
        elif isinstance(action, ClosePositionAction):
            return self._close(action, now)
        elif isinstance(action, PartialTakeProfitAction):
            return self._partial(action)
        elif isinstance(action, SetBreakEvenAction):
            return self._replace_protective(
                action.kind, action.symbol, action.side, "stop", action.new_stop_loss
            )
        elif isinstance(action, TrailTakeProfitAction):
            return self._replace_protective(
                action.kind, action.symbol, action.side, "limit", action.new_take_profit
            )
        elif isinstance(action, ReversePositionAction):
            closed = self._close(action.close, now)
            if not closed.success:
                return DispatchResult(
                    kind=action.kind,
                    symbol=action.symbol,
                    success=False,
                    error=closed.error,
                    orders=closed.orders,
                )
            opened = self._open(action.open, now)
            return DispatchResult(
                kind=action.kind,
                symbol=action.symbol,
                success=opened.success,
                code=opened.code,
                error=opened.error,
                orders=[*closed.orders, *opened.orders],
            )
        elif isinstance(action, (WaitAction, HoldAction, EmergencyCloseAllAction)):
            return DispatchResult(kind=action.kind, symbol=getattr(action, "symbol", None), success=True)
        else:
            assert_never(action)

    def _place(self, intent: OrderIntent, purpose: str) -> tuple[OrderResult, dict[str, Any]]:
        """Send one order and return the exchange result with its journal record."""
        result = self._exchange.place_order(intent)
        record = {
            "purpose": purpose,
            "client_oid": intent.client_oid,
            "side": intent.side,
            "type": intent.order_type,
            "size": intent.size,
            "price": result.price if result.price is not None else intent.price,
            "order_id": result.order_id,
            "success": result.success,
            "error": result.error,
        }
        log_order_execution(
            self._logger,
            symbol=intent.symbol,
            side=intent.side,
            quantity=intent.size,
            price=record["price"],
            order_id=result.order_id,
            status="filled" if result.success else "rejected",
            purpose=purpose,
        )
        return result, record

    def _open(self, action: OpenPositionAction, now: datetime) -> DispatchResult:
        guard = self._machine.idempotency
        if guard.seen(action.idempotency_key):
            return DispatchResult(
                kind=action.kind,
                symbol=action.symbol,
                success=False,
                code="E_DUPLICATE_ORDER",
                error="duplicate order within idempotency window",
            )
        entry, record = self._place(
            OrderIntent(
                client_oid=_client_oid(),
                symbol=action.symbol,
                side=_entry_side(action.side),
                order_type="market",
                size=action.size,
                leverage=action.leverage,
            ),
            "entry",
        )
        orders = [record]
        if not entry.success:
            return DispatchResult(
                kind=action.kind,
                symbol=action.symbol,
                success=False,
                code="E_EXTERNAL_CALL",
                error=entry.error,
                orders=orders,
            )
        guard.record(action.idempotency_key)

        stop_id: str | None = None
        target_id: str | None = None
        stop_price: float | None = None
        target_price: float | None = None
        fill_price, qty = entry.price, entry.filled_size
        if fill_price is None:
            fill_price, qty = self._fill_from_position(action.symbol)
        if fill_price is not None and fill_price > 0:
            risk = self._machine.risk
            qty = qty or action.size
            for order_type, price, purpose in (
                ("stop", risk.stop_loss_for(fill_price, action.side, action.leverage), "stop_loss"),
                ("limit", risk.take_profit_for(fill_price, action.side, action.leverage), "take_profit"),
            ):
                companion, companion_record = self._place_companion(
                    action.symbol, action.side, order_type, price, qty, action.leverage, purpose
                )
                orders.append(companion_record)
                if companion is not None and companion.success:
                    if purpose == "stop_loss":
                        stop_id, stop_price = companion.order_id, price
                    else:
                        target_id, target_price = companion.order_id, price
        else:
            self._logger.warning("companion_orders_skipped", symbol=action.symbol, reason="no_fill_price")

        self._machine.on_position_opened(
            action,
            now=now,
            stop_order_id=stop_id,
            take_profit_order_id=target_id,
            stop_price=stop_price,
            take_profit_price=target_price,
        )
        return DispatchResult(kind=action.kind, symbol=action.symbol, success=True, orders=orders)

    def _fill_from_position(self, symbol: str) -> tuple[float | None, float | None]:
        """Entry price and size as reported by the exchange when the order ack has none."""
        try:
            position = self._exchange.get_position(symbol)
        except ExternalCallFailure as exc:
            self._logger.warning("fill_lookup_failed", symbol=symbol, error=str(exc))
            return None, None
        if position is None:
            return None, None
        return position.entry_price, position.size

    def _place_companion(
        self,
        symbol: str,
        side: Side,
        order_type: str,
        price: float,
        qty: float,
        leverage: float,
        purpose: str,
    ) -> tuple[OrderResult | None, dict[str, Any]]:
        intent = OrderIntent(
            client_oid=_client_oid(),
            symbol=symbol,
            side=_exit_side(side),
            order_type="stop" if order_type == "stop" else "limit",
            size=qty,
            leverage=leverage,
            price=price,
            reduce_only=True,
        )
        try:
            return self._place(intent, purpose)
        except Exception as exc:  # noqa: BLE001 - companion orders never roll back an entry.
            self._logger.warning("companion_order_failed", symbol=symbol, purpose=purpose, error=str(exc))
            return None, {"purpose": purpose, "success": False, "error": str(exc)}

    def _close(self, action: ClosePositionAction, now: datetime) -> DispatchResult:
        """Reduce-only market close; on success the outcome feeds risk and feature stats."""
        result, record = self._place(
            OrderIntent(
                client_oid=_client_oid(),
                symbol=action.symbol,
                side=_exit_side(action.side),
                order_type="market",
                size=action.size,
                leverage=1,
                reduce_only=True,
            ),
            "close",
        )
        if not result.success:
            return DispatchResult(
                kind=action.kind,
                symbol=action.symbol,
                success=False,
                code="E_EXTERNAL_CALL",
                error=result.error,
                orders=[record],
            )
        self._cancel_protective(action.symbol)
        stats = self._machine.on_position_closed(action.symbol, action.current_pnl, now=now)
        if stats is not None:
            self._audit(
                "feature_outcome",
                {"symbol": action.symbol, "pnl_percent": action.current_pnl, **stats.snapshot()},
            )
        return DispatchResult(kind=action.kind, symbol=action.symbol, success=True, orders=[record])

    def _partial(self, action: PartialTakeProfitAction) -> DispatchResult:
        """Reduce-only market order for part of the position. Marks the lifecycle once filled."""
        result, record = self._place(
            OrderIntent(
                client_oid=_client_oid(),
                symbol=action.symbol,
                side=_exit_side(action.side),
                order_type="market",
                size=action.size,
                leverage=1,
                reduce_only=True,
            ),
            "partial_take_profit",
        )
        if result.success:
            self._machine.on_partial_taken(action.symbol)
        return DispatchResult(
            kind=action.kind,
            symbol=action.symbol,
            success=result.success,
            code=None if result.success else "E_EXTERNAL_CALL",
            error=result.error,
            orders=[record],
        )

    def _replace_protective(
        self, kind: str, symbol: str, side: Side, order_type: str, price: float
    ) -> DispatchResult:
        """Place a new stop or target, then cancel the order it supersedes."""
        position = self._exchange.get_position(symbol)
        if position is None:
            return DispatchResult(kind=kind, symbol=symbol, success=False, error="no_open_position")
        result, record = self._place(
            OrderIntent(
                client_oid=_client_oid(),
                symbol=symbol,
                side=_exit_side(side),
                order_type="stop" if order_type == "stop" else "limit",
                size=position.size,
                leverage=position.leverage,
                price=price,
                reduce_only=True,
            ),
            kind,
        )
        if not result.success:
            return DispatchResult(
                kind=kind, symbol=symbol, success=False, code="E_EXTERNAL_CALL", error=result.error, orders=[record]
            )
        previous = self._machine.on_protective_replaced(symbol, order_type, result.order_id, price)
        if previous and previous != result.order_id:
            self._exchange.cancel_order(previous)
        return DispatchResult(kind=kind, symbol=symbol, success=True, orders=[record])

    def _cancel_protective(self, symbol: str) -> None:
        """Cancel resting companion orders of a closed position."""
        state = self._machine.lifecycle(symbol)
        if state is None:
            return
        for order_id in (state.stop_order_id, state.take_profit_order_id):
            if order_id:
                self._exchange.cancel_order(order_id)

    def _emergency_close_all(self, action: EmergencyCloseAllAction, now: datetime) -> DispatchResult:
        """Flatten every targeted position.

        Sweeps are serialized, and each position is re-read under its symbol
        lock so a position already closed by an earlier sweep is skipped.
        """
        targets = {canonicalize_symbol(s) for s in action.symbols}
        orders: list[dict[str, Any]] = []
        failures: list[str] = []
        closed = 0
        with self._emergency_lock:
            for listed in self._exchange.list_positions():
                if targets and canonicalize_symbol(listed.symbol) not in targets:
                    continue
                with self._lock_for(listed.symbol):
                    position = self._exchange.get_position(listed.symbol)
                    if position is None or position.size <= 0:
                        continue
                    result = self._close(
                        ClosePositionAction(
                            symbol=position.symbol,
                            side=position.side,
                            size=position.size,
                            reason=action.reason,
                            current_pnl=position.pnl_percent,
                        ),
                        now,
                    )
                orders.extend(result.orders)
                if result.success:
                    closed += 1
                else:
                    failures.append(f"{position.symbol}: {result.error}")
        self._audit(
            "circuit_breaker",
            {"reason": action.reason, "closed": closed, "failures": failures},
            severity="critical",
        )
        return DispatchResult(
            kind=action.kind,
            symbol=None,
            success=not failures,
            code="E_EXTERNAL_CALL" if failures else None,
            error="; ".join(failures) or None,
            orders=orders,
        )

    def execute_manual_order(
        self,
        symbol: str,
        side: OrderSide,
        size: float,
        *,
        leverage: int = 1,
        now: datetime | None = None,
    ) -> DispatchResult:
        """Operator order, deduplicated on symbol + action + size + time bucket."""
        now = now or datetime.now(timezone.utc)
        try:
            self._machine.policy.validate(symbol)
        except PolicyRejection as exc:
            return DispatchResult(kind="manual", symbol=symbol, success=False, code=exc.code, error=str(exc))
        guard = self._machine.idempotency
        key = manual_order_key(symbol, side, size, now, guard.window_seconds)
        with self._lock_for(symbol):
            if guard.seen(key):
                return DispatchResult(
                    kind="manual",
                    symbol=symbol,
                    success=False,
                    code="E_DUPLICATE_ORDER",
                    error="duplicate manual order within idempotency window",
                )
            result, record = self._place(
                OrderIntent(
                    client_oid=_client_oid(),
                    symbol=symbol,
                    side=side,
                    order_type="market",
                    size=size,
                    leverage=leverage,
                ),
                "manual",
            )
            if result.success:
                guard.record(key)
        dispatch = DispatchResult(
            kind="manual",
            symbol=symbol,
            success=result.success,
            code=None if result.success else "E_EXTERNAL_CALL",
            error=result.error,
            orders=[record],
        )
        self._audit("order" if result.success else "order_failed", dispatch.to_payload())
        return dispatch

    def _audit(
        self,
        event_type: str,
        payload: dict[str, Any],
        *,
        severity: Severity = "info",
        correlation_id: str | None = None,
    ) -> None:
        if self._journal is None:
            return
        self._journal.append(
            event_type,
            payload,
            component="dispatcher",
            severity=severity,
            correlation_id=correlation_id,
        )
