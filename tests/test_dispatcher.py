from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from perp_trading.errors import ExternalCallFailure
from perp_trading.execution import (
    ClosePositionAction,
    DecisionContext,
    EmergencyCloseAllAction,
    ExecutionStateMachine,
    FeaturePerformanceTracker,
    HoldAction,
    IdempotencyGuard,
    OpenPositionAction,
    OrderDispatcher,
    SetBreakEvenAction,
    SymbolPolicy,
    WaitAction,
)
from perp_trading.journal.store import AuditJournal
from perp_trading.risk.controller import RiskController
from perp_trading.types import CompositeSignal, OrderIntent, OrderResult, Position

_NOW = datetime(2026, 1, 5, 12, 1, tzinfo=UTC)


class FakeExchange:
    """Records every intent; fills market orders at ``fill_price``."""

    def __init__(
        self,
        *,
        fill_price: float | None = 100.0,
        reject_entries: bool = False,
        fail_order_types: frozenset[str] = frozenset(),
        positions: list[Position] | None = None,
        listed: list[Position] | None = None,
        flatten_on_close: bool = False,
    ) -> None:
        self.fill_price = fill_price
        self.reject_entries = reject_entries
        self.fail_order_types = fail_order_types
        self.positions = positions or []
        self.listed = listed
        self.flatten_on_close = flatten_on_close
        self.intents: list[OrderIntent] = []
        self.cancelled: list[str] = []

    def place_order(self, intent: OrderIntent) -> OrderResult:
        self.intents.append(intent)
        if intent.order_type in self.fail_order_types:
            raise ExternalCallFailure(f"{intent.order_type} endpoint down")
        if self.reject_entries and not intent.reduce_only:
            return OrderResult(success=False, error="insufficient margin")
        order_id = f"o{len(self.intents)}"
        if intent.order_type != "market":
            return OrderResult(success=True, order_id=order_id, price=intent.price)
        if intent.reduce_only and self.flatten_on_close:
            self.positions = [p for p in self.positions if p.symbol != intent.symbol]
        filled = intent.size if intent.reduce_only else 2.5
        price = self.fill_price if not intent.reduce_only else 100.0
        return OrderResult(success=True, order_id=order_id, price=price, filled_size=filled)

    def get_position(self, symbol: str) -> Position | None:
        for position in self.positions:
            if position.symbol == symbol:
                return position
        return None

    def cancel_order(self, order_id: str) -> bool:
        self.cancelled.append(order_id)
        return True

    def list_positions(self) -> list[Position]:
        return list(self.positions if self.listed is None else self.listed)

    def get_balance(self) -> float:
        return 10_000.0

    def entries(self) -> list[OrderIntent]:
        return [i for i in self.intents if not i.reduce_only]


def _signal() -> CompositeSignal:
    return CompositeSignal(
        composite_score=110.0,
        authorized=True,
        side="long",
        confidence=80.0,
        trigger_candle=199,
        window_expires=_NOW + timedelta(hours=1),
        indicator_scores={"ema": 25.0},
        microstructure_score=0.0,
        block_reasons=frozenset(),
        confirmations=4,
        signal_strength="strong",
        signal_type="trend",
        signal_source="ema",
        timestamp=_NOW,
    )


def _position(symbol: str = "BTCUSDT", **overrides: object) -> Position:
    values: dict[str, object] = {
        "symbol": symbol,
        "side": "long",
        "size": 2.5,
        "leverage": 24.0,
        "entry_price": 100.0,
        "timestamp": _NOW,
        "pnl_percent": 4.0,
    }
    values.update(overrides)
    return Position(**values)  # type: ignore[arg-type]


def _build(
    exchange: FakeExchange, journal: AuditJournal | None = None, policy: SymbolPolicy | None = None
) -> tuple[ExecutionStateMachine, OrderDispatcher]:
    machine = ExecutionStateMachine(
        risk=RiskController(),
        features=FeaturePerformanceTracker(),
        idempotency=IdempotencyGuard(300, clock=lambda: _NOW.timestamp()),
        policy=policy,
    )
    return machine, OrderDispatcher(exchange, machine, journal)


def _open(machine: ExecutionStateMachine, symbol: str = "BTC-USDT") -> OpenPositionAction:
    action = machine.decide(
        DecisionContext(symbol=symbol, signal=_signal(), balance=10_000.0, now=_NOW)
    )
    assert isinstance(action, OpenPositionAction)
    return action


def test_same_bucket_signal_places_one_order() -> None:
    exchange = FakeExchange()
    machine, dispatcher = _build(exchange)

    first = dispatcher.dispatch(_open(machine, "BTC-USDT"), now=_NOW)
    assert first.success

    second = machine.decide(
        DecisionContext(symbol="BTCUSDT", signal=_signal(), balance=10_000.0, now=_NOW)
    )
    assert isinstance(second, WaitAction)
    assert second.code == "E_DUPLICATE_ORDER"
    assert dispatcher.dispatch(second, now=_NOW).kind == "wait"
    assert len(exchange.entries()) == 1


def test_dispatcher_rechecks_idempotency_key() -> None:
    exchange = FakeExchange()
    machine, dispatcher = _build(exchange)
    action = _open(machine)

    assert dispatcher.dispatch(action, now=_NOW).success
    replay = dispatcher.dispatch(action, now=_NOW)
    assert not replay.success
    assert replay.code == "E_DUPLICATE_ORDER"
    assert len(exchange.entries()) == 1


def test_entry_places_protective_companions() -> None:
    exchange = FakeExchange()
    machine, dispatcher = _build(exchange)
    action = _open(machine)

    result = dispatcher.dispatch(action, now=_NOW)

    assert [order["purpose"] for order in result.orders] == ["entry", "stop_loss", "take_profit"]
    entry, stop, target = exchange.intents
    assert entry.side == "buy" and entry.size == action.size and entry.leverage == action.leverage
    assert stop.reduce_only and stop.side == "sell" and stop.size == 2.5
    assert stop.price == pytest.approx(machine.risk.stop_loss_for(100.0, "long", action.leverage))
    assert target.price == pytest.approx(machine.risk.take_profit_for(100.0, "long", action.leverage))

    state = machine.lifecycle("BTCUSDT")
    assert state is not None
    assert state.stop_order_id == "o2"
    assert state.take_profit_order_id == "o3"
    assert state.stop_price == stop.price
    assert state.take_profit_price == target.price


def test_companion_failure_keeps_entry() -> None:
    exchange = FakeExchange(fail_order_types=frozenset({"stop"}))
    machine, dispatcher = _build(exchange)

    result = dispatcher.dispatch(_open(machine), now=_NOW)

    assert result.success
    assert result.orders[1] == {"purpose": "stop_loss", "success": False, "error": "stop endpoint down"}
    state = machine.lifecycle("BTCUSDT")
    assert state is not None
    assert state.stop_order_id is None
    assert state.take_profit_order_id == "o3"
    assert state.stop_price is None
    assert state.take_profit_price is not None


def test_rejected_entry_records_nothing() -> None:
    exchange = FakeExchange(reject_entries=True)
    machine, dispatcher = _build(exchange)
    action = _open(machine)

    result = dispatcher.dispatch(action, now=_NOW)

    assert not result.success
    assert result.code == "E_EXTERNAL_CALL"
    assert result.error == "insufficient margin"
    assert not machine.idempotency.seen(action.idempotency_key)
    assert machine.lifecycle("BTCUSDT") is None
    assert len(exchange.intents) == 1


def test_missing_fill_price_reads_position() -> None:
    exchange = FakeExchange(fill_price=None, positions=[_position("BTC-USDT", entry_price=101.0, size=3.0)])
    machine, dispatcher = _build(exchange)
    action = _open(machine)

    dispatcher.dispatch(action, now=_NOW)

    stop = exchange.intents[1]
    assert stop.size == 3.0
    assert stop.price == pytest.approx(machine.risk.stop_loss_for(101.0, "long", action.leverage))


def test_close_cancels_protection_and_records_outcome(tmp_path: Path) -> None:
    journal = AuditJournal(tmp_path)
    exchange = FakeExchange()
    machine, dispatcher = _build(exchange, journal)
    dispatcher.dispatch(_open(machine), now=_NOW)

    close = ClosePositionAction(symbol="BTCUSDT", side="long", size=2.5, reason="manual", current_pnl=-3.0)
    result = dispatcher.dispatch(close, now=_NOW, correlation_id="c1")

    assert result.success
    assert exchange.intents[-1].reduce_only and exchange.intents[-1].side == "sell"
    assert exchange.cancelled == ["o2", "o3"]
    assert machine.lifecycle("BTCUSDT") is None
    assert machine.features.get("trend:strong:trending") is not None

    events = journal.load_recent(10)
    types = [event["event_type"] for event in events]
    assert types == ["order", "feature_outcome", "order"]
    assert events[-1]["correlation_id"] == "c1"
    assert events[1]["payload"]["pnl_percent"] == -3.0


def test_break_even_replaces_previous_stop() -> None:
    exchange = FakeExchange(positions=[_position()])
    machine, dispatcher = _build(exchange)
    dispatcher.dispatch(_open(machine), now=_NOW)

    move = SetBreakEvenAction(symbol="BTCUSDT", side="long", new_stop_loss=100.04, current_pnl=9.0)
    result = dispatcher.dispatch(move, now=_NOW)

    assert result.success
    assert exchange.intents[-1].order_type == "stop"
    assert exchange.intents[-1].price == 100.04
    assert exchange.cancelled == ["o2"]
    state = machine.lifecycle("BTCUSDT")
    assert state is not None
    assert state.stop_order_id == "o4"
    assert state.stop_price == 100.04


def test_protective_update_without_position_fails() -> None:
    machine, dispatcher = _build(FakeExchange())
    move = SetBreakEvenAction(symbol="BTCUSDT", side="long", new_stop_loss=100.04, current_pnl=9.0)
    result = dispatcher.dispatch(move, now=_NOW)
    assert not result.success
    assert result.error == "no_open_position"


def test_emergency_close_all(tmp_path: Path) -> None:
    journal = AuditJournal(tmp_path)
    exchange = FakeExchange(positions=[_position(), _position("ETHUSDT", side="short")])
    _, dispatcher = _build(exchange, journal)

    result = dispatcher.dispatch(EmergencyCloseAllAction(reason="drawdown limit"), now=_NOW)

    assert result.success
    assert [(i.symbol, i.side) for i in exchange.intents] == [("BTCUSDT", "sell"), ("ETHUSDT", "buy")]
    breaker = [e for e in journal.load_recent(10) if e["event_type"] == "circuit_breaker"]
    assert breaker[0]["payload"]["closed"] == 2
    assert breaker[0]["severity"] == "critical"


def test_emergency_close_respects_symbol_filter() -> None:
    exchange = FakeExchange(positions=[_position(), _position("ETHUSDT")])
    _, dispatcher = _build(exchange)
    dispatcher.dispatch(EmergencyCloseAllAction(reason="x", symbols=("XBTUSDTM",)), now=_NOW)
    assert [i.symbol for i in exchange.intents] == ["BTCUSDT"]


def test_wait_and_hold_touch_nothing() -> None:
    exchange = FakeExchange()
    _, dispatcher = _build(exchange)
    wait = dispatcher.dispatch(WaitAction(symbol="BTCUSDT", reason="r", code="E_X"))
    hold = dispatcher.dispatch(HoldAction(symbol="BTCUSDT"))
    assert wait.success and wait.code == "E_X"
    assert hold.success and hold.kind == "hold"
    assert exchange.intents == []


def test_manual_orders_are_deduplicated() -> None:
    exchange = FakeExchange()
    _, dispatcher = _build(exchange)

    first = dispatcher.execute_manual_order("ETH-USDT", "buy", 25.0, leverage=5, now=_NOW)
    second = dispatcher.execute_manual_order("ETHUSDT", "buy", 25.0, leverage=5, now=_NOW)
    other_size = dispatcher.execute_manual_order("ETHUSDT", "buy", 30.0, leverage=5, now=_NOW)

    assert first.success
    assert second.code == "E_DUPLICATE_ORDER"
    assert other_size.success
    assert len(exchange.intents) == 2


def test_manual_order_respects_policy() -> None:
    exchange = FakeExchange()
    _, dispatcher = _build(exchange, policy=SymbolPolicy(denylist=("ETHUSDT",)))
    result = dispatcher.execute_manual_order("eth/usdt", "sell", 10.0, now=_NOW)
    assert result.code == "E_SYMBOL_DENIED"
    assert exchange.intents == []


def test_emergency_close_skips_positions_already_flat(tmp_path: Path) -> None:
    journal = AuditJournal(tmp_path)
    book = [_position(), _position("ETHUSDT", side="short")]
    # The venue keeps listing both positions after they are closed.
    exchange = FakeExchange(positions=list(book), listed=list(book), flatten_on_close=True)
    _, dispatcher = _build(exchange, journal)
    action = EmergencyCloseAllAction(reason="drawdown limit", symbols=("BTCUSDT", "ETHUSDT"))

    first = dispatcher.dispatch(action, now=_NOW)
    second = dispatcher.dispatch(action, now=_NOW)

    assert first.success and second.success
    assert [(i.symbol, i.side) for i in exchange.intents] == [("BTCUSDT", "sell"), ("ETHUSDT", "buy")]
    assert second.orders == []
    breaker = [e["payload"]["closed"] for e in journal.load_recent(10) if e["event_type"] == "circuit_breaker"]
    assert breaker == [2, 0]


def test_emergency_close_uses_fresh_size() -> None:
    exchange = FakeExchange(positions=[_position(size=1.0)], listed=[_position(size=2.5)])
    _, dispatcher = _build(exchange)
    dispatcher.dispatch(EmergencyCloseAllAction(reason="x"), now=_NOW)
    assert [i.size for i in exchange.intents] == [1.0]
