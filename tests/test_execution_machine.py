from __future__ import annotations

from datetime import UTC, datetime, timedelta

import httpx
import pytest

from perp_trading.exchange.kucoin import KuCoinFuturesClient
from perp_trading.execution import (
    ClosePositionAction,
    DecisionContext,
    EmergencyCloseAllAction,
    ExecutionConfig,
    ExecutionStateMachine,
    FeaturePerformanceTracker,
    HoldAction,
    IdempotencyGuard,
    OpenPositionAction,
    PartialTakeProfitAction,
    ReversePositionAction,
    SetBreakEvenAction,
    SymbolPolicy,
    TrailTakeProfitAction,
    WaitAction,
)
from perp_trading.risk.controller import RiskConfig, RiskController
from perp_trading.types import CompositeSignal, MarketAssessment, Position

_NOW = datetime(2026, 1, 5, 12, 0, tzinfo=UTC)


def _signal(**overrides: object) -> CompositeSignal:
    values: dict[str, object] = {
        "composite_score": 110.0,
        "authorized": True,
        "side": "long",
        "confidence": 80.0,
        "trigger_candle": 199,
        "window_expires": _NOW + timedelta(hours=1),
        "indicator_scores": {"rsi": 30.0},
        "microstructure_score": 0.0,
        "block_reasons": frozenset(),
        "confirmations": 5,
        "signal_strength": "strong",
        "signal_type": "trend",
        "signal_source": "rsi",
        "timestamp": _NOW,
    }
    values.update(overrides)
    return CompositeSignal(**values)  # type: ignore[arg-type]


def _position(age_minutes: float = 30.0, **overrides: object) -> Position:
    values: dict[str, object] = {
        "symbol": "BTCUSDT",
        "side": "long",
        "size": 1.0,
        "leverage": 10.0,
        "entry_price": 100.0,
        "timestamp": _NOW - timedelta(minutes=age_minutes),
    }
    values.update(overrides)
    return Position(**values)  # type: ignore[arg-type]


def _machine(
    *,
    execution: ExecutionConfig | None = None,
    risk: RiskConfig | None = None,
    tracker: FeaturePerformanceTracker | None = None,
    policy: SymbolPolicy | None = None,
) -> ExecutionStateMachine:
    return ExecutionStateMachine(
        execution,
        risk=RiskController(risk),
        features=tracker or FeaturePerformanceTracker(),
        idempotency=IdempotencyGuard(300, clock=lambda: _NOW.timestamp()),
        policy=policy,
    )


def _ctx(signal: CompositeSignal | None = None, **overrides: object) -> DecisionContext:
    values: dict[str, object] = {
        "symbol": "BTCUSDT",
        "signal": signal or _signal(),
        "balance": 10_000.0,
        "now": _NOW,
    }
    values.update(overrides)
    return DecisionContext(**values)  # type: ignore[arg-type]


# -- entries ------------------------------------------------------------------


def test_qualified_signal_opens_position() -> None:
    action = _machine().decide(_ctx())
    assert isinstance(action, OpenPositionAction)
    assert action.side == "long"
    assert action.leverage == 24
    assert action.size == pytest.approx(10.47)
    assert action.feature_key == "trend:strong:trending"
    assert action.idempotency_key.startswith("signal:BTCUSDT:long:")


def test_unauthorized_signal_waits() -> None:
    signal = _signal(authorized=False, block_reasons=frozenset({"min_score"}))
    action = _machine().decide(_ctx(signal))
    assert isinstance(action, WaitAction)
    assert action.code == "E_NOT_AUTHORIZED"
    assert "min_score" in action.reason


def test_authorized_signal_without_side_waits() -> None:
    action = _machine().decide(_ctx(_signal(side=None)))
    assert isinstance(action, WaitAction)
    assert action.reason == "authorized signal missing side"
    assert action.code == "E_MISSING_SIDE"


def test_low_confidence_waits() -> None:
    action = _machine().decide(_ctx(_signal(confidence=55.0)))
    assert isinstance(action, WaitAction)
    assert action.code == "E_LOW_CONFIDENCE"


def test_high_risk_assessment_waits() -> None:
    action = _machine().decide(_ctx(market=MarketAssessment(risk_assessment="high")))
    assert isinstance(action, WaitAction)
    assert action.code == "E_RISK_ASSESSMENT"


def test_regime_gate_messages() -> None:
    machine = _machine(execution=ExecutionConfig(allowed_regimes=frozenset({"trending", "volatile"})))

    blocked = machine.decide(_ctx(market=MarketAssessment(regime="ranging")))
    assert isinstance(blocked, WaitAction)
    assert blocked.reason == "regime ranging blocked by global policy"
    assert blocked.code == "E_REGIME_BLOCKED"

    wrong_type = machine.decide(_ctx(_signal(signal_type="squeeze")))
    assert isinstance(wrong_type, WaitAction)
    assert wrong_type.reason == "signal type squeeze not allowed in trending regime"

    weak = machine.decide(
        _ctx(_signal(signal_strength="moderate"), market=MarketAssessment(regime="volatile"))
    )
    assert isinstance(weak, WaitAction)
    assert weak.reason == "strength moderate below strong requirement for volatile regime"


def test_denied_symbol_waits() -> None:
    machine = _machine(policy=SymbolPolicy(denylist=("BTC-USDT",)))
    action = machine.decide(_ctx(symbol="XBTUSDTM"))
    assert isinstance(action, WaitAction)
    assert action.code == "E_SYMBOL_DENIED"


def test_circuit_breaker_blocks_entries() -> None:
    machine = _machine()
    machine.risk.trip_circuit_breaker("test")
    action = machine.decide(_ctx())
    assert isinstance(action, WaitAction)
    assert action.code == "E_CIRCUIT_BREAKER"


def test_max_positions_blocks_entries() -> None:
    machine = _machine(risk=RiskConfig(max_positions_paper=1))
    other = _position(symbol="ETHUSDT")
    action = machine.decide(_ctx(positions=(other,)))
    assert isinstance(action, WaitAction)
    assert action.code == "E_MAX_POSITIONS"


def test_projected_exposure_blocks_entries() -> None:
    machine = _machine(risk=RiskConfig(max_exposure_ratio=0.02))
    action = machine.decide(_ctx())
    assert isinstance(action, WaitAction)
    assert action.code == "E_EXPOSURE_LIMIT"


def test_duplicate_signal_waits() -> None:
    machine = _machine()
    first = machine.decide(_ctx())
    assert isinstance(first, OpenPositionAction)
    machine.idempotency.record(first.idempotency_key)

    second = machine.decide(_ctx(symbol="BTC-USDT"))
    assert isinstance(second, WaitAction)
    assert second.code == "E_DUPLICATE_ORDER"
    assert second.reason == "duplicate order within idempotency window"


# -- open positions -----------------------------------------------------------


def test_circuit_breaker_wins_over_every_exit() -> None:
    machine = _machine()
    machine.risk.trip_circuit_breaker("drawdown limit")
    position = _position(age_minutes=300, pnl_percent=20.0)
    signal = _signal(side="short", composite_score=-150.0)
    action = machine.decide(_ctx(signal, position=position, positions=(position,)))
    assert isinstance(action, EmergencyCloseAllAction)
    assert action.reason == "drawdown limit"
    assert action.symbols == ("BTCUSDT",)


def test_premise_break_closes_young_position() -> None:
    position = _position(age_minutes=30, pnl_percent=-2.0)
    signal = _signal(side="short", composite_score=-120.0, authorized=False)
    action = _machine().decide(_ctx(signal, position=position, positions=(position,)))
    assert isinstance(action, ClosePositionAction)
    assert action.reason.startswith("premise break")
    assert action.current_pnl == -2.0


def test_time_invalidation_closes_stale_position() -> None:
    position = _position(age_minutes=300, pnl_percent=1.0)
    action = _machine().decide(_ctx(_signal(authorized=False), position=position))
    assert isinstance(action, ClosePositionAction)
    assert action.reason.startswith("time-based invalidation")


def test_stale_but_profitable_position_holds() -> None:
    position = _position(age_minutes=300, pnl_percent=3.0, stop_loss=99.0, take_profit=103.0)
    action = _machine().decide(_ctx(position=position))
    assert isinstance(action, HoldAction)


def test_partial_then_break_even() -> None:
    machine = _machine()
    opened = machine.decide(_ctx())
    assert isinstance(opened, OpenPositionAction)
    machine.on_position_opened(opened, now=_NOW - timedelta(minutes=90))

    position = _position(age_minutes=90, pnl_percent=16.0)
    partial = machine.decide(_ctx(position=position))
    assert isinstance(partial, PartialTakeProfitAction)
    assert partial.size == pytest.approx(0.5)

    machine.on_partial_taken("BTC-USDT")
    after = machine.decide(_ctx(position=_position(age_minutes=90, pnl_percent=16.0, size=0.5)))
    assert isinstance(after, SetBreakEvenAction)
    assert after.new_stop_loss == pytest.approx(100.1)


def test_partial_requires_lifecycle_record() -> None:
    position = _position(age_minutes=90, pnl_percent=16.0, stop_loss=100.1)
    action = _machine().decide(_ctx(position=position))
    assert not isinstance(action, PartialTakeProfitAction)


def test_trailing_target_only_moves_forward() -> None:
    machine = _machine()
    behind = _position(age_minutes=90, pnl_percent=13.0, stop_loss=100.1, take_profit=101.0)
    action = machine.decide(_ctx(position=behind))
    assert isinstance(action, TrailTakeProfitAction)
    assert action.new_take_profit > 101.0

    ahead = _position(age_minutes=90, pnl_percent=13.0, stop_loss=100.1, take_profit=110.0)
    assert isinstance(machine.decide(_ctx(position=ahead)), HoldAction)


def test_strong_opposite_signal_reverses() -> None:
    machine = _machine(risk=RiskConfig(max_positions_paper=1))
    position = _position(age_minutes=90, pnl_percent=3.0, stop_loss=99.0, take_profit=103.0)
    signal = _signal(side="short", composite_score=-120.0)
    action = machine.decide(_ctx(signal, position=position, positions=(position,)))
    assert isinstance(action, ReversePositionAction)
    assert action.close.side == "long"
    assert action.open.side == "short"
    assert action.open.idempotency_key.startswith("signal:BTCUSDT:short:")


def test_reversal_blocked_by_entry_gates_holds() -> None:
    position = _position(age_minutes=90, pnl_percent=3.0, stop_loss=99.0, take_profit=103.0)
    signal = _signal(side="short", composite_score=-120.0, confidence=50.0)
    action = _machine().decide(_ctx(signal, position=position, positions=(position,)))
    assert isinstance(action, HoldAction)
    assert action.reason.startswith("reversal blocked: confidence")


def test_close_records_feature_outcome_and_clears_lifecycle() -> None:
    machine = _machine()
    opened = machine.decide(_ctx())
    assert isinstance(opened, OpenPositionAction)
    machine.on_position_opened(opened, now=_NOW, stop_order_id="s1")
    assert machine.lifecycle("BTC-USDT") is not None
    assert machine.tracked_symbols() == ["BTCUSDT"]

    stats = machine.on_position_closed("BTCUSDT", -3.0, now=_NOW)
    assert stats is not None
    assert stats.trades == 1
    assert machine.lifecycle("BTCUSDT") is None
    assert machine.risk.state.consecutive_losses == 1
    assert machine.on_position_closed("BTCUSDT", 1.0, now=_NOW) is None


def test_losing_close_starts_symbol_cooldown() -> None:
    machine = _machine()
    machine.on_position_closed("BTC-USDT", -2.0, now=_NOW)

    blocked = machine.decide(_ctx(now=_NOW + timedelta(minutes=10)))
    assert isinstance(blocked, WaitAction)
    assert blocked.code == "E_LOSS_COOLDOWN"

    other = machine.decide(_ctx(symbol="ETHUSDT", now=_NOW + timedelta(minutes=10)))
    assert isinstance(other, OpenPositionAction)

    expired = machine.decide(_ctx(now=_NOW + timedelta(minutes=31)))
    assert isinstance(expired, OpenPositionAction)


def test_winning_close_or_zero_cooldown_allows_reentry() -> None:
    machine = _machine()
    machine.on_position_closed("BTCUSDT", 4.0, now=_NOW)
    assert machine.loss_cooldown_until("BTCUSDT") is None
    assert isinstance(machine.decide(_ctx()), OpenPositionAction)

    disabled = _machine(execution=ExecutionConfig(loss_cooldown_minutes=0))
    disabled.on_position_closed("BTCUSDT", -4.0, now=_NOW)
    assert isinstance(disabled.decide(_ctx()), OpenPositionAction)


# -- venue-reported positions ---------------------------------------------------


def _kucoin_client(row: dict[str, object]) -> KuCoinFuturesClient:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"code": "200000", "data": dict(row)})

    return KuCoinFuturesClient(
        api_key="key",
        api_secret="secret",
        passphrase="phrase",
        client=httpx.Client(transport=httpx.MockTransport(handler)),
    )


def _kucoin_row(roe: float) -> dict[str, object]:
    return {
        "symbol": "XBTUSDTM",
        "isOpen": True,
        "currentQty": 10,
        "realLeverage": 10,
        "avgEntryPrice": 60000,
        "markValue": 600,
        "openingTimestamp": int((_NOW - timedelta(minutes=30)).timestamp() * 1000),
        "unrealisedRoePcnt": roe,
    }


def test_tracked_protection_drives_venue_positions_without_prices() -> None:
    machine = _machine()
    opened = machine.decide(_ctx())
    assert isinstance(opened, OpenPositionAction)
    machine.on_position_opened(
        opened,
        now=_NOW - timedelta(minutes=30),
        stop_order_id="s1",
        take_profit_order_id="t1",
        stop_price=59400.0,
        take_profit_price=61800.0,
    )
    quiet = _signal(authorized=False, side=None, composite_score=10.0)

    def cycle(roe: float) -> object:
        position = _kucoin_client(_kucoin_row(roe)).get_position("BTCUSDT")
        assert position is not None and position.stop_loss is None
        return machine.decide(_ctx(quiet, position=position, positions=(position,)))

    # Stop already resting: no repeated break-even move.
    assert isinstance(cycle(0.09), HoldAction)
    assert isinstance(cycle(0.09), HoldAction)

    assert isinstance(cycle(0.40), PartialTakeProfitAction)
    machine.on_partial_taken("BTCUSDT")

    trail = cycle(0.40)
    assert isinstance(trail, TrailTakeProfitAction)
    assert trail.new_take_profit > 61800.0

    superseded = machine.on_protective_replaced("BTCUSDT", "limit", "t2", trail.new_take_profit)
    assert superseded == "t1"
    assert isinstance(cycle(0.40), HoldAction)


def test_exposure_gate_uses_contract_notional() -> None:
    position = _kucoin_client(_kucoin_row(0.01)).get_position("BTCUSDT")
    assert position is not None
    assert position.size == 10
    assert position.notional == pytest.approx(600.0)

    action = _machine().decide(_ctx(symbol="ETHUSDT", balance=1_000.0, positions=(position,)))
    assert isinstance(action, OpenPositionAction)
