"""Execution decision state machine.

Per symbol: NONE -> OPEN -> (PARTIAL_TAKEN) -> CLOSED. Every call to
:meth:`ExecutionStateMachine.decide` returns exactly one action descriptor.
Entries pass a fixed sequence of pre-trade gates; open positions are checked
against a fixed exit priority list where the first match wins.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from pydantic import BaseModel, ConfigDict, Field

from perp_trading.errors import PolicyRejection, RiskRejection
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
)
from perp_trading.execution.features import FeaturePerformance, FeaturePerformanceTracker, feature_key
from perp_trading.execution.idempotency import IdempotencyGuard, signal_order_key
from perp_trading.execution.policy import SymbolPolicy, canonicalize_symbol
from perp_trading.risk.controller import RiskController, is_more_favorable
from perp_trading.signals.weights import STRENGTH_RANK
from perp_trading.types import (
    CompositeSignal,
    MarketAssessment,
    Position,
    PositionLifecycleState,
    Regime,
    StrengthTier,
    TradingMode,
)
from perp_trading.utils.logging import get_logger, log_gate_block

ALL_REGIMES: frozenset[Regime] = frozenset({"trending", "ranging", "volatile"})

DEFAULT_SIGNAL_TYPE_REGIMES: dict[str, frozenset[Regime]] = {
    "trend": frozenset({"trending", "volatile"}),
    "crossover": frozenset({"trending", "ranging"}),
    "squeeze": frozenset({"volatile"}),
    "divergence": frozenset({"ranging", "trending"}),
    "oversold": frozenset({"ranging", "volatile"}),
    "overbought": frozenset({"ranging", "volatile"}),
    "golden_death_cross": frozenset({"trending"}),
}

DEFAULT_MIN_STRENGTH: dict[Regime, StrengthTier] = {
    "trending": "moderate",
    "volatile": "strong",
    "ranging": "strong",
}


class ExecutionConfig(BaseModel):
    """Entry gate policy and open-position management thresholds. ROI values are percent."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    mode: TradingMode = "paper"
    min_confidence: float = Field(default=60.0, ge=0.0, le=100.0)
    allowed_regimes: frozenset[Regime] = ALL_REGIMES
    signal_type_regimes: dict[str, frozenset[Regime]] = Field(
        default_factory=lambda: dict(DEFAULT_SIGNAL_TYPE_REGIMES)
    )
    min_strength_by_regime: dict[Regime, StrengthTier] = Field(
        default_factory=lambda: dict(DEFAULT_MIN_STRENGTH)
    )
    premise_break_score: float = Field(default=100.0, ge=0.0)
    premise_break_window_minutes: float = Field(default=60.0, ge=0.0)
    time_invalidation_minutes: float = Field(default=240.0, gt=0.0)
    time_invalidation_min_roi: float = 2.0
    partial_take_profit_roi: float = Field(default=15.0, gt=0.0)
    partial_take_profit_fraction: float = Field(default=0.5, gt=0.0, lt=1.0)
    reversal_score: float = Field(default=100.0, ge=0.0)
    loss_cooldown_minutes: float = Field(default=30.0, ge=0.0)


@dataclass(frozen=True, slots=True)
class DecisionContext:
    """Everything one decision reads. Built fresh per (symbol, cycle)."""

    symbol: str
    signal: CompositeSignal
    balance: float
    position: Position | None = None
    positions: tuple[Position, ...] = ()
    market: MarketAssessment = field(default_factory=MarketAssessment)
    now: datetime | None = None


class ExecutionStateMachine:
    def __init__(
        self,
        config: ExecutionConfig | None = None,
        *,
        risk: RiskController,
        features: FeaturePerformanceTracker,
        idempotency: IdempotencyGuard,
        policy: SymbolPolicy | None = None,
    ) -> None:
        self._config = config or ExecutionConfig()
        self._risk = risk
        self._features = features
        self._idempotency = idempotency
        self._policy = policy or SymbolPolicy()
        self._lifecycle: dict[str, PositionLifecycleState] = {}
        self._loss_cooldowns: dict[str, datetime] = {}
        self._lock = threading.Lock()
        self._logger = get_logger("perp_trading.execution.machine")

    @property
    def config(self) -> ExecutionConfig:
        return self._config

    @property
    def policy(self) -> SymbolPolicy:
        return self._policy

    @property
    def idempotency(self) -> IdempotencyGuard:
        return self._idempotency

    @property
    def features(self) -> FeaturePerformanceTracker:
        return self._features

    @property
    def risk(self) -> RiskController:
        return self._risk

    def lifecycle(self, symbol: str) -> PositionLifecycleState | None:
        with self._lock:
            return self._lifecycle.get(canonicalize_symbol(symbol))

    def tracked_symbols(self) -> list[str]:
        with self._lock:
            return list(self._lifecycle)

    # -- decisions -----------------------------------------------------------

    def decide(self, ctx: DecisionContext) -> ActionDescriptor:
        now = ctx.now or datetime.now(timezone.utc)
        position = ctx.position
        if position is not None and position.size > 0:
            return self._decide_open(ctx, position, now)
        try:
            return self._entry(ctx, now, replacing=None)
        except (PolicyRejection, RiskRejection) as exc:
            log_gate_block(
                self._logger,
                symbol=ctx.symbol,
                gate=type(exc).__name__,
                reason=str(exc),
                code=exc.code,
            )
            return WaitAction(symbol=ctx.symbol, reason=str(exc), code=exc.code)

    def _entry(
        self, ctx: DecisionContext, now: datetime, *, replacing: Position | None
    ) -> OpenPositionAction | WaitAction:
        """Run pre-trade gates in order; raise on rejection, wait on duplicate."""
        cfg = self._config
        signal = ctx.signal
        canonical = self._policy.validate(ctx.symbol)

        if not signal.authorized:
            reasons = ", ".join(sorted(signal.block_reasons)) or "unspecified"
            raise PolicyRejection(f"signal not authorized: {reasons}", code="E_NOT_AUTHORIZED")
        side = signal.side
        if side is None:
            raise PolicyRejection("authorized signal missing side", code="E_MISSING_SIDE")

        if signal.confidence < cfg.min_confidence:
            raise PolicyRejection(
                f"confidence {signal.confidence:.1f} below floor {cfg.min_confidence:.1f}",
                code="E_LOW_CONFIDENCE",
            )
        if ctx.market.risk_assessment == "high":
            raise RiskRejection("risk assessment is high", code="E_RISK_ASSESSMENT")

        regime = ctx.market.regime
        self._check_regime(signal, regime)

        key = feature_key(signal.signal_type, signal.signal_strength, regime)
        if self._features.is_disabled(key, now=now):
            raise PolicyRejection(f"feature temporarily disabled: {key}", code="E_FEATURE_DISABLED")

        cooldown_until = self.loss_cooldown_until(canonical)
        if cooldown_until is not None and now < cooldown_until:
            raise PolicyRejection(
                f"cooling down after a loss until {cooldown_until.isoformat()}",
                code="E_LOSS_COOLDOWN",
            )

        if self._risk.circuit_breaker_active:
            raise RiskRejection("circuit breaker active", code="E_CIRCUIT_BREAKER")

        book = [p for p in ctx.positions if p.size > 0]
        if replacing is not None:
            book = [p for p in book if canonicalize_symbol(p.symbol) != canonical]
        max_positions = self._risk.config.max_positions(cfg.mode)
        if len(book) >= max_positions:
            raise RiskRejection(f"max positions ({max_positions}) reached", code="E_MAX_POSITIONS")

        leverage = self._risk.leverage_for(signal)
        size = self._risk.position_size(
            ctx.balance, signal.composite_score, signal.confidence, leverage, regime
        )
        existing = sum(p.notional for p in book)
        projected = existing + size * leverage
        ceiling = ctx.balance * self._risk.config.max_exposure_ratio
        if projected > ceiling:
            raise RiskRejection(
                f"projected exposure {projected:.2f} exceeds limit {ceiling:.2f}",
                code="E_EXPOSURE_LIMIT",
            )

        order_key = signal_order_key(canonical, side, signal.timestamp, self._idempotency.window_seconds)
        if self._idempotency.seen(order_key):
            log_gate_block(
                self._logger,
                symbol=ctx.symbol,
                gate="idempotency",
                reason="duplicate order",
                code="E_DUPLICATE_ORDER",
                order_key=order_key,
            )
            return WaitAction(
                symbol=ctx.symbol,
                reason="duplicate order within idempotency window",
                code="E_DUPLICATE_ORDER",
            )

        return OpenPositionAction(
            symbol=ctx.symbol,
            side=side,
            size=size,
            leverage=leverage,
            idempotency_key=order_key,
            feature_key=key,
            regime=regime,
            score=signal.composite_score,
            confidence=signal.confidence,
        )

    def _check_regime(self, signal: CompositeSignal, regime: Regime) -> None:
        cfg = self._config
        if regime not in cfg.allowed_regimes:
            raise PolicyRejection(f"regime {regime} blocked by global policy", code="E_REGIME_BLOCKED")
        signal_type = signal.signal_type or "trend"
        allowed = cfg.signal_type_regimes.get(signal_type)
        if allowed is not None and regime not in allowed:
            raise PolicyRejection(
                f"signal type {signal_type} not allowed in {regime} regime",
                code="E_REGIME_BLOCKED",
            )
        required = cfg.min_strength_by_regime.get(regime)
        if required is not None and STRENGTH_RANK[signal.signal_strength] < STRENGTH_RANK[required]:
            raise PolicyRejection(
                f"strength {signal.signal_strength or 'none'} below {required} "
                f"requirement for {regime} regime",
                code="E_REGIME_BLOCKED",
            )

    def _decide_open(
        self, ctx: DecisionContext, position: Position, now: datetime
    ) -> ActionDescriptor:
        cfg = self._config
        risk = self._risk
        signal = ctx.signal
        state = self.lifecycle(ctx.symbol)
        opened_at = state.opened_at if state is not None else position.timestamp
        age = now - opened_at
        pnl = position.pnl_percent
        opposite = signal.side is not None and signal.side != position.side
        # Some venues report no protective prices on the position itself.
        stop_loss = position.stop_loss
        take_profit = position.take_profit
        if state is not None:
            stop_loss = stop_loss if stop_loss is not None else state.stop_price
            take_profit = take_profit if take_profit is not None else state.take_profit_price

        # 1. circuit breaker
        if risk.circuit_breaker_active:
            symbols = tuple(p.symbol for p in ctx.positions if p.size > 0) or (position.symbol,)
            return EmergencyCloseAllAction(
                reason=risk.state.circuit_breaker_reason or "circuit breaker active",
                symbols=symbols,
            )

        # 2. premise break
        if (
            opposite
            and abs(signal.composite_score) > cfg.premise_break_score
            and age <= timedelta(minutes=cfg.premise_break_window_minutes)
        ):
            return ClosePositionAction(
                symbol=ctx.symbol,
                side=position.side,
                size=position.size,
                reason=(
                    f"premise break: opposite signal {signal.composite_score:.1f} "
                    f"within {cfg.premise_break_window_minutes:g} minutes of entry"
                ),
                current_pnl=pnl,
            )

        # 3. time invalidation
        if age >= timedelta(minutes=cfg.time_invalidation_minutes) and pnl < cfg.time_invalidation_min_roi:
            return ClosePositionAction(
                symbol=ctx.symbol,
                side=position.side,
                size=position.size,
                reason=(
                    f"time-based invalidation: open {age.total_seconds() / 3600:.1f}h "
                    f"with ROI {pnl:.2f}% below {cfg.time_invalidation_min_roi:g}%"
                ),
                current_pnl=pnl,
            )

        # 4. partial take profit
        if pnl >= cfg.partial_take_profit_roi and state is not None and not state.partial_taken:
            return PartialTakeProfitAction(
                symbol=ctx.symbol,
                side=position.side,
                size=position.size * cfg.partial_take_profit_fraction,
                current_pnl=pnl,
            )

        # 5. break-even
        if pnl >= risk.config.break_even_activation and stop_loss is None:
            return SetBreakEvenAction(
                symbol=ctx.symbol,
                side=position.side,
                new_stop_loss=risk.break_even_for(position.entry_price, position.side, position.leverage),
                current_pnl=pnl,
            )

        # 6. trailing target, never untrail
        if pnl >= risk.config.trailing_activation and take_profit is not None:
            candidate = risk.trailing_target_for(position)
            if is_more_favorable(position.side, take_profit, candidate):
                return TrailTakeProfitAction(
                    symbol=ctx.symbol,
                    side=position.side,
                    new_take_profit=candidate,
                    current_pnl=pnl,
                )

        # 7. reversal
        if opposite and signal.authorized and abs(signal.composite_score) >= cfg.reversal_score:
            try:
                entry = self._entry(ctx, now, replacing=position)
            except (PolicyRejection, RiskRejection) as exc:
                return HoldAction(symbol=ctx.symbol, reason=f"reversal blocked: {exc}")
            if isinstance(entry, OpenPositionAction):
                return ReversePositionAction(
                    symbol=ctx.symbol,
                    close=ClosePositionAction(
                        symbol=ctx.symbol,
                        side=position.side,
                        size=position.size,
                        reason="reversal",
                        current_pnl=pnl,
                    ),
                    open=entry,
                    reason=f"strong opposite signal {signal.composite_score:.1f}",
                )

        return HoldAction(symbol=ctx.symbol)

    # -- lifecycle -----------------------------------------------------------

    def on_position_opened(
        self,
        action: OpenPositionAction,
        *,
        now: datetime | None = None,
        stop_order_id: str | None = None,
        take_profit_order_id: str | None = None,
        stop_price: float | None = None,
        take_profit_price: float | None = None,
    ) -> PositionLifecycleState:
        state = PositionLifecycleState(
            side=action.side,
            opened_at=now or datetime.now(timezone.utc),
            feature_key=action.feature_key,
            entry_score=action.score,
            entry_confidence=action.confidence,
            regime=action.regime,
            stop_order_id=stop_order_id,
            take_profit_order_id=take_profit_order_id,
            stop_price=stop_price,
            take_profit_price=take_profit_price,
        )
        with self._lock:
            self._lifecycle[canonicalize_symbol(action.symbol)] = state
        return state

    def on_partial_taken(self, symbol: str) -> None:
        with self._lock:
            state = self._lifecycle.get(canonicalize_symbol(symbol))
            if state is not None:
                state.partial_taken = True

    def on_protective_replaced(
        self, symbol: str, order_type: str, order_id: str | None, price: float
    ) -> str | None:
        """Record a new stop or target; return the order id it supersedes."""
        with self._lock:
            state = self._lifecycle.get(canonicalize_symbol(symbol))
            if state is None:
                return None
            if order_type == "stop":
                previous = state.stop_order_id
                state.stop_order_id = order_id
                state.stop_price = price
            else:
                previous = state.take_profit_order_id
                state.take_profit_order_id = order_id
                state.take_profit_price = price
            return previous

    def loss_cooldown_until(self, symbol: str) -> datetime | None:
        with self._lock:
            return self._loss_cooldowns.get(canonicalize_symbol(symbol))

    def on_position_closed(
        self, symbol: str, pnl_percent: float, *, now: datetime | None = None
    ) -> FeaturePerformance | None:
        """Record the realized outcome and discard the lifecycle record.

        A losing close starts the per-symbol re-entry cooldown.
        """
        canonical = canonicalize_symbol(symbol)
        closed_at = now or datetime.now(timezone.utc)
        with self._lock:
            state = self._lifecycle.pop(canonical, None)
            if pnl_percent < 0 and self._config.loss_cooldown_minutes > 0:
                self._loss_cooldowns[canonical] = closed_at + timedelta(
                    minutes=self._config.loss_cooldown_minutes
                )
        self._risk.record_trade_result(pnl_percent)
        if state is None:
            return None
        stats = self._features.record_outcome(state.feature_key, pnl_percent, now=now)
        self._logger.info(
            "position_closed",
            symbol=symbol,
            feature_key=state.feature_key,
            pnl_percent=pnl_percent,
            feature_trades=stats.trades,
        )
        return stats
