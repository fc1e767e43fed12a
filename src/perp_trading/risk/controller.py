"""Risk and exposure controls: drawdown circuit breaker, sizing, stop/target pricing."""

from __future__ import annotations

import math
import threading
from dataclasses import dataclass, field
from typing import Iterable, Literal

from pydantic import BaseModel, ConfigDict, Field

from perp_trading.signals.weights import recommended_leverage
from perp_trading.types import CompositeSignal, Position, Regime, RiskLevel, Side, TradingMode
from perp_trading.utils.logging import get_logger, log_risk_event

_RISK_ORDER: dict[str, int] = {"CRITICAL": 0, "HIGH": 1, "MEDIUM": 2, "LOW": 3}


class RiskConfig(BaseModel):
    """Risk limits and ROI-based stop/target parameters (ROI in leveraged percent)."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_drawdown_pct: float = Field(default=10.0, gt=0.0, le=100.0)
    max_risk_per_trade: float = Field(default=0.02, gt=0.0, le=0.5)
    min_position_size: float = Field(default=1.0, ge=0.0)
    max_exposure_ratio: float = Field(default=1.0, gt=0.0)
    max_positions_paper: int = Field(default=10, ge=1)
    max_positions_live: int = Field(default=5, ge=1)
    leverage_min: int = Field(default=5, ge=1)
    leverage_max: int = Field(default=50, ge=1)
    stop_loss_roi: float = Field(default=10.0, gt=0.0)
    take_profit_roi: float = Field(default=30.0, gt=0.0)
    break_even_activation: float = Field(default=8.0, ge=0.0)
    break_even_buffer: float = Field(default=1.0, ge=0.0)
    trailing_activation: float = Field(default=12.0, ge=0.0)
    trailing_distance: float = Field(default=4.0, gt=0.0)
    regime_scale: dict[str, float] = Field(
        default_factory=lambda: {"trending": 1.0, "volatile": 0.7, "ranging": 0.5}
    )

    def max_positions(self, mode: TradingMode) -> int:
        return self.max_positions_paper if mode == "paper" else self.max_positions_live


@dataclass(slots=True)
class RiskState:
    """Session risk state. The breaker is sticky until an explicit reset."""

    circuit_breaker_active: bool = False
    circuit_breaker_reason: str | None = None
    peak_equity: float = 0.0
    last_equity: float = 0.0
    drawdown_pct: float = 0.0
    daily_pnl_pct: float = 0.0
    max_daily_drawdown: float = 0.0
    consecutive_losses: int = 0
    wins: int = 0
    losses: int = 0


@dataclass(frozen=True, slots=True)
class RiskFactors:
    drawdown_risk: RiskLevel
    exposure_risk: RiskLevel
    concentration_risk: RiskLevel
    overall_risk: RiskLevel


@dataclass(frozen=True, slots=True)
class RiskRecommendation:
    priority: Literal["CRITICAL", "HIGH", "MEDIUM", "LOW"]
    type: str
    description: str
    action: str
    immediate: bool
    symbol: str | None = None
    suggested_price: float | None = None


@dataclass(frozen=True, slots=True)
class RiskAnalysis:
    balance: float
    drawdown_pct: float
    total_exposure: float
    open_positions: int
    circuit_breaker_active: bool
    factors: RiskFactors
    recommendations: tuple[RiskRecommendation, ...] = field(default_factory=tuple)

    @property
    def risk_assessment(self) -> Literal["low", "medium", "high"]:
        overall = self.factors.overall_risk
        return "high" if overall in ("high", "critical") else overall


def classify_tier(value: float, limit: float) -> RiskLevel:
    """Tier a value against a limit at 50% / 80% / 100% of the limit."""
    if limit <= 0:
        return "critical" if value > 0 else "low"
    if value >= limit:
        return "critical"
    if value >= limit * 0.8:
        return "high"
    if value >= limit * 0.5:
        return "medium"
    return "low"


def overall_risk(*tiers: RiskLevel) -> RiskLevel:
    elevated = sum(1 for tier in tiers if tier in ("high", "critical"))
    if elevated >= 2:
        return "critical"
    if elevated == 1:
        return "high"
    if any(tier == "medium" for tier in tiers):
        return "medium"
    return "low"


def floor2(value: float) -> float:
    """Round down to two decimals, the precision used for stop and target prices."""
    return math.floor(value * 100) / 100


def _roi_fraction(roi_percent: float, leverage: float) -> float:
    """Price move, as a fraction of entry, that yields ``roi_percent`` at ``leverage``."""
    return roi_percent / max(leverage, 1.0) / 100.0


def stop_loss_price(entry: float, side: Side, roi_percent: float, leverage: float) -> float:
    """Price at which a position loses ``roi_percent`` of its margin.

    Below entry for longs, above entry for shorts.
    """
    move = _roi_fraction(roi_percent, leverage)
    return entry * (1 - move) if side == "long" else entry * (1 + move)


def take_profit_price(entry: float, side: Side, roi_percent: float, leverage: float) -> float:
    """Price at which a position gains ``roi_percent`` of its margin."""
    move = _roi_fraction(roi_percent, leverage)
    return entry * (1 + move) if side == "long" else entry * (1 - move)


def mark_price_from_roi(entry: float, side: Side, roi_percent: float, leverage: float) -> float:
    """Price implied by a leveraged ROI percent."""
    return take_profit_price(entry, side, roi_percent, leverage)


def break_even_price(entry: float, side: Side, buffer_roi: float, leverage: float) -> float:
    """Entry shifted to the profit side by a small buffer ROI."""
    return take_profit_price(entry, side, buffer_roi, leverage)


def trailing_take_profit_price(
    entry: float, side: Side, pnl_percent: float, trail_roi: float, leverage: float
) -> float:
    """Target ``trail_roi`` beyond the current mark, where the mark is implied by ``pnl_percent``."""
    mark = mark_price_from_roi(entry, side, pnl_percent, leverage)
    return take_profit_price(mark, side, trail_roi, leverage)


def is_more_favorable(side: Side, existing: float | None, candidate: float) -> bool:
    """True if candidate strictly improves on existing for this side."""
    if existing is None:
        return True
    return candidate > existing if side == "long" else candidate < existing


class RiskController:
    """Tracks drawdown and breaker state; sizes positions; prices stops and targets."""

    def __init__(self, config: RiskConfig | None = None, *, state: RiskState | None = None) -> None:
        self._config = config or RiskConfig()
        self._state = state or RiskState()
        self._lock = threading.Lock()
        self._logger = get_logger("perp_trading.risk.controller")

    @property
    def config(self) -> RiskConfig:
        return self._config

    @property
    def state(self) -> RiskState:
        return self._state

    @property
    def circuit_breaker_active(self) -> bool:
        return self._state.circuit_breaker_active

    def observe_equity(self, balance: float, unrealized_pnl: float = 0.0) -> float:
        """Update peak equity and return drawdown percent. May trip the breaker."""
        equity = balance + unrealized_pnl
        with self._lock:
            state = self._state
            state.last_equity = equity
            if state.peak_equity <= 0:
                state.peak_equity = equity
            state.peak_equity = max(state.peak_equity, equity)
            if state.peak_equity <= 0:
                drawdown = 0.0
            else:
                drawdown = max(0.0, (state.peak_equity - equity) / state.peak_equity * 100)
            state.drawdown_pct = drawdown
            state.max_daily_drawdown = max(state.max_daily_drawdown, drawdown)
            tripped = not state.circuit_breaker_active and drawdown >= self._config.max_drawdown_pct
            if tripped:
                state.circuit_breaker_active = True
                state.circuit_breaker_reason = (
                    f"drawdown {drawdown:.2f}% reached limit {self._config.max_drawdown_pct}%"
                )
        if tripped:
            log_risk_event(
                self._logger,
                event_type="circuit_breaker",
                action="trip",
                drawdown_pct=round(drawdown, 4),
                peak_equity=self._state.peak_equity,
                equity=equity,
            )
        return drawdown

    def trip_circuit_breaker(self, reason: str) -> None:
        with self._lock:
            self._state.circuit_breaker_active = True
            self._state.circuit_breaker_reason = reason
        log_risk_event(self._logger, event_type="circuit_breaker", action="manual_trip", reason=reason)

    def reset_circuit_breaker(self) -> None:
        """Operator reset. The only way to clear an active breaker."""
        with self._lock:
            consecutive = self._state.consecutive_losses
            self._state = RiskState(consecutive_losses=consecutive)
        log_risk_event(self._logger, event_type="circuit_breaker", action="reset")

    def reset_daily(self) -> None:
        with self._lock:
            state = self._state
            state.peak_equity = state.last_equity
            state.drawdown_pct = 0.0
            state.daily_pnl_pct = 0.0
            state.max_daily_drawdown = 0.0

    def record_trade_result(self, pnl_percent: float) -> None:
        with self._lock:
            state = self._state
            state.daily_pnl_pct += pnl_percent
            if pnl_percent < 0:
                state.losses += 1
                state.consecutive_losses += 1
            else:
                state.wins += 1
                state.consecutive_losses = 0

    def leverage_for(self, signal: CompositeSignal) -> int:
        raw = recommended_leverage(signal.composite_score, signal.confidence)
        return max(self._config.leverage_min, min(self._config.leverage_max, raw))

    def position_size(
        self,
        balance: float,
        score: float,
        confidence: float,
        leverage: float,
        regime: Regime = "trending",
    ) -> float:
        """Margin to commit, in quote currency, never below the configured minimum."""
        cfg = self._config
        if balance <= 0:
            return cfg.min_position_size
        score_edge = min(1.5, max(0.3, abs(score) / 100))
        confidence_edge = min(1.3, max(0.5, confidence / 70))
        size = (
            balance
            * cfg.max_risk_per_trade
            * score_edge
            * confidence_edge
            * self._drawdown_scale()
            * self._streak_scale()
            * cfg.regime_scale.get(regime, 0.5)
            / max(float(leverage), 1.0)
        )
        return max(cfg.min_position_size, floor2(size))

    def _drawdown_scale(self) -> float:
        drawdown = self._state.drawdown_pct
        if drawdown >= 8:
            return 0.35
        if drawdown >= 5:
            return 0.6
        if drawdown >= 3:
            return 0.8
        return 1.0

    def _streak_scale(self) -> float:
        return max(0.4, 1 - 0.15 * self._state.consecutive_losses)

    def stop_loss_for(self, entry: float, side: Side, leverage: float) -> float:
        return stop_loss_price(entry, side, self._config.stop_loss_roi, leverage)

    def take_profit_for(self, entry: float, side: Side, leverage: float) -> float:
        return take_profit_price(entry, side, self._config.take_profit_roi, leverage)

    def break_even_for(self, entry: float, side: Side, leverage: float) -> float:
        return break_even_price(entry, side, self._config.break_even_buffer, leverage)

    def trailing_target_for(self, position: Position) -> float:
        """Target trailing the implied mark price by the configured distance."""
        return trailing_take_profit_price(
            position.entry_price,
            position.side,
            position.pnl_percent,
            self._config.trailing_distance,
            position.leverage,
        )

    def analyze(
        self, balance: float, positions: Iterable[Position], mode: TradingMode = "paper"
    ) -> RiskAnalysis:
        """Read-only risk tiers and recommendations for the current book."""
        cfg = self._config
        book = [p for p in positions if p.size > 0]
        exposure = sum(p.notional for p in book)
        exposure_ratio = exposure / balance if balance > 0 else 0.0
        drawdown = self._state.drawdown_pct
        breaker = self._state.circuit_breaker_active
        max_positions = cfg.max_positions(mode)

        drawdown_risk = classify_tier(drawdown, cfg.max_drawdown_pct)
        exposure_risk = classify_tier(exposure_ratio, cfg.max_exposure_ratio)
        concentration_risk = classify_tier(len(book), max_positions)
        factors = RiskFactors(
            drawdown_risk=drawdown_risk,
            exposure_risk=exposure_risk,
            concentration_risk=concentration_risk,
            overall_risk=overall_risk(drawdown_risk, exposure_risk, concentration_risk),
        )

        recommendations: list[RiskRecommendation] = []
        if breaker:
            recommendations.append(
                RiskRecommendation(
                    priority="CRITICAL",
                    type="circuit-breaker",
                    description="Circuit breaker active. New risk is halted.",
                    action="stop-all",
                    immediate=True,
                )
            )
        else:
            if drawdown >= cfg.max_drawdown_pct * 0.8:
                recommendations.append(
                    RiskRecommendation(
                        priority="HIGH",
                        type="reduce-exposure",
                        description=f"Drawdown at {drawdown:.2f}% nearing limit",
                        action="reduce-position",
                        immediate=False,
                    )
                )
            if len(book) >= max_positions:
                recommendations.append(
                    RiskRecommendation(
                        priority="HIGH",
                        type="max-positions",
                        description=f"Maximum {max_positions} positions open",
                        action="wait-for-exit",
                        immediate=False,
                    )
                )
            for pos in book:
                if pos.stop_loss is None:
                    recommendations.append(
                        RiskRecommendation(
                            priority="HIGH",
                            type="set-stop-loss",
                            description=f"Position {pos.symbol} missing stop loss",
                            action="set-sl",
                            immediate=True,
                            symbol=pos.symbol,
                            suggested_price=self.stop_loss_for(pos.entry_price, pos.side, pos.leverage),
                        )
                    )
                if pos.take_profit is None:
                    recommendations.append(
                        RiskRecommendation(
                            priority="MEDIUM",
                            type="set-take-profit",
                            description=f"Position {pos.symbol} missing take profit",
                            action="set-tp",
                            immediate=False,
                            symbol=pos.symbol,
                            suggested_price=self.take_profit_for(pos.entry_price, pos.side, pos.leverage),
                        )
                    )
        recommendations.sort(key=lambda rec: _RISK_ORDER[rec.priority])

        return RiskAnalysis(
            balance=balance,
            drawdown_pct=drawdown,
            total_exposure=exposure,
            open_positions=len(book),
            circuit_breaker_active=breaker,
            factors=factors,
            recommendations=tuple(recommendations),
        )
