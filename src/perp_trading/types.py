"""Shared domain types for the decision engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Literal, Mapping

Side = Literal["long", "short"]
OrderSide = Literal["buy", "sell"]
Direction = Literal["bullish", "bearish"]
Strength = Literal["weak", "moderate", "strong", "very_strong", "extreme"]
StrengthTier = Literal["weak", "moderate", "strong", "extreme"]
Regime = Literal["trending", "ranging", "volatile"]
RiskLevel = Literal["low", "medium", "high", "critical"]
TradingMode = Literal["paper", "live"]
Trend = Literal["up", "down", "neutral"]
SignalType = Literal[
    "divergence",
    "crossover",
    "squeeze",
    "golden_death_cross",
    "trend",
    "oversold",
    "overbought",
]


@dataclass(frozen=True, slots=True)
class SubSignal:
    """Qualitative event emitted by an indicator, e.g. a crossover."""

    type: str
    direction: Direction | None
    strength: Strength = "moderate"
    message: str = ""


@dataclass(frozen=True, slots=True)
class IndicatorResult:
    """One named indicator output for the current cycle."""

    value: float | None
    signal: str
    score: float
    sub_signals: tuple[SubSignal, ...] = ()


@dataclass(frozen=True, slots=True)
class MicrostructureSnapshot:
    """Optional order-flow inputs. Any field may be absent."""

    buy_sell_ratio: float | None = None
    dom_imbalance: float | None = None
    funding_rate: float | None = None


@dataclass(frozen=True, slots=True)
class SignalContext:
    """Per-cycle evaluation context for the composite generator."""

    prev_score: float = 0.0
    atr_percent: float | None = None
    is_choppy: bool = False
    candle_index: int = 0
    drawdown_pct: float | None = None
    mtf_aligned: bool = True
    higher_timeframe_trend: Trend | None = None
    last_volume: float | None = None
    spread_bps: float | None = None


@dataclass(frozen=True, slots=True)
class CompositeSignal:
    """Bounded, confidence-scored decision for one (symbol, cycle)."""

    composite_score: float
    authorized: bool
    side: Side | None
    confidence: float
    trigger_candle: int | None
    window_expires: datetime | None
    indicator_scores: Mapping[str, float]
    microstructure_score: float
    block_reasons: frozenset[str]
    confirmations: int
    signal_strength: StrengthTier | None
    signal_type: SignalType | None
    signal_source: str
    timestamp: datetime

    def __post_init__(self) -> None:
        if not isinstance(self.indicator_scores, MappingProxyType):
            object.__setattr__(
                self, "indicator_scores", MappingProxyType(dict(self.indicator_scores))
            )

    def to_payload(self) -> dict[str, object]:
        return {
            "composite_score": self.composite_score,
            "authorized": self.authorized,
            "side": self.side,
            "confidence": self.confidence,
            "trigger_candle": self.trigger_candle,
            "window_expires": self.window_expires.isoformat() if self.window_expires else None,
            "indicator_scores": dict(self.indicator_scores),
            "microstructure_score": self.microstructure_score,
            "block_reasons": sorted(self.block_reasons),
            "confirmations": self.confirmations,
            "signal_strength": self.signal_strength,
            "signal_type": self.signal_type,
            "signal_source": self.signal_source,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class Position:
    """Read-only exchange position snapshot."""

    symbol: str
    side: Side
    size: float
    leverage: float
    entry_price: float
    timestamp: datetime
    pnl_percent: float = 0.0
    pnl: float = 0.0
    stop_loss: float | None = None
    take_profit: float | None = None
    notional_value: float | None = None

    @property
    def notional(self) -> float:
        """Position value in quote currency.

        ``notional_value`` is set by adapters whose ``size`` is a contract
        count rather than a base quantity.
        """
        if self.notional_value is not None:
            return abs(self.notional_value)
        return abs(self.size * self.entry_price)


@dataclass(slots=True)
class PositionLifecycleState:
    """Core-owned state for a position this engine opened."""

    side: Side
    opened_at: datetime
    feature_key: str
    entry_score: float
    entry_confidence: float
    regime: Regime
    partial_taken: bool = False
    stop_order_id: str | None = None
    take_profit_order_id: str | None = None
    stop_price: float | None = None
    take_profit_price: float | None = None


@dataclass(frozen=True, slots=True)
class MarketAssessment:
    """Regime and risk context supplied alongside a signal."""

    regime: Regime = "trending"
    risk_assessment: Literal["low", "medium", "high"] = "low"


@dataclass(frozen=True, slots=True)
class OrderIntent:
    """Order request handed to an exchange adapter."""

    client_oid: str
    symbol: str
    side: OrderSide
    order_type: Literal["market", "limit", "stop"]
    size: float
    leverage: float
    price: float | None = None
    reduce_only: bool = False


@dataclass(frozen=True, slots=True)
class OrderResult:
    """Exchange response to an order request."""

    success: bool
    order_id: str | None = None
    price: float | None = None
    filled_size: float | None = None
    error: str | None = None


@dataclass(slots=True)
class CycleResult:
    """Outcome of one pipeline cycle run."""

    status: str
    decisions: list[dict[str, object]] = field(default_factory=list)
    orders: list[dict[str, object]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    elapsed_ms: float = 0.0
