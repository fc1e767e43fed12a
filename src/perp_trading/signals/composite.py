"""Composite signal generator.

Combines indicator results and an optional microstructure snapshot into one
bounded, confidence-scored :class:`CompositeSignal`. The generator holds only
immutable configuration; every call is a pure computation over its inputs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Mapping

from pydantic import BaseModel, ConfigDict, Field

from perp_trading.signals.confidence import ConfidenceAdjuster, ConfidenceConfig
from perp_trading.signals.gates import EntryGate, GateConfig, GateContext
from perp_trading.signals.quality import QualityFilterConfig, quality_block_reasons
from perp_trading.signals.weights import (
    INDICATOR_WEIGHTS,
    MICROSTRUCTURE_WEIGHTS,
    PRIMARY_OSCILLATOR,
    SCORE_CAPS,
    IndicatorWeight,
    ScoreCaps,
    classify_strength,
    strength_multiplier,
    sub_signal_multiplier,
)
from perp_trading.types import (
    CompositeSignal,
    Direction,
    IndicatorResult,
    MicrostructureSnapshot,
    Side,
    SignalContext,
    SignalType,
    StrengthTier,
)

_BULLISH_TRENDS = {"bullish", "up", "uptrend"}
_BEARISH_TRENDS = {"bearish", "down", "downtrend"}


class SignalGeneratorConfig(BaseModel):
    """Scoring constants for the composite generator."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    qualification_threshold: float = Field(default=75.0, ge=0.0)
    signal_window_seconds: int = Field(default=3600, gt=0)
    buy_sell_dead_band: float = Field(default=0.2, ge=0.0, lt=0.5)
    gate: GateConfig = GateConfig()
    confidence: ConfidenceConfig = ConfidenceConfig()
    quality: QualityFilterConfig = QualityFilterConfig()


@dataclass(frozen=True, slots=True)
class _Vote:
    source: str
    type: str
    direction: Direction | None


@dataclass(slots=True)
class _Tally:
    indicator_score: float = 0.0
    microstructure_score: float = 0.0
    bullish: int = 0
    bearish: int = 0
    neutral: int = 0
    divergences: int = 0
    crossover_side: Side | None = None
    votes: list[_Vote] = field(default_factory=list)

    def vote(self, source: str, signal_type: str, direction: Direction | None) -> None:
        self.votes.append(_Vote(source, signal_type, direction))
        if direction == "bullish":
            self.bullish += 1
        elif direction == "bearish":
            self.bearish += 1
        else:
            self.neutral += 1

    @property
    def conflicting_pairs(self) -> int:
        return min(self.bullish, self.bearish)


class CompositeSignalGenerator:
    """Turns a named indicator set into one authorized/unauthorized signal."""

    def __init__(
        self,
        config: SignalGeneratorConfig | None = None,
        *,
        weights: Mapping[str, IndicatorWeight] | None = None,
        caps: ScoreCaps = SCORE_CAPS,
    ) -> None:
        self._config = config or SignalGeneratorConfig()
        self._weights = dict(weights or INDICATOR_WEIGHTS)
        self._caps = caps
        self._gate = EntryGate(self._config.gate)
        self._confidence = ConfidenceAdjuster(self._config.confidence)

    @property
    def config(self) -> SignalGeneratorConfig:
        return self._config

    def generate(
        self,
        indicators: Mapping[str, IndicatorResult],
        microstructure: MicrostructureSnapshot | None = None,
        context: SignalContext | None = None,
        *,
        now: datetime | None = None,
    ) -> CompositeSignal:
        ctx = context or SignalContext()
        now = now or datetime.now(timezone.utc)
        tally = _Tally()

        primary = indicators.get(PRIMARY_OSCILLATOR)
        if primary is not None and self._is_enabled(PRIMARY_OSCILLATOR):
            self._score_primary(primary, tally)

        for name, result in indicators.items():
            if name == PRIMARY_OSCILLATOR:
                continue
            self._score_indicator(name, result, tally)

        if microstructure is not None:
            self._score_microstructure(microstructure, tally)

        caps = self._caps
        indicator_score = _clip(tally.indicator_score, caps.indicator_score)
        microstructure_score = _clip(tally.microstructure_score, caps.microstructure_score)
        total_score = _clip(indicator_score + microstructure_score, caps.total_score)

        base_confidence = self._base_confidence(indicator_score, tally)
        confidence = self._confidence.adjust(
            base_confidence,
            is_choppy=ctx.is_choppy,
            atr_percent=ctx.atr_percent,
            conflicting_pairs=tally.conflicting_pairs,
        )

        if total_score > 0:
            agreeing = tally.bullish
        elif total_score < 0:
            agreeing = tally.bearish
        else:
            agreeing = 0
        gate_result = self._gate.evaluate(
            GateContext(
                score=total_score,
                prev_score=ctx.prev_score,
                confidence=confidence,
                indicators_agreeing=agreeing,
                total_indicators=len(tally.votes),
                trend_aligned=self._trend_aligned(indicators, total_score, ctx),
                drawdown_pct=ctx.drawdown_pct,
                atr_percent=ctx.atr_percent,
            )
        )

        window = timedelta(seconds=self._config.signal_window_seconds)
        trigger_candle: int | None = None
        window_expires: datetime | None = None
        side = tally.crossover_side
        if side is not None:
            trigger_candle = ctx.candle_index
            window_expires = now + window
        elif total_score > 0:
            side = "long"
        elif total_score < 0:
            side = "short"

        block_reasons = set(gate_result.reasons)
        block_reasons.update(quality_block_reasons(ctx, self._config.quality))
        if abs(total_score) < self._config.qualification_threshold:
            block_reasons.add("score_below_threshold")
        if side is None:
            block_reasons.add("no_side")
        authorized = not block_reasons

        if authorized and trigger_candle is None:
            trigger_candle = ctx.candle_index
            window_expires = now + window

        return CompositeSignal(
            composite_score=total_score,
            authorized=authorized,
            side=side,
            confidence=confidence,
            trigger_candle=trigger_candle,
            window_expires=window_expires,
            indicator_scores={name: float(result.score) for name, result in indicators.items()},
            microstructure_score=microstructure_score,
            block_reasons=frozenset(block_reasons),
            confirmations=len(tally.votes),
            signal_strength=self._strength(total_score, tally),
            signal_type=_signal_type(tally.votes),
            signal_source=tally.votes[0].source if tally.votes else "composite",
            timestamp=now,
        )

    def _is_enabled(self, name: str) -> bool:
        weight = self._weights.get(name)
        return weight is not None and weight.enabled

    def _score_primary(self, result: IndicatorResult, tally: _Tally) -> None:
        base_weight = self._weights[PRIMARY_OSCILLATOR].weight
        for sub in result.sub_signals:
            matched = sub_signal_multiplier(sub.type)
            if matched is None:
                continue
            multiplier, family = matched
            sign = _direction_sign(sub.direction)
            tally.indicator_score += sign * base_weight * multiplier * strength_multiplier(sub.strength)
            tally.vote(f"{PRIMARY_OSCILLATOR}:{family}", sub.type, sub.direction)
            if family == "divergence":
                tally.divergences += 1
            if tally.crossover_side is None and family == "crossover":
                if sub.type == "bullish_crossover":
                    tally.crossover_side = "long"
                elif sub.type == "bearish_crossover":
                    tally.crossover_side = "short"

    def _score_indicator(self, name: str, result: IndicatorResult, tally: _Tally) -> None:
        if not self._is_enabled(name):
            return
        weight = self._weights[name].weight
        sign = _sign(result.score)
        if result.value is not None and result.value != 0:
            tally.indicator_score += sign * weight
        direction: Direction | None = None
        if sign > 0:
            direction = "bullish"
        elif sign < 0:
            direction = "bearish"
        tally.vote(name, result.signal or "generic", direction)

    def _score_microstructure(self, snapshot: MicrostructureSnapshot, tally: _Tally) -> None:
        ratio = snapshot.buy_sell_ratio
        if ratio is not None:
            deviation = ratio - 0.5
            if abs(deviation) > self._config.buy_sell_dead_band:
                tally.microstructure_score += MICROSTRUCTURE_WEIGHTS["buy_sell_ratio"] * deviation * 2
        if snapshot.dom_imbalance is not None:
            tally.microstructure_score += snapshot.dom_imbalance * MICROSTRUCTURE_WEIGHTS["dom"]

    @staticmethod
    def _base_confidence(indicator_score: float, tally: _Tally) -> float:
        confidence = 50.0
        denominator = tally.bullish + tally.bearish + tally.neutral + 1
        confidence += max(tally.bullish, tally.bearish) / denominator * 30

        magnitude = abs(indicator_score)
        if magnitude >= 120:
            confidence += 20
        elif magnitude >= 95:
            confidence += 15
        elif magnitude >= 80:
            confidence += 10
        elif magnitude >= 65:
            confidence += 5

        confidence += min(1.0, len(tally.votes) / 10) * 20
        return confidence

    @staticmethod
    def _strength(total_score: float, tally: _Tally) -> StrengthTier | None:
        if tally.divergences > 0:
            return "extreme"
        return classify_strength(total_score)

    @staticmethod
    def _trend_aligned(
        indicators: Mapping[str, IndicatorResult], score: float, ctx: SignalContext
    ) -> bool:
        ema = indicators.get("ema_trend")
        if ema is None:
            return False
        trend = ema.signal.lower()
        local = (score > 0 and trend in _BULLISH_TRENDS) or (score < 0 and trend in _BEARISH_TRENDS)
        if not local or not ctx.mtf_aligned:
            return False
        if ctx.higher_timeframe_trend is None:
            return True
        return ctx.higher_timeframe_trend == ("up" if score > 0 else "down")


def _clip(value: float, cap: float) -> float:
    return max(-cap, min(cap, value))


def _sign(value: float) -> int:
    if value > 0:
        return 1
    if value < 0:
        return -1
    return 0


def _direction_sign(direction: Direction | None) -> int:
    if direction == "bullish":
        return 1
    if direction == "bearish":
        return -1
    return 0


def _signal_type(votes: list[_Vote]) -> SignalType | None:
    if not votes:
        return None
    for vote in votes:
        lowered = vote.type.lower()
        if "divergence" in lowered:
            return "divergence"
        if "crossover" in lowered:
            return "crossover"
        if "squeeze" in lowered:
            return "squeeze"
        if "golden" in lowered or "death_cross" in lowered:
            return "golden_death_cross"
    for vote in votes:
        lowered = vote.type.lower()
        if "oversold" in lowered:
            return "oversold"
        if "overbought" in lowered:
            return "overbought"
    return "trend"
