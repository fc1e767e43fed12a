"""Indicator weights, multipliers, score caps and classification bands."""

from __future__ import annotations

from dataclasses import dataclass

from perp_trading.types import StrengthTier


@dataclass(frozen=True, slots=True)
class IndicatorWeight:
    weight: float
    enabled: bool = True


INDICATOR_WEIGHTS: dict[str, IndicatorWeight] = {
    "rsi": IndicatorWeight(40),
    "stochastic": IndicatorWeight(35),
    "kdj": IndicatorWeight(35),
    "williams_r": IndicatorWeight(28),
    "bollinger": IndicatorWeight(30),
    "ema_trend": IndicatorWeight(25),
    "klinger": IndicatorWeight(25),
    "ao": IndicatorWeight(25),
    "adx": IndicatorWeight(20),
    "macd": IndicatorWeight(18),
    "obv": IndicatorWeight(18),
    "stoch_rsi": IndicatorWeight(18),
    "cmf": IndicatorWeight(15),
}

MICROSTRUCTURE_WEIGHTS: dict[str, float] = {
    "buy_sell_ratio": 18.0,
    "dom": 18.0,
}

PRIMARY_OSCILLATOR = "williams_r"

# Sub-signal type multipliers, matched by substring in this order.
SIGNAL_TYPE_MULTIPLIERS: tuple[tuple[str, float, str], ...] = (
    ("divergence", 1.5, "divergence"),
    ("crossover", 1.3, "crossover"),
    ("oversold", 1.2, "zone_extreme"),
    ("overbought", 1.2, "zone_extreme"),
    ("thrust", 1.0, "momentum"),
    ("momentum", 1.0, "momentum"),
    ("zone", 0.85, "zone"),
    ("hook", 0.85, "zone"),
)

STRENGTH_MULTIPLIERS: dict[str, float] = {
    "weak": 0.3,
    "moderate": 0.6,
    "strong": 1.0,
    "very_strong": 1.5,
    "extreme": 1.3,
}


@dataclass(frozen=True, slots=True)
class ScoreCaps:
    indicator_score: float = 200.0
    microstructure_score: float = 35.0
    total_score: float = 220.0


SCORE_CAPS = ScoreCaps()

# (minimum |score|, tier), checked from the top.
STRENGTH_BANDS: tuple[tuple[float, StrengthTier], ...] = (
    (130.0, "extreme"),
    (95.0, "strong"),
    (65.0, "moderate"),
    (40.0, "weak"),
)

STRENGTH_RANK: dict[str | None, int] = {
    None: 0,
    "weak": 1,
    "moderate": 2,
    "strong": 3,
    "extreme": 4,
}


def classify_strength(score: float) -> StrengthTier | None:
    """Map a composite score magnitude to its strength tier."""
    magnitude = abs(score)
    for minimum, tier in STRENGTH_BANDS:
        if magnitude >= minimum:
            return tier
    return None


def sub_signal_multiplier(signal_type: str) -> tuple[float, str] | None:
    """Return (multiplier, family) for an oscillator sub-signal type."""
    lowered = signal_type.lower()
    for needle, multiplier, family in SIGNAL_TYPE_MULTIPLIERS:
        if needle in lowered:
            return multiplier, family
    return None


def strength_multiplier(strength: str | None) -> float:
    if strength is None:
        return 1.0
    return STRENGTH_MULTIPLIERS.get(strength, 1.0)


def recommended_leverage(score: float, confidence: float) -> int:
    """Raw leverage suggestion from score band scaled by confidence."""
    magnitude = abs(score)
    conf = confidence / 100.0
    if magnitude < 40:
        return 0
    if magnitude >= 130:
        return round(50 * conf)
    if magnitude >= 95:
        return round(30 * conf)
    if magnitude >= 65:
        return round(15 * conf)
    return round(10 * conf)
