"""Market-quality filters applied before a signal is authorized."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from perp_trading.types import SignalContext


class QualityFilterConfig(BaseModel):
    """Ceilings on volatility and spread, floor on last-candle volume."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    enabled: bool = True
    max_atr_percent: float = Field(default=8.0, gt=0.0)
    min_volume: float = Field(default=1000.0, ge=0.0)
    max_spread_bps: float = Field(default=25.0, gt=0.0)


def spread_bps(best_bid: float | None, best_ask: float | None) -> float | None:
    """Bid/ask spread in basis points of the mid; None for a missing or crossed book."""
    if not best_bid or not best_ask or best_bid <= 0 or best_ask <= best_bid:
        return None
    mid = (best_bid + best_ask) / 2
    return (best_ask - best_bid) / mid * 10_000


def quality_block_reasons(ctx: SignalContext, config: QualityFilterConfig) -> set[str]:
    if not config.enabled:
        return set()
    reasons: set[str] = set()
    if ctx.atr_percent is not None and ctx.atr_percent > config.max_atr_percent:
        reasons.add("volatility_too_high")
    if ctx.last_volume is not None and ctx.last_volume < config.min_volume:
        reasons.add("low_liquidity")
    if ctx.spread_bps is not None and ctx.spread_bps > config.max_spread_bps:
        reasons.add("spread_too_wide")
    return reasons
