"""Confidence adjustment for market conditions."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class ConfidenceConfig(BaseModel):
    """Penalties applied to base confidence. Enabled by default."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    enabled: bool = True
    chop_penalty: float = Field(default=5.0, ge=0.0)
    vol_penalty_high: float = Field(default=6.0, ge=0.0)
    vol_penalty_medium: float = Field(default=3.0, ge=0.0)
    conflict_penalty_per_pair: float = Field(default=2.0, ge=0.0)
    vol_high_threshold: float = Field(default=6.0, gt=0.0)
    vol_medium_threshold: float = Field(default=4.0, gt=0.0)


class ConfidenceAdjuster:
    """Subtracts chop, volatility and conflict penalties, then clamps to [0, 100]."""

    def __init__(self, config: ConfidenceConfig | None = None) -> None:
        self._config = config or ConfidenceConfig()

    @property
    def config(self) -> ConfidenceConfig:
        return self._config

    def adjust(
        self,
        base_confidence: float,
        *,
        is_choppy: bool = False,
        atr_percent: float | None = None,
        conflicting_pairs: int = 0,
    ) -> float:
        confidence = float(base_confidence or 0.0)
        cfg = self._config
        if cfg.enabled:
            if is_choppy:
                confidence -= cfg.chop_penalty
            if atr_percent is not None:
                if atr_percent >= cfg.vol_high_threshold:
                    confidence -= cfg.vol_penalty_high
                elif atr_percent >= cfg.vol_medium_threshold:
                    confidence -= cfg.vol_penalty_medium
            if conflicting_pairs > 0:
                confidence -= conflicting_pairs * cfg.conflict_penalty_per_pair
        return max(0.0, min(100.0, confidence))

    def volatility_regime(self, atr_percent: float) -> Literal["LOW", "MEDIUM", "HIGH"]:
        if atr_percent < 2:
            return "LOW"
        if atr_percent < self._config.vol_medium_threshold:
            return "MEDIUM"
        return "HIGH"
