"""Entry gate policy: decides whether a qualifying signal may trade."""

from __future__ import annotations

from dataclasses import dataclass, field

from pydantic import BaseModel, ConfigDict, Field

_STRICT_MIN_CONFIDENCE = 90.0


class GateConfig(BaseModel):
    """Entry gate thresholds. Each condition is independently toggleable."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    enabled: bool = True
    strict_mode: bool = False
    dead_zone_min: float = Field(default=20.0, ge=0.0)
    threshold_score: float = Field(default=80.0, ge=0.0)
    threshold_cross_required: bool = False
    min_confidence: float | None = Field(default=70.0, ge=0.0, le=100.0)
    min_indicators_agreeing: int | None = Field(default=4, ge=0)
    confluence_percent_min: float | None = Field(default=0.5, ge=0.0, le=1.0)
    require_trend_alignment: bool = True
    max_drawdown_pct: float | None = Field(default=None, gt=0.0)
    atr_threshold_bump_medium: float = Field(default=5.0, ge=0.0)
    atr_threshold_bump_high: float = Field(default=10.0, ge=0.0)
    atr_medium_percent: float = Field(default=4.0, gt=0.0)
    atr_high_percent: float = Field(default=6.0, gt=0.0)


@dataclass(frozen=True, slots=True)
class GateContext:
    """Snapshot the gate evaluates. Built fresh every cycle."""

    score: float
    prev_score: float
    confidence: float
    indicators_agreeing: int
    total_indicators: int
    trend_aligned: bool
    drawdown_pct: float | None = None
    atr_percent: float | None = None


@dataclass(frozen=True, slots=True)
class GateResult:
    passed: bool
    reasons: tuple[str, ...] = ()
    tolerated: tuple[str, ...] = ()
    applied: bool = True
    threshold_used: float | None = None


@dataclass(slots=True)
class _Checks:
    mandatory: list[str] = field(default_factory=list)
    optional_failed: list[str] = field(default_factory=list)
    optional_evaluated: int = 0

    def optional(self, reason: str, ok: bool) -> None:
        self.optional_evaluated += 1
        if not ok:
            self.optional_failed.append(reason)


class EntryGate:
    """Pure function of a GateContext to a pass/fail verdict with reason tags.

    Mandatory conditions (dead zone, minimum score, drawdown ceiling) always
    block. Optional conditions (threshold cross, confidence, indicator count,
    confluence, trend alignment) must all pass in strict mode; otherwise they
    block only when the failing ones are not outnumbered by the passing ones.
    """

    def __init__(self, config: GateConfig | None = None) -> None:
        self._config = config or GateConfig()

    @property
    def config(self) -> GateConfig:
        return self._config

    def evaluate(self, ctx: GateContext) -> GateResult:
        cfg = self._config
        if not cfg.enabled:
            return GateResult(passed=True, applied=False)

        strict = cfg.strict_mode
        checks = _Checks()
        magnitude = abs(ctx.score)

        if magnitude < cfg.dead_zone_min:
            checks.mandatory.append("dead_zone")

        threshold = self._effective_threshold(ctx.atr_percent)
        if magnitude < threshold:
            checks.mandatory.append("min_score")

        if cfg.max_drawdown_pct is not None and ctx.drawdown_pct is not None:
            if ctx.drawdown_pct > cfg.max_drawdown_pct:
                checks.mandatory.append("max_drawdown")

        if strict or cfg.threshold_cross_required:
            long_cross = ctx.prev_score < threshold <= ctx.score
            short_cross = ctx.prev_score > -threshold >= ctx.score
            checks.optional("threshold_cross", long_cross or short_cross)

        min_confidence = _STRICT_MIN_CONFIDENCE if strict else cfg.min_confidence
        if min_confidence is not None:
            checks.optional("min_confidence", ctx.confidence >= min_confidence)

        if cfg.min_indicators_agreeing is not None:
            checks.optional(
                "min_indicators", ctx.indicators_agreeing >= cfg.min_indicators_agreeing
            )

        if cfg.confluence_percent_min is not None and ctx.total_indicators > 0:
            confluence = ctx.indicators_agreeing / ctx.total_indicators
            checks.optional("confluence_percent", confluence >= cfg.confluence_percent_min)

        if cfg.require_trend_alignment:
            checks.optional("trend_alignment", ctx.trend_aligned)

        failed = checks.optional_failed
        passed_optional = checks.optional_evaluated - len(failed)
        if strict or len(failed) >= passed_optional:
            reasons = [*checks.mandatory, *failed]
            tolerated: list[str] = []
        else:
            reasons = list(checks.mandatory)
            tolerated = list(failed)

        return GateResult(
            passed=not reasons,
            reasons=tuple(reasons),
            tolerated=tuple(tolerated),
            applied=True,
            threshold_used=threshold,
        )

    def _effective_threshold(self, atr_percent: float | None) -> float:
        cfg = self._config
        threshold = cfg.threshold_score
        if atr_percent is not None:
            if atr_percent >= cfg.atr_high_percent:
                threshold += cfg.atr_threshold_bump_high
            elif atr_percent >= cfg.atr_medium_percent:
                threshold += cfg.atr_threshold_bump_medium
        return threshold
