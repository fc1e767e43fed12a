"""Per-setup performance tracking and the adaptive kill-switch."""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Iterable

from pydantic import BaseModel, ConfigDict, Field

from perp_trading.utils.logging import get_logger, log_risk_event

NO_LOSS_PROFIT_FACTOR = 999.0


class FeatureHealthConfig(BaseModel):
    """Kill-switch floors and ceilings. Drawdown is percent of compounded equity."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    enabled: bool = True
    window_trades: int = Field(default=8, ge=1)
    min_trades: int = Field(default=4, ge=1)
    min_expectancy: float = -0.1
    min_profit_factor: float = Field(default=0.8, ge=0.0)
    max_drawdown: float = Field(default=2.5, gt=0.0)
    cooldown_minutes: float = Field(default=240.0, gt=0.0)
    lifetime_min_trades: int = Field(default=20, ge=1)
    lifetime_min_expectancy: float = 0.0
    lifetime_min_profit_factor: float = Field(default=1.0, ge=0.0)
    lifetime_cooldown_minutes: float = Field(default=1440.0, gt=0.0)
    allowlist: frozenset[str] = frozenset()
    denylist: frozenset[str] = frozenset()


def feature_key(signal_type: str | None, strength: str | None, regime: str) -> str:
    return f"{signal_type or 'trend'}:{strength or 'none'}:{regime}"


@dataclass(frozen=True, slots=True)
class WindowMetrics:
    trades: int
    expectancy: float
    profit_factor: float
    max_drawdown: float


def window_metrics(outcomes: Iterable[float]) -> WindowMetrics:
    values = list(outcomes)
    if not values:
        return WindowMetrics(trades=0, expectancy=0.0, profit_factor=0.0, max_drawdown=0.0)
    gross_profit = sum(v for v in values if v > 0)
    gross_loss = -sum(v for v in values if v < 0)
    equity = peak = 100.0
    max_drawdown = 0.0
    for pnl in values:
        equity *= 1 + pnl / 100
        peak = max(peak, equity)
        max_drawdown = max(max_drawdown, (peak - equity) / peak * 100)
    if gross_loss > 0:
        profit_factor = gross_profit / gross_loss
    else:
        profit_factor = NO_LOSS_PROFIT_FACTOR if gross_profit > 0 else 0.0
    return WindowMetrics(
        trades=len(values),
        expectancy=sum(values) / len(values),
        profit_factor=profit_factor,
        max_drawdown=max_drawdown,
    )


@dataclass(slots=True)
class FeaturePerformance:
    """Outcome history for one feature key. Created lazily, never deleted."""

    key: str
    window: int
    trades: int = 0
    wins: int = 0
    losses: int = 0
    total_pnl_percent: float = 0.0
    gross_win: float = 0.0
    gross_loss: float = 0.0
    recent_outcomes: deque[float] = field(init=False)
    disabled_until: datetime | None = None
    disabled_reason: str | None = None

    def __post_init__(self) -> None:
        self.recent_outcomes = deque(maxlen=self.window)

    @property
    def avg_win(self) -> float:
        return self.gross_win / self.wins if self.wins else 0.0

    @property
    def avg_loss(self) -> float:
        return self.gross_loss / self.losses if self.losses else 0.0

    @property
    def expectancy_percent(self) -> float:
        return self.total_pnl_percent / self.trades if self.trades else 0.0

    @property
    def profit_factor(self) -> float:
        if self.gross_loss > 0:
            return self.gross_win / self.gross_loss
        return NO_LOSS_PROFIT_FACTOR if self.gross_win > 0 else 0.0

    def add(self, pnl_percent: float) -> None:
        self.trades += 1
        self.total_pnl_percent += pnl_percent
        if pnl_percent > 0:
            self.wins += 1
            self.gross_win += pnl_percent
        elif pnl_percent < 0:
            self.losses += 1
            self.gross_loss += -pnl_percent
        self.recent_outcomes.append(pnl_percent)

    def snapshot(self) -> dict[str, object]:
        return {
            "key": self.key,
            "trades": self.trades,
            "wins": self.wins,
            "losses": self.losses,
            "expectancy_percent": round(self.expectancy_percent, 4),
            "profit_factor": round(self.profit_factor, 4),
            "disabled_until": self.disabled_until.isoformat() if self.disabled_until else None,
            "disabled_reason": self.disabled_reason,
        }


class FeaturePerformanceTracker:
    """Records realized outcomes per feature key and disables degrading setups.

    Two triggers run after every outcome: a rolling-window check over the last
    ``window_trades`` outcomes and a slower lifetime check. Each sets its own
    cooldown; when both fire on the same outcome the lifetime one is applied
    last and wins.
    """

    def __init__(self, config: FeatureHealthConfig | None = None) -> None:
        self._config = config or FeatureHealthConfig()
        self._stats: dict[str, FeaturePerformance] = {}
        self._lock = threading.Lock()
        self._logger = get_logger("perp_trading.execution.features")

    @property
    def config(self) -> FeatureHealthConfig:
        return self._config

    def get(self, key: str) -> FeaturePerformance | None:
        return self._stats.get(key)

    def snapshot(self) -> list[dict[str, object]]:
        with self._lock:
            return [stats.snapshot() for stats in self._stats.values()]

    def record_outcome(
        self, key: str, pnl_percent: float, *, now: datetime | None = None
    ) -> FeaturePerformance:
        now = now or datetime.now(timezone.utc)
        cfg = self._config
        with self._lock:
            stats = self._stats.get(key)
            if stats is None:
                stats = FeaturePerformance(key=key, window=cfg.window_trades)
                self._stats[key] = stats
            stats.add(pnl_percent)
            if cfg.enabled:
                self._evaluate(stats, now)
        return stats

    def _evaluate(self, stats: FeaturePerformance, now: datetime) -> None:
        cfg = self._config
        rolling = window_metrics(stats.recent_outcomes)
        if rolling.trades >= cfg.min_trades:
            breaches = []
            if rolling.expectancy < cfg.min_expectancy:
                breaches.append(f"expectancy {rolling.expectancy:.3f}% < {cfg.min_expectancy}%")
            if rolling.profit_factor < cfg.min_profit_factor:
                breaches.append(f"profit factor {rolling.profit_factor:.2f} < {cfg.min_profit_factor}")
            if rolling.max_drawdown > cfg.max_drawdown:
                breaches.append(f"drawdown {rolling.max_drawdown:.2f}% > {cfg.max_drawdown}%")
            if breaches:
                self._disable(stats, now + timedelta(minutes=cfg.cooldown_minutes), "rolling: " + "; ".join(breaches))

        if stats.trades >= cfg.lifetime_min_trades:
            if (
                stats.expectancy_percent < cfg.lifetime_min_expectancy
                or stats.profit_factor < cfg.lifetime_min_profit_factor
            ):
                self._disable(
                    stats,
                    now + timedelta(minutes=cfg.lifetime_cooldown_minutes),
                    f"lifetime: expectancy {stats.expectancy_percent:.3f}%, "
                    f"profit factor {stats.profit_factor:.2f}",
                )

    def _disable(self, stats: FeaturePerformance, until: datetime, reason: str) -> None:
        stats.disabled_until = until
        stats.disabled_reason = reason
        log_risk_event(
            self._logger,
            event_type="feature_killswitch",
            action="disable",
            feature_key=stats.key,
            disabled_until=until.isoformat(),
            reason=reason,
        )

    def is_disabled(self, key: str, *, now: datetime | None = None) -> bool:
        """Denylist always blocks; allowlist overrides an active cooldown."""
        cfg = self._config
        if key in cfg.denylist:
            return True
        if key in cfg.allowlist:
            return False
        stats = self._stats.get(key)
        if stats is None or stats.disabled_until is None:
            return False
        now = now or datetime.now(timezone.utc)
        return now < stats.disabled_until
