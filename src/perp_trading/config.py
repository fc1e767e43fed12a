"""Settings loading from environment variables and the ``.env`` file."""

from enum import Enum
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from perp_trading.errors import ConfigurationError
from perp_trading.execution.features import FeatureHealthConfig
from perp_trading.execution.machine import DEFAULT_SIGNAL_TYPE_REGIMES, ExecutionConfig
from perp_trading.exchange.kucoin import ALLOWED_BASE_URLS, KUCOIN_FUTURES_URL
from perp_trading.risk.controller import RiskConfig
from perp_trading.signals.composite import SignalGeneratorConfig
from perp_trading.signals.confidence import ConfidenceConfig
from perp_trading.signals.gates import GateConfig
from perp_trading.signals.quality import QualityFilterConfig

_REGIMES = ("trending", "ranging", "volatile")


class RunMode(str, Enum):
    PAPER = "paper"
    LIVE = "live"


class LogFormat(str, Enum):
    JSON = "json"
    CONSOLE = "console"


def parse_csv(value: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in value.split(",") if item.strip())


def parse_regime_policy(value: str) -> dict[str, frozenset]:
    """``trend=trending|volatile,squeeze=volatile`` -> {type: {regimes}}."""
    policy: dict[str, frozenset] = {}
    for item in parse_csv(value):
        name, sep, regimes = item.partition("=")
        if not sep:
            raise ConfigurationError(f"invalid signal type regime policy entry: {item}")
        allowed = frozenset(r.strip() for r in regimes.split("|") if r.strip())
        unknown = allowed.difference(_REGIMES)
        if unknown:
            raise ConfigurationError(f"unknown regimes in policy: {sorted(unknown)}")
        policy[name.strip()] = allowed
    return policy


class EngineConfig(BaseModel):
    """Fully resolved, immutable configuration handed to the core."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    signal: SignalGeneratorConfig = SignalGeneratorConfig()
    risk: RiskConfig = RiskConfig()
    execution: ExecutionConfig = ExecutionConfig()
    features: FeatureHealthConfig = FeatureHealthConfig()
    trading_universe: tuple[str, ...] = ()
    denylist_symbols: tuple[str, ...] = ()
    idempotency_window_seconds: float = Field(default=300.0, gt=0.0)


class Settings(BaseSettings):
    """Runtime settings.

    List-valued settings are comma-separated strings so they can be set
    directly from the environment.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==================== Run mode ====================
    mode: RunMode = Field(default=RunMode.PAPER, description="paper or live")

    # ==================== KuCoin Futures ====================
    kucoin_api_key: str = Field(default="", description="KuCoin API key")
    kucoin_api_secret: str = Field(default="", description="KuCoin API secret")
    kucoin_api_passphrase: str = Field(default="", description="KuCoin API passphrase")
    kucoin_key_version: str = Field(default="2", description="KC-API-KEY-VERSION header")
    kucoin_base_url: str = Field(default=KUCOIN_FUTURES_URL, description="Futures REST endpoint")
    http_timeout: float = Field(default=10.0, gt=0.0, le=60.0)

    # ==================== Universe ====================
    trading_universe: str = Field(default="", description="Comma separated symbols; empty allows all")
    denylist_symbols: str = Field(default="", description="Comma separated denied symbols")
    kline_interval: str = Field(default="15m", description="Kline granularity")
    kline_limit: int = Field(default=200, ge=60, le=500)
    max_workers: int = Field(default=4, ge=1, le=32)
    loop_interval_seconds: int = Field(default=60, ge=5)

    # ==================== Signal generation ====================
    qualification_threshold: float = Field(default=75.0, ge=0.0, le=220.0)
    signal_window_seconds: int = Field(default=3600, gt=0)
    gate_enabled: bool = True
    gate_strict_mode: bool = False
    gate_dead_zone_min: float = Field(default=20.0, ge=0.0)
    gate_threshold_score: float = Field(default=80.0, ge=0.0)
    gate_threshold_cross_required: bool = False
    gate_min_confidence: float = Field(default=70.0, ge=0.0, le=100.0)
    gate_min_indicators_agreeing: int = Field(default=4, ge=0)
    gate_confluence_percent_min: float = Field(default=0.5, ge=0.0, le=1.0)
    gate_require_trend_alignment: bool = True
    gate_max_drawdown_pct: float | None = Field(default=None, gt=0.0)
    confidence_adjustment_enabled: bool = True
    quality_filters_enabled: bool = True
    max_signal_atr_percent: float = Field(default=8.0, gt=0.0)
    min_signal_volume: float = Field(default=1000.0, ge=0.0)
    max_spread_bps: float = Field(default=25.0, gt=0.0)

    # ==================== Risk ====================
    max_drawdown_pct: float = Field(default=10.0, gt=0.0, le=100.0)
    max_risk_per_trade: float = Field(default=0.02, gt=0.0, le=0.5)
    min_position_size: float = Field(default=1.0, ge=0.0)
    max_exposure_ratio: float = Field(default=1.0, gt=0.0)
    max_positions_paper: int = Field(default=10, ge=1)
    max_positions_live: int = Field(default=5, ge=1)
    leverage_min: int = Field(default=5, ge=1)
    leverage_max: int = Field(default=50, ge=1, le=125)
    stop_loss_roi: float = Field(default=10.0, gt=0.0)
    take_profit_roi: float = Field(default=30.0, gt=0.0)
    break_even_activation: float = Field(default=8.0, ge=0.0)
    break_even_buffer: float = Field(default=1.0, ge=0.0)
    trailing_activation: float = Field(default=12.0, ge=0.0)
    trailing_distance: float = Field(default=4.0, gt=0.0)

    # ==================== Execution ====================
    min_signal_confidence: float = Field(default=60.0, ge=0.0, le=100.0)
    allowed_regimes: str = Field(default="trending,ranging,volatile")
    signal_type_regime_policy: str = Field(default="", description="type=regime|regime,...")
    premise_break_score: float = Field(default=100.0, ge=0.0)
    premise_break_window_minutes: float = Field(default=60.0, ge=0.0)
    time_invalidation_minutes: float = Field(default=240.0, gt=0.0)
    time_invalidation_min_roi: float = 2.0
    partial_take_profit_roi: float = Field(default=15.0, gt=0.0)
    partial_take_profit_fraction: float = Field(default=0.5, gt=0.0, lt=1.0)
    reversal_score: float = Field(default=100.0, ge=0.0)
    loss_cooldown_minutes: float = Field(default=30.0, ge=0.0)
    idempotency_window_seconds: float = Field(default=300.0, gt=0.0)
    idempotency_store_path: Path | None = Field(default=Path("data/idempotency-store.json"))

    # ==================== Feature kill-switch ====================
    killswitch_enabled: bool = True
    killswitch_window_trades: int = Field(default=8, ge=1)
    killswitch_min_trades: int = Field(default=4, ge=1)
    killswitch_min_expectancy: float = -0.1
    killswitch_min_profit_factor: float = Field(default=0.8, ge=0.0)
    killswitch_max_drawdown: float = Field(default=2.5, gt=0.0)
    killswitch_cooldown_minutes: float = Field(default=240.0, gt=0.0)
    min_feature_sample: int = Field(default=20, ge=1)
    lifetime_cooldown_minutes: float = Field(default=1440.0, gt=0.0)
    feature_allowlist: str = ""
    feature_denylist: str = ""

    # ==================== Paper exchange ====================
    paper_initial_balance: float = Field(default=10_000.0, gt=0.0)
    paper_slippage_bps: float = Field(default=2.0, ge=0.0, le=100.0)

    # ==================== Logging ====================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_format: LogFormat = Field(default=LogFormat.CONSOLE)

    # ==================== Storage ====================
    journal_dir: Path = Field(default=Path("data/journal"))

    @field_validator("journal_dir", mode="before")
    @classmethod
    def parse_journal_dir(cls, v: str | Path) -> Path:
        return Path(v) if isinstance(v, str) else v

    @field_validator("idempotency_store_path", mode="before")
    @classmethod
    def parse_store_path(cls, v: str | Path | None) -> Path | None:
        if v is None or (isinstance(v, str) and not v.strip()):
            return None
        return Path(v) if isinstance(v, str) else v

    def ensure_directories(self) -> None:
        self.journal_dir.mkdir(parents=True, exist_ok=True)

    @property
    def is_paper_mode(self) -> bool:
        return self.mode == RunMode.PAPER

    @property
    def is_live_mode(self) -> bool:
        return self.mode == RunMode.LIVE

    @property
    def universe(self) -> tuple[str, ...]:
        return parse_csv(self.trading_universe)

    @property
    def denylist(self) -> tuple[str, ...]:
        return parse_csv(self.denylist_symbols)

    def validate_for_live(self) -> list[str]:
        """List missing or invalid settings for live trading."""
        missing = []
        if not self.kucoin_api_key:
            missing.append("KUCOIN_API_KEY")
        if not self.kucoin_api_secret:
            missing.append("KUCOIN_API_SECRET")
        if not self.kucoin_api_passphrase:
            missing.append("KUCOIN_API_PASSPHRASE")
        if self.kucoin_base_url.rstrip("/") not in ALLOWED_BASE_URLS:
            missing.append("KUCOIN_BASE_URL (not in allow-list)")
        return missing

    def require_live_ready(self) -> None:
        if not self.is_live_mode:
            return
        missing = self.validate_for_live()
        if missing:
            raise ConfigurationError(f"live mode requires {', '.join(missing)}")

    def build_engine_config(self) -> EngineConfig:
        """Resolve settings into the frozen configuration the core consumes."""
        regimes = frozenset(parse_csv(self.allowed_regimes))
        unknown = regimes.difference(_REGIMES)
        if unknown:
            raise ConfigurationError(f"unknown regimes in ALLOWED_REGIMES: {sorted(unknown)}")
        type_policy = dict(DEFAULT_SIGNAL_TYPE_REGIMES)
        type_policy.update(parse_regime_policy(self.signal_type_regime_policy))

        signal = SignalGeneratorConfig(
            qualification_threshold=self.qualification_threshold,
            signal_window_seconds=self.signal_window_seconds,
            gate=GateConfig(
                enabled=self.gate_enabled,
                strict_mode=self.gate_strict_mode,
                dead_zone_min=self.gate_dead_zone_min,
                threshold_score=self.gate_threshold_score,
                threshold_cross_required=self.gate_threshold_cross_required,
                min_confidence=self.gate_min_confidence,
                min_indicators_agreeing=self.gate_min_indicators_agreeing,
                confluence_percent_min=self.gate_confluence_percent_min,
                require_trend_alignment=self.gate_require_trend_alignment,
                max_drawdown_pct=self.gate_max_drawdown_pct,
            ),
            confidence=ConfidenceConfig(enabled=self.confidence_adjustment_enabled),
            quality=QualityFilterConfig(
                enabled=self.quality_filters_enabled,
                max_atr_percent=self.max_signal_atr_percent,
                min_volume=self.min_signal_volume,
                max_spread_bps=self.max_spread_bps,
            ),
        )
        risk = RiskConfig(
            max_drawdown_pct=self.max_drawdown_pct,
            max_risk_per_trade=self.max_risk_per_trade,
            min_position_size=self.min_position_size,
            max_exposure_ratio=self.max_exposure_ratio,
            max_positions_paper=self.max_positions_paper,
            max_positions_live=self.max_positions_live,
            leverage_min=self.leverage_min,
            leverage_max=self.leverage_max,
            stop_loss_roi=self.stop_loss_roi,
            take_profit_roi=self.take_profit_roi,
            break_even_activation=self.break_even_activation,
            break_even_buffer=self.break_even_buffer,
            trailing_activation=self.trailing_activation,
            trailing_distance=self.trailing_distance,
        )
        if risk.leverage_min > risk.leverage_max:
            raise ConfigurationError("LEVERAGE_MIN must not exceed LEVERAGE_MAX")
        execution = ExecutionConfig(
            mode=self.mode.value,
            min_confidence=self.min_signal_confidence,
            allowed_regimes=regimes,
            signal_type_regimes=type_policy,
            premise_break_score=self.premise_break_score,
            premise_break_window_minutes=self.premise_break_window_minutes,
            time_invalidation_minutes=self.time_invalidation_minutes,
            time_invalidation_min_roi=self.time_invalidation_min_roi,
            partial_take_profit_roi=self.partial_take_profit_roi,
            partial_take_profit_fraction=self.partial_take_profit_fraction,
            reversal_score=self.reversal_score,
            loss_cooldown_minutes=self.loss_cooldown_minutes,
        )
        features = FeatureHealthConfig(
            enabled=self.killswitch_enabled,
            window_trades=self.killswitch_window_trades,
            min_trades=self.killswitch_min_trades,
            min_expectancy=self.killswitch_min_expectancy,
            min_profit_factor=self.killswitch_min_profit_factor,
            max_drawdown=self.killswitch_max_drawdown,
            cooldown_minutes=self.killswitch_cooldown_minutes,
            lifetime_min_trades=self.min_feature_sample,
            lifetime_cooldown_minutes=self.lifetime_cooldown_minutes,
            allowlist=frozenset(parse_csv(self.feature_allowlist)),
            denylist=frozenset(parse_csv(self.feature_denylist)),
        )
        return EngineConfig(
            signal=signal,
            risk=risk,
            execution=execution,
            features=features,
            trading_universe=self.universe,
            denylist_symbols=self.denylist,
            idempotency_window_seconds=self.idempotency_window_seconds,
        )


_settings: Settings | None = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    global _settings
    _settings = Settings()
    return _settings
