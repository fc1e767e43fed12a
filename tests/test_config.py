from __future__ import annotations

import pytest
from pydantic import ValidationError

from perp_trading.config import RunMode, Settings, parse_csv, parse_regime_policy
from perp_trading.errors import ConfigurationError


def _settings(**overrides: object) -> Settings:
    return Settings(_env_file=None, journal_dir="data/journal", **overrides)  # type: ignore[call-arg]


def test_parse_csv() -> None:
    assert parse_csv(" BTCUSDT, ,ETHUSDT ") == ("BTCUSDT", "ETHUSDT")
    assert parse_csv("") == ()


def test_parse_regime_policy() -> None:
    policy = parse_regime_policy("trend=trending|volatile, squeeze=volatile")
    assert policy == {
        "trend": frozenset({"trending", "volatile"}),
        "squeeze": frozenset({"volatile"}),
    }
    with pytest.raises(ConfigurationError):
        parse_regime_policy("trend")
    with pytest.raises(ConfigurationError, match="sideways"):
        parse_regime_policy("trend=sideways")


def test_engine_config_reflects_settings() -> None:
    config = _settings(
        trading_universe="BTCUSDT,ETHUSDT",
        denylist_symbols="DOGEUSDT",
        leverage_max=20,
        gate_strict_mode=True,
        signal_type_regime_policy="trend=trending",
        feature_denylist="squeeze:strong:volatile",
    ).build_engine_config()

    assert config.trading_universe == ("BTCUSDT", "ETHUSDT")
    assert config.denylist_symbols == ("DOGEUSDT",)
    assert config.risk.leverage_max == 20
    assert config.signal.gate.strict_mode
    assert config.execution.signal_type_regimes["trend"] == frozenset({"trending"})
    assert config.execution.signal_type_regimes["squeeze"] == frozenset({"volatile"})
    assert config.features.denylist == frozenset({"squeeze:strong:volatile"})
    assert config.execution.mode == "paper"


def test_engine_config_is_immutable() -> None:
    config = _settings().build_engine_config()
    with pytest.raises(ValidationError):
        config.idempotency_window_seconds = 1.0  # type: ignore[misc]


def test_invalid_engine_config_is_rejected() -> None:
    with pytest.raises(ConfigurationError, match="ALLOWED_REGIMES"):
        _settings(allowed_regimes="trending,sideways").build_engine_config()
    with pytest.raises(ConfigurationError, match="LEVERAGE_MIN"):
        _settings(leverage_min=30, leverage_max=20).build_engine_config()


def test_live_mode_requires_credentials() -> None:
    settings = _settings(mode=RunMode.LIVE)
    assert settings.validate_for_live() == [
        "KUCOIN_API_KEY",
        "KUCOIN_API_SECRET",
        "KUCOIN_API_PASSPHRASE",
    ]
    with pytest.raises(ConfigurationError, match="live mode requires"):
        settings.require_live_ready()

    _settings().require_live_ready()


def test_live_mode_rejects_unknown_endpoint() -> None:
    settings = _settings(
        mode="live",
        kucoin_api_key="k",
        kucoin_api_secret="s",
        kucoin_api_passphrase="p",
        kucoin_base_url="https://proxy.example.com",
    )
    assert settings.validate_for_live() == ["KUCOIN_BASE_URL (not in allow-list)"]


def test_empty_store_path_disables_persistence() -> None:
    assert _settings(idempotency_store_path="").idempotency_store_path is None


def test_quality_filters_and_loss_cooldown_are_configurable() -> None:
    config = _settings(
        quality_filters_enabled=False,
        max_signal_atr_percent=6.5,
        min_signal_volume=250.0,
        max_spread_bps=12.0,
        loss_cooldown_minutes=45.0,
    ).build_engine_config()

    quality = config.signal.quality
    assert not quality.enabled
    assert quality.max_atr_percent == 6.5
    assert quality.min_volume == 250.0
    assert quality.max_spread_bps == 12.0
    assert config.execution.loss_cooldown_minutes == 45.0
