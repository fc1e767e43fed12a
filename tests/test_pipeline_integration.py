from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pandas as pd

from perp_trading.config import Settings
from perp_trading.errors import ExternalCallFailure
from perp_trading.execution import OpenPositionAction
from perp_trading.pipeline import TradingEngine, run_trading_cycle
from perp_trading.types import OrderIntent


def _build_ohlcv(rows: int, start_price: float, drift: float) -> pd.DataFrame:
    start = datetime(2026, 1, 1, tzinfo=UTC)
    closes = [start_price + i * drift for i in range(rows)]
    return pd.DataFrame(
        {
            "open_time": [start + timedelta(minutes=15 * i) for i in range(rows)],
            "open": closes,
            "high": [c + 5 for c in closes],
            "low": [c - 5 for c in closes],
            "close": closes,
            "volume": [1000.0 for _ in range(rows)],
        }
    )


class _FakeMarketData:
    def __init__(self, *, rows: int = 200, failures: dict[str, Exception] | None = None) -> None:
        self.rows = rows
        self.failures = failures or {}

    def fetch_ohlcv(self, symbol: str, interval: str, limit: int) -> pd.DataFrame:
        if symbol in self.failures:
            raise self.failures[symbol]
        return _build_ohlcv(min(self.rows, limit), 40_000, 30)

    def fetch_funding_rate(self, symbol: str) -> float | None:
        return 0.0001

    def fetch_last_price(self, symbol: str) -> float | None:
        return 45_970.0

    def fetch_spread_bps(self, symbol: str) -> float | None:
        return None


def _settings(tmp_path: Path, **overrides: object) -> Settings:
    return Settings(  # type: ignore[call-arg]
        _env_file=None,
        journal_dir=tmp_path,
        idempotency_store_path=None,
        trading_universe="BTCUSDT,ETHUSDT",
        **overrides,
    )


def _event_types(engine: TradingEngine) -> list[str]:
    return [row["event_type"] for row in engine.journal.load_recent(200)]


def test_dry_run_journals_full_cycle(tmp_path: Path) -> None:
    engine = TradingEngine(_settings(tmp_path), market_data=_FakeMarketData())

    result = engine.run(dry_run=True)

    assert result.status == "completed_dry_run"
    assert len(result.decisions) == 2
    assert result.orders == []
    assert engine.exchange.list_positions() == []
    types = _event_types(engine)
    assert types[0] == "cycle_start"
    assert types[-1] == "cycle_end"
    for expected in ("signal", "risk_check", "decision"):
        assert types.count(expected) == 2


def test_live_cycle_dispatches_every_decision(tmp_path: Path) -> None:
    engine = TradingEngine(_settings(tmp_path), market_data=_FakeMarketData())
    result = engine.run()
    assert result.status == "completed"
    assert len(result.orders) == 2


def test_data_problems_do_not_fail_the_cycle(tmp_path: Path) -> None:
    market = _FakeMarketData(failures={"ETHUSDT": ExternalCallFailure("timeout")})
    engine = TradingEngine(_settings(tmp_path), market_data=market)

    result = engine.run(dry_run=True)

    assert result.status == "completed_dry_run"
    assert result.warnings == ["ETHUSDT: timeout"]
    assert len(result.decisions) == 1


def test_short_history_is_skipped(tmp_path: Path) -> None:
    engine = TradingEngine(_settings(tmp_path), market_data=_FakeMarketData(rows=30))
    outcome = engine.run_cycle("BTCUSDT", dry_run=True)
    assert outcome.status == "insufficient_data"
    assert outcome.decision is None


def test_unexpected_symbol_error_is_contained(tmp_path: Path) -> None:
    market = _FakeMarketData(failures={"BTCUSDT": RuntimeError("boom")})
    engine = TradingEngine(_settings(tmp_path), market_data=market)

    result = engine.run(dry_run=True)

    assert result.status == "partial"
    assert "BTCUSDT: boom" in result.warnings
    errors = [row for row in engine.journal.load_recent(200) if row["event_type"] == "error"]
    assert errors[0]["payload"] == {"symbol": "BTCUSDT", "error": "boom"}


def test_symbol_outside_universe_waits(tmp_path: Path) -> None:
    engine = TradingEngine(_settings(tmp_path), market_data=_FakeMarketData())
    outcome = engine.run_cycle("DOGE-USDT")
    assert outcome.status == "policy_rejected"
    assert outcome.decision is not None
    assert outcome.decision["kind"] == "wait"
    assert outcome.decision["code"] == "E_SYMBOL_NOT_ALLOWED"


def test_circuit_breaker_survives_restart(tmp_path: Path) -> None:
    engine = TradingEngine(_settings(tmp_path), market_data=_FakeMarketData())
    engine.risk.trip_circuit_breaker("operator halt")
    engine.run(dry_run=True)

    restarted = TradingEngine(_settings(tmp_path), market_data=_FakeMarketData())
    assert restarted.risk.circuit_breaker_active
    assert restarted.risk.state.circuit_breaker_reason == "operator halt"

    restarted.reset_circuit_breaker()
    again = TradingEngine(_settings(tmp_path), market_data=_FakeMarketData())
    assert not again.risk.circuit_breaker_active


def test_position_closed_by_exchange_releases_lifecycle(tmp_path: Path) -> None:
    engine = TradingEngine(_settings(tmp_path), market_data=_FakeMarketData())
    engine.machine.on_position_opened(
        OpenPositionAction(
            symbol="BTCUSDT",
            side="long",
            size=10.0,
            leverage=20,
            idempotency_key="signal:BTCUSDT:long:1",
            feature_key="trend:strong:trending",
            regime="trending",
            score=110.0,
            confidence=80.0,
        )
    )

    engine.run_cycle("BTCUSDT", dry_run=True)

    assert engine.machine.lifecycle("BTCUSDT") is None
    outcomes = [row for row in engine.journal.load_recent(200) if row["event_type"] == "feature_outcome"]
    assert outcomes[0]["payload"]["source"] == "exchange"
    assert outcomes[0]["payload"]["trades"] == 1


def test_run_trading_cycle_with_engine(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    engine = TradingEngine(settings, market_data=_FakeMarketData())
    assert run_trading_cycle(settings, dry_run=True, engine=engine).status == "completed_dry_run"


def test_run_trading_cycle_reports_startup_failure(tmp_path: Path) -> None:
    result = run_trading_cycle(_settings(tmp_path, mode="live"), dry_run=True)
    assert result.status == "failed"
    assert "live mode requires" in result.warnings[0]


def test_new_utc_day_resets_daily_risk(tmp_path: Path) -> None:
    engine = TradingEngine(_settings(tmp_path), market_data=_FakeMarketData())
    day_one = datetime(2026, 1, 5, 23, 50, tzinfo=UTC)
    engine.run(dry_run=True, now=day_one)
    engine.risk.record_trade_result(-2.0)

    engine.run(dry_run=True, now=day_one + timedelta(minutes=20))

    assert engine.risk.state.daily_pnl_pct == 0.0
    assert engine.risk.state.losses == 1


def test_tripped_breaker_flattens_book_once(tmp_path: Path) -> None:
    engine = TradingEngine(_settings(tmp_path), market_data=_FakeMarketData())
    for symbol, side in (("BTCUSDT", "buy"), ("ETHUSDT", "sell")):
        opened = engine.exchange.place_order(
            OrderIntent(
                client_oid=f"seed-{symbol}",
                symbol=symbol,
                side=side,  # type: ignore[arg-type]
                order_type="market",
                size=100.0,
                leverage=10,
                price=45_970.0,
            )
        )
        assert opened.success
    engine.risk.trip_circuit_breaker("drawdown limit")

    result = engine.run()

    assert result.status == "completed"
    assert engine.exchange.list_positions() == []
    assert result.decisions[0]["kind"] == "emergency-close-all"
    assert result.orders[0]["success"]
    rows = engine.journal.load_recent(200)
    assert "order_failed" not in [row["event_type"] for row in rows]
    sweeps = [row["payload"] for row in rows if row["event_type"] == "circuit_breaker"]
    assert sweeps == [{"reason": "drawdown limit", "closed": 2, "failures": []}]


def test_thin_volume_blocks_authorization(tmp_path: Path) -> None:
    class _ThinMarketData(_FakeMarketData):
        def fetch_ohlcv(self, symbol: str, interval: str, limit: int) -> pd.DataFrame:
            df = super().fetch_ohlcv(symbol, interval, limit)
            df["volume"] = 10.0
            return df

    engine = TradingEngine(_settings(tmp_path), market_data=_ThinMarketData())
    engine.run(dry_run=True)

    signals = [row["payload"] for row in engine.journal.load_recent(200) if row["event_type"] == "signal"]
    assert len(signals) == 2
    assert all("low_liquidity" in payload["block_reasons"] for payload in signals)
    assert not any(payload["authorized"] for payload in signals)
