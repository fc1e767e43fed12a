"""Evaluation cycle: market data -> signal + risk -> decision -> dispatch -> journal."""

from __future__ import annotations

import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from time import perf_counter
from typing import Any, Protocol

import pandas as pd  # type: ignore[import-untyped]

from perp_trading.config import EngineConfig, Settings
from perp_trading.data.kucoin import KuCoinMarketData
from perp_trading.errors import DataValidationError, ExternalCallFailure, PolicyRejection
from perp_trading.exchange.base import ExchangeAdapter
from perp_trading.exchange.kucoin import KuCoinFuturesClient
from perp_trading.exchange.paper import PaperExchange
from perp_trading.execution import (
    DecisionContext,
    EmergencyCloseAllAction,
    ExecutionStateMachine,
    FeaturePerformanceTracker,
    IdempotencyGuard,
    OrderDispatcher,
    SymbolPolicy,
    WaitAction,
    action_payload,
    canonicalize_symbol,
)
from perp_trading.features.indicators import (
    classify_regime,
    compute_atr_percent,
    compute_indicators,
    higher_timeframe_trend,
    is_choppy,
    lower_timeframe_trend,
)
from perp_trading.journal.idempotency_store import JsonIdempotencyStore, NullIdempotencyStore
from perp_trading.journal.risk_store import RiskStateStore
from perp_trading.journal.store import AuditJournal
from perp_trading.risk.controller import RiskController
from perp_trading.signals.composite import CompositeSignalGenerator
from perp_trading.types import CycleResult, MarketAssessment, MicrostructureSnapshot, Position, SignalContext
from perp_trading.utils.logging import get_logger, log_trade_signal

DEFAULT_SYMBOLS = ("BTCUSDT", "ETHUSDT")


class MarketDataSource(Protocol):
    def fetch_ohlcv(self, symbol: str, interval: str, limit: int) -> pd.DataFrame: ...

    def fetch_funding_rate(self, symbol: str) -> float | None: ...

    def fetch_last_price(self, symbol: str) -> float | None: ...

    def fetch_spread_bps(self, symbol: str) -> float | None: ...


@dataclass(slots=True)
class SymbolOutcome:
    symbol: str
    status: str
    decision: dict[str, Any] | None = None
    dispatch: dict[str, Any] | None = None
    warnings: list[str] = field(default_factory=list)


class TradingEngine:
    """Owns every long-lived component for one process.

    Per-symbol state (previous score, last seen PnL, lifecycle records) lives
    here between cycles, so ``loop`` keeps one engine for its whole run.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        exchange: ExchangeAdapter | None = None,
        market_data: MarketDataSource | None = None,
        journal: AuditJournal | None = None,
    ) -> None:
        settings.require_live_ready()
        self._settings = settings
        self._config: EngineConfig = settings.build_engine_config()
        self._logger = get_logger("perp_trading.pipeline")
        self._journal = journal or AuditJournal(settings.journal_dir)

        self._risk_store = RiskStateStore(settings.journal_dir / "risk_state.json")
        self._risk = RiskController(self._config.risk, state=self._risk_store.load())
        store_path = settings.idempotency_store_path
        guard = IdempotencyGuard(
            self._config.idempotency_window_seconds,
            JsonIdempotencyStore(store_path) if store_path is not None else NullIdempotencyStore(),
        )
        self._machine = ExecutionStateMachine(
            self._config.execution,
            risk=self._risk,
            features=FeaturePerformanceTracker(self._config.features),
            idempotency=guard,
            policy=SymbolPolicy(self._config.trading_universe, self._config.denylist_symbols),
        )
        self._generator = CompositeSignalGenerator(self._config.signal)
        self._exchange = exchange or self._default_exchange(settings)
        self._market_data = market_data or KuCoinMarketData(
            settings.kucoin_base_url, timeout=settings.http_timeout
        )
        self._dispatcher = OrderDispatcher(self._exchange, self._machine, self._journal)

        self._lock = threading.Lock()
        self._prev_scores: dict[str, float] = {}
        self._last_pnl: dict[str, float] = {}
        self._session_day: date | None = None

    @staticmethod
    def _default_exchange(settings: Settings) -> ExchangeAdapter:
        if settings.is_live_mode:
            return KuCoinFuturesClient(
                api_key=settings.kucoin_api_key,
                api_secret=settings.kucoin_api_secret,
                passphrase=settings.kucoin_api_passphrase,
                base_url=settings.kucoin_base_url,
                key_version=settings.kucoin_key_version,
                timeout=settings.http_timeout,
            )
        return PaperExchange(
            settings.journal_dir,
            slippage_bps=settings.paper_slippage_bps,
            initial_balance=settings.paper_initial_balance,
        )

    @property
    def machine(self) -> ExecutionStateMachine:
        return self._machine

    @property
    def risk(self) -> RiskController:
        return self._risk

    @property
    def dispatcher(self) -> OrderDispatcher:
        return self._dispatcher

    @property
    def exchange(self) -> ExchangeAdapter:
        return self._exchange

    @property
    def journal(self) -> AuditJournal:
        return self._journal

    def symbols(self) -> tuple[str, ...]:
        return self._config.trading_universe or DEFAULT_SYMBOLS

    def refresh_mark(self, symbol: str) -> float | None:
        """Push the latest ticker price into the paper exchange before a manual order."""
        price = self._market_data.fetch_last_price(symbol)
        if price is not None and isinstance(self._exchange, PaperExchange):
            self._exchange.mark_to_market(symbol, price)
        return price

    def reset_circuit_breaker(self) -> None:
        self._risk.reset_circuit_breaker()
        self._risk_store.save(self._risk.state)
        self._journal.append("circuit_breaker", {"action": "reset"}, component="operator", severity="warning")

    # -- cycles ----------------------------------------------------------------

    def run(self, dry_run: bool = False, *, now: datetime | None = None) -> CycleResult:
        """Evaluate every configured symbol in parallel."""
        started = perf_counter()
        now = now or datetime.now(timezone.utc)
        cycle_id = uuid.uuid4().hex
        self._roll_session_day(now)
        symbols = self.symbols()
        result = CycleResult(status="unknown")
        self._journal.append(
            "cycle_start",
            {
                "symbols": list(symbols),
                "mode": self._settings.mode.value,
                "dry_run": dry_run,
                "started_at": now.isoformat(),
            },
            correlation_id=cycle_id,
        )

        if not dry_run and self._risk.circuit_breaker_active:
            self._emergency_sweep(result, now, cycle_id)

        workers = max(1, min(self._settings.max_workers, len(symbols)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="cycle") as pool:
            futures = [pool.submit(self._run_guarded, symbol, dry_run, now, cycle_id) for symbol in symbols]
            outcomes = [future.result() for future in futures]

        failed = 0
        for outcome in outcomes:
            if outcome.decision is not None:
                result.decisions.append(outcome.decision)
            if outcome.dispatch is not None:
                result.orders.append(outcome.dispatch)
            result.warnings.extend(f"{outcome.symbol}: {w}" for w in outcome.warnings)
            if outcome.status == "failed":
                failed += 1

        if failed == 0:
            status = "completed_dry_run" if dry_run else "completed"
        elif failed == len(outcomes):
            status = "failed"
        else:
            status = "partial"
        self._risk_store.save(self._risk.state)

        result.status = status
        result.elapsed_ms = (perf_counter() - started) * 1000
        self._journal.append(
            "cycle_end",
            {
                "status": status,
                "elapsed_ms": result.elapsed_ms,
                "symbols": {o.symbol: o.status for o in outcomes},
            },
            correlation_id=cycle_id,
        )
        return result

    def _roll_session_day(self, now: datetime) -> None:
        """Clear daily risk counters on the first cycle of a new UTC day."""
        today = now.astimezone(timezone.utc).date()
        if self._session_day is not None and today != self._session_day:
            self._risk.reset_daily()
            self._logger.info("risk_daily_reset", day=today.isoformat())
        self._session_day = today

    def _emergency_sweep(self, result: CycleResult, now: datetime, cycle_id: str) -> None:
        """Flatten the whole book once, before the per-symbol fan-out."""
        try:
            positions = [p for p in self._exchange.list_positions() if p.size > 0]
        except ExternalCallFailure as exc:
            self._logger.warning("emergency_sweep_skipped", error=str(exc))
            result.warnings.append(f"emergency_close_all: {exc}")
            return
        if not positions:
            return
        if isinstance(self._exchange, PaperExchange):
            for position in positions:
                self.refresh_mark(position.symbol)
        action = EmergencyCloseAllAction(
            reason=self._risk.state.circuit_breaker_reason or "circuit breaker active",
            symbols=tuple(p.symbol for p in positions),
        )
        decision = action_payload(action)
        self._journal.append("decision", decision, component="machine", correlation_id=cycle_id)
        dispatched = self._dispatcher.dispatch(action, correlation_id=cycle_id, now=now)
        result.decisions.append(decision)
        result.orders.append(dispatched.to_payload())
        if not dispatched.success:
            result.warnings.append(f"emergency_close_all: {dispatched.error or dispatched.code}")

    def _run_guarded(self, symbol: str, dry_run: bool, now: datetime, cycle_id: str) -> SymbolOutcome:
        try:
            return self.run_cycle(symbol, dry_run=dry_run, now=now, correlation_id=cycle_id)
        except Exception as exc:  # noqa: BLE001 - one symbol never stops the cycle.
            self._logger.exception("symbol_cycle_failed", symbol=symbol, error=str(exc))
            self._journal.append(
                "error",
                {"symbol": symbol, "error": str(exc)},
                severity="error",
                correlation_id=cycle_id,
            )
            return SymbolOutcome(symbol=symbol, status="failed", warnings=[str(exc)])

    def run_cycle(
        self,
        symbol: str,
        *,
        dry_run: bool = False,
        now: datetime | None = None,
        correlation_id: str | None = None,
    ) -> SymbolOutcome:
        """One evaluation for one symbol."""
        now = now or datetime.now(timezone.utc)
        settings = self._settings

        try:
            canonical = self._machine.policy.validate(symbol)
        except PolicyRejection as exc:
            wait = WaitAction(symbol=symbol, reason=str(exc), code=exc.code)
            payload = action_payload(wait)
            self._journal.append("decision", payload, correlation_id=correlation_id)
            return SymbolOutcome(symbol=symbol, status="policy_rejected", decision=payload)

        try:
            df = self._market_data.fetch_ohlcv(canonical, settings.kline_interval, settings.kline_limit)
            indicators = compute_indicators(df)
            atr_percent = compute_atr_percent(df)
            regime = classify_regime(df)
            choppy = is_choppy(df)
            htf_trend = higher_timeframe_trend(df)
            ltf_trend = lower_timeframe_trend(df)
        except DataValidationError as exc:
            self._logger.warning("market_data_rejected", symbol=canonical, error=str(exc), code=exc.code)
            return SymbolOutcome(symbol=canonical, status="insufficient_data", warnings=[str(exc)])
        except ExternalCallFailure as exc:
            self._logger.warning("market_data_unavailable", symbol=canonical, error=str(exc))
            return SymbolOutcome(symbol=canonical, status="data_unavailable", warnings=[str(exc)])
        last_price = float(df["close"].iloc[-1])

        if isinstance(self._exchange, PaperExchange):
            fills = self._exchange.mark_to_market(canonical, last_price)
            if fills:
                self._journal.append(
                    "position_update",
                    {"symbol": canonical, "price": last_price, "fills": fills},
                    correlation_id=correlation_id,
                )

        balance = self._exchange.get_balance()
        positions = tuple(self._exchange.list_positions())
        breaker_before = self._risk.circuit_breaker_active
        drawdown = self._risk.observe_equity(balance, sum(p.pnl for p in positions))
        if self._risk.circuit_breaker_active and not breaker_before:
            self._journal.append(
                "circuit_breaker",
                {"action": "trip", "reason": self._risk.state.circuit_breaker_reason, "drawdown_pct": drawdown},
                component="risk",
                severity="critical",
                correlation_id=correlation_id,
            )

        position = _find_position(positions, canonical)
        self._reconcile_external_close(canonical, position, now, correlation_id)

        funding_rate = self._market_data.fetch_funding_rate(canonical)
        spread = self._market_data.fetch_spread_bps(canonical)
        with self._lock:
            prev_score = self._prev_scores.get(canonical, 0.0)
        context = SignalContext(
            prev_score=prev_score,
            atr_percent=atr_percent,
            is_choppy=choppy,
            candle_index=len(df) - 1,
            drawdown_pct=drawdown,
            mtf_aligned=htf_trend != "neutral" and htf_trend == ltf_trend,
            higher_timeframe_trend=htf_trend,
            last_volume=float(df["volume"].iloc[-1]),
            spread_bps=spread,
        )
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix=f"eval-{canonical}") as pool:
            signal_future = pool.submit(
                self._generator.generate,
                indicators,
                MicrostructureSnapshot(funding_rate=funding_rate),
                context,
                now=now,
            )
            analysis_future = pool.submit(self._risk.analyze, balance, positions, settings.mode.value)
            signal = signal_future.result()
            analysis = analysis_future.result()

        with self._lock:
            self._prev_scores[canonical] = signal.composite_score
        log_trade_signal(
            self._logger,
            symbol=canonical,
            side=signal.side,
            score=signal.composite_score,
            authorized=signal.authorized,
            confidence=signal.confidence,
            regime=regime,
        )
        self._journal.append(
            "signal",
            {"symbol": canonical, "regime": regime, "choppy": choppy, **signal.to_payload()},
            component="signals",
            correlation_id=correlation_id,
        )
        self._journal.append(
            "risk_check",
            {
                "symbol": canonical,
                "balance": analysis.balance,
                "drawdown_pct": analysis.drawdown_pct,
                "total_exposure": analysis.total_exposure,
                "open_positions": analysis.open_positions,
                "circuit_breaker_active": analysis.circuit_breaker_active,
                "overall_risk": analysis.factors.overall_risk,
                "recommendations": [rec.type for rec in analysis.recommendations],
            },
            component="risk",
            correlation_id=correlation_id,
        )

        action = self._machine.decide(
            DecisionContext(
                symbol=canonical,
                signal=signal,
                balance=balance,
                position=position,
                positions=positions,
                market=MarketAssessment(regime=regime, risk_assessment=analysis.risk_assessment),
                now=now,
            )
        )
        decision = action_payload(action)
        self._journal.append("decision", decision, component="machine", correlation_id=correlation_id)

        if dry_run:
            return SymbolOutcome(symbol=canonical, status="dry_run", decision=decision)
        dispatched = self._dispatcher.dispatch(action, correlation_id=correlation_id, now=now)
        return SymbolOutcome(
            symbol=canonical,
            status=action.kind if dispatched.success else "dispatch_failed",
            decision=decision,
            dispatch=dispatched.to_payload(),
            warnings=[] if dispatched.success else [dispatched.error or dispatched.code or "dispatch failed"],
        )

    def _reconcile_external_close(
        self,
        canonical: str,
        position: Position | None,
        now: datetime,
        correlation_id: str | None,
    ) -> None:
        """Release the lifecycle record of a position the exchange closed on its own."""
        if position is not None:
            with self._lock:
                self._last_pnl[canonical] = position.pnl_percent
            return
        if self._machine.lifecycle(canonical) is None:
            return
        with self._lock:
            pnl = self._last_pnl.pop(canonical, 0.0)
        if isinstance(self._exchange, PaperExchange):
            for trade in reversed(self._exchange.realized_trades()):
                if trade.get("symbol") == canonical:
                    pnl = float(trade.get("pnl_percent", pnl))
                    break
        stats = self._machine.on_position_closed(canonical, pnl, now=now)
        self._logger.info("external_close_detected", symbol=canonical, pnl_percent=pnl)
        if stats is not None:
            self._journal.append(
                "feature_outcome",
                {"symbol": canonical, "pnl_percent": pnl, "source": "exchange", **stats.snapshot()},
                correlation_id=correlation_id,
            )


def _find_position(positions: tuple[Position, ...], canonical: str) -> Position | None:
    for position in positions:
        if position.size > 0 and canonicalize_symbol(position.symbol) == canonical:
            return position
    return None


def run_trading_cycle(
    settings: Settings,
    dry_run: bool,
    *,
    engine: TradingEngine | None = None,
) -> CycleResult:
    """Run one full cycle over the configured universe."""
    started = perf_counter()
    try:
        engine = engine or TradingEngine(settings)
        return engine.run(dry_run=dry_run)
    except Exception as exc:  # noqa: BLE001 - top-level guard for loop resilience.
        logger = get_logger("perp_trading.pipeline")
        logger.exception("pipeline_failed", error=str(exc))
        return CycleResult(
            status="failed",
            warnings=[str(exc)],
            elapsed_ms=(perf_counter() - started) * 1000,
        )
