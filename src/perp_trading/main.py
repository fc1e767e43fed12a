"""CLI entry point for the perpetual-futures decision engine."""

import sys
import time
from datetime import datetime
from pathlib import Path
from typing import NoReturn

import click

from perp_trading import __version__
from perp_trading.config import Settings, get_settings
from perp_trading.errors import ConfigurationError, PolicyRejection
from perp_trading.journal.risk_store import RiskStateStore
from perp_trading.pipeline import TradingEngine, run_trading_cycle
from perp_trading.utils.logging import get_logger, setup_logging


@click.group(invoke_without_command=True)
@click.option("--version", "-v", is_flag=True, help="Show the version and exit")
@click.pass_context
def cli(ctx: click.Context, version: bool) -> None:
    """Perp Trading - gated, risk-bounded perpetual-futures decision engine.

    Composite indicator signals, pre-trade gates, drawdown circuit breaker and
    per-symbol position management on KuCoin Futures or a paper exchange.
    """
    if version:
        click.echo(f"perp-trading version {__version__}")
        return

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


def _load_ready_settings() -> Settings:
    """Settings with directories created; exits when live mode is misconfigured."""
    logger = get_logger("perp_trading.main")
    settings = get_settings()
    settings.ensure_directories()
    if settings.is_live_mode:
        missing = settings.validate_for_live()
        if missing:
            logger.error(
                "missing_required_config",
                missing_keys=missing,
                hint="set the KuCoin API credentials in .env",
            )
            sys.exit(1)
    return settings


@cli.command()
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="Compute decisions without placing orders",
)
def once(dry_run: bool) -> None:
    """Run a single evaluation cycle.

    Fetch klines -> indicators -> composite signal + risk analysis -> decision -> dispatch
    """
    setup_logging()
    logger = get_logger("perp_trading.main")
    settings = _load_ready_settings()

    logger.info(
        "starting_single_run",
        mode=settings.mode.value,
        dry_run=dry_run,
        timestamp=datetime.now().isoformat(),
    )

    try:
        result = run_trading_cycle(settings, dry_run=dry_run)
        logger.info(
            "run_completed",
            status=result.status,
            elapsed_ms=round(result.elapsed_ms, 2),
            decisions=len(result.decisions),
            orders=len(result.orders),
            warnings=result.warnings,
        )
        if result.status == "failed":
            sys.exit(1)

    except KeyboardInterrupt:
        logger.info("run_interrupted", message="User interrupted")
        sys.exit(0)


@cli.command()
@click.option(
    "--interval-sec",
    "-i",
    type=int,
    default=None,
    help="Seconds between cycles (defaults to LOOP_INTERVAL_SECONDS)",
)
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="Compute decisions without placing orders",
)
def loop(interval_sec: int | None, dry_run: bool) -> NoReturn:
    """Run evaluation cycles continuously.

    One engine is kept for the whole run so per-symbol state carries over
    between cycles. Stop with Ctrl+C.
    """
    setup_logging()
    logger = get_logger("perp_trading.main")
    settings = _load_ready_settings()
    interval = interval_sec or settings.loop_interval_seconds

    logger.info(
        "starting_loop",
        mode=settings.mode.value,
        interval_sec=interval,
        dry_run=dry_run,
    )

    try:
        engine = TradingEngine(settings)
    except ConfigurationError as e:
        logger.error("engine_init_failed", error=str(e), code=e.code)
        sys.exit(1)

    iteration = 0
    try:
        while True:
            iteration += 1
            logger.info(
                "loop_iteration_start",
                iteration=iteration,
                timestamp=datetime.now().isoformat(),
            )

            result = run_trading_cycle(settings, dry_run=dry_run, engine=engine)
            logger.info(
                "loop_iteration_completed",
                iteration=iteration,
                status=result.status,
                elapsed_ms=round(result.elapsed_ms, 2),
                decisions=len(result.decisions),
                orders=len(result.orders),
                warnings=result.warnings,
            )

            logger.debug("waiting_next_iteration", wait_seconds=interval)
            time.sleep(interval)

    except KeyboardInterrupt:
        logger.info(
            "loop_stopped",
            message="User stopped loop",
            total_iterations=iteration,
        )
        sys.exit(0)


@cli.command()
def status() -> None:
    """Show the configuration summary and circuit breaker state."""
    setup_logging()
    settings = get_settings()

    click.echo("=" * 50)
    click.echo("Perp Trading - Status")
    click.echo("=" * 50)
    click.echo()

    mode_marker = "[PAPER]" if settings.is_paper_mode else "[LIVE]"
    mode_text = "Paper Trading" if settings.is_paper_mode else "Live Trading"
    click.echo(f"{mode_marker} Mode: {mode_text}")
    click.echo()

    click.echo("[Exchange]")
    kucoin_status = "[OK] Configured" if settings.kucoin_api_key else "[--] Not configured"
    click.echo(f"   KuCoin API: {kucoin_status}")
    click.echo(f"   Base URL: {settings.kucoin_base_url}")
    click.echo(f"   Universe: {', '.join(settings.universe) or '(all symbols)'}")
    click.echo(f"   Denylist: {', '.join(settings.denylist) or '(none)'}")
    click.echo(f"   Klines: {settings.kline_limit} x {settings.kline_interval}")
    click.echo()

    click.echo("[Risk Parameters]")
    click.echo(f"   Max drawdown: {settings.max_drawdown_pct}%")
    click.echo(f"   Risk per trade: {settings.max_risk_per_trade * 100:g}%")
    click.echo(f"   Leverage: {settings.leverage_min}x - {settings.leverage_max}x")
    click.echo(f"   Stop loss / take profit ROI: {settings.stop_loss_roi}% / {settings.take_profit_roi}%")
    click.echo(f"   Max positions: {settings.max_positions_paper} paper / {settings.max_positions_live} live")
    click.echo()

    click.echo("[Execution]")
    click.echo(f"   Qualification threshold: {settings.qualification_threshold}")
    click.echo(f"   Min confidence: {settings.min_signal_confidence}")
    click.echo(f"   Allowed regimes: {settings.allowed_regimes}")
    click.echo(f"   Idempotency window: {settings.idempotency_window_seconds:g}s")
    click.echo()

    click.echo("[Logging]")
    click.echo(f"   Log level: {settings.log_level}")
    click.echo(f"   Log format: {settings.log_format.value}")
    click.echo(f"   Journal dir: {settings.journal_dir}")
    click.echo()

    state = RiskStateStore(settings.journal_dir / "risk_state.json").load()
    if state is not None and state.circuit_breaker_active:
        click.echo(f"[ALERT] Circuit breaker active: {state.circuit_breaker_reason}")
    else:
        click.echo("[OK] Circuit breaker inactive")

    if settings.is_live_mode:
        missing = settings.validate_for_live()
        if missing:
            click.echo("[ERROR] Live mode configuration incomplete, missing:")
            for key in missing:
                click.echo(f"   - {key}")
        else:
            click.echo("[OK] Live mode configuration complete")
    else:
        click.echo("[INFO] Paper mode does not require API credentials")

    click.echo()
    click.echo("=" * 50)


@cli.command()
def check() -> None:
    """Check dependencies and configuration."""
    setup_logging()
    logger = get_logger("perp_trading.main")

    click.echo("Checking system dependencies...")
    click.echo()

    all_ok = True

    packages = [
        ("pydantic", "Configuration validation"),
        ("pydantic_settings", "Environment settings"),
        ("httpx", "HTTP client"),
        ("pandas", "Data processing"),
        ("structlog", "Structured logging"),
        ("click", "CLI framework"),
        ("tenacity", "Retry mechanism"),
    ]

    for pkg_name, desc in packages:
        try:
            __import__(pkg_name)
            click.echo(f"  [OK] {pkg_name} - {desc}")
        except ImportError:
            click.echo(f"  [MISSING] {pkg_name} - {desc}")
            all_ok = False

    click.echo()

    env_file = Path(".env")
    if env_file.exists():
        click.echo("  [OK] .env configuration file exists")
    else:
        click.echo("  [WARN] .env file not found (using defaults)")

    try:
        get_settings().build_engine_config()
        click.echo("  [OK] Engine configuration valid")
    except ConfigurationError as e:
        click.echo(f"  [ERROR] Engine configuration invalid: {e}")
        all_ok = False
    except PolicyRejection as e:
        click.echo(f"  [ERROR] Symbol policy invalid: {e}")
        all_ok = False

    click.echo()

    if all_ok:
        click.echo("[OK] All checks passed")
    else:
        click.echo("[ERROR] Some checks failed. Run: pip install -e . and review .env")

    logger.info("dependency_check_completed", all_ok=all_ok)


@cli.command("reset-breaker")
@click.confirmation_option(prompt="Reset the drawdown circuit breaker?")
def reset_breaker() -> None:
    """Clear an active circuit breaker. Peak equity restarts from the next observation."""
    setup_logging()
    logger = get_logger("perp_trading.main")
    settings = _load_ready_settings()
    engine = TradingEngine(settings)
    was_active = engine.risk.circuit_breaker_active
    engine.reset_circuit_breaker()
    logger.info("circuit_breaker_reset", was_active=was_active)
    click.echo("[OK] Circuit breaker reset" if was_active else "[INFO] Circuit breaker was not active")


@cli.command()
@click.argument("symbol")
@click.argument("side", type=click.Choice(["buy", "sell"]))
@click.argument("size", type=float)
@click.option("--leverage", "-l", type=int, default=1, show_default=True, help="Order leverage")
def order(symbol: str, side: str, size: float, leverage: int) -> None:
    """Place a manual market order, deduplicated within the idempotency window.

    SIZE is quote margin for the paper exchange and contract value for KuCoin.
    """
    setup_logging()
    logger = get_logger("perp_trading.main")
    settings = _load_ready_settings()
    engine = TradingEngine(settings)
    engine.refresh_mark(symbol)
    result = engine.dispatcher.execute_manual_order(symbol, side, size, leverage=leverage)  # type: ignore[arg-type]
    logger.info("manual_order_completed", **result.to_payload())
    if not result.success:
        click.echo(f"[ERROR] {result.code}: {result.error}")
        sys.exit(1)
    click.echo(f"[OK] {side} {size:g} {symbol}")


if __name__ == "__main__":
    cli()
