"""Structured logging setup.

structlog over the stdlib ``logging`` module, rendering JSON or colored
console output depending on settings.
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING, Any

import structlog
from structlog.types import Processor

if TYPE_CHECKING:
    from perp_trading.config import Settings


def setup_logging(settings: Settings | None = None) -> None:
    """Configure structlog and the root stdlib logger from settings."""
    from perp_trading.config import LogFormat, get_settings

    settings = settings or get_settings()

    log_level = getattr(logging, settings.log_level)
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.log_format == LogFormat.JSON:
        processors: list[Processor] = [
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            *shared_processors,
            structlog.dev.ConsoleRenderer(colors=True),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structured logger, named after the caller's module if given."""
    return structlog.get_logger(name)


def log_trade_signal(
    logger: structlog.stdlib.BoundLogger,
    *,
    symbol: str,
    side: str | None,
    score: float,
    authorized: bool,
    **kwargs: Any,
) -> None:
    logger.info(
        "trade_signal",
        symbol=symbol,
        side=side,
        score=round(score, 2),
        authorized=authorized,
        **kwargs,
    )


def log_gate_block(
    logger: structlog.stdlib.BoundLogger,
    *,
    symbol: str,
    gate: str,
    reason: str,
    code: str | None = None,
    **kwargs: Any,
) -> None:
    """Pre-trade gate rejected an entry."""
    logger.info(
        "gate_block",
        symbol=symbol,
        gate=gate,
        reason=reason,
        code=code,
        **kwargs,
    )


def log_order_execution(
    logger: structlog.stdlib.BoundLogger,
    *,
    symbol: str,
    side: str,
    quantity: float,
    price: float | None = None,
    order_id: str | None = None,
    status: str = "submitted",
    **kwargs: Any,
) -> None:
    logger.info(
        "order_execution",
        symbol=symbol,
        side=side,
        quantity=quantity,
        price=price,
        order_id=order_id,
        status=status,
        **kwargs,
    )


def log_risk_event(
    logger: structlog.stdlib.BoundLogger,
    *,
    event_type: str,
    action: str,
    **kwargs: Any,
) -> None:
    logger.warning(
        "risk_event",
        event_type=event_type,
        action=action,
        **kwargs,
    )
