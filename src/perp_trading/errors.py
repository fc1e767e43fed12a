"""Error hierarchy shared across the engine."""

from __future__ import annotations


class TradingError(Exception):
    """Base error carrying a machine-readable code."""

    code = "E_TRADING"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code


class ConfigurationError(TradingError):
    """Fatal construction-time misconfiguration. The process must not start."""

    code = "E_CONFIGURATION"


class PolicyRejection(TradingError):
    """Symbol or policy rule rejected the request. No state was mutated."""

    code = "E_POLICY"


class DataValidationError(TradingError):
    """Input market data is unusable for this cycle."""

    code = "E_VALIDATION"


class InsufficientHistoryError(DataValidationError):
    """Not enough candles to compute the indicator set."""

    code = "E_INSUFFICIENT_HISTORY"


class RiskRejection(TradingError):
    """A risk limit blocks new exposure. Safe to retry next cycle."""

    code = "E_RISK"


class ExternalCallFailure(TradingError):
    """An exchange call failed or was rejected."""

    code = "E_EXTERNAL_CALL"
