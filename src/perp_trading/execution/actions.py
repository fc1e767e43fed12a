"""Action descriptors: exactly one per (symbol, cycle)."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import ClassVar, Union

from perp_trading.types import Regime, Side


@dataclass(frozen=True, slots=True)
class WaitAction:
    kind: ClassVar[str] = "wait"

    symbol: str
    reason: str
    code: str | None = None


@dataclass(frozen=True, slots=True)
class HoldAction:
    kind: ClassVar[str] = "hold"

    symbol: str
    reason: str = "no action required"


@dataclass(frozen=True, slots=True)
class OpenPositionAction:
    """Entry order. Stop and target are priced from the fill by the dispatcher."""

    kind: ClassVar[str] = "open-position"

    symbol: str
    side: Side
    size: float
    leverage: int
    idempotency_key: str
    feature_key: str
    regime: Regime
    score: float
    confidence: float


@dataclass(frozen=True, slots=True)
class ClosePositionAction:
    kind: ClassVar[str] = "close-position"

    symbol: str
    side: Side
    size: float
    reason: str
    current_pnl: float = 0.0


@dataclass(frozen=True, slots=True)
class PartialTakeProfitAction:
    kind: ClassVar[str] = "partial-take-profit"

    symbol: str
    side: Side
    size: float
    current_pnl: float


@dataclass(frozen=True, slots=True)
class SetBreakEvenAction:
    kind: ClassVar[str] = "set-break-even"

    symbol: str
    side: Side
    new_stop_loss: float
    current_pnl: float


@dataclass(frozen=True, slots=True)
class TrailTakeProfitAction:
    kind: ClassVar[str] = "trail-take-profit"

    symbol: str
    side: Side
    new_take_profit: float
    current_pnl: float


@dataclass(frozen=True, slots=True)
class ReversePositionAction:
    kind: ClassVar[str] = "reverse-position"

    symbol: str
    close: ClosePositionAction
    open: OpenPositionAction
    reason: str


@dataclass(frozen=True, slots=True)
class EmergencyCloseAllAction:
    kind: ClassVar[str] = "emergency-close-all"

    reason: str
    symbols: tuple[str, ...] = ()


ActionDescriptor = Union[
    WaitAction,
    HoldAction,
    OpenPositionAction,
    ClosePositionAction,
    PartialTakeProfitAction,
    SetBreakEvenAction,
    TrailTakeProfitAction,
    ReversePositionAction,
    EmergencyCloseAllAction,
]


def action_payload(action: ActionDescriptor) -> dict[str, object]:
    """Flat dict form for logs, the audit journal and CLI output."""
    payload: dict[str, object] = {"kind": action.kind}
    payload.update(asdict(action))
    return payload
