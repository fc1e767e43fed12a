"""Symbol allow/deny policy with canonical symbol matching."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable

from perp_trading.errors import PolicyRejection

_SEPARATORS = re.compile(r"[-_/:\s]+")


def canonicalize_symbol(symbol: str) -> str:
    """Uppercase, drop separators, map XBT to BTC and the USDTM contract suffix to USDT.

    ``BTC-USDT``, ``btc/usdt`` and ``XBTUSDTM`` all become ``BTCUSDT``.
    """
    compact = _SEPARATORS.sub("", symbol.strip().upper())
    if compact.startswith("XBT"):
        compact = "BTC" + compact[3:]
    if compact.endswith("USDTM"):
        compact = compact[:-1]
    return compact


def _dedupe(symbols: Iterable[str]) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for symbol in symbols:
        symbol = symbol.strip()
        if symbol:
            seen.setdefault(symbol, None)
    return tuple(seen)


@dataclass(frozen=True, slots=True)
class SymbolPolicy:
    """Trading universe and denylist.

    An empty ``universe`` means every non-denied symbol is allowed. A configured
    universe that denylisting empties out is a construction error.
    """

    universe: tuple[str, ...] = ()
    denylist: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        universe = _dedupe(self.universe)
        denylist = _dedupe(self.denylist)
        denied = {canonicalize_symbol(s) for s in denylist}
        filtered = tuple(s for s in universe if canonicalize_symbol(s) not in denied)
        if universe and not filtered:
            raise PolicyRejection(
                "trading universe is empty after denylist policy", code="E_UNIVERSE_EMPTY"
            )
        object.__setattr__(self, "universe", filtered)
        object.__setattr__(self, "denylist", denylist)

    @classmethod
    def from_csv(cls, universe: str = "", denylist: str = "") -> SymbolPolicy:
        return cls(universe=tuple(universe.split(",")), denylist=tuple(denylist.split(",")))

    def validate(self, symbol: str) -> str:
        """Return the canonical symbol or raise PolicyRejection."""
        canonical = canonicalize_symbol(symbol)
        if canonical in {canonicalize_symbol(s) for s in self.denylist}:
            raise PolicyRejection(f"{symbol} is explicitly denied by policy", code="E_SYMBOL_DENIED")
        if self.universe and canonical not in {canonicalize_symbol(s) for s in self.universe}:
            raise PolicyRejection(
                f"{symbol} is not present in trading universe", code="E_SYMBOL_NOT_ALLOWED"
            )
        return canonical

    def is_allowed(self, symbol: str) -> bool:
        try:
            self.validate(symbol)
        except PolicyRejection:
            return False
        return True
