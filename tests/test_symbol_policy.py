from __future__ import annotations

import pytest

from perp_trading.errors import PolicyRejection
from perp_trading.execution import SymbolPolicy, canonicalize_symbol


@pytest.mark.parametrize(
    "raw",
    ["BTCUSDT", "BTC-USDT", "btc/usdt", "XBTUSDTM", " btc_usdt "],
)
def test_canonical_forms(raw: str) -> None:
    assert canonicalize_symbol(raw) == "BTCUSDT"


def test_denylist_wins_over_universe() -> None:
    policy = SymbolPolicy(universe=("BTCUSDT", "ETHUSDT"), denylist=("ETH-USDT",))
    assert policy.universe == ("BTCUSDT",)
    with pytest.raises(PolicyRejection) as excinfo:
        policy.validate("ETHUSDTM")
    assert excinfo.value.code == "E_SYMBOL_DENIED"


def test_symbol_outside_universe() -> None:
    policy = SymbolPolicy(universe=("BTCUSDT",))
    assert policy.validate("XBTUSDTM") == "BTCUSDT"
    with pytest.raises(PolicyRejection) as excinfo:
        policy.validate("SOLUSDT")
    assert excinfo.value.code == "E_SYMBOL_NOT_ALLOWED"
    assert not policy.is_allowed("SOLUSDT")


def test_empty_universe_allows_everything_not_denied() -> None:
    policy = SymbolPolicy(denylist=("DOGEUSDT",))
    assert policy.is_allowed("SOL-USDT")
    assert not policy.is_allowed("doge/usdt")


def test_fully_denied_universe_is_rejected() -> None:
    with pytest.raises(PolicyRejection) as excinfo:
        SymbolPolicy(universe=("BTCUSDT",), denylist=("XBTUSDTM",))
    assert excinfo.value.code == "E_UNIVERSE_EMPTY"


def test_from_csv_trims_and_dedupes() -> None:
    policy = SymbolPolicy.from_csv("BTCUSDT, ETHUSDT,,BTCUSDT", "")
    assert policy.universe == ("BTCUSDT", "ETHUSDT")
    assert policy.denylist == ()
