"""Order deduplication keyed by deterministic order fingerprints."""

from __future__ import annotations

import threading
import time
from datetime import datetime
from typing import Callable, Protocol

from perp_trading.execution.policy import canonicalize_symbol
from perp_trading.utils.logging import get_logger


class IdempotencyStore(Protocol):
    def load(self) -> dict[str, float]: ...

    def save(self, entries: dict[str, float]) -> None: ...


def _bucket(timestamp: datetime, window_seconds: float) -> int:
    return int(timestamp.timestamp() // window_seconds)


def signal_order_key(symbol: str, side: str, timestamp: datetime, window_seconds: float) -> str:
    """Key for signal-driven entries: symbol + side + time bucket."""
    return f"signal:{canonicalize_symbol(symbol)}:{side}:{_bucket(timestamp, window_seconds)}"


def manual_order_key(
    symbol: str, action: str, size: float, timestamp: datetime, window_seconds: float
) -> str:
    """Key for operator orders: symbol + action + size + time bucket."""
    return (
        f"manual:{canonicalize_symbol(symbol)}:{action}:{size:g}:"
        f"{_bucket(timestamp, window_seconds)}"
    )


class IdempotencyGuard:
    """In-memory key -> timestamp map, pruned lazily on every access.

    Keys are recorded by the caller only after the exchange confirms an order.
    Snapshots to the store are best-effort; a failing or no-op store degrades
    deduplication to process lifetime.
    """

    def __init__(
        self,
        window_seconds: float = 300.0,
        store: IdempotencyStore | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._window = window_seconds
        self._store = store
        self._clock = clock
        self._lock = threading.Lock()
        self._logger = get_logger("perp_trading.execution.idempotency")
        self._entries: dict[str, float] = {}
        if store is not None:
            try:
                self._entries = dict(store.load())
            except (OSError, ValueError) as exc:
                self._logger.warning("idempotency_load_failed", error=str(exc))
        self._prune(self._clock())

    @property
    def window_seconds(self) -> float:
        return self._window

    def _prune(self, now: float) -> None:
        cutoff = now - self._window
        expired = [key for key, ts in self._entries.items() if ts < cutoff]
        for key in expired:
            del self._entries[key]

    def seen(self, key: str) -> bool:
        with self._lock:
            self._prune(self._clock())
            return key in self._entries

    def record(self, key: str) -> None:
        with self._lock:
            now = self._clock()
            self._prune(now)
            self._entries[key] = now
            snapshot = dict(self._entries)
        self._persist(snapshot)

    def __len__(self) -> int:
        with self._lock:
            self._prune(self._clock())
            return len(self._entries)

    def _persist(self, snapshot: dict[str, float]) -> None:
        if self._store is None:
            return
        try:
            self._store.save(snapshot)
        except (OSError, ValueError) as exc:
            self._logger.warning("idempotency_save_failed", error=str(exc), entries=len(snapshot))
