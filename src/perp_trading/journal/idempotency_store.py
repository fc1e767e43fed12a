"""Durable snapshots of the idempotency map."""

from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from pathlib import Path

from perp_trading.utils.logging import get_logger

STORE_VERSION = 1


class JsonIdempotencyStore:
    """JSON file ``{version, updated_at, entries}``; written via a temp file and rename."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._logger = get_logger("perp_trading.journal.idempotency_store")

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> dict[str, float]:
        if not self._path.exists():
            return {}
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            self._logger.warning("idempotency_store_unreadable", path=str(self._path), error=str(exc))
            return {}
        entries = raw.get("entries") if isinstance(raw, dict) else None
        if not isinstance(entries, dict):
            return {}
        return {
            str(key): float(ts)
            for key, ts in entries.items()
            if isinstance(ts, (int, float)) and not isinstance(ts, bool)
        }

    def save(self, entries: dict[str, float]) -> None:
        record = {
            "version": STORE_VERSION,
            "updated_at": datetime.now(timezone.utc).isoformat(),
            "entries": entries,
        }
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
            tmp_path.write_text(json.dumps(record, indent=2), encoding="utf-8")
            os.replace(tmp_path, self._path)
        except OSError as exc:
            self._logger.warning("idempotency_store_write_failed", path=str(self._path), error=str(exc))


class NullIdempotencyStore:
    """No-op store: deduplication lasts for the process lifetime only."""

    def load(self) -> dict[str, float]:
        return {}

    def save(self, entries: dict[str, float]) -> None:
        return None
