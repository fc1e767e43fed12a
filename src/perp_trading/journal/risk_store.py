"""Risk session state persisted between process runs."""

from __future__ import annotations

import json
import os
from dataclasses import asdict, fields
from datetime import datetime, timezone
from pathlib import Path

from perp_trading.risk.controller import RiskState
from perp_trading.utils.logging import get_logger


class RiskStateStore:
    """Keeps the breaker sticky across restarts. Unreadable files load as ``None``."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._logger = get_logger("perp_trading.journal.risk_store")

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> RiskState | None:
        if not self._path.exists():
            return None
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            self._logger.warning("risk_state_unreadable", path=str(self._path), error=str(exc))
            return None
        state = raw.get("state") if isinstance(raw, dict) else None
        if not isinstance(state, dict):
            return None
        known = {f.name for f in fields(RiskState)}
        try:
            return RiskState(**{k: v for k, v in state.items() if k in known})
        except TypeError as exc:
            self._logger.warning("risk_state_invalid", path=str(self._path), error=str(exc))
            return None

    def save(self, state: RiskState) -> None:
        record = {
            "updated_at": datetime.now(timezone.utc).isoformat(),
            "state": asdict(state),
        }
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
            tmp_path.write_text(json.dumps(record, indent=2), encoding="utf-8")
            os.replace(tmp_path, self._path)
        except OSError as exc:
            self._logger.warning("risk_state_write_failed", path=str(self._path), error=str(exc))
