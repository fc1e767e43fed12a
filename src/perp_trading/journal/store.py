"""JSONL audit journal for engine events."""

from __future__ import annotations

import json
import uuid
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Literal

from perp_trading.utils.logging import get_logger

Severity = Literal["debug", "info", "warning", "error", "critical"]

_ALLOWED_EVENT_TYPES = {
    "cycle_start",
    "signal",
    "risk_check",
    "decision",
    "order",
    "order_failed",
    "position_update",
    "feature_outcome",
    "circuit_breaker",
    "cycle_end",
    "error",
}


@dataclass(frozen=True, slots=True)
class AuditEvent:
    event_type: str
    component: str
    payload: dict[str, Any] = field(default_factory=dict)
    severity: Severity = "info"
    correlation_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class AuditJournal:
    """Append-only daily JSONL event store.

    Unknown event types are a caller bug and raise ``ValueError``. Disk
    failures are logged and swallowed: the journal never gates a decision.
    """

    def __init__(self, journal_dir: Path) -> None:
        self._journal_dir = journal_dir
        self._logger = get_logger("perp_trading.journal.store")
        try:
            self._journal_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            self._logger.warning("journal_dir_unavailable", path=str(journal_dir), error=str(exc))

    def log(self, event: AuditEvent) -> None:
        """Append one event line to the daily JSONL file."""
        if event.event_type not in _ALLOWED_EVENT_TYPES:
            raise ValueError(f"unsupported_event_type: {event.event_type}")
        record = asdict(event)
        try:
            file_path = self._file_path_for_day(datetime.now(timezone.utc).date())
            with file_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(record, ensure_ascii=True, default=str) + "\n")
        except (OSError, TypeError, ValueError) as exc:
            self._logger.warning(
                "journal_write_failed",
                event_type=event.event_type,
                correlation_id=event.correlation_id,
                error=str(exc),
            )

    def append(
        self,
        event_type: str,
        payload: dict[str, Any],
        *,
        component: str = "engine",
        severity: Severity = "info",
        correlation_id: str | None = None,
    ) -> None:
        extra: dict[str, Any] = {}
        if correlation_id is not None:
            extra["correlation_id"] = correlation_id
        self.log(
            AuditEvent(
                event_type=event_type,
                component=component,
                payload=payload,
                severity=severity,
                **extra,
            )
        )

    def load_recent(self, limit: int) -> list[dict[str, Any]]:
        """Load recent events from the most recent journal files."""
        if limit <= 0:
            return []

        rows: list[dict[str, Any]] = []
        files = sorted(self._journal_dir.glob("*.jsonl"), reverse=True)
        for file in files:
            lines = file.read_text(encoding="utf-8").splitlines()
            for line in reversed(lines):
                if not line.strip():
                    continue
                rows.append(json.loads(line))
                if len(rows) >= limit:
                    return list(reversed(rows))
        return list(reversed(rows))

    def _file_path_for_day(self, day: date) -> Path:
        return self._journal_dir / f"{day.isoformat()}.jsonl"
