from __future__ import annotations

import json
from pathlib import Path

import pytest

from perp_trading.journal.risk_store import RiskStateStore
from perp_trading.journal.store import AuditEvent, AuditJournal
from perp_trading.risk.controller import RiskState


def test_journal_appends_and_loads_recent(tmp_path: Path) -> None:
    journal = AuditJournal(tmp_path)
    journal.append("cycle_start", {"symbols": ["BTCUSDT"]}, correlation_id="c1")
    journal.append("decision", {"kind": "wait"}, component="machine", correlation_id="c1")
    journal.append("cycle_end", {"status": "completed"}, correlation_id="c1")

    recent = journal.load_recent(2)
    assert [row["event_type"] for row in recent] == ["decision", "cycle_end"]
    assert recent[0]["component"] == "machine"
    assert all(row["correlation_id"] == "c1" for row in recent)
    assert journal.load_recent(0) == []


def test_unknown_event_type_is_rejected(tmp_path: Path) -> None:
    journal = AuditJournal(tmp_path)
    with pytest.raises(ValueError, match="unsupported_event_type"):
        journal.log(AuditEvent(event_type="trade_executed", component="engine"))


def test_unserializable_payload_falls_back_to_str(tmp_path: Path) -> None:
    journal = AuditJournal(tmp_path)
    journal.append("error", {"path": tmp_path})
    assert journal.load_recent(1)[0]["payload"]["path"] == str(tmp_path)


def test_risk_state_round_trip(tmp_path: Path) -> None:
    store = RiskStateStore(tmp_path / "risk_state.json")
    assert store.load() is None

    store.save(RiskState(circuit_breaker_active=True, circuit_breaker_reason="drawdown", peak_equity=10_500.0))
    loaded = store.load()

    assert loaded is not None
    assert loaded.circuit_breaker_active
    assert loaded.circuit_breaker_reason == "drawdown"
    assert loaded.peak_equity == 10_500.0


def test_risk_state_ignores_unknown_fields_and_garbage(tmp_path: Path) -> None:
    path = tmp_path / "risk_state.json"
    path.write_text(json.dumps({"state": {"consecutive_losses": 3, "legacy": 1}}), encoding="utf-8")
    loaded = RiskStateStore(path).load()
    assert loaded is not None
    assert loaded.consecutive_losses == 3

    path.write_text("[]", encoding="utf-8")
    assert RiskStateStore(path).load() is None
    path.write_text("not json", encoding="utf-8")
    assert RiskStateStore(path).load() is None
