"""Tests for the hash-chained audit log."""

import json

import pytest
from datetime import datetime, timezone

from gigsettle.persistence.event_log import GENESIS_HASH, EventKind, EventLog, EventRecord


def _now() -> datetime:
    return datetime(2026, 3, 14, 20, 0, 0, tzinfo=timezone.utc)


class TestEventLog:
    def test_record_chains_hashes(self) -> None:
        log = EventLog()
        first = log.record(EventKind.OBLIGATION_REGISTERED, "venue", {"obligation_id": "obl_1"}, _now())
        second = log.record(EventKind.SETTLEMENT_ACCEPTED, "system", {"obligation_id": "obl_1"}, _now())
        assert first.previous_hash == GENESIS_HASH
        assert second.previous_hash == first.event_hash
        assert first.event_id == "EVT-00000001"
        assert log.count == 2
        assert log.last_event == second

    def test_filters(self) -> None:
        log = EventLog()
        log.record(EventKind.OBLIGATION_REGISTERED, "venue", {"obligation_id": "obl_1"}, _now())
        log.record(EventKind.OBLIGATION_REGISTERED, "venue", {"obligation_id": "obl_2"}, _now())
        log.record(EventKind.SETTLEMENT_ACCEPTED, "system", {"obligation_id": "obl_1"}, _now())
        assert len(log.events(EventKind.OBLIGATION_REGISTERED)) == 2
        assert len(log.events_for("obligation_id", "obl_1")) == 2

    def test_append_rejects_broken_link(self) -> None:
        log = EventLog()
        log.record(EventKind.OBLIGATION_REGISTERED, "venue", {}, _now())
        stray = EventRecord.create("EVT-99", EventKind.REFUND_ISSUED, "system", {}, GENESIS_HASH, _now())
        with pytest.raises(ValueError, match="does not extend"):
            log.append(stray)

    def test_persist_and_reload(self, tmp_path) -> None:
        path = tmp_path / "events.jsonl"
        log = EventLog(path)
        log.record(EventKind.CREDIT_ISSUED, "system", {"code": "GC-1", "amount": "50.00"}, _now())
        log.record(EventKind.CREDIT_REDEEMED, "venue", {"code": "GC-1"}, _now())

        reloaded = EventLog(path)
        assert reloaded.count == 2
        assert reloaded.last_event.event_hash == log.last_event.event_hash

        # Appending after reload continues the same chain.
        third = reloaded.record(EventKind.REFUND_ISSUED, "system", {}, _now())
        assert third.event_id == "EVT-00000003"
        assert EventLog(path).count == 3

    def test_tampered_file_fails_closed(self, tmp_path) -> None:
        path = tmp_path / "events.jsonl"
        log = EventLog(path)
        log.record(EventKind.CREDIT_ISSUED, "system", {"amount": "50.00"}, _now())
        lines = path.read_text(encoding="utf-8").splitlines()
        data = json.loads(lines[0])
        data["payload"]["amount"] = "5000.00"
        path.write_text(json.dumps(data) + "\n", encoding="utf-8")
        with pytest.raises(ValueError, match="Integrity check failed"):
            EventLog(path)
