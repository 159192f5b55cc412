"""Append-only audit log of settlement actions.

Every state change the service commits (obligation registered, reference
submitted, outcome recorded, plan committed, payout moved, refund issued,
credit issued or redeemed) is appended here after the store write. Records
are immutable and chained: each hash covers the previous record's hash, so
a removed or edited line breaks every hash after it.

The SQLite store remains the source of truth for state. This log is the
operator-facing trail for manual reconciliation.
"""

from __future__ import annotations

import enum
import hashlib
import json
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

GENESIS_HASH = "sha256:" + "0" * 64


class EventKind(str, enum.Enum):
    OBLIGATION_REGISTERED = "obligation_registered"
    REFERENCE_SUBMITTED = "reference_submitted"
    SETTLEMENT_PENDING = "settlement_pending"
    SETTLEMENT_ACCEPTED = "settlement_accepted"
    SETTLEMENT_REJECTED = "settlement_rejected"
    # Horizon expiry; needs operator reconciliation.
    SETTLEMENT_EXPIRED = "settlement_expired"
    DISTRIBUTION_COMMITTED = "distribution_committed"
    PAYOUT_UPDATED = "payout_updated"
    REFUND_ISSUED = "refund_issued"
    CREDIT_ISSUED = "credit_issued"
    CREDIT_REDEEMED = "credit_redeemed"
    CREDIT_RELEASED = "credit_released"
    OBLIGATION_OVERDUE = "obligation_overdue"


def _canonical_hash(
    event_id: str,
    event_kind: str,
    timestamp_utc: str,
    actor_id: str,
    payload: dict[str, Any],
    previous_hash: str,
) -> str:
    canonical = json.dumps(
        {
            "event_id": event_id,
            "event_kind": event_kind,
            "timestamp_utc": timestamp_utc,
            "actor_id": actor_id,
            "payload": payload,
            "previous_hash": previous_hash,
        },
        sort_keys=True,
        ensure_ascii=False,
    ).encode("utf-8")
    return f"sha256:{hashlib.sha256(canonical).hexdigest()}"


@dataclass(frozen=True)
class EventRecord:
    """One immutable audit record."""
    event_id: str
    event_kind: EventKind
    timestamp_utc: str
    actor_id: str
    payload: dict[str, Any]
    previous_hash: str
    event_hash: str

    @staticmethod
    def create(
        event_id: str,
        event_kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        previous_hash: str = GENESIS_HASH,
        timestamp_utc: Optional[datetime] = None,
    ) -> EventRecord:
        ts = (timestamp_utc or datetime.now(timezone.utc)).strftime("%Y-%m-%dT%H:%M:%SZ")
        return EventRecord(
            event_id=event_id,
            event_kind=event_kind,
            timestamp_utc=ts,
            actor_id=actor_id,
            payload=payload,
            previous_hash=previous_hash,
            event_hash=_canonical_hash(
                event_id, event_kind.value, ts, actor_id, payload, previous_hash,
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_kind": self.event_kind.value,
            "timestamp_utc": self.timestamp_utc,
            "actor_id": self.actor_id,
            "payload": self.payload,
            "previous_hash": self.previous_hash,
            "event_hash": self.event_hash,
        }


class EventLog:
    """Append-only, hash-chained event log with optional JSONL persistence.

    Usage:
        log = EventLog(Path("data/events.jsonl"))
        log.record(EventKind.SETTLEMENT_ACCEPTED, "system", {"settlement_id": sid})
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._events: list[EventRecord] = []
        self._event_ids: set[str] = set()
        self._storage_path = storage_path
        self._lock = threading.Lock()

        if storage_path and storage_path.exists():
            self._load_from_file(storage_path)

    def record(
        self,
        kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        now: Optional[datetime] = None,
    ) -> EventRecord:
        """Build, chain and append the next event."""
        with self._lock:
            event = EventRecord.create(
                event_id=f"EVT-{len(self._events) + 1:08d}",
                event_kind=kind,
                actor_id=actor_id,
                payload=payload,
                previous_hash=self._head_hash(),
                timestamp_utc=now,
            )
            self._append_locked(event)
        return event

    def append(self, event: EventRecord) -> None:
        """Append a prebuilt event.

        Raises ValueError on a duplicate id or a broken chain link.
        """
        with self._lock:
            self._append_locked(event)

    def _append_locked(self, event: EventRecord) -> None:
        if event.event_id in self._event_ids:
            raise ValueError(f"Duplicate event ID: {event.event_id}")
        if event.previous_hash != self._head_hash():
            raise ValueError(f"Event {event.event_id} does not extend the log head")
        self._events.append(event)
        self._event_ids.add(event.event_id)
        if self._storage_path:
            self._append_to_file(event)

    def _head_hash(self) -> str:
        return self._events[-1].event_hash if self._events else GENESIS_HASH

    def events(self, kind: Optional[EventKind] = None) -> list[EventRecord]:
        if kind is None:
            return list(self._events)
        return [e for e in self._events if e.event_kind == kind]

    def events_for(self, key: str, value: str) -> list[EventRecord]:
        """Events whose payload has key == value (e.g. obligation_id)."""
        return [e for e in self._events if e.payload.get(key) == value]

    @property
    def count(self) -> int:
        return len(self._events)

    @property
    def last_event(self) -> Optional[EventRecord]:
        return self._events[-1] if self._events else None

    def _append_to_file(self, event: EventRecord) -> None:
        self._storage_path.parent.mkdir(parents=True, exist_ok=True)
        with self._storage_path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(event.to_dict(), sort_keys=True, ensure_ascii=False) + "\n")

    def _load_from_file(self, path: Path) -> None:
        """Load and verify the chain. Fail-closed on any mismatch."""
        previous = GENESIS_HASH
        with path.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                data = json.loads(line)
                event_id = data["event_id"]

                if event_id in self._event_ids:
                    raise ValueError(
                        f"Duplicate event ID on recovery (line {line_num}): {event_id}"
                    )
                if data["previous_hash"] != previous:
                    raise ValueError(
                        f"Chain broken (line {line_num}): event {event_id} "
                        f"links to {data['previous_hash']}, expected {previous}"
                    )
                expected_hash = _canonical_hash(
                    event_id,
                    data["event_kind"],
                    data["timestamp_utc"],
                    data["actor_id"],
                    data["payload"],
                    data["previous_hash"],
                )
                if data["event_hash"] != expected_hash:
                    raise ValueError(
                        f"Integrity check failed (line {line_num}): event {event_id} "
                        f"stored hash {data['event_hash']} != computed {expected_hash}"
                    )

                event = EventRecord(
                    event_id=event_id,
                    event_kind=EventKind(data["event_kind"]),
                    timestamp_utc=data["timestamp_utc"],
                    actor_id=data["actor_id"],
                    payload=data["payload"],
                    previous_hash=data["previous_hash"],
                    event_hash=data["event_hash"],
                )
                self._events.append(event)
                self._event_ids.add(event_id)
                previous = event.event_hash
