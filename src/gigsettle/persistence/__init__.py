"""Persistence — SQLite settlement store and the hash-chained audit log."""

from gigsettle.persistence.event_log import EventKind, EventLog
from gigsettle.persistence.store import SettlementStore

__all__ = ["EventKind", "EventLog", "SettlementStore"]
