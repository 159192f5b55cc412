"""Reconciliation sweeper — drives stuck references to a terminal state.

Every registered reference sits in the reconciliation queue until the
ledger records a terminal outcome for it. Each sweep picks the due
entries and, per reference:

1. horizon passed (14 days onchain, 48 hours otherwise) → EXPIRED with
   verification_horizon_exceeded. Never accepted afterwards.
2. otherwise verify again:
   - accepted / rejected → recorded, leaves the queue;
   - pending → recorded (fresh confirmations), next attempt after
     min(base · 2^attempt, cap);
   - transient error → nothing recorded, retried after a short fixed
     interval up to transient_max_attempts in a row, then backoff.

Before the references, each sweep stamps unsettled obligations whose due
date has passed as overdue (logged as ObligationOverdue). Overdue is a
reporting flag; a late payment still settles.

Independent references run in parallel on a thread pool. The horizon is
the only caller-independent way a pending settlement terminates.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from gigsettle.config import SettlementConfig
from gigsettle.errors import SettlementError, TransientAdapterError
from gigsettle.models.obligation import Obligation
from gigsettle.models.settlement import SettlementOutcome, SettlementState
from gigsettle.persistence.store import ReconciliationTask, SettlementStore
from gigsettle.settlement.deadline import Clock, Deadline, SystemClock
from gigsettle.settlement.ledger import SettlementLedger
from gigsettle.settlement.verification import VerificationEngine

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    """Counts from one sweep, keyed by what happened to each reference."""
    examined: int = 0
    outcomes: Dict[str, int] = field(default_factory=dict)
    credits_expired: int = 0
    obligations_overdue: int = 0

    def count(self, key: str) -> int:
        return self.outcomes.get(key, 0)

    def to_dict(self) -> dict:
        return {
            "examined": self.examined,
            "credits_expired": self.credits_expired,
            "obligations_overdue": self.obligations_overdue,
            **self.outcomes,
        }


class ReconciliationSweeper:
    """Periodic re-verification of non-terminal references.

    Usage:
        sweeper = ReconciliationSweeper(store, ledger, engine, config)
        report = sweeper.run_once()
        # or, in a worker thread:
        sweeper.run(stop_event)
    """

    def __init__(
        self,
        store: SettlementStore,
        ledger: SettlementLedger,
        engine: VerificationEngine,
        config: Optional[SettlementConfig] = None,
        clock: Optional[Clock] = None,
        on_outcome: Optional[Callable[[SettlementOutcome], None]] = None,
        on_overdue: Optional[Callable[[Obligation], None]] = None,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._engine = engine
        self._config = config or SettlementConfig()
        self._clock = clock or engine.clock or SystemClock()
        self._on_outcome = on_outcome
        self._on_overdue = on_overdue
        self._stop = threading.Event()

    def backoff_delay(self, attempt: int) -> float:
        """min(base · 2^attempt, cap) seconds."""
        cfg = self._config.sweeper
        return min(cfg.backoff_base_seconds * (2 ** min(attempt, 32)), cfg.backoff_cap_seconds)

    def run_once(self, now: Optional[datetime] = None, limit: int = 500) -> SweepReport:
        now = now or self._clock.now()
        report = SweepReport()
        report.credits_expired = self._store.expire_credits(now)
        report.obligations_overdue = self._mark_overdue(now)
        tasks = self._store.due_tasks(now, limit)
        report.examined = len(tasks)
        if not tasks:
            return report

        workers = max(1, min(self._config.sweeper.max_workers, len(tasks)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="sweeper") as pool:
            for key in pool.map(lambda t: self._process(t, now), tasks):
                report.outcomes[key] = report.outcomes.get(key, 0) + 1
        logger.info("Sweep at %s: %s", now.isoformat(), report.to_dict())
        return report

    def run(self, stop_event: Optional[threading.Event] = None) -> None:
        """Sweep every sweep_interval_seconds until stopped."""
        stop = stop_event or self._stop
        self._stop = stop
        interval = self._config.sweeper.sweep_interval_seconds
        logger.info("Reconciliation sweeper started (interval %ss)", interval)
        while not stop.is_set():
            try:
                self.run_once()
            except SettlementError:
                logger.exception("Sweep failed; retrying next interval")
            if self._clock.wait(interval, stop):
                break
        logger.info("Reconciliation sweeper stopped")

    def stop(self) -> None:
        self._stop.set()

    def _process(self, task: ReconciliationTask, now: datetime) -> str:
        reference = self._store.get_reference(task.reference_id)
        if reference is None:
            logger.error("Queued reference %s has no reference row", task.reference_id)
            return "missing"
        obligation = self._store.get_obligation(reference.obligation_id)
        if obligation is None:
            logger.error("Reference %s points at unknown obligation", reference.reference_id)
            return "missing"

        if now >= reference.submitted_utc + self._config.horizon_for(reference.rail):
            outcome = self._ledger.expire(reference, now)
            self._notify(outcome)
            return outcome.state.value

        deadline = Deadline(None, self._clock, self._stop)
        try:
            verdict = self._engine.verify(reference, obligation, deadline)
        except TransientAdapterError as e:
            return self._retry_transient(task, now, e)
        except SettlementError as e:
            # Misconfiguration (e.g. a rail was removed): keep backing off
            # until the horizon expires it.
            logger.error("Verification of %s failed: %s", reference.reference_id, e)
            self._store.reschedule(
                task.reference_id,
                task.attempt + 1,
                0,
                now + timedelta(seconds=self.backoff_delay(task.attempt)),
                last_error=e.code,
            )
            return "error"

        result = self._ledger.record_outcome(obligation.obligation_id, reference, verdict, now)
        attempt = result.attempt or result.outcome
        if attempt.is_terminal:
            self._notify(attempt)
            return attempt.state.value

        delay = self.backoff_delay(task.attempt)
        self._store.reschedule(
            task.reference_id,
            task.attempt + 1,
            0,
            now + timedelta(seconds=delay),
        )
        logger.debug(
            "Reference %s still pending (attempt %d); next check in %ss",
            reference.reference_id, task.attempt + 1, delay,
        )
        return SettlementState.PENDING.value

    def _retry_transient(self, task: ReconciliationTask, now: datetime, error: TransientAdapterError) -> str:
        cfg = self._config.sweeper
        streak = task.transient_streak + 1
        if streak <= cfg.transient_max_attempts:
            delay = max(cfg.transient_retry_seconds, error.retry_after_seconds or 0.0)
            attempt = task.attempt
        else:
            delay = self.backoff_delay(task.attempt)
            attempt = task.attempt + 1
        logger.info(
            "Transient error on %s (streak %d): %s; retrying in %ss",
            task.reference_id, streak, error, delay,
        )
        self._store.reschedule(
            task.reference_id,
            attempt,
            streak,
            now + timedelta(seconds=delay),
            last_error=error.code,
        )
        return "transient"

    def _mark_overdue(self, now: datetime) -> int:
        ids = self._store.mark_overdue(now)
        for obligation_id in ids:
            obligation = self._store.get_obligation(obligation_id)
            logger.warning(
                "ObligationOverdue: %s from %s was due %s",
                obligation_id, obligation.payer_id, obligation.due_utc.isoformat(),
            )
            if self._on_overdue is not None:
                self._on_overdue(obligation)
        return len(ids)

    def _notify(self, outcome: SettlementOutcome) -> None:
        if self._on_outcome is not None:
            self._on_outcome(outcome)
