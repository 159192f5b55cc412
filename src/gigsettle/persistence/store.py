"""SQLite persistence for obligations, settlements, plans, payouts and credit.

The store is the only place settled-ness lives. Two resources are guarded
by unique constraints inside ``BEGIN IMMEDIATE`` transactions:

- one accepted outcome per obligation
  (partial unique index on settlement_outcomes(obligation_id) WHERE
  state = 'accepted');
- one distribution plan per settlement
  (unique distribution_plans(settlement_id)).

(rail, rail_transaction_id) is unique across payment_references, so the
same external transaction cannot be replayed against two obligations.

Connections are thread-local with WAL journaling, so engines on sweeper
worker threads write concurrently without a process-wide lock.
Amounts are stored as Decimal strings; timestamps as ISO-8601 UTC.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Union

from gigsettle.errors import (
    DuplicateReferenceError,
    InvalidPayoutTransitionError,
    NotFoundError,
    PlanAlreadyExistsError,
    RefundError,
    ValidationError,
)
from gigsettle.models.credit import CreditAccount, CreditRedemption, CreditStatus
from gigsettle.models.distribution import (
    DistributionPlan,
    MemberPayout,
    PayoutMethod,
    PayoutStatus,
    PlanEntry,
)
from gigsettle.models.obligation import Obligation, PaymentReference, Rail
from gigsettle.models.settlement import (
    RecordResult,
    RefundRecord,
    RefundStatus,
    RejectionReason,
    SettlementOutcome,
    SettlementState,
)

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS obligations (
    obligation_id TEXT PRIMARY KEY,
    payer_id TEXT NOT NULL,
    payee_id TEXT NOT NULL,
    expected_amount TEXT NOT NULL,
    expected_currency TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    created_utc TEXT NOT NULL,
    due_utc TEXT,
    overdue_utc TEXT
);
CREATE INDEX IF NOT EXISTS idx_obligations_due ON obligations(due_utc);

CREATE TABLE IF NOT EXISTS payment_references (
    reference_id TEXT PRIMARY KEY,
    obligation_id TEXT NOT NULL REFERENCES obligations(obligation_id),
    rail TEXT NOT NULL,
    rail_transaction_id TEXT NOT NULL,
    counterpart TEXT,
    submitted_utc TEXT NOT NULL,
    UNIQUE (rail, rail_transaction_id)
);
CREATE INDEX IF NOT EXISTS idx_references_obligation
    ON payment_references(obligation_id);

CREATE TABLE IF NOT EXISTS settlement_outcomes (
    settlement_id TEXT PRIMARY KEY,
    obligation_id TEXT NOT NULL REFERENCES obligations(obligation_id),
    reference_id TEXT NOT NULL UNIQUE REFERENCES payment_references(reference_id),
    rail TEXT NOT NULL,
    state TEXT NOT NULL,
    verified_amount TEXT,
    verified_currency TEXT,
    rail_amount TEXT,
    rail_currency TEXT,
    confirmations INTEGER NOT NULL DEFAULT 0,
    rejection_reason TEXT,
    decided_utc TEXT,
    updated_utc TEXT NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_one_accepted_per_obligation
    ON settlement_outcomes(obligation_id) WHERE state = 'accepted';
CREATE INDEX IF NOT EXISTS idx_outcomes_obligation
    ON settlement_outcomes(obligation_id);

CREATE TABLE IF NOT EXISTS reconciliation_queue (
    reference_id TEXT PRIMARY KEY REFERENCES payment_references(reference_id),
    attempt INTEGER NOT NULL DEFAULT 0,
    transient_streak INTEGER NOT NULL DEFAULT 0,
    next_retry_utc TEXT NOT NULL,
    last_error TEXT
);
CREATE INDEX IF NOT EXISTS idx_queue_due ON reconciliation_queue(next_retry_utc);

CREATE TABLE IF NOT EXISTS distribution_plans (
    plan_id TEXT PRIMARY KEY,
    settlement_id TEXT NOT NULL UNIQUE REFERENCES settlement_outcomes(settlement_id),
    total_amount TEXT NOT NULL,
    currency TEXT NOT NULL,
    created_utc TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS plan_entries (
    entry_id TEXT PRIMARY KEY,
    plan_id TEXT NOT NULL REFERENCES distribution_plans(plan_id),
    position INTEGER NOT NULL,
    member_id TEXT NOT NULL,
    share_amount TEXT NOT NULL,
    payout_method TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS member_payouts (
    payout_id TEXT PRIMARY KEY,
    plan_id TEXT NOT NULL REFERENCES distribution_plans(plan_id),
    plan_entry_id TEXT NOT NULL UNIQUE REFERENCES plan_entries(entry_id),
    member_id TEXT NOT NULL,
    amount TEXT NOT NULL,
    currency TEXT NOT NULL,
    payout_method TEXT NOT NULL,
    status TEXT NOT NULL,
    rail_transaction_id TEXT,
    notes TEXT NOT NULL DEFAULT '',
    updated_utc TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_payouts_member ON member_payouts(member_id);

CREATE TABLE IF NOT EXISTS refunds (
    refund_id TEXT PRIMARY KEY,
    settlement_id TEXT NOT NULL REFERENCES settlement_outcomes(settlement_id),
    amount TEXT NOT NULL,
    currency TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    rail_refund_id TEXT,
    created_utc TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS credit_accounts (
    code TEXT PRIMARY KEY,
    holder_id TEXT NOT NULL,
    currency TEXT NOT NULL,
    original_amount TEXT NOT NULL,
    remaining_balance TEXT NOT NULL,
    status TEXT NOT NULL,
    issued_utc TEXT NOT NULL,
    expires_utc TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS credit_redemptions (
    redemption_id TEXT PRIMARY KEY,
    code TEXT NOT NULL REFERENCES credit_accounts(code),
    holder_id TEXT NOT NULL,
    amount TEXT NOT NULL,
    currency TEXT NOT NULL,
    redeemed_utc TEXT NOT NULL,
    released_utc TEXT
);
"""


@dataclass(frozen=True)
class ReconciliationTask:
    """One reference the sweeper still has to resolve."""
    reference_id: str
    attempt: int
    transient_streak: int
    next_retry_utc: datetime
    last_error: Optional[str] = None


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _dec(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


def _str(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


class SettlementStore:
    """SQLite-backed store. One instance per database file, shared across threads.

    Usage:
        store = SettlementStore(Path("data/settlement.db"))
        store.insert_obligation(obligation)
        result = store.record_outcome(outcome, now)
    """

    def __init__(self, path: Union[str, Path], timeout: float = 30.0) -> None:
        self._path = str(path)
        self._timeout = timeout
        self._local = threading.local()
        if self._path != ":memory:":
            Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        self.initialize()

    @property
    def path(self) -> str:
        return self._path

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(
                self._path,
                timeout=self._timeout,
                isolation_level=None,
                check_same_thread=False,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
            self._local.conn = conn
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Write transaction holding the database write lock from the start."""
        conn = self._get_connection()
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")

    def initialize(self) -> None:
        conn = self._get_connection()
        conn.executescript(SCHEMA)
        logger.debug("Settlement store initialised at %s", self._path)

    def close(self) -> None:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    # ------------------------------------------------------------------
    # Obligations
    # ------------------------------------------------------------------

    def insert_obligation(self, obligation: Obligation) -> None:
        try:
            with self._transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO obligations (obligation_id, payer_id, payee_id,
                        expected_amount, expected_currency, description, created_utc,
                        due_utc, overdue_utc)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        obligation.obligation_id,
                        obligation.payer_id,
                        obligation.payee_id,
                        str(obligation.expected_amount),
                        obligation.expected_currency,
                        obligation.description,
                        _ts(obligation.created_utc),
                        _ts(obligation.due_utc),
                        _ts(obligation.overdue_utc),
                    ),
                )
        except sqlite3.IntegrityError:
            raise ValidationError(
                f"Obligation already registered: {obligation.obligation_id}",
            ) from None

    def get_obligation(self, obligation_id: str) -> Optional[Obligation]:
        row = self._get_connection().execute(
            "SELECT * FROM obligations WHERE obligation_id = ?", (obligation_id,),
        ).fetchone()
        return self._obligation_from_row(row) if row else None

    def outstanding_for(self, party_id: str) -> List[Obligation]:
        """Obligations with no accepted settlement where party_id pays or is paid.

        Ordered by due date (undated last), then creation.
        """
        rows = self._get_connection().execute(
            """
            SELECT o.* FROM obligations o
            WHERE (o.payer_id = ? OR o.payee_id = ?)
              AND NOT EXISTS (
                  SELECT 1 FROM settlement_outcomes s
                  WHERE s.obligation_id = o.obligation_id AND s.state = 'accepted'
              )
            ORDER BY o.due_utc IS NULL, o.due_utc, o.created_utc, o.rowid
            """,
            (party_id, party_id),
        ).fetchall()
        return [self._obligation_from_row(r) for r in rows]

    def mark_overdue(self, now: datetime) -> List[str]:
        """Stamp unsettled obligations whose due date has passed. Returns their ids."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT o.obligation_id FROM obligations o
                WHERE o.overdue_utc IS NULL
                  AND o.due_utc IS NOT NULL
                  AND o.due_utc <= ?
                  AND NOT EXISTS (
                      SELECT 1 FROM settlement_outcomes s
                      WHERE s.obligation_id = o.obligation_id AND s.state = 'accepted'
                  )
                """,
                (_ts(now),),
            ).fetchall()
            ids = [r["obligation_id"] for r in rows]
            conn.executemany(
                "UPDATE obligations SET overdue_utc = ? WHERE obligation_id = ?",
                [(_ts(now), oid) for oid in ids],
            )
        return ids

    @staticmethod
    def _obligation_from_row(row: sqlite3.Row) -> Obligation:
        return Obligation(
            obligation_id=row["obligation_id"],
            payer_id=row["payer_id"],
            payee_id=row["payee_id"],
            expected_amount=Decimal(row["expected_amount"]),
            expected_currency=row["expected_currency"],
            created_utc=_dt(row["created_utc"]),
            description=row["description"],
            due_utc=_dt(row["due_utc"]),
            overdue_utc=_dt(row["overdue_utc"]),
        )

    # ------------------------------------------------------------------
    # Payment references and the reconciliation queue
    # ------------------------------------------------------------------

    def insert_reference(self, reference: PaymentReference) -> None:
        """Insert a reference and queue it for reconciliation.

        Raises DuplicateReferenceError if (rail, rail_transaction_id) is taken.
        """
        try:
            with self._transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO payment_references (reference_id, obligation_id, rail,
                        rail_transaction_id, counterpart, submitted_utc)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        reference.reference_id,
                        reference.obligation_id,
                        reference.rail.value,
                        reference.rail_transaction_id,
                        reference.counterpart,
                        _ts(reference.submitted_utc),
                    ),
                )
                conn.execute(
                    """
                    INSERT INTO reconciliation_queue (reference_id, attempt,
                        transient_streak, next_retry_utc)
                    VALUES (?, 0, 0, ?)
                    """,
                    (reference.reference_id, _ts(reference.submitted_utc)),
                )
        except sqlite3.IntegrityError as e:
            existing = self.get_reference_by_transaction(
                reference.rail, reference.rail_transaction_id,
            )
            if existing is None:
                raise ValidationError(f"Reference rejected by store: {e}") from e
            raise DuplicateReferenceError(
                f"{reference.rail.value} transaction {reference.rail_transaction_id} "
                f"already submitted as {existing.reference_id}",
                existing_reference_id=existing.reference_id,
                obligation_id=existing.obligation_id,
            ) from None

    def get_reference(self, reference_id: str) -> Optional[PaymentReference]:
        row = self._get_connection().execute(
            "SELECT * FROM payment_references WHERE reference_id = ?", (reference_id,),
        ).fetchone()
        return self._reference_from_row(row) if row else None

    def get_reference_by_transaction(
        self, rail: Rail, rail_transaction_id: str,
    ) -> Optional[PaymentReference]:
        row = self._get_connection().execute(
            "SELECT * FROM payment_references WHERE rail = ? AND rail_transaction_id = ?",
            (Rail(rail).value, rail_transaction_id),
        ).fetchone()
        return self._reference_from_row(row) if row else None

    def references_for(self, obligation_id: str) -> List[PaymentReference]:
        rows = self._get_connection().execute(
            "SELECT * FROM payment_references WHERE obligation_id = ? ORDER BY submitted_utc",
            (obligation_id,),
        ).fetchall()
        return [self._reference_from_row(r) for r in rows]

    @staticmethod
    def _reference_from_row(row: sqlite3.Row) -> PaymentReference:
        return PaymentReference(
            reference_id=row["reference_id"],
            obligation_id=row["obligation_id"],
            rail=Rail(row["rail"]),
            rail_transaction_id=row["rail_transaction_id"],
            submitted_utc=_dt(row["submitted_utc"]),
            counterpart=row["counterpart"],
        )

    def due_tasks(self, now: datetime, limit: int = 100) -> List[ReconciliationTask]:
        rows = self._get_connection().execute(
            """
            SELECT * FROM reconciliation_queue
            WHERE next_retry_utc <= ?
            ORDER BY next_retry_utc
            LIMIT ?
            """,
            (_ts(now), limit),
        ).fetchall()
        return [self._task_from_row(r) for r in rows]

    def get_task(self, reference_id: str) -> Optional[ReconciliationTask]:
        row = self._get_connection().execute(
            "SELECT * FROM reconciliation_queue WHERE reference_id = ?", (reference_id,),
        ).fetchone()
        return self._task_from_row(row) if row else None

    def reschedule(
        self,
        reference_id: str,
        attempt: int,
        transient_streak: int,
        next_retry_utc: datetime,
        last_error: Optional[str] = None,
    ) -> None:
        # No-op if the reference was resolved in the meantime.
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE reconciliation_queue
                SET attempt = ?, transient_streak = ?, next_retry_utc = ?, last_error = ?
                WHERE reference_id = ?
                """,
                (attempt, transient_streak, _ts(next_retry_utc), last_error, reference_id),
            )

    def queue_size(self) -> int:
        row = self._get_connection().execute(
            "SELECT COUNT(*) AS n FROM reconciliation_queue",
        ).fetchone()
        return int(row["n"])

    @staticmethod
    def _task_from_row(row: sqlite3.Row) -> ReconciliationTask:
        return ReconciliationTask(
            reference_id=row["reference_id"],
            attempt=int(row["attempt"]),
            transient_streak=int(row["transient_streak"]),
            next_retry_utc=_dt(row["next_retry_utc"]),
            last_error=row["last_error"],
        )

    # ------------------------------------------------------------------
    # Settlement outcomes
    # ------------------------------------------------------------------

    def record_outcome(self, outcome: SettlementOutcome, now: datetime) -> RecordResult:
        """Write one verification verdict for one reference.

        Single transaction:
        - a terminal row for the reference is never overwritten;
        - ACCEPTED is written only while the obligation has no accepted
          outcome; otherwise the attempt is stored REJECTED with
          obligation_already_settled and the existing winner is returned;
        - a PENDING attempt against an already settled obligation is
          closed the same way, since it can never win.
        Terminal writes drop the reference from the reconciliation queue.
        """
        try:
            return self._record_outcome(outcome, now)
        except sqlite3.IntegrityError:
            # Lost a race on the accepted slot between read and write.
            logger.info(
                "Accepted slot for %s taken concurrently; recording as already settled",
                outcome.obligation_id,
            )
            return self._record_outcome(outcome, now)

    def _record_outcome(self, outcome: SettlementOutcome, now: datetime) -> RecordResult:
        with self._transaction() as conn:
            existing_row = conn.execute(
                "SELECT * FROM settlement_outcomes WHERE reference_id = ?",
                (outcome.reference_id,),
            ).fetchone()
            existing = self._outcome_from_row(existing_row) if existing_row else None
            winner_row = conn.execute(
                "SELECT * FROM settlement_outcomes WHERE obligation_id = ? AND state = 'accepted'",
                (outcome.obligation_id,),
            ).fetchone()
            winner = self._outcome_from_row(winner_row) if winner_row else None

            if existing is not None and existing.is_terminal:
                return RecordResult(
                    accepted=False, outcome=winner or existing, attempt=existing,
                )

            to_write = outcome
            if existing is not None:
                to_write = _replace_id(outcome, existing.settlement_id)

            if winner is not None and outcome.state in (
                SettlementState.ACCEPTED, SettlementState.PENDING,
            ):
                to_write = to_write.with_state(
                    SettlementState.REJECTED,
                    RejectionReason.OBLIGATION_ALREADY_SETTLED,
                    now,
                )

            to_write = _stamp(to_write, now)
            self._upsert_outcome(conn, to_write)
            if to_write.is_terminal:
                conn.execute(
                    "DELETE FROM reconciliation_queue WHERE reference_id = ?",
                    (to_write.reference_id,),
                )

            if to_write.state == SettlementState.ACCEPTED:
                return RecordResult(accepted=True, outcome=to_write, attempt=to_write)
            return RecordResult(accepted=False, outcome=winner or to_write, attempt=to_write)

    def expire_reference(
        self,
        reference: PaymentReference,
        settlement_id: str,
        now: datetime,
    ) -> SettlementOutcome:
        """Force a non-terminal reference to EXPIRED. Terminal rows are returned as-is."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM settlement_outcomes WHERE reference_id = ?",
                (reference.reference_id,),
            ).fetchone()
            conn.execute(
                "DELETE FROM reconciliation_queue WHERE reference_id = ?",
                (reference.reference_id,),
            )
            if row is not None:
                current = self._outcome_from_row(row)
                if current.is_terminal:
                    return current
            else:
                current = SettlementOutcome(
                    settlement_id=settlement_id,
                    obligation_id=reference.obligation_id,
                    reference_id=reference.reference_id,
                    rail=reference.rail,
                    state=SettlementState.PENDING,
                )
            expired = current.with_state(
                SettlementState.EXPIRED,
                RejectionReason.VERIFICATION_HORIZON_EXCEEDED,
                now,
            )
            self._upsert_outcome(conn, expired)
            return expired

    @staticmethod
    def _upsert_outcome(conn: sqlite3.Connection, outcome: SettlementOutcome) -> None:
        conn.execute(
            """
            INSERT INTO settlement_outcomes (settlement_id, obligation_id, reference_id,
                rail, state, verified_amount, verified_currency, rail_amount,
                rail_currency, confirmations, rejection_reason, decided_utc, updated_utc)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(reference_id) DO UPDATE SET
                state = excluded.state,
                verified_amount = excluded.verified_amount,
                verified_currency = excluded.verified_currency,
                rail_amount = excluded.rail_amount,
                rail_currency = excluded.rail_currency,
                confirmations = excluded.confirmations,
                rejection_reason = excluded.rejection_reason,
                decided_utc = excluded.decided_utc,
                updated_utc = excluded.updated_utc
            WHERE settlement_outcomes.state = 'pending'
            """,
            (
                outcome.settlement_id,
                outcome.obligation_id,
                outcome.reference_id,
                outcome.rail.value,
                outcome.state.value,
                _str(outcome.verified_amount),
                outcome.verified_currency,
                _str(outcome.rail_amount),
                outcome.rail_currency,
                outcome.confirmations,
                outcome.rejection_reason.value if outcome.rejection_reason else None,
                _ts(outcome.decided_utc),
                _ts(outcome.updated_utc),
            ),
        )

    def get_settlement(self, settlement_id: str) -> Optional[SettlementOutcome]:
        row = self._get_connection().execute(
            "SELECT * FROM settlement_outcomes WHERE settlement_id = ?", (settlement_id,),
        ).fetchone()
        return self._outcome_from_row(row) if row else None

    def outcome_for_reference(self, reference_id: str) -> Optional[SettlementOutcome]:
        row = self._get_connection().execute(
            "SELECT * FROM settlement_outcomes WHERE reference_id = ?", (reference_id,),
        ).fetchone()
        return self._outcome_from_row(row) if row else None

    def outcomes_for(self, obligation_id: str) -> List[SettlementOutcome]:
        rows = self._get_connection().execute(
            """
            SELECT * FROM settlement_outcomes WHERE obligation_id = ?
            ORDER BY updated_utc, rowid
            """,
            (obligation_id,),
        ).fetchall()
        return [self._outcome_from_row(r) for r in rows]

    def count_outcomes(self) -> Dict[str, int]:
        rows = self._get_connection().execute(
            "SELECT state, COUNT(*) AS n FROM settlement_outcomes GROUP BY state",
        ).fetchall()
        return {r["state"]: int(r["n"]) for r in rows}

    @staticmethod
    def _outcome_from_row(row: sqlite3.Row) -> SettlementOutcome:
        reason = row["rejection_reason"]
        return SettlementOutcome(
            settlement_id=row["settlement_id"],
            obligation_id=row["obligation_id"],
            reference_id=row["reference_id"],
            rail=Rail(row["rail"]),
            state=SettlementState(row["state"]),
            verified_amount=_dec(row["verified_amount"]),
            verified_currency=row["verified_currency"],
            rail_amount=_dec(row["rail_amount"]),
            rail_currency=row["rail_currency"],
            confirmations=int(row["confirmations"]),
            rejection_reason=RejectionReason(reason) if reason else None,
            decided_utc=_dt(row["decided_utc"]),
            updated_utc=_dt(row["updated_utc"]),
        )

    # ------------------------------------------------------------------
    # Distribution plans and member payouts
    # ------------------------------------------------------------------

    def insert_plan(self, plan: DistributionPlan, payouts: Sequence[MemberPayout]) -> None:
        """Commit a plan, its entries and one payout per entry atomically."""
        try:
            with self._transaction() as conn:
                row = conn.execute(
                    "SELECT state FROM settlement_outcomes WHERE settlement_id = ?",
                    (plan.settlement_id,),
                ).fetchone()
                if row is None:
                    raise NotFoundError(f"Settlement not found: {plan.settlement_id}")
                if row["state"] != SettlementState.ACCEPTED.value:
                    raise ValidationError(
                        f"Settlement {plan.settlement_id} is {row['state']}, not accepted",
                    )
                conn.execute(
                    """
                    INSERT INTO distribution_plans (plan_id, settlement_id, total_amount,
                        currency, created_utc)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        plan.plan_id,
                        plan.settlement_id,
                        str(plan.total_amount),
                        plan.currency,
                        _ts(plan.created_utc),
                    ),
                )
                conn.executemany(
                    """
                    INSERT INTO plan_entries (entry_id, plan_id, position, member_id,
                        share_amount, payout_method)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (e.entry_id, plan.plan_id, e.position, e.member_id,
                         str(e.share_amount), e.payout_method.value)
                        for e in plan.entries
                    ],
                )
                conn.executemany(
                    """
                    INSERT INTO member_payouts (payout_id, plan_id, plan_entry_id, member_id,
                        amount, currency, payout_method, status, rail_transaction_id,
                        notes, updated_utc)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (p.payout_id, p.plan_id, p.plan_entry_id, p.member_id,
                         str(p.amount), p.currency, p.payout_method.value, p.status.value,
                         p.rail_transaction_id, p.notes, _ts(p.updated_utc))
                        for p in payouts
                    ],
                )
        except sqlite3.IntegrityError as e:
            if "distribution_plans.settlement_id" in str(e):
                raise PlanAlreadyExistsError(
                    f"Settlement {plan.settlement_id} already has a distribution plan",
                    settlement_id=plan.settlement_id,
                ) from None
            raise ValidationError(
                f"Distribution plan {plan.plan_id} violates a store constraint: {e}",
                settlement_id=plan.settlement_id,
            ) from e

    def get_plan(self, settlement_id: str) -> Optional[DistributionPlan]:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM distribution_plans WHERE settlement_id = ?", (settlement_id,),
        ).fetchone()
        if row is None:
            return None
        entries = conn.execute(
            "SELECT * FROM plan_entries WHERE plan_id = ? ORDER BY position",
            (row["plan_id"],),
        ).fetchall()
        return DistributionPlan(
            plan_id=row["plan_id"],
            settlement_id=row["settlement_id"],
            total_amount=Decimal(row["total_amount"]),
            currency=row["currency"],
            entries=tuple(
                PlanEntry(
                    entry_id=e["entry_id"],
                    member_id=e["member_id"],
                    share_amount=Decimal(e["share_amount"]),
                    payout_method=PayoutMethod(e["payout_method"]),
                    position=int(e["position"]),
                )
                for e in entries
            ),
            created_utc=_dt(row["created_utc"]),
            payouts=tuple(self.payouts_for_plan(row["plan_id"])),
        )

    def get_payout(self, payout_id: str) -> Optional[MemberPayout]:
        row = self._get_connection().execute(
            "SELECT * FROM member_payouts WHERE payout_id = ?", (payout_id,),
        ).fetchone()
        return self._payout_from_row(row) if row else None

    def payouts_for_plan(self, plan_id: str) -> List[MemberPayout]:
        rows = self._get_connection().execute(
            """
            SELECT p.* FROM member_payouts p
            JOIN plan_entries e ON e.entry_id = p.plan_entry_id
            WHERE p.plan_id = ? ORDER BY e.position
            """,
            (plan_id,),
        ).fetchall()
        return [self._payout_from_row(r) for r in rows]

    def payouts_for_member(self, member_id: str) -> List[MemberPayout]:
        rows = self._get_connection().execute(
            "SELECT * FROM member_payouts WHERE member_id = ? ORDER BY updated_utc, rowid",
            (member_id,),
        ).fetchall()
        return [self._payout_from_row(r) for r in rows]

    def transition_payout(
        self,
        payout_id: str,
        status: PayoutStatus,
        rail_transaction_id: Optional[str],
        notes: Optional[str],
        now: datetime,
    ) -> MemberPayout:
        """Move a payout out of PENDING. Any other source state is refused."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE member_payouts
                SET status = ?,
                    rail_transaction_id = COALESCE(?, rail_transaction_id),
                    notes = COALESCE(?, notes),
                    updated_utc = ?
                WHERE payout_id = ? AND status = 'pending'
                """,
                (status.value, rail_transaction_id, notes, _ts(now), payout_id),
            )
            row = conn.execute(
                "SELECT * FROM member_payouts WHERE payout_id = ?", (payout_id,),
            ).fetchone()
        if row is None:
            raise NotFoundError(f"Payout not found: {payout_id}")
        payout = self._payout_from_row(row)
        if cursor.rowcount == 0:
            raise InvalidPayoutTransitionError(
                f"Payout {payout_id} is {payout.status.value}; cannot move to {status.value}",
                payout_id=payout_id,
                current=payout.status.value,
                requested=status.value,
            )
        return payout

    def count_payouts(self) -> Dict[str, int]:
        rows = self._get_connection().execute(
            "SELECT status, COUNT(*) AS n FROM member_payouts GROUP BY status",
        ).fetchall()
        return {r["status"]: int(r["n"]) for r in rows}

    @staticmethod
    def _payout_from_row(row: sqlite3.Row) -> MemberPayout:
        return MemberPayout(
            payout_id=row["payout_id"],
            plan_id=row["plan_id"],
            plan_entry_id=row["plan_entry_id"],
            member_id=row["member_id"],
            amount=Decimal(row["amount"]),
            currency=row["currency"],
            payout_method=PayoutMethod(row["payout_method"]),
            status=PayoutStatus(row["status"]),
            rail_transaction_id=row["rail_transaction_id"],
            notes=row["notes"],
            updated_utc=_dt(row["updated_utc"]),
        )

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    def refunded_total(self, settlement_id: str) -> Decimal:
        """Pending and succeeded refunds; failed ones gave nothing back."""
        return self._refunded_total(self._get_connection(), settlement_id)

    @staticmethod
    def _refunded_total(conn: sqlite3.Connection, settlement_id: str) -> Decimal:
        rows = conn.execute(
            "SELECT amount FROM refunds WHERE settlement_id = ? AND status != 'failed'",
            (settlement_id,),
        ).fetchall()
        return sum((Decimal(r["amount"]) for r in rows), Decimal("0"))

    def reserve_refund(self, record: RefundRecord, limit: Decimal) -> RefundRecord:
        """Hold a PENDING refund row unless it would push the total past limit.

        The rail is only asked to move money after this commits, so two
        concurrent refunds can never both pass the limit check.
        """
        with self._transaction() as conn:
            already = self._refunded_total(conn, record.settlement_id)
            if already + record.amount > limit:
                raise RefundError(
                    f"Refund of {record.amount} exceeds remaining {limit - already}",
                    settlement_id=record.settlement_id,
                )
            conn.execute(
                """
                INSERT INTO refunds (refund_id, settlement_id, amount, currency, status,
                    rail_refund_id, created_utc)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.refund_id,
                    record.settlement_id,
                    str(record.amount),
                    record.currency,
                    RefundStatus.PENDING.value,
                    None,
                    _ts(record.created_utc),
                ),
            )
        return replace(record, status=RefundStatus.PENDING, rail_refund_id=None)

    def complete_refund(self, refund_id: str, rail_refund_id: str) -> RefundRecord:
        """Mark a reserved refund succeeded. A refund already succeeded is left as is."""
        with self._transaction() as conn:
            self._finish_refund(conn, refund_id, RefundStatus.SUCCEEDED, rail_refund_id)
        return self.get_refund(refund_id)

    def fail_refund(self, refund_id: str) -> RefundRecord:
        """Release a reserved refund the rail refused."""
        with self._transaction() as conn:
            self._finish_refund(conn, refund_id, RefundStatus.FAILED, None)
        return self.get_refund(refund_id)

    @staticmethod
    def _finish_refund(
        conn: sqlite3.Connection,
        refund_id: str,
        status: RefundStatus,
        rail_refund_id: Optional[str],
    ) -> None:
        row = conn.execute(
            "SELECT status FROM refunds WHERE refund_id = ?", (refund_id,),
        ).fetchone()
        if row is None:
            raise NotFoundError(f"Refund not found: {refund_id}")
        if row["status"] == status.value:
            return
        if row["status"] != RefundStatus.PENDING.value:
            raise RefundError(
                f"Refund {refund_id} is {row['status']}; cannot move to {status.value}",
                refund_id=refund_id,
            )
        conn.execute(
            "UPDATE refunds SET status = ?, rail_refund_id = ? WHERE refund_id = ?",
            (status.value, rail_refund_id, refund_id),
        )

    def get_refund(self, refund_id: str) -> Optional[RefundRecord]:
        row = self._get_connection().execute(
            "SELECT * FROM refunds WHERE refund_id = ?", (refund_id,),
        ).fetchone()
        return self._refund_from_row(row) if row else None

    def refunds_for(self, settlement_id: str) -> List[RefundRecord]:
        rows = self._get_connection().execute(
            "SELECT * FROM refunds WHERE settlement_id = ? ORDER BY created_utc, rowid",
            (settlement_id,),
        ).fetchall()
        return [self._refund_from_row(r) for r in rows]

    @staticmethod
    def _refund_from_row(row: sqlite3.Row) -> RefundRecord:
        return RefundRecord(
            refund_id=row["refund_id"],
            settlement_id=row["settlement_id"],
            amount=Decimal(row["amount"]),
            currency=row["currency"],
            created_utc=_dt(row["created_utc"]),
            status=RefundStatus(row["status"]),
            rail_refund_id=row["rail_refund_id"],
        )

    # ------------------------------------------------------------------
    # Credit accounts
    # ------------------------------------------------------------------

    def insert_credit(self, account: CreditAccount) -> None:
        try:
            with self._transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO credit_accounts (code, holder_id, currency, original_amount,
                        remaining_balance, status, issued_utc, expires_utc)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        account.code,
                        account.holder_id,
                        account.currency,
                        str(account.original_amount),
                        str(account.remaining_balance),
                        account.status.value,
                        _ts(account.issued_utc),
                        _ts(account.expires_utc),
                    ),
                )
        except sqlite3.IntegrityError:
            raise ValidationError(f"Credit code already issued: {account.code}") from None

    def get_credit(self, code: str) -> Optional[CreditAccount]:
        row = self._get_connection().execute(
            "SELECT * FROM credit_accounts WHERE code = ?", (code,),
        ).fetchone()
        return self._credit_from_row(row) if row else None

    def redeem_credit(
        self,
        code: str,
        holder_id: str,
        amount: Decimal,
        redemption_id: str,
        now: datetime,
    ) -> CreditRedemption:
        """Debit a credit account. Checks status, expiry, holder and balance."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM credit_accounts WHERE code = ?", (code,),
            ).fetchone()
            if row is None:
                raise NotFoundError(f"Credit code not found: {code}")
            account = self._credit_from_row(row)
            if account.status != CreditStatus.ACTIVE:
                raise ValidationError(f"Credit {code} is {account.status.value}", code=code)
            if account.expires_utc <= now:
                raise ValidationError(f"Credit {code} expired {account.expires_utc.isoformat()}", code=code)
            if account.holder_id != holder_id:
                raise ValidationError(f"Credit {code} does not belong to {holder_id}", code=code)
            if amount <= 0:
                raise ValidationError("Redemption amount must be positive")
            if amount > account.remaining_balance:
                raise ValidationError(
                    f"Credit {code} has {account.remaining_balance}, cannot redeem {amount}",
                    code=code,
                )
            remaining = account.remaining_balance - amount
            conn.execute(
                "UPDATE credit_accounts SET remaining_balance = ?, status = ? WHERE code = ?",
                (
                    str(remaining),
                    (CreditStatus.REDEEMED if remaining == 0 else CreditStatus.ACTIVE).value,
                    code,
                ),
            )
            redemption = CreditRedemption(
                redemption_id=redemption_id,
                code=code,
                holder_id=holder_id,
                amount=amount,
                currency=account.currency,
                redeemed_utc=now,
            )
            conn.execute(
                """
                INSERT INTO credit_redemptions (redemption_id, code, holder_id, amount,
                    currency, redeemed_utc)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (redemption_id, code, holder_id, str(amount), account.currency, _ts(now)),
            )
        return redemption

    def expire_credits(self, now: datetime) -> int:
        """Mark active accounts past their expiry. Returns how many changed."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE credit_accounts SET status = 'expired' WHERE status = 'active' AND expires_utc <= ?",
                (_ts(now),),
            )
        return cursor.rowcount

    def refund_credit(
        self,
        refund_id: str,
        redemption_id: str,
        amount: Decimal,
        rail_refund_id: str,
    ) -> CreditAccount:
        """Put refunded value back and complete the reserved refund, atomically.

        A refund already completed restores nothing a second time.
        """
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT status FROM refunds WHERE refund_id = ?", (refund_id,),
            ).fetchone()
            if row is None:
                raise NotFoundError(f"Refund not found: {refund_id}")
            red = self._redemption_row(conn, redemption_id)
            if row["status"] == RefundStatus.PENDING.value:
                self._restore_balance(conn, red["code"], amount)
            self._finish_refund(conn, refund_id, RefundStatus.SUCCEEDED, rail_refund_id)
            account = conn.execute(
                "SELECT * FROM credit_accounts WHERE code = ?", (red["code"],),
            ).fetchone()
        return self._credit_from_row(account)

    def release_redemption(self, redemption_id: str, now: datetime) -> Optional[CreditAccount]:
        """Undo a redemption that paid nothing.

        Returns the account with its balance restored, or None if the
        redemption was already released or backs an accepted settlement.
        """
        with self._transaction() as conn:
            red = self._redemption_row(conn, redemption_id)
            if red["released_utc"] is not None:
                return None
            accepted = conn.execute(
                """
                SELECT 1 FROM settlement_outcomes s
                JOIN payment_references r ON r.reference_id = s.reference_id
                WHERE r.rail = ? AND r.rail_transaction_id = ? AND s.state = 'accepted'
                """,
                (Rail.CREDIT.value, redemption_id),
            ).fetchone()
            if accepted is not None:
                return None
            conn.execute(
                "UPDATE credit_redemptions SET released_utc = ? WHERE redemption_id = ?",
                (_ts(now), redemption_id),
            )
            self._restore_balance(conn, red["code"], Decimal(red["amount"]))
            account = conn.execute(
                "SELECT * FROM credit_accounts WHERE code = ?", (red["code"],),
            ).fetchone()
        return self._credit_from_row(account)

    @staticmethod
    def _redemption_row(conn: sqlite3.Connection, redemption_id: str) -> sqlite3.Row:
        red = conn.execute(
            "SELECT * FROM credit_redemptions WHERE redemption_id = ?", (redemption_id,),
        ).fetchone()
        if red is None:
            raise NotFoundError(f"Redemption not found: {redemption_id}")
        return red

    def _restore_balance(self, conn: sqlite3.Connection, code: str, amount: Decimal) -> None:
        row = conn.execute(
            "SELECT * FROM credit_accounts WHERE code = ?", (code,),
        ).fetchone()
        account = self._credit_from_row(row)
        balance = account.remaining_balance + amount
        status = CreditStatus.ACTIVE if account.status == CreditStatus.REDEEMED else account.status
        conn.execute(
            "UPDATE credit_accounts SET remaining_balance = ?, status = ? WHERE code = ?",
            (str(balance), status.value, code),
        )

    def get_redemption(self, redemption_id: str) -> Optional[CreditRedemption]:
        row = self._get_connection().execute(
            "SELECT * FROM credit_redemptions WHERE redemption_id = ?", (redemption_id,),
        ).fetchone()
        if row is None:
            return None
        return CreditRedemption(
            redemption_id=row["redemption_id"],
            code=row["code"],
            holder_id=row["holder_id"],
            amount=Decimal(row["amount"]),
            currency=row["currency"],
            redeemed_utc=_dt(row["redeemed_utc"]),
            released_utc=_dt(row["released_utc"]),
        )

    @staticmethod
    def _credit_from_row(row: sqlite3.Row) -> CreditAccount:
        return CreditAccount(
            code=row["code"],
            holder_id=row["holder_id"],
            currency=row["currency"],
            original_amount=Decimal(row["original_amount"]),
            remaining_balance=Decimal(row["remaining_balance"]),
            status=CreditStatus(row["status"]),
            issued_utc=_dt(row["issued_utc"]),
            expires_utc=_dt(row["expires_utc"]),
        )


def _replace_id(outcome: SettlementOutcome, settlement_id: str) -> SettlementOutcome:
    return replace(outcome, settlement_id=settlement_id)


def _stamp(outcome: SettlementOutcome, now: datetime) -> SettlementOutcome:
    if outcome.is_terminal and outcome.decided_utc is None:
        return replace(outcome, decided_utc=now, updated_utc=now)
    return replace(outcome, updated_utc=now)
