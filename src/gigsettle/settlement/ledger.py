"""Settlement ledger — the only writer of settlement outcomes.

Settled-ness is a persistence constraint, not an in-process flag: the
store's partial unique index admits one accepted row per obligation, and
every write runs in one conditional transaction. Any number of workers
(API callers, sweeper threads, other processes on the same database) can
race on the same obligation; exactly one wins.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional
from uuid import uuid4

from gigsettle.errors import NotFoundError, ValidationError
from gigsettle.models.obligation import PaymentReference
from gigsettle.models.settlement import (
    RecordResult,
    SettlementOutcome,
    SettlementState,
)
from gigsettle.persistence.store import SettlementStore

logger = logging.getLogger(__name__)


class SettlementLedger:
    """Idempotent recording of verification verdicts.

    Usage:
        ledger = SettlementLedger(store)
        ledger.register_reference(reference)          # duplicate_reference guard
        result = ledger.record_outcome(obligation_id, reference, outcome)
        if result.accepted: ...
    """

    def __init__(self, store: SettlementStore) -> None:
        self._store = store

    def register_reference(self, reference: PaymentReference) -> PaymentReference:
        """Claim (rail, rail_transaction_id) for an obligation.

        Raises DuplicateReferenceError if any obligation already holds the
        same rail transaction, before any rail is contacted.
        """
        if self._store.get_obligation(reference.obligation_id) is None:
            raise NotFoundError(f"Obligation not found: {reference.obligation_id}")
        self._store.insert_reference(reference)
        logger.info(
            "Registered %s reference %s for %s",
            reference.rail.value, reference.reference_id, reference.obligation_id,
        )
        return reference

    def record_outcome(
        self,
        obligation_id: str,
        reference: PaymentReference,
        outcome: SettlementOutcome,
        now: Optional[datetime] = None,
    ) -> RecordResult:
        """Persist one verdict. accepted is True only for the call that won."""
        if outcome.obligation_id != obligation_id or reference.obligation_id != obligation_id:
            raise ValidationError(
                f"Outcome and reference must both belong to obligation {obligation_id}",
            )
        if outcome.reference_id != reference.reference_id:
            raise ValidationError(
                f"Outcome is for {outcome.reference_id}, not {reference.reference_id}",
            )
        result = self._store.record_outcome(outcome, now or datetime.now(timezone.utc))
        attempt = result.attempt
        if result.accepted:
            logger.info(
                "Obligation %s settled by %s (%s %s)",
                obligation_id,
                reference.reference_id,
                result.outcome.verified_amount,
                result.outcome.verified_currency,
            )
        elif attempt is not None and attempt.state == SettlementState.REJECTED:
            logger.info(
                "Reference %s rejected: %s",
                reference.reference_id,
                attempt.rejection_reason.value if attempt.rejection_reason else "unknown",
            )
        return result

    def expire(self, reference: PaymentReference, now: Optional[datetime] = None) -> SettlementOutcome:
        """Force a reference past its horizon into EXPIRED.

        Only the sweeper calls this. An already-terminal reference is left
        untouched and returned as-is.
        """
        outcome = self._store.expire_reference(
            reference, f"stl_{uuid4().hex[:12]}", now or datetime.now(timezone.utc),
        )
        if outcome.state == SettlementState.EXPIRED:
            logger.warning(
                "HorizonExceeded: %s reference %s for obligation %s expired unresolved; "
                "manual reconciliation required",
                reference.rail.value, reference.reference_id, reference.obligation_id,
            )
        return outcome

    def get_outcome(self, obligation_id: str) -> Optional[SettlementOutcome]:
        """Accepted outcome, else the latest pending attempt, else the latest terminal one."""
        outcomes = self._store.outcomes_for(obligation_id)
        if not outcomes:
            return None
        for outcome in outcomes:
            if outcome.state == SettlementState.ACCEPTED:
                return outcome
        pending = [o for o in outcomes if o.state == SettlementState.PENDING]
        if pending:
            return pending[-1]
        return outcomes[-1]

    def is_settled(self, obligation_id: str) -> bool:
        outcome = self.get_outcome(obligation_id)
        return outcome is not None and outcome.state == SettlementState.ACCEPTED

    def get_settlement(self, settlement_id: str) -> Optional[SettlementOutcome]:
        return self._store.get_settlement(settlement_id)

    def outcome_for_reference(self, reference_id: str) -> Optional[SettlementOutcome]:
        return self._store.outcome_for_reference(reference_id)

    def outcomes_for(self, obligation_id: str) -> List[SettlementOutcome]:
        return self._store.outcomes_for(obligation_id)
