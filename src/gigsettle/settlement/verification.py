"""Verification engine — turns a rail's answer into a settlement verdict.

Mapping from what the adapter reports to outcome state:

    success, confirmations ≥ required, amount within tolerance → ACCEPTED
    failure (with the adapter's reason)                        → REJECTED
    success but amount outside tolerance                       → REJECTED amount_mismatch
    success but currency differs                               → REJECTED currency_mismatch
    pending, or success below the confirmation threshold       → PENDING

Transient adapter errors propagate and nothing is written. The engine
never persists: the ledger records whatever verdict it returns. Same
upstream data gives the same verdict, so re-verifying is always safe.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from decimal import Decimal
from typing import Optional
from uuid import uuid4

from gigsettle.config import VerificationConfig
from gigsettle.errors import TransientAdapterError, VerificationCancelled
from gigsettle.models.obligation import Obligation, PaymentReference
from gigsettle.models.settlement import (
    RailStatus,
    RejectionReason,
    SettlementOutcome,
    SettlementState,
)
from gigsettle.rails.payment_rail import RailRegistry
from gigsettle.settlement.deadline import Clock, Deadline, SystemClock

logger = logging.getLogger(__name__)


class VerificationEngine:
    """Drives a rail adapter to a verdict for one payment reference.

    Usage:
        engine = VerificationEngine(registry)
        outcome = engine.verify(reference, obligation)
        outcome = engine.wait_for_settlement(reference, obligation, timeout=60)
    """

    def __init__(
        self,
        registry: RailRegistry,
        config: Optional[VerificationConfig] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._registry = registry
        self._config = config or VerificationConfig()
        self._clock = clock or SystemClock()

    @property
    def clock(self) -> Clock:
        return self._clock

    def verify(
        self,
        reference: PaymentReference,
        obligation: Obligation,
        deadline: Optional[Deadline] = None,
    ) -> SettlementOutcome:
        """One verification pass. Returns an unpersisted outcome."""
        deadline = deadline or Deadline.never(self._clock)
        deadline.check()
        adapter = self._registry.get(reference.rail)

        verification = adapter.verify(reference, obligation, deadline)
        now = self._clock.now()
        base = SettlementOutcome(
            settlement_id=f"stl_{uuid4().hex[:12]}",
            obligation_id=obligation.obligation_id,
            reference_id=reference.reference_id,
            rail=reference.rail,
            state=SettlementState.PENDING,
            rail_amount=verification.amount,
            rail_currency=verification.currency,
            confirmations=verification.confirmations,
            updated_utc=now,
        )

        if verification.status == RailStatus.FAILURE:
            reason = verification.failure_reason or RejectionReason.TRANSACTION_FAILED
            logger.info("Reference %s rejected by rail: %s", reference.reference_id, reason.value)
            return base.with_state(SettlementState.REJECTED, reason, now)

        if verification.status == RailStatus.PENDING:
            return base

        if verification.confirmations < adapter.required_confirmations:
            logger.debug(
                "Reference %s at %d/%d confirmations",
                reference.reference_id,
                verification.confirmations,
                adapter.required_confirmations,
            )
            return base

        check = adapter.check_amount(verification, obligation, deadline)
        if check.currency != obligation.expected_currency:
            logger.info(
                "Reference %s paid in %s, expected %s",
                reference.reference_id, check.currency, obligation.expected_currency,
            )
            return base.with_state(SettlementState.REJECTED, RejectionReason.CURRENCY_MISMATCH, now)
        if not check.within_tolerance:
            logger.info(
                "Reference %s amount %s outside tolerance of %s %s",
                reference.reference_id,
                check.normalized_amount,
                obligation.expected_amount,
                obligation.expected_currency,
            )
            return base.with_state(SettlementState.REJECTED, RejectionReason.AMOUNT_MISMATCH, now)

        accepted = base.with_state(SettlementState.ACCEPTED, None, now)
        return _with_verified(accepted, check.normalized_amount, obligation.expected_currency)

    def wait_for_settlement(
        self,
        reference: PaymentReference,
        obligation: Obligation,
        poll_interval: Optional[float] = None,
        timeout: Optional[float] = None,
        deadline: Optional[Deadline] = None,
    ) -> SettlementOutcome:
        """Poll until terminal or timeout.

        Returns the last PENDING verdict on timeout, so the caller can hand
        the reference to the sweeper. Transient errors are retried on the
        next poll. Cancelling the deadline raises VerificationCancelled.
        """
        interval = poll_interval if poll_interval is not None else self._config.poll_interval_seconds
        budget = timeout if timeout is not None else self._config.wait_timeout_seconds
        wait = deadline.child(budget) if deadline is not None else Deadline.after(budget, self._clock)

        last: Optional[SettlementOutcome] = None
        attempts = 0
        while True:
            attempts += 1
            try:
                last = self.verify(reference, obligation, wait)
            except VerificationCancelled:
                raise
            except TransientAdapterError as e:
                if wait.cancelled:
                    raise VerificationCancelled("Wait cancelled by caller") from e
                logger.info(
                    "Transient error verifying %s (poll %d): %s",
                    reference.reference_id, attempts, e,
                )
            else:
                if last.is_terminal:
                    return last

            if wait.expired:
                break
            if wait.sleep(interval):
                raise VerificationCancelled("Wait cancelled by caller")
            if wait.expired:
                break

        logger.info(
            "Reference %s still pending after %d polls; leaving it to reconciliation",
            reference.reference_id, attempts,
        )
        if last is not None:
            return last
        return SettlementOutcome(
            settlement_id=f"stl_{uuid4().hex[:12]}",
            obligation_id=obligation.obligation_id,
            reference_id=reference.reference_id,
            rail=reference.rail,
            state=SettlementState.PENDING,
            updated_utc=self._clock.now(),
        )


def _with_verified(outcome: SettlementOutcome, amount: Decimal, currency: str) -> SettlementOutcome:
    return replace(outcome, verified_amount=amount, verified_currency=currency)
