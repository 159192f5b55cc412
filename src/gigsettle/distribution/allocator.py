"""Distribution allocator — splits one accepted settlement into member payouts.

A plan is committed once per settlement, in the same transaction as its
pending payouts. Shares must sum to the settlement's verified amount
exactly; nothing is silently absorbed by rounding. After commit each payout
moves on its own: one member's payout failing leaves its siblings and the
settlement untouched.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional, Sequence
from uuid import uuid4

from gigsettle.errors import (
    InvalidPayoutTransitionError,
    NotFoundError,
    PlanAlreadyExistsError,
    ValidationError,
)
from gigsettle.models.distribution import (
    PAYOUT_TRANSITIONS,
    DistributionPlan,
    MemberPayout,
    PayoutMethod,
    PayoutStatus,
    PlanEntry,
    PlanEntryInput,
)
from gigsettle.models.money import quantize, to_decimal
from gigsettle.models.settlement import SettlementState
from gigsettle.persistence.store import SettlementStore

logger = logging.getLogger(__name__)


class DistributionAllocator:
    """Commits distribution plans and tracks member payouts.

    Usage:
        allocator = DistributionAllocator(store)
        plan = allocator.distribute(settlement_id, [
            PlanEntryInput("m1", Decimal("100.00")),
            PlanEntryInput("m2", Decimal("100.00")),
        ])
        allocator.mark_payout_outcome(plan.payouts[0].payout_id, PayoutStatus.SUCCEEDED, "tx_1")
    """

    def __init__(self, store: SettlementStore) -> None:
        self._store = store

    def distribute(
        self,
        settlement_id: str,
        entries: Sequence[PlanEntryInput],
        now: Optional[datetime] = None,
    ) -> DistributionPlan:
        """Validate and commit a plan plus one pending payout per entry.

        Raises:
            NotFoundError: unknown settlement.
            ValidationError: settlement not accepted, empty plan, negative
                share, sub-minor-unit share, or sum != verified amount.
            PlanAlreadyExistsError: the settlement already has a plan.
        """
        settlement = self._store.get_settlement(settlement_id)
        if settlement is None:
            raise NotFoundError(f"Settlement not found: {settlement_id}")
        if settlement.state != SettlementState.ACCEPTED:
            raise ValidationError(
                f"Settlement {settlement_id} is {settlement.state.value}; only accepted "
                "settlements can be distributed",
            )
        if not entries:
            raise ValidationError("Distribution plan must have at least one entry")
        if self._store.get_plan(settlement_id) is not None:
            raise PlanAlreadyExistsError(
                f"Settlement {settlement_id} already has a distribution plan",
                settlement_id=settlement_id,
            )

        currency = settlement.verified_currency
        total = settlement.verified_amount
        shares: List[Decimal] = []
        for i, entry in enumerate(entries):
            if not entry.member_id:
                raise ValidationError(f"Entry {i} has no member_id")
            share = to_decimal(entry.share_amount, f"entries[{i}].share_amount")
            if share < 0:
                raise ValidationError(f"Entry {i} ({entry.member_id}) has a negative share")
            if quantize(share, currency) != share:
                raise ValidationError(
                    f"Entry {i} share {share} is finer than the {currency} minor unit",
                )
            shares.append(share)

        allocated = sum(shares, Decimal("0"))
        if allocated != total:
            raise ValidationError(
                f"Shares sum to {allocated} but settlement verified {total} {currency}",
                allocated=allocated,
                expected=total,
            )

        now = now or datetime.now(timezone.utc)
        plan_id = f"pln_{uuid4().hex[:12]}"
        plan_entries = tuple(
            PlanEntry(
                entry_id=f"ent_{uuid4().hex[:12]}",
                member_id=entry.member_id,
                share_amount=share,
                payout_method=PayoutMethod(entry.payout_method),
                position=i,
            )
            for i, (entry, share) in enumerate(zip(entries, shares))
        )
        payouts = [
            MemberPayout(
                payout_id=f"pay_{uuid4().hex[:12]}",
                plan_id=plan_id,
                plan_entry_id=pe.entry_id,
                member_id=pe.member_id,
                amount=pe.share_amount,
                currency=currency,
                payout_method=pe.payout_method,
                notes=entry.notes,
                updated_utc=now,
            )
            for pe, entry in zip(plan_entries, entries)
        ]
        plan = DistributionPlan(
            plan_id=plan_id,
            settlement_id=settlement_id,
            total_amount=total,
            currency=currency,
            entries=plan_entries,
            created_utc=now,
        )
        self._store.insert_plan(plan, payouts)
        logger.info(
            "Committed plan %s for %s: %d entries totalling %s %s",
            plan_id, settlement_id, len(plan_entries), total, currency,
        )
        committed = self._store.get_plan(settlement_id)
        assert committed is not None
        return committed

    def mark_payout_outcome(
        self,
        payout_id: str,
        status: PayoutStatus,
        rail_transaction_id: Optional[str] = None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> MemberPayout:
        """Move one payout out of PENDING.

        Only PENDING → SUCCEEDED / FAILED / CANCELLED is allowed. Anything
        else raises InvalidPayoutTransitionError and changes nothing.
        """
        target = PayoutStatus(status)
        current = self._store.get_payout(payout_id)
        if current is None:
            raise NotFoundError(f"Payout not found: {payout_id}")
        if target not in PAYOUT_TRANSITIONS[current.status]:
            raise InvalidPayoutTransitionError(
                f"Payout {payout_id} cannot move {current.status.value} → {target.value}",
                payout_id=payout_id,
                current=current.status.value,
                requested=target.value,
            )
        payout = self._store.transition_payout(
            payout_id, target, rail_transaction_id, notes, now or datetime.now(timezone.utc),
        )
        logger.info("Payout %s for %s is now %s", payout_id, payout.member_id, target.value)
        return payout

    def get_plan(self, settlement_id: str) -> Optional[DistributionPlan]:
        return self._store.get_plan(settlement_id)

    def get_payout(self, payout_id: str) -> Optional[MemberPayout]:
        return self._store.get_payout(payout_id)

    def payouts_for_member(self, member_id: str) -> List[MemberPayout]:
        return self._store.payouts_for_member(member_id)
