"""Distribution models — how an accepted settlement splits among members.

A DistributionPlan is committed once per accepted settlement. Each plan
entry yields one MemberPayout with its own lifecycle:

    PENDING → SUCCEEDED
    PENDING → FAILED
    PENDING → CANCELLED

One member's payout can fail while another's succeeds. A failed payout
never touches its siblings or the parent settlement.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional


class PayoutStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


PAYOUT_TRANSITIONS: Dict[PayoutStatus, frozenset] = {
    PayoutStatus.PENDING: frozenset({
        PayoutStatus.SUCCEEDED,
        PayoutStatus.FAILED,
        PayoutStatus.CANCELLED,
    }),
    PayoutStatus.SUCCEEDED: frozenset(),
    PayoutStatus.FAILED: frozenset(),
    PayoutStatus.CANCELLED: frozenset(),
}


class PayoutMethod(str, enum.Enum):
    """How a member gets paid. Independent of the settlement's rail."""
    CARD = "card"
    WALLET = "wallet"
    ONCHAIN = "onchain"
    CREDIT = "credit"
    BANK_TRANSFER = "bank_transfer"
    CASH = "cash"


@dataclass(frozen=True)
class PlanEntryInput:
    """Caller-supplied share before the plan is committed."""
    member_id: str
    share_amount: Decimal
    payout_method: PayoutMethod = PayoutMethod.BANK_TRANSFER
    notes: str = ""


@dataclass(frozen=True)
class PlanEntry:
    entry_id: str
    member_id: str
    share_amount: Decimal
    payout_method: PayoutMethod
    position: int


@dataclass(frozen=True)
class DistributionPlan:
    """Committed split of one accepted settlement.

    Invariant: sum(entry.share_amount) == total_amount, the settlement's
    verified amount.
    """
    plan_id: str
    settlement_id: str
    total_amount: Decimal
    currency: str
    entries: tuple[PlanEntry, ...]
    created_utc: datetime
    payouts: tuple["MemberPayout", ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "settlement_id": self.settlement_id,
            "total_amount": str(self.total_amount),
            "currency": self.currency,
            "created_utc": self.created_utc.isoformat(),
            "entries": [
                {
                    "entry_id": e.entry_id,
                    "member_id": e.member_id,
                    "share_amount": str(e.share_amount),
                    "payout_method": e.payout_method.value,
                }
                for e in self.entries
            ],
            "payouts": [p.to_dict() for p in self.payouts],
        }


@dataclass(frozen=True)
class MemberPayout:
    payout_id: str
    plan_id: str
    plan_entry_id: str
    member_id: str
    amount: Decimal
    currency: str
    payout_method: PayoutMethod
    status: PayoutStatus = PayoutStatus.PENDING
    rail_transaction_id: Optional[str] = None
    notes: str = ""
    updated_utc: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "payout_id": self.payout_id,
            "plan_id": self.plan_id,
            "plan_entry_id": self.plan_entry_id,
            "member_id": self.member_id,
            "amount": str(self.amount),
            "currency": self.currency,
            "payout_method": self.payout_method.value,
            "status": self.status.value,
            "rail_transaction_id": self.rail_transaction_id,
            "notes": self.notes,
            "updated_utc": self.updated_utc.isoformat() if self.updated_utc else None,
        }
