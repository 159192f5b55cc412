"""Settlement models — rail verifications and ledger outcomes.

State machine for a settlement outcome:
    PENDING → ACCEPTED
    PENDING → REJECTED
    PENDING → EXPIRED
Terminal states (ACCEPTED, REJECTED, EXPIRED) have no outgoing transitions.

All monetary values use Decimal.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from gigsettle.models.obligation import Rail


class SettlementState(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self != SettlementState.PENDING


SETTLEMENT_TRANSITIONS: Dict[SettlementState, frozenset] = {
    SettlementState.PENDING: frozenset({
        SettlementState.PENDING,
        SettlementState.ACCEPTED,
        SettlementState.REJECTED,
        SettlementState.EXPIRED,
    }),
    SettlementState.ACCEPTED: frozenset(),
    SettlementState.REJECTED: frozenset(),
    SettlementState.EXPIRED: frozenset(),
}


class RejectionReason(str, enum.Enum):
    """Reason codes attached to rejected or expired outcomes."""
    AMOUNT_MISMATCH = "amount_mismatch"
    CURRENCY_MISMATCH = "currency_mismatch"
    WRONG_RECIPIENT = "wrong_recipient"
    WRONG_SENDER = "wrong_sender"
    TRANSACTION_FAILED = "transaction_failed"
    TRANSACTION_NOT_FOUND = "transaction_not_found"
    CREDIT_INVALID = "credit_invalid"
    OBLIGATION_ALREADY_SETTLED = "obligation_already_settled"
    DUPLICATE_REFERENCE = "duplicate_reference"
    VERIFICATION_HORIZON_EXCEEDED = "verification_horizon_exceeded"


class RailStatus(str, enum.Enum):
    """What a rail reports about a transaction."""
    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class RailVerification:
    """Normalised answer from a rail adapter's verify call.

    amount/currency are in the rail's own unit (ETH for onchain, the
    charge currency for card/wallet). confirmations is 0 for synchronous
    rails.
    """
    status: RailStatus
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    confirmations: int = 0
    chain_height: Optional[int] = None
    failure_reason: Optional[RejectionReason] = None
    sender: Optional[str] = None
    recipient: Optional[str] = None


@dataclass(frozen=True)
class AmountCheck:
    """Result of comparing a rail amount against the expected amount."""
    within_tolerance: bool
    normalized_amount: Decimal
    currency: str
    rate: Decimal = Decimal("1")


@dataclass(frozen=True)
class SettlementOutcome:
    """The ledger's verdict on one payment reference.

    rejection_reason is set iff the state is REJECTED or EXPIRED.
    decided_utc is set iff the state is terminal.
    """
    settlement_id: str
    obligation_id: str
    reference_id: str
    rail: Rail
    state: SettlementState
    verified_amount: Optional[Decimal] = None
    verified_currency: Optional[str] = None
    rail_amount: Optional[Decimal] = None
    rail_currency: Optional[str] = None
    confirmations: int = 0
    rejection_reason: Optional[RejectionReason] = None
    decided_utc: Optional[datetime] = None
    updated_utc: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def with_state(
        self,
        state: SettlementState,
        reason: Optional[RejectionReason] = None,
        decided_utc: Optional[datetime] = None,
    ) -> SettlementOutcome:
        return replace(
            self,
            state=state,
            rejection_reason=reason,
            decided_utc=decided_utc if state.is_terminal else None,
            updated_utc=decided_utc or self.updated_utc,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "settlement_id": self.settlement_id,
            "obligation_id": self.obligation_id,
            "reference_id": self.reference_id,
            "rail": self.rail.value,
            "state": self.state.value,
            "verified_amount": str(self.verified_amount) if self.verified_amount is not None else None,
            "verified_currency": self.verified_currency,
            "rail_amount": str(self.rail_amount) if self.rail_amount is not None else None,
            "rail_currency": self.rail_currency,
            "confirmations": self.confirmations,
            "rejection_reason": self.rejection_reason.value if self.rejection_reason else None,
            "decided_utc": self.decided_utc.isoformat() if self.decided_utc else None,
        }


@dataclass(frozen=True)
class RecordResult:
    """Answer from SettlementLedger.record_outcome.

    accepted is True only when this call wrote the obligation's accepted
    outcome. outcome is the authoritative record: the winner when the
    obligation was already settled.
    """
    accepted: bool
    outcome: SettlementOutcome
    attempt: Optional[SettlementOutcome] = None


@dataclass(frozen=True)
class RefundResult:
    """What a rail reports after a refund request."""
    rail_refund_id: str
    amount: Decimal
    currency: str
    status: str


class RefundStatus(str, enum.Enum):
    """A refund is reserved as PENDING before the rail is asked to move money."""
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class RefundRecord:
    refund_id: str
    settlement_id: str
    amount: Decimal
    currency: str
    created_utc: datetime
    status: RefundStatus = RefundStatus.PENDING
    rail_refund_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "refund_id": self.refund_id,
            "settlement_id": self.settlement_id,
            "amount": str(self.amount),
            "currency": self.currency,
            "status": self.status.value,
            "rail_refund_id": self.rail_refund_id,
            "created_utc": self.created_utc.isoformat(),
        }
