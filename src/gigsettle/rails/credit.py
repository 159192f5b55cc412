"""Credit rail: internally issued credit redeemed against an obligation.

The payer redeems credit first (SettlementService.redeem_credit); the
redemption id is the rail transaction id submitted as the reference.
Verification is a local lookup, so the rail is synchronous and never
transient.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional

from gigsettle.errors import RefundError, ValidationError
from gigsettle.models.obligation import IntentHandle, Obligation, PaymentReference, Rail
from gigsettle.models.settlement import (
    AmountCheck,
    RailStatus,
    RailVerification,
    RefundResult,
    RejectionReason,
)
from gigsettle.persistence.store import SettlementStore
from gigsettle.rails.payment_rail import RailCapability, exact_amount_check
from gigsettle.settlement.deadline import Deadline

logger = logging.getLogger(__name__)


class CreditRailAdapter:
    def __init__(self, store: SettlementStore) -> None:
        self._store = store

    @property
    def rail(self) -> Rail:
        return Rail.CREDIT

    @property
    def capabilities(self) -> RailCapability:
        return RailCapability(synchronous=True, can_create_intent=False)

    @property
    def required_confirmations(self) -> int:
        return 0

    def create_intent(self, obligation: Obligation, deadline: Deadline) -> IntentHandle:
        raise ValidationError(
            "Credit is redeemed directly; submit the redemption id as the reference",
        )

    def verify(
        self,
        reference: PaymentReference,
        obligation: Obligation,
        deadline: Deadline,
    ) -> RailVerification:
        redemption = self._store.get_redemption(reference.rail_transaction_id)
        if redemption is None:
            return RailVerification(
                status=RailStatus.FAILURE,
                failure_reason=RejectionReason.TRANSACTION_NOT_FOUND,
            )
        if redemption.released:
            logger.info("Redemption %s was released and pays nothing", redemption.redemption_id)
            return RailVerification(
                status=RailStatus.FAILURE,
                amount=redemption.amount,
                currency=redemption.currency,
                failure_reason=RejectionReason.CREDIT_INVALID,
                sender=redemption.holder_id,
            )
        if redemption.holder_id != obligation.payer_id:
            logger.info(
                "Redemption %s belongs to %s, not payer %s",
                redemption.redemption_id, redemption.holder_id, obligation.payer_id,
            )
            return RailVerification(
                status=RailStatus.FAILURE,
                amount=redemption.amount,
                currency=redemption.currency,
                failure_reason=RejectionReason.CREDIT_INVALID,
                sender=redemption.holder_id,
            )
        return RailVerification(
            status=RailStatus.SUCCESS,
            amount=redemption.amount,
            currency=redemption.currency,
            sender=redemption.holder_id,
        )

    def check_amount(
        self,
        verification: RailVerification,
        obligation: Obligation,
        deadline: Deadline,
    ) -> AmountCheck:
        return exact_amount_check(verification, obligation)

    def refund(
        self,
        reference: PaymentReference,
        amount: Optional[Decimal],
        deadline: Deadline,
        refund_id: str,
    ) -> RefundResult:
        """Restore the balance and complete the reserved refund in one transaction."""
        redemption = self._store.get_redemption(reference.rail_transaction_id)
        if redemption is None:
            raise RefundError(f"Redemption not found: {reference.rail_transaction_id}")
        value = redemption.amount if amount is None else amount
        rail_refund_id = f"crf_{refund_id}"
        self._store.refund_credit(refund_id, redemption.redemption_id, value, rail_refund_id)
        return RefundResult(
            rail_refund_id=rail_refund_id,
            amount=value,
            currency=redemption.currency,
            status="succeeded",
        )
