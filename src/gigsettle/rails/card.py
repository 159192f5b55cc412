"""Card rail backed by a card processor's payment intents."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional

from gigsettle.config import VerificationConfig
from gigsettle.errors import ValidationError
from gigsettle.models.obligation import IntentHandle, Obligation, PaymentReference, Rail
from gigsettle.models.settlement import (
    AmountCheck,
    RailStatus,
    RailVerification,
    RefundResult,
    RejectionReason,
)
from gigsettle.rails.payment_rail import RailCapability, exact_amount_check
from gigsettle.rails.processors import CardProcessorClient
from gigsettle.settlement.deadline import Deadline

logger = logging.getLogger(__name__)

# Intent states that can still turn into a charge.
_IN_FLIGHT = frozenset({
    "processing",
    "requires_action",
    "requires_confirmation",
    "requires_capture",
})


class CardRailAdapter:
    """Payment intents: synchronous, exact amount, no confirmations."""

    def __init__(
        self,
        client: CardProcessorClient,
        config: Optional[VerificationConfig] = None,
    ) -> None:
        self._client = client
        self._config = config or VerificationConfig()

    @property
    def rail(self) -> Rail:
        return Rail.CARD

    @property
    def capabilities(self) -> RailCapability:
        return RailCapability(synchronous=True)

    @property
    def required_confirmations(self) -> int:
        return 0

    def create_intent(self, obligation: Obligation, deadline: Deadline) -> IntentHandle:
        charge = self._client.create_payment_intent(
            obligation.expected_amount,
            obligation.expected_currency,
            {"obligation_id": obligation.obligation_id},
            deadline.timeout_for_call(self._config.adapter_timeout_seconds),
        )
        return IntentHandle(
            rail=self.rail,
            intent_id=charge.charge_id,
            amount=charge.amount,
            currency=charge.currency,
            client_secret=charge.client_secret,
        )

    def verify(
        self,
        reference: PaymentReference,
        obligation: Obligation,
        deadline: Deadline,
    ) -> RailVerification:
        charge = self._client.retrieve_payment_intent(
            reference.rail_transaction_id,
            deadline.timeout_for_call(self._config.adapter_timeout_seconds),
        )
        if charge is None:
            return RailVerification(
                status=RailStatus.FAILURE,
                failure_reason=RejectionReason.TRANSACTION_NOT_FOUND,
            )
        if charge.status == "succeeded":
            status = RailStatus.SUCCESS
        elif charge.status in _IN_FLIGHT:
            status = RailStatus.PENDING
        else:
            logger.info("Card intent %s ended in %s", charge.charge_id, charge.status)
            return RailVerification(
                status=RailStatus.FAILURE,
                amount=charge.amount,
                currency=charge.currency,
                failure_reason=RejectionReason.TRANSACTION_FAILED,
            )
        return RailVerification(status=status, amount=charge.amount, currency=charge.currency)

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
        charge = self._client.retrieve_payment_intent(
            reference.rail_transaction_id,
            deadline.timeout_for_call(self._config.adapter_timeout_seconds),
        )
        if charge is None:
            raise ValidationError(f"Card intent not found: {reference.rail_transaction_id}")
        refund = self._client.create_refund(
            reference.rail_transaction_id,
            amount,
            charge.currency,
            deadline.timeout_for_call(self._config.adapter_timeout_seconds),
            idempotency_key=refund_id,
        )
        return RefundResult(
            rail_refund_id=refund.refund_id,
            amount=refund.amount,
            currency=refund.currency,
            status=refund.status,
        )
