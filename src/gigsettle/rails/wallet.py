"""Wallet rail backed by checkout orders (PayPal-style).

An order is created, approved by the payer in the wallet, then captured.
Verification captures an approved order on the payer's behalf so a
reference submitted right after approval settles in one pass. Capture is
idempotent on the processor side (request id keyed on the order id).
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional

from gigsettle.config import VerificationConfig
from gigsettle.errors import RefundError
from gigsettle.models.obligation import IntentHandle, Obligation, PaymentReference, Rail
from gigsettle.models.settlement import (
    AmountCheck,
    RailStatus,
    RailVerification,
    RefundResult,
    RejectionReason,
)
from gigsettle.rails.payment_rail import RailCapability, exact_amount_check
from gigsettle.rails.processors import WalletProcessorClient
from gigsettle.settlement.deadline import Deadline

logger = logging.getLogger(__name__)

_AWAITING_PAYER = frozenset({"CREATED", "SAVED", "PAYER_ACTION_REQUIRED"})


class WalletRailAdapter:
    def __init__(
        self,
        client: WalletProcessorClient,
        config: Optional[VerificationConfig] = None,
    ) -> None:
        self._client = client
        self._config = config or VerificationConfig()

    @property
    def rail(self) -> Rail:
        return Rail.WALLET

    @property
    def capabilities(self) -> RailCapability:
        return RailCapability(synchronous=True)

    @property
    def required_confirmations(self) -> int:
        return 0

    def create_intent(self, obligation: Obligation, deadline: Deadline) -> IntentHandle:
        order = self._client.create_order(
            obligation.expected_amount,
            obligation.expected_currency,
            obligation.description or f"Obligation {obligation.obligation_id}",
            deadline.timeout_for_call(self._config.adapter_timeout_seconds),
        )
        return IntentHandle(
            rail=self.rail,
            intent_id=order.charge_id,
            amount=order.amount,
            currency=order.currency,
            approval_url=order.approval_url,
        )

    def verify(
        self,
        reference: PaymentReference,
        obligation: Obligation,
        deadline: Deadline,
    ) -> RailVerification:
        timeout = self._config.adapter_timeout_seconds
        order = self._client.get_order(
            reference.rail_transaction_id, deadline.timeout_for_call(timeout),
        )
        if order is None:
            return RailVerification(
                status=RailStatus.FAILURE,
                failure_reason=RejectionReason.TRANSACTION_NOT_FOUND,
            )
        if order.status == "APPROVED":
            logger.info("Capturing approved wallet order %s", order.charge_id)
            order = self._client.capture_order(order.charge_id, deadline.timeout_for_call(timeout))

        if order.status == "COMPLETED":
            return RailVerification(
                status=RailStatus.SUCCESS, amount=order.amount, currency=order.currency,
            )
        if order.status in _AWAITING_PAYER:
            return RailVerification(
                status=RailStatus.PENDING, amount=order.amount, currency=order.currency,
            )
        return RailVerification(
            status=RailStatus.FAILURE,
            amount=order.amount,
            currency=order.currency,
            failure_reason=RejectionReason.TRANSACTION_FAILED,
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
        timeout = self._config.adapter_timeout_seconds
        order = self._client.get_order(
            reference.rail_transaction_id, deadline.timeout_for_call(timeout),
        )
        if order is None or order.capture_id is None:
            raise RefundError(
                f"Wallet order has no capture to refund: {reference.rail_transaction_id}",
            )
        refund = self._client.refund_capture(
            order.capture_id, amount, order.currency, deadline.timeout_for_call(timeout),
            request_id=refund_id,
        )
        return RefundResult(
            rail_refund_id=refund.refund_id,
            amount=refund.amount,
            currency=refund.currency,
            status=refund.status,
        )
