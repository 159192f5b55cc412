"""Onchain rail: native-token transfers to the platform payee wallet.

Acceptance rules owned by this adapter:
- recipient must be the configured payee wallet (case-insensitive hex);
- a declared counterpart must be the sender;
- the receipt must report success (not reverted);
- rail amount × oracle rate must land within the slippage band of the
  expected amount.

Confirmation depth is reported, not judged: the verification engine
compares it against required_confirmations.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional

from gigsettle.config import OnchainConfig, VerificationConfig
from gigsettle.errors import RailNotConfiguredError, RefundError
from gigsettle.models.money import from_minor_units, quantize
from gigsettle.models.obligation import IntentHandle, Obligation, PaymentReference, Rail
from gigsettle.models.settlement import (
    AmountCheck,
    RailStatus,
    RailVerification,
    RefundResult,
    RejectionReason,
)
from gigsettle.oracle.rates import RateOracle
from gigsettle.rails.chain import ChainClient
from gigsettle.rails.payment_rail import RailCapability
from gigsettle.settlement.deadline import Deadline

logger = logging.getLogger(__name__)


def _same_address(a: Optional[str], b: Optional[str]) -> bool:
    return bool(a) and bool(b) and a.lower() == b.lower()


class OnchainRailAdapter:
    def __init__(
        self,
        chain: ChainClient,
        oracle: RateOracle,
        payee_wallet: str,
        config: Optional[OnchainConfig] = None,
        verification: Optional[VerificationConfig] = None,
    ) -> None:
        if not payee_wallet:
            raise RailNotConfiguredError("Onchain rail needs a payee wallet address")
        self._chain = chain
        self._oracle = oracle
        self._payee_wallet = payee_wallet
        self._config = config or OnchainConfig()
        self._verification = verification or VerificationConfig()

    @property
    def rail(self) -> Rail:
        return Rail.ONCHAIN

    @property
    def capabilities(self) -> RailCapability:
        # Refunds are a manual transfer back from the platform wallet.
        return RailCapability(synchronous=False, can_refund=False)

    @property
    def required_confirmations(self) -> int:
        return self._config.min_confirmations

    @property
    def unit(self) -> str:
        return self._config.unit

    def _timeout(self, deadline: Deadline) -> float:
        return deadline.timeout_for_call(self._verification.adapter_timeout_seconds)

    def create_intent(self, obligation: Obligation, deadline: Deadline) -> IntentHandle:
        """Quote the amount in the rail unit at the current rate."""
        rate = self._oracle.get_rate(self.unit, obligation.expected_currency, self._timeout(deadline))
        amount = quantize(obligation.expected_amount / rate, self.unit)
        return IntentHandle(
            rail=self.rail,
            intent_id=obligation.obligation_id,
            amount=amount,
            currency=self.unit,
            pay_to=self._payee_wallet,
            rate=rate,
        )

    def verify(
        self,
        reference: PaymentReference,
        obligation: Obligation,
        deadline: Deadline,
    ) -> RailVerification:
        tx_hash = reference.rail_transaction_id
        tx = self._chain.get_transaction(tx_hash, self._timeout(deadline))
        if tx is None:
            # Not yet propagated to this node; the horizon settles it.
            return RailVerification(status=RailStatus.PENDING)

        amount = from_minor_units(tx.value_wei, self.unit)
        base = dict(amount=amount, currency=self.unit, sender=tx.sender, recipient=tx.recipient)

        if not _same_address(tx.recipient, self._payee_wallet):
            return RailVerification(
                status=RailStatus.FAILURE, failure_reason=RejectionReason.WRONG_RECIPIENT, **base,
            )
        if reference.counterpart and not _same_address(tx.sender, reference.counterpart):
            return RailVerification(
                status=RailStatus.FAILURE, failure_reason=RejectionReason.WRONG_SENDER, **base,
            )
        if tx.block_number is None:
            return RailVerification(status=RailStatus.PENDING, **base)

        receipt = self._chain.get_transaction_receipt(tx_hash, self._timeout(deadline))
        if receipt is None:
            return RailVerification(status=RailStatus.PENDING, **base)
        if not receipt.succeeded:
            return RailVerification(
                status=RailStatus.FAILURE, failure_reason=RejectionReason.TRANSACTION_FAILED, **base,
            )

        height = self._chain.block_number(self._timeout(deadline))
        confirmations = max(0, height - receipt.block_number)
        return RailVerification(
            status=RailStatus.SUCCESS,
            confirmations=confirmations,
            chain_height=height,
            **base,
        )

    def check_amount(
        self,
        verification: RailVerification,
        obligation: Obligation,
        deadline: Deadline,
    ) -> AmountCheck:
        """Convert at today's rate and compare within the slippage band."""
        rate = self._oracle.get_rate(self.unit, obligation.expected_currency, self._timeout(deadline))
        raw = verification.amount if verification.amount is not None else Decimal("0")
        converted = quantize(raw * rate, obligation.expected_currency)
        expected = obligation.expected_amount
        band = expected * self._config.slippage_band
        within = (expected - band) <= converted <= (expected + band)
        if not within:
            logger.info(
                "Onchain amount %s %s (= %s %s at %s) outside band of %s",
                raw, self.unit, converted, obligation.expected_currency, rate, expected,
            )
        return AmountCheck(
            within_tolerance=within,
            normalized_amount=converted,
            currency=obligation.expected_currency,
            rate=rate,
        )

    def refund(
        self,
        reference: PaymentReference,
        amount: Optional[Decimal],
        deadline: Deadline,
        refund_id: str,
    ) -> RefundResult:
        raise RefundError(
            "Onchain refunds are sent manually from the platform wallet",
            reference_id=reference.reference_id,
        )
