"""Rail adapter abstraction — one contract over card, wallet, onchain, credit.

The verification engine, ledger and allocator never talk to a payment
processor directly. They go through this Protocol via the registry, so
adding or removing a rail changes no settlement code.

Each adapter owns its own policy:
- required_confirmations: 0 for synchronous rails.
- check_amount: exact match for fiat rails, oracle-converted slippage band
  for volatile units.

Network failures must surface as TransientAdapterError. A rail never
reports an outage as a failed payment.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Protocol, runtime_checkable

from gigsettle.errors import RailNotConfiguredError, ValidationError
from gigsettle.models.money import quantize
from gigsettle.models.obligation import IntentHandle, Obligation, PaymentReference, Rail
from gigsettle.models.settlement import (
    AmountCheck,
    RailVerification,
    RefundResult,
)
from gigsettle.settlement.deadline import Deadline


@dataclass(frozen=True)
class RailCapability:
    """What a payment rail can do."""

    synchronous: bool
    can_create_intent: bool = True
    can_refund: bool = True


@runtime_checkable
class RailAdapter(Protocol):
    """Contract every rail implementation satisfies."""

    @property
    def rail(self) -> Rail:
        ...

    @property
    def capabilities(self) -> RailCapability:
        ...

    @property
    def required_confirmations(self) -> int:
        """Confirmations needed before success counts. 0 when synchronous."""
        ...

    def create_intent(self, obligation: Obligation, deadline: Deadline) -> IntentHandle:
        ...

    def verify(
        self,
        reference: PaymentReference,
        obligation: Obligation,
        deadline: Deadline,
    ) -> RailVerification:
        ...

    def check_amount(
        self,
        verification: RailVerification,
        obligation: Obligation,
        deadline: Deadline,
    ) -> AmountCheck:
        ...

    def refund(
        self,
        reference: PaymentReference,
        amount: Optional[Decimal],
        deadline: Deadline,
        refund_id: str,
    ) -> RefundResult:
        """Return money to the payer. refund_id is the reserved local refund;
        it doubles as the processor idempotency key, so a retry of the same
        refund never moves money twice."""
        ...


def exact_amount_check(
    verification: RailVerification,
    obligation: Obligation,
) -> AmountCheck:
    """Fiat-rail policy: same currency, same amount to the minor unit."""
    currency = (verification.currency or "").upper()
    amount = verification.amount if verification.amount is not None else Decimal("0")
    if currency != obligation.expected_currency:
        return AmountCheck(within_tolerance=False, normalized_amount=amount, currency=currency)
    normalized = quantize(amount, currency)
    expected = quantize(obligation.expected_amount, currency)
    return AmountCheck(
        within_tolerance=normalized == expected,
        normalized_amount=normalized,
        currency=currency,
    )


class RailRegistry:
    """Active rail adapters keyed by Rail.

    Usage:
        registry = RailRegistry()
        registry.register(CardRailAdapter(client))
        adapter = registry.get(Rail.CARD)
    """

    def __init__(self) -> None:
        self._adapters: Dict[Rail, RailAdapter] = {}

    def register(self, adapter: RailAdapter) -> None:
        """Register an adapter. Raises on protocol mismatch or duplicates."""
        if not isinstance(adapter, RailAdapter):
            raise TypeError(
                f"Adapter must implement RailAdapter Protocol, got {type(adapter)}",
            )
        if adapter.rail in self._adapters:
            raise ValidationError(f"Rail already registered: {adapter.rail.value}")
        self._adapters[adapter.rail] = adapter

    def remove(self, rail: Rail) -> None:
        if rail not in self._adapters:
            raise RailNotConfiguredError(f"Unknown rail: {rail.value}")
        del self._adapters[rail]

    def get(self, rail: Rail) -> RailAdapter:
        adapter = self._adapters.get(Rail(rail))
        if adapter is None:
            raise RailNotConfiguredError(f"Rail not configured: {Rail(rail).value}", rail=rail)
        return adapter

    def has(self, rail: Rail) -> bool:
        return Rail(rail) in self._adapters

    def list_rails(self) -> List[Rail]:
        return list(self._adapters.keys())
