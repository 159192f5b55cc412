"""Obligation and payment reference models.

An Obligation is what one party owes another for one event (a venue owes a
band for a performance). A PaymentReference is a claim that a specific
external transaction satisfies an Obligation.

Both are immutable once created.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional
from uuid import uuid4

from gigsettle.errors import ValidationError
from gigsettle.models.money import normalize_currency, to_decimal


class Rail(str, enum.Enum):
    """Payment mechanism a reference was settled on."""
    CARD = "card"
    WALLET = "wallet"
    ONCHAIN = "onchain"
    CREDIT = "credit"


@dataclass(frozen=True)
class Obligation:
    """A debt from payer to payee for a fixed amount and currency.

    Invariant: expected_amount > 0.

    due_utc is optional. Once it passes without an accepted settlement the
    sweeper stamps overdue_utc; the stamp stays after a late payment.
    """
    obligation_id: str
    payer_id: str
    payee_id: str
    expected_amount: Decimal
    expected_currency: str
    created_utc: datetime
    description: str = ""
    due_utc: Optional[datetime] = None
    overdue_utc: Optional[datetime] = None

    @property
    def is_overdue(self) -> bool:
        return self.overdue_utc is not None

    @staticmethod
    def create(
        payer_id: str,
        payee_id: str,
        expected_amount: Any,
        expected_currency: str,
        obligation_id: Optional[str] = None,
        description: str = "",
        now: Optional[datetime] = None,
        due_utc: Optional[datetime] = None,
    ) -> Obligation:
        """Validate inputs and build an Obligation."""
        if not payer_id or not payee_id:
            raise ValidationError("Obligation requires payer_id and payee_id")
        if payer_id == payee_id:
            raise ValidationError("Payer and payee must differ")
        amount = to_decimal(expected_amount, "expected_amount")
        if amount <= Decimal("0"):
            raise ValidationError("Obligation amount must be positive")
        created = now or datetime.now(timezone.utc)
        if due_utc is not None:
            if due_utc.tzinfo is None:
                raise ValidationError("due_utc must be timezone-aware")
            if due_utc < created:
                raise ValidationError("due_utc cannot be before the obligation is created")
            # Stored as text and compared as text, so always UTC.
            due_utc = due_utc.astimezone(timezone.utc)
        return Obligation(
            obligation_id=obligation_id or f"obl_{uuid4().hex[:12]}",
            payer_id=payer_id,
            payee_id=payee_id,
            expected_amount=amount,
            expected_currency=normalize_currency(expected_currency),
            created_utc=created,
            description=description,
            due_utc=due_utc,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "obligation_id": self.obligation_id,
            "payer_id": self.payer_id,
            "payee_id": self.payee_id,
            "expected_amount": str(self.expected_amount),
            "expected_currency": self.expected_currency,
            "created_utc": self.created_utc.isoformat(),
            "description": self.description,
            "due_utc": self.due_utc.isoformat() if self.due_utc else None,
            "overdue_utc": self.overdue_utc.isoformat() if self.overdue_utc else None,
        }


@dataclass(frozen=True)
class PaymentReference:
    """A claim that (rail, rail_transaction_id) pays an obligation.

    (rail, rail_transaction_id) is unique system-wide: the same external
    transaction cannot be bound to two obligations or submitted twice.
    """
    reference_id: str
    obligation_id: str
    rail: Rail
    rail_transaction_id: str
    submitted_utc: datetime
    counterpart: Optional[str] = None

    @staticmethod
    def create(
        obligation_id: str,
        rail: Rail,
        rail_transaction_id: str,
        counterpart: Optional[str] = None,
        reference_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PaymentReference:
        tx_id = (rail_transaction_id or "").strip()
        if not tx_id:
            raise ValidationError("rail_transaction_id must be non-empty")
        if rail == Rail.ONCHAIN:
            # Hex hashes compare case-insensitively; store one spelling.
            tx_id = tx_id.lower()
        return PaymentReference(
            reference_id=reference_id or f"ref_{uuid4().hex[:12]}",
            obligation_id=obligation_id,
            rail=Rail(rail),
            rail_transaction_id=tx_id,
            submitted_utc=now or datetime.now(timezone.utc),
            counterpart=counterpart or None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "reference_id": self.reference_id,
            "obligation_id": self.obligation_id,
            "rail": self.rail.value,
            "rail_transaction_id": self.rail_transaction_id,
            "submitted_utc": self.submitted_utc.isoformat(),
            "counterpart": self.counterpart,
        }


@dataclass(frozen=True)
class IntentHandle:
    """What the payer needs to start paying on a given rail."""
    rail: Rail
    intent_id: str
    amount: Decimal
    currency: str
    client_secret: Optional[str] = None
    approval_url: Optional[str] = None
    pay_to: Optional[str] = None
    rate: Optional[Decimal] = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "rail": self.rail.value,
            "intent_id": self.intent_id,
            "amount": str(self.amount),
            "currency": self.currency,
        }
        if self.client_secret is not None:
            data["client_secret"] = self.client_secret
        if self.approval_url is not None:
            data["approval_url"] = self.approval_url
        if self.pay_to is not None:
            data["pay_to"] = self.pay_to
        if self.rate is not None:
            data["rate"] = str(self.rate)
        data.update(self.extra)
        return data
