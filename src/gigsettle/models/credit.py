"""Internally issued credit (gift cards) used by the credit rail."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional


class CreditStatus(str, enum.Enum):
    ACTIVE = "active"
    REDEEMED = "redeemed"
    EXPIRED = "expired"


@dataclass(frozen=True)
class CreditAccount:
    code: str
    holder_id: str
    currency: str
    original_amount: Decimal
    remaining_balance: Decimal
    status: CreditStatus
    issued_utc: datetime
    expires_utc: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "holder_id": self.holder_id,
            "currency": self.currency,
            "original_amount": str(self.original_amount),
            "remaining_balance": str(self.remaining_balance),
            "status": self.status.value,
            "issued_utc": self.issued_utc.isoformat(),
            "expires_utc": self.expires_utc.isoformat(),
        }


@dataclass(frozen=True)
class CreditRedemption:
    """A debit against a credit account. Its id is the rail transaction id.

    A redemption whose payment never settles is released: the value goes
    back on the account and the redemption can no longer pay anything.
    """
    redemption_id: str
    code: str
    holder_id: str
    amount: Decimal
    currency: str
    redeemed_utc: datetime
    released_utc: Optional[datetime] = None

    @property
    def released(self) -> bool:
        return self.released_utc is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "redemption_id": self.redemption_id,
            "code": self.code,
            "holder_id": self.holder_id,
            "amount": str(self.amount),
            "currency": self.currency,
            "redeemed_utc": self.redeemed_utc.isoformat(),
            "released_utc": self.released_utc.isoformat() if self.released_utc else None,
        }
