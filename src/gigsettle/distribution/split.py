"""Build plan entries from a settled gig payment.

The venue payment is carved up the way a booking agent allocates it:

    agent fee  = total × agent_fee_percentage / 100   (quantized)
    band share = total − agent fee − other fees
    member i   = band share × weight_i / Σ weights     (rounded down)

Rounding down leaves a few minor units unallocated; they go to one named
member as an explicit remainder, so the entries always sum to total.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from typing import Mapping, Optional, Sequence

from gigsettle.errors import ValidationError
from gigsettle.models.distribution import PayoutMethod, PlanEntryInput
from gigsettle.models.money import quantize, quantum, to_decimal


@dataclass(frozen=True)
class SplitResult:
    entries: tuple[PlanEntryInput, ...]
    agent_fee: Decimal
    other_fees: Decimal
    band_payout: Decimal
    remainder: Decimal


def split_settlement(
    total: Decimal,
    currency: str,
    members: Sequence[str],
    agent_id: Optional[str] = None,
    agent_fee_percentage: Decimal = Decimal("0"),
    other_fees: Decimal = Decimal("0"),
    fees_recipient: str = "platform_fees",
    weights: Optional[Mapping[str, Decimal]] = None,
    remainder_member: Optional[str] = None,
    payout_methods: Optional[Mapping[str, PayoutMethod]] = None,
) -> SplitResult:
    """Split total among members after fees. Entries sum to total exactly."""
    total = to_decimal(total, "total")
    pct = to_decimal(agent_fee_percentage, "agent_fee_percentage")
    fees = to_decimal(other_fees, "other_fees")
    if not members:
        raise ValidationError("At least one member is required")
    if len(set(members)) != len(members):
        raise ValidationError("Members must be unique")
    if not Decimal("0") <= pct <= Decimal("100"):
        raise ValidationError(f"Agent fee percentage out of range: {pct}")
    if pct > 0 and not agent_id:
        raise ValidationError("An agent fee needs an agent_id to pay it to")
    if fees < 0:
        raise ValidationError("Other fees cannot be negative")

    agent_fee = quantize(total * pct / Decimal("100"), currency)
    fees = quantize(fees, currency)
    band = total - agent_fee - fees
    if band < 0:
        raise ValidationError(f"Fees ({agent_fee} + {fees}) exceed the total {total}")

    w = {m: to_decimal((weights or {}).get(m, Decimal("1")), f"weights[{m}]") for m in members}
    if any(v < 0 for v in w.values()) or sum(w.values()) == 0:
        raise ValidationError("Weights must be non-negative and not all zero")
    weight_total = sum(w.values(), Decimal("0"))

    step = quantum(currency)
    shares = {
        m: (band * w[m] / weight_total).quantize(step, rounding=ROUND_DOWN)
        for m in members
    }
    remainder = band - sum(shares.values(), Decimal("0"))
    lucky = remainder_member or members[0]
    if lucky not in shares:
        raise ValidationError(f"Remainder member {lucky} is not in the band")
    shares[lucky] += remainder

    methods = payout_methods or {}
    entries = [
        PlanEntryInput(
            member_id=m,
            share_amount=shares[m],
            payout_method=methods.get(m, PayoutMethod.BANK_TRANSFER),
            notes="includes rounding remainder" if m == lucky and remainder else "",
        )
        for m in members
    ]
    if agent_fee > 0:
        entries.append(PlanEntryInput(
            member_id=agent_id,
            share_amount=agent_fee,
            payout_method=methods.get(agent_id, PayoutMethod.BANK_TRANSFER),
            notes=f"booking agent fee {pct}%",
        ))
    if fees > 0:
        entries.append(PlanEntryInput(
            member_id=fees_recipient,
            share_amount=fees,
            payout_method=methods.get(fees_recipient, PayoutMethod.BANK_TRANSFER),
            notes="other fees",
        ))

    return SplitResult(
        entries=tuple(entries),
        agent_fee=agent_fee,
        other_fees=fees,
        band_payout=band,
        remainder=remainder,
    )
