"""Tests for money helpers and core models."""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from gigsettle.errors import ValidationError
from gigsettle.models.distribution import PAYOUT_TRANSITIONS, PayoutStatus
from gigsettle.models.money import (
    from_minor_units,
    normalize_currency,
    quantize,
    quantum,
    to_decimal,
    to_minor_units,
)
from gigsettle.models.obligation import Obligation, PaymentReference, Rail
from gigsettle.models.settlement import (
    SETTLEMENT_TRANSITIONS,
    RejectionReason,
    SettlementOutcome,
    SettlementState,
)


def _now() -> datetime:
    return datetime(2026, 3, 14, 20, 0, 0, tzinfo=timezone.utc)


class TestMoney:
    def test_quantum_per_currency(self) -> None:
        assert quantum("USD") == Decimal("0.01")
        assert quantum("ETH") == Decimal("1e-18")
        assert quantum("USDC") == Decimal("0.000001")
        assert quantum("JPY") == Decimal("1")

    def test_unknown_currency_defaults_to_cents(self) -> None:
        assert quantum("CHF") == Decimal("0.01")

    def test_quantize_rounds_half_up(self) -> None:
        assert quantize(Decimal("100.005"), "USD") == Decimal("100.01")
        assert quantize(Decimal("100.004"), "USD") == Decimal("100.00")

    def test_minor_units(self) -> None:
        assert to_minor_units(Decimal("300.00"), "USD") == 30000
        assert from_minor_units(30000, "USD") == Decimal("300")
        assert from_minor_units(5 * 10 ** 16, "ETH") == Decimal("0.05")

    def test_to_decimal_refuses_float(self) -> None:
        with pytest.raises(ValidationError):
            to_decimal(0.1)

    def test_to_decimal_refuses_garbage(self) -> None:
        with pytest.raises(ValidationError):
            to_decimal("ten dollars")
        with pytest.raises(ValidationError):
            to_decimal("NaN")

    def test_normalize_currency(self) -> None:
        assert normalize_currency(" usd ") == "USD"
        with pytest.raises(ValidationError):
            normalize_currency("")
        with pytest.raises(ValidationError):
            normalize_currency("US-D")


class TestObligation:
    def test_create(self) -> None:
        ob = Obligation.create("venue", "band", "300.00", "usd", now=_now())
        assert ob.expected_amount == Decimal("300.00")
        assert ob.expected_currency == "USD"
        assert ob.obligation_id.startswith("obl_")

    def test_non_positive_amount_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Obligation.create("venue", "band", "0", "USD")
        with pytest.raises(ValidationError):
            Obligation.create("venue", "band", "-5", "USD")

    def test_payer_and_payee_must_differ(self) -> None:
        with pytest.raises(ValidationError):
            Obligation.create("venue", "venue", "10", "USD")

    def test_due_date_must_be_aware_and_not_past(self) -> None:
        with pytest.raises(ValidationError):
            Obligation.create("venue", "band", "10", "USD", now=_now(), due_utc=datetime(2026, 3, 20))
        with pytest.raises(ValidationError):
            Obligation.create("venue", "band", "10", "USD", now=_now(), due_utc=_now() - timedelta(seconds=1))
        ob = Obligation.create("venue", "band", "10", "USD", now=_now(), due_utc=_now() + timedelta(days=3))
        assert ob.due_utc == _now() + timedelta(days=3)
        assert not ob.is_overdue
        assert ob.to_dict()["overdue_utc"] is None


class TestPaymentReference:
    def test_onchain_hash_lowercased(self) -> None:
        ref = PaymentReference.create("obl_1", Rail.ONCHAIN, "0xABCDEF", now=_now())
        assert ref.rail_transaction_id == "0xabcdef"

    def test_card_id_kept_verbatim(self) -> None:
        ref = PaymentReference.create("obl_1", Rail.CARD, " pi_ABC ", now=_now())
        assert ref.rail_transaction_id == "pi_ABC"

    def test_empty_transaction_id_rejected(self) -> None:
        with pytest.raises(ValidationError):
            PaymentReference.create("obl_1", Rail.CARD, "  ")


class TestStateMachines:
    def test_terminal_settlement_states_have_no_exits(self) -> None:
        for state in (SettlementState.ACCEPTED, SettlementState.REJECTED, SettlementState.EXPIRED):
            assert state.is_terminal
            assert SETTLEMENT_TRANSITIONS[state] == frozenset()
        assert not SettlementState.PENDING.is_terminal

    def test_payouts_only_leave_pending(self) -> None:
        assert PAYOUT_TRANSITIONS[PayoutStatus.PENDING] == {
            PayoutStatus.SUCCEEDED, PayoutStatus.FAILED, PayoutStatus.CANCELLED,
        }
        for status in (PayoutStatus.SUCCEEDED, PayoutStatus.FAILED, PayoutStatus.CANCELLED):
            assert PAYOUT_TRANSITIONS[status] == frozenset()

    def test_with_state_sets_decision_time(self) -> None:
        outcome = SettlementOutcome(
            settlement_id="stl_1",
            obligation_id="obl_1",
            reference_id="ref_1",
            rail=Rail.CARD,
            state=SettlementState.PENDING,
        )
        rejected = outcome.with_state(SettlementState.REJECTED, RejectionReason.AMOUNT_MISMATCH, _now())
        assert rejected.decided_utc == _now()
        assert rejected.to_dict()["rejection_reason"] == "amount_mismatch"
