"""Tests for SettlementStore reads and writes not covered through the ledger."""

import pytest
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from gigsettle.distribution.allocator import DistributionAllocator
from gigsettle.errors import NotFoundError, PlanAlreadyExistsError, RefundError, ValidationError
from gigsettle.models.distribution import PlanEntryInput
from gigsettle.models.obligation import Obligation, PaymentReference, Rail
from gigsettle.models.settlement import (
    RefundRecord,
    RefundStatus,
    SettlementOutcome,
    SettlementState,
)


def _now() -> datetime:
    return datetime(2026, 3, 14, 20, 0, 0, tzinfo=timezone.utc)


def _obligation(store, tag: str, payer: str = "venue", payee: str = "band", due=None) -> Obligation:
    ob = Obligation.create(
        payer, payee, "300.00", "USD", obligation_id=f"obl_{tag}", now=_now(), due_utc=due,
    )
    store.insert_obligation(ob)
    return ob


def _settle(store, tag: str = "1", ob: Obligation = None) -> str:
    ob = ob or _obligation(store, tag)
    ref = PaymentReference.create(ob.obligation_id, Rail.CARD, f"pi_{tag}", now=_now())
    store.insert_reference(ref)
    outcome = SettlementOutcome(
        settlement_id=f"stl_{tag}",
        obligation_id=ob.obligation_id,
        reference_id=ref.reference_id,
        rail=Rail.CARD,
        state=SettlementState.ACCEPTED,
        verified_amount=Decimal("300.00"),
        verified_currency="USD",
        rail_amount=Decimal("300.00"),
        rail_currency="USD",
        decided_utc=_now(),
        updated_utc=_now(),
    )
    store.record_outcome(outcome, _now())
    return outcome.settlement_id


def _refund(sid: str, refund_id: str, amount: str) -> RefundRecord:
    return RefundRecord(
        refund_id=refund_id,
        settlement_id=sid,
        amount=Decimal(amount),
        currency="USD",
        created_utc=_now(),
    )


class TestRefundReservation:
    def test_reserve_counts_against_limit(self, store) -> None:
        sid = _settle(store)
        held = store.reserve_refund(_refund(sid, "rfd_1", "200.00"), Decimal("300.00"))
        assert held.status == RefundStatus.PENDING
        assert store.refunded_total(sid) == Decimal("200.00")
        with pytest.raises(RefundError):
            store.reserve_refund(_refund(sid, "rfd_2", "100.01"), Decimal("300.00"))
        assert [r.refund_id for r in store.refunds_for(sid)] == ["rfd_1"]

    def test_failed_refund_frees_its_amount(self, store) -> None:
        sid = _settle(store)
        store.reserve_refund(_refund(sid, "rfd_1", "300.00"), Decimal("300.00"))
        assert store.fail_refund("rfd_1").status == RefundStatus.FAILED
        assert store.refunded_total(sid) == Decimal("0")
        store.reserve_refund(_refund(sid, "rfd_2", "300.00"), Decimal("300.00"))

    def test_complete_is_idempotent(self, store) -> None:
        sid = _settle(store)
        store.reserve_refund(_refund(sid, "rfd_1", "50.00"), Decimal("300.00"))
        done = store.complete_refund("rfd_1", "re_1")
        assert done.status == RefundStatus.SUCCEEDED
        assert done.rail_refund_id == "re_1"
        assert store.complete_refund("rfd_1", "re_1").status == RefundStatus.SUCCEEDED

    def test_finished_refund_cannot_flip(self, store) -> None:
        sid = _settle(store)
        store.reserve_refund(_refund(sid, "rfd_1", "50.00"), Decimal("300.00"))
        store.complete_refund("rfd_1", "re_1")
        with pytest.raises(RefundError):
            store.fail_refund("rfd_1")

    def test_unknown_refund(self, store) -> None:
        with pytest.raises(NotFoundError):
            store.complete_refund("rfd_missing", "re_1")


class TestPlanConstraints:
    def test_colliding_entry_is_not_a_second_plan(self, store) -> None:
        allocator = DistributionAllocator(store)
        first = allocator.distribute(
            _settle(store), [PlanEntryInput("m1", Decimal("300.00"))], now=_now(),
        )
        other = _settle(store, tag="2")
        clash = replace(first, plan_id="plan_clash", settlement_id=other)
        with pytest.raises(ValidationError) as exc:
            store.insert_plan(clash, [])
        assert not isinstance(exc.value, PlanAlreadyExistsError)
        assert store.get_plan(other) is None

    def test_second_plan_for_settlement(self, store) -> None:
        allocator = DistributionAllocator(store)
        sid = _settle(store)
        allocator.distribute(sid, [PlanEntryInput("m1", Decimal("300.00"))], now=_now())
        with pytest.raises(PlanAlreadyExistsError):
            allocator.distribute(sid, [PlanEntryInput("m2", Decimal("300.00"))], now=_now())


class TestOutstanding:
    def test_ordered_by_due_date_then_undated(self, store) -> None:
        _obligation(store, "a")
        _obligation(store, "b", due=_now() + timedelta(days=9))
        _obligation(store, "c", due=_now() + timedelta(days=2))
        _obligation(store, "d", payer="promoter", payee="venue")
        _obligation(store, "e", payer="other", payee="band")
        ids = [o.obligation_id for o in store.outstanding_for("venue")]
        assert ids == ["obl_c", "obl_b", "obl_a", "obl_d"]

    def test_settled_obligation_is_not_outstanding(self, store) -> None:
        ob = _obligation(store, "a")
        _settle(store, tag="a", ob=ob)
        assert store.outstanding_for("venue") == []

    def test_mark_overdue_stamps_once(self, store) -> None:
        _obligation(store, "a", due=_now() + timedelta(days=1))
        _obligation(store, "b", due=_now() + timedelta(days=5))
        _obligation(store, "c")
        later = _now() + timedelta(days=2)
        assert store.mark_overdue(later) == ["obl_a"]
        assert store.mark_overdue(later) == []
        assert store.get_obligation("obl_a").overdue_utc == later
        assert not store.get_obligation("obl_b").is_overdue

    def test_settled_obligation_never_goes_overdue(self, store) -> None:
        ob = _obligation(store, "a", due=_now() + timedelta(days=1))
        _settle(store, tag="a", ob=ob)
        assert store.mark_overdue(_now() + timedelta(days=2)) == []
