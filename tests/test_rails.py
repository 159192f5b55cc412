"""Tests for rail adapters and the rail registry."""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from conftest import PAYEE_WALLET, PAYER_WALLET, FakeChain

from gigsettle.config import OnchainConfig
from gigsettle.errors import (
    NotFoundError,
    RailNotConfiguredError,
    RateOracleUnavailable,
    RefundError,
    ValidationError,
)
from gigsettle.models.credit import CreditAccount, CreditStatus
from gigsettle.models.obligation import Obligation, PaymentReference, Rail
from gigsettle.models.settlement import RailStatus, RailVerification, RejectionReason
from gigsettle.oracle.rates import FixedRateOracle
from gigsettle.rails.card import CardRailAdapter
from gigsettle.rails.chain import Web3ChainClient
from gigsettle.rails.credit import CreditRailAdapter
from gigsettle.rails.onchain import OnchainRailAdapter
from gigsettle.rails.payment_rail import RailAdapter, RailRegistry, exact_amount_check
from gigsettle.rails.wallet import WalletRailAdapter
from gigsettle.settlement.deadline import Deadline


def _now() -> datetime:
    return datetime(2026, 3, 14, 20, 0, 0, tzinfo=timezone.utc)


def _obligation(amount: str = "100.00", currency: str = "USD") -> Obligation:
    return Obligation.create("venue", "band", amount, currency, obligation_id="obl_1", now=_now())


def _ref(rail: Rail, tx: str, counterpart=None) -> PaymentReference:
    return PaymentReference.create("obl_1", rail, tx, counterpart=counterpart, now=_now())


class TestRegistry:
    def test_register_and_get(self, card_client) -> None:
        registry = RailRegistry()
        adapter = CardRailAdapter(card_client)
        registry.register(adapter)
        assert registry.get(Rail.CARD) is adapter
        assert registry.has("card")
        assert registry.list_rails() == [Rail.CARD]

    def test_adapters_satisfy_protocol(self, card_client, wallet_client, chain, oracle, store) -> None:
        for adapter in (
            CardRailAdapter(card_client),
            WalletRailAdapter(wallet_client),
            OnchainRailAdapter(chain, oracle, PAYEE_WALLET),
            CreditRailAdapter(store),
        ):
            assert isinstance(adapter, RailAdapter)

    def test_duplicate_rail_rejected(self, card_client) -> None:
        registry = RailRegistry()
        registry.register(CardRailAdapter(card_client))
        with pytest.raises(ValidationError):
            registry.register(CardRailAdapter(card_client))

    def test_non_adapter_rejected(self) -> None:
        with pytest.raises(TypeError):
            RailRegistry().register(object())

    def test_missing_rail(self) -> None:
        with pytest.raises(RailNotConfiguredError):
            RailRegistry().get(Rail.WALLET)

    def test_exact_amount_check(self) -> None:
        ob = _obligation("300.00")
        ok = exact_amount_check(
            RailVerification(RailStatus.SUCCESS, Decimal("300"), "usd"), ob,
        )
        assert ok.within_tolerance and ok.currency == "USD"
        short = exact_amount_check(
            RailVerification(RailStatus.SUCCESS, Decimal("299.99"), "USD"), ob,
        )
        assert not short.within_tolerance


class TestCardRail:
    def test_succeeded(self, card_client) -> None:
        card_client.put("pi_1", "succeeded", "100.00")
        result = CardRailAdapter(card_client).verify(_ref(Rail.CARD, "pi_1"), _obligation(), Deadline.never())
        assert result.status == RailStatus.SUCCESS
        assert result.amount == Decimal("100.00")
        assert result.confirmations == 0

    def test_in_flight_is_pending(self, card_client) -> None:
        card_client.put("pi_1", "processing", "100.00")
        result = CardRailAdapter(card_client).verify(_ref(Rail.CARD, "pi_1"), _obligation(), Deadline.never())
        assert result.status == RailStatus.PENDING

    def test_canceled_is_failure(self, card_client) -> None:
        card_client.put("pi_1", "canceled", "100.00")
        result = CardRailAdapter(card_client).verify(_ref(Rail.CARD, "pi_1"), _obligation(), Deadline.never())
        assert result.status == RailStatus.FAILURE
        assert result.failure_reason == RejectionReason.TRANSACTION_FAILED

    def test_unknown_intent(self, card_client) -> None:
        result = CardRailAdapter(card_client).verify(_ref(Rail.CARD, "pi_x"), _obligation(), Deadline.never())
        assert result.failure_reason == RejectionReason.TRANSACTION_NOT_FOUND

    def test_create_intent(self, card_client) -> None:
        intent = CardRailAdapter(card_client).create_intent(_obligation(), Deadline.never())
        assert intent.rail == Rail.CARD
        assert intent.client_secret.endswith("_secret")
        assert intent.amount == Decimal("100.00")

    def test_refund(self, card_client) -> None:
        card_client.put("pi_1", "succeeded", "100.00")
        result = CardRailAdapter(card_client).refund(
            _ref(Rail.CARD, "pi_1"), Decimal("40.00"), Deadline.never(), "rfd_1",
        )
        assert result.amount == Decimal("40.00")
        assert result.status == "succeeded"
        assert card_client.refunds_by_key["rfd_1"].refund_id == result.rail_refund_id


class TestWalletRail:
    def test_approved_order_is_captured(self, wallet_client) -> None:
        wallet_client.put("ORDER1", "APPROVED", "100.00")
        result = WalletRailAdapter(wallet_client).verify(
            _ref(Rail.WALLET, "ORDER1"), _obligation(), Deadline.never(),
        )
        assert result.status == RailStatus.SUCCESS
        assert wallet_client.captured == ["ORDER1"]

    def test_awaiting_payer_is_pending(self, wallet_client) -> None:
        wallet_client.put("ORDER1", "PAYER_ACTION_REQUIRED", "100.00")
        result = WalletRailAdapter(wallet_client).verify(
            _ref(Rail.WALLET, "ORDER1"), _obligation(), Deadline.never(),
        )
        assert result.status == RailStatus.PENDING

    def test_voided_is_failure(self, wallet_client) -> None:
        wallet_client.put("ORDER1", "VOIDED", "100.00")
        result = WalletRailAdapter(wallet_client).verify(
            _ref(Rail.WALLET, "ORDER1"), _obligation(), Deadline.never(),
        )
        assert result.failure_reason == RejectionReason.TRANSACTION_FAILED

    def test_refund_needs_capture(self, wallet_client) -> None:
        wallet_client.put("ORDER1", "CREATED", "100.00")
        with pytest.raises(RefundError):
            WalletRailAdapter(wallet_client).refund(
                _ref(Rail.WALLET, "ORDER1"), None, Deadline.never(), "rfd_1",
            )


class TestOnchainRail:
    def _adapter(self, chain: FakeChain, oracle, **config) -> OnchainRailAdapter:
        return OnchainRailAdapter(chain, oracle, PAYEE_WALLET, OnchainConfig(**config))

    def test_requires_wallet(self, chain, oracle) -> None:
        with pytest.raises(RailNotConfiguredError):
            OnchainRailAdapter(chain, oracle, "")

    def test_unseen_tx_is_pending(self, chain, oracle) -> None:
        result = self._adapter(chain, oracle).verify(_ref(Rail.ONCHAIN, "0xaa"), _obligation(), Deadline.never())
        assert result.status == RailStatus.PENDING

    def test_confirmations_counted_from_receipt(self, chain, oracle) -> None:
        chain.add("0xaa", "0.05", block=98)
        chain.height = 100
        result = self._adapter(chain, oracle).verify(_ref(Rail.ONCHAIN, "0xaa"), _obligation(), Deadline.never())
        assert result.status == RailStatus.SUCCESS
        assert result.confirmations == 2
        assert result.amount == Decimal("0.05")
        assert result.currency == "ETH"

    def test_wrong_recipient(self, chain, oracle) -> None:
        chain.add("0xaa", "0.05", recipient="0x" + "99" * 20, block=90)
        result = self._adapter(chain, oracle).verify(_ref(Rail.ONCHAIN, "0xaa"), _obligation(), Deadline.never())
        assert result.failure_reason == RejectionReason.WRONG_RECIPIENT

    def test_recipient_compared_case_insensitively(self, chain, oracle) -> None:
        chain.add("0xaa", "0.05", recipient=PAYEE_WALLET.upper().replace("0X", "0x"), block=90)
        result = self._adapter(chain, oracle).verify(_ref(Rail.ONCHAIN, "0xaa"), _obligation(), Deadline.never())
        assert result.status == RailStatus.SUCCESS

    def test_wrong_sender(self, chain, oracle) -> None:
        chain.add("0xaa", "0.05", block=90)
        ref = _ref(Rail.ONCHAIN, "0xaa", counterpart="0x" + "11" * 20)
        result = self._adapter(chain, oracle).verify(ref, _obligation(), Deadline.never())
        assert result.failure_reason == RejectionReason.WRONG_SENDER

    def test_reverted_tx(self, chain, oracle) -> None:
        chain.add("0xaa", "0.05", block=90, succeeded=False)
        result = self._adapter(chain, oracle).verify(_ref(Rail.ONCHAIN, "0xaa"), _obligation(), Deadline.never())
        assert result.failure_reason == RejectionReason.TRANSACTION_FAILED

    def test_amount_check_within_band(self, chain, oracle) -> None:
        adapter = self._adapter(chain, oracle)
        ob = _obligation()
        check = adapter.check_amount(
            RailVerification(RailStatus.SUCCESS, Decimal("0.0490"), "ETH"), ob, Deadline.never(),
        )
        assert check.within_tolerance
        assert check.normalized_amount == Decimal("98.00")
        assert check.rate == Decimal("2000")

    def test_amount_check_outside_band(self, chain, oracle) -> None:
        check = self._adapter(chain, oracle).check_amount(
            RailVerification(RailStatus.SUCCESS, Decimal("0.04"), "ETH"), _obligation(), Deadline.never(),
        )
        assert not check.within_tolerance
        assert check.normalized_amount == Decimal("80.00")

    def test_intent_quotes_in_eth(self, chain, oracle) -> None:
        intent = self._adapter(chain, oracle).create_intent(_obligation(), Deadline.never())
        assert intent.amount == Decimal("0.05")
        assert intent.currency == "ETH"
        assert intent.pay_to == PAYEE_WALLET

    def test_missing_rate_is_transient(self, chain) -> None:
        adapter = self._adapter(chain, FixedRateOracle())
        with pytest.raises(RateOracleUnavailable):
            adapter.create_intent(_obligation(), Deadline.never())

    def test_refund_is_manual(self, chain, oracle) -> None:
        with pytest.raises(RefundError):
            self._adapter(chain, oracle).refund(
                _ref(Rail.ONCHAIN, "0xaa"), None, Deadline.never(), "rfd_1",
            )


class TestCreditRail:
    def _issue(self, store, holder: str = "venue", amount: str = "100.00") -> None:
        store.insert_credit(CreditAccount(
            code="GC-1",
            holder_id=holder,
            currency="USD",
            original_amount=Decimal(amount),
            remaining_balance=Decimal(amount),
            status=CreditStatus.ACTIVE,
            issued_utc=_now(),
            expires_utc=_now() + timedelta(days=365),
        ))

    def test_redemption_verifies(self, store) -> None:
        self._issue(store)
        redemption = store.redeem_credit("GC-1", "venue", Decimal("100.00"), "red_1", _now())
        result = CreditRailAdapter(store).verify(
            _ref(Rail.CREDIT, redemption.redemption_id), _obligation(), Deadline.never(),
        )
        assert result.status == RailStatus.SUCCESS
        assert result.amount == Decimal("100.00")
        assert store.get_credit("GC-1").status == CreditStatus.REDEEMED

    def test_other_holder_is_invalid(self, store) -> None:
        self._issue(store, holder="someone_else")
        store.redeem_credit("GC-1", "someone_else", Decimal("100.00"), "red_1", _now())
        result = CreditRailAdapter(store).verify(_ref(Rail.CREDIT, "red_1"), _obligation(), Deadline.never())
        assert result.failure_reason == RejectionReason.CREDIT_INVALID

    def test_unknown_redemption(self, store) -> None:
        result = CreditRailAdapter(store).verify(_ref(Rail.CREDIT, "red_x"), _obligation(), Deadline.never())
        assert result.failure_reason == RejectionReason.TRANSACTION_NOT_FOUND

    def test_overdraw_refused(self, store) -> None:
        self._issue(store, amount="50.00")
        with pytest.raises(ValidationError):
            store.redeem_credit("GC-1", "venue", Decimal("60.00"), "red_1", _now())

    def test_expired_credit_refused(self, store) -> None:
        self._issue(store)
        assert store.expire_credits(_now() + timedelta(days=400)) == 1
        with pytest.raises(ValidationError):
            store.redeem_credit("GC-1", "venue", Decimal("10.00"), "red_1", _now())

    def test_released_redemption_is_invalid(self, store) -> None:
        self._issue(store)
        store.redeem_credit("GC-1", "venue", Decimal("100.00"), "red_1", _now())
        account = store.release_redemption("red_1", _now())
        assert account.remaining_balance == Decimal("100.00")
        assert store.get_redemption("red_1").released
        assert store.release_redemption("red_1", _now()) is None
        result = CreditRailAdapter(store).verify(_ref(Rail.CREDIT, "red_1"), _obligation(), Deadline.never())
        assert result.failure_reason == RejectionReason.CREDIT_INVALID

    def test_refund_needs_reservation(self, store) -> None:
        self._issue(store)
        store.redeem_credit("GC-1", "venue", Decimal("100.00"), "red_1", _now())
        with pytest.raises(NotFoundError):
            CreditRailAdapter(store).refund(
                _ref(Rail.CREDIT, "red_1"), Decimal("30.00"), Deadline.never(), "rfd_missing",
            )
        assert store.get_credit("GC-1").remaining_balance == Decimal("0.00")

    def test_no_intents(self, store) -> None:
        with pytest.raises(ValidationError):
            CreditRailAdapter(store).create_intent(_obligation(), Deadline.never())


class TestWeb3ChainClient:
    def test_call_timeout_is_capped_and_shared(self) -> None:
        client = Web3ChainClient("http://127.0.0.1:8545", request_timeout=15.0)
        short = client._w3_for(2.5)
        assert dict(short.provider.get_request_kwargs())["timeout"] == 3
        assert client._w3_for(2.1) is short
        capped = client._w3_for(60.0)
        assert dict(capped.provider.get_request_kwargs())["timeout"] == 15
        assert client._w3_for(0.01) is not short
