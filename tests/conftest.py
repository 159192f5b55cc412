"""Shared fakes: a simulated clock, an in-memory chain and card/wallet processors."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Dict, List, Optional

import pytest

from gigsettle.errors import TransientAdapterError
from gigsettle.oracle.rates import FixedRateOracle
from gigsettle.persistence.store import SettlementStore
from gigsettle.rails.chain import ChainReceipt, ChainTransaction
from gigsettle.rails.processors import ProcessorCharge, ProcessorRefund

PAYEE_WALLET = "0x" + "ab" * 20
PAYER_WALLET = "0x" + "cd" * 20
WEI_PER_ETH = 10 ** 18


class FakeClock:
    """Simulated time. wait() advances the clock instead of sleeping."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self._now = start or datetime(2026, 3, 14, 20, 0, 0, tzinfo=timezone.utc)
        self._mono = 0.0
        self.waits: List[float] = []
        self.on_wait: Optional[Callable[["FakeClock"], None]] = None

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._mono

    def advance(self, seconds: float) -> None:
        self._now += timedelta(seconds=seconds)
        self._mono += seconds

    def wait(self, seconds: float, cancel: threading.Event) -> bool:
        if cancel.is_set():
            return True
        self.waits.append(seconds)
        self.advance(seconds)
        if self.on_wait is not None:
            self.on_wait(self)
        return cancel.is_set()


class FakeChain:
    """ChainClient over dicts. Set fail to make every call transient."""

    def __init__(self, height: int = 100) -> None:
        self.height = height
        self.txs: Dict[str, ChainTransaction] = {}
        self.receipts: Dict[str, ChainReceipt] = {}
        self.fail = False
        self.fail_times = 0

    def add(
        self,
        tx_hash: str,
        eth: str,
        sender: str = PAYER_WALLET,
        recipient: str = PAYEE_WALLET,
        block: Optional[int] = None,
        succeeded: bool = True,
    ) -> None:
        self.txs[tx_hash] = ChainTransaction(
            tx_hash=tx_hash,
            sender=sender,
            recipient=recipient,
            value_wei=int(Decimal(eth) * WEI_PER_ETH),
            block_number=block,
        )
        if block is not None:
            self.receipts[tx_hash] = ChainReceipt(tx_hash, block, succeeded)

    def mine(self, tx_hash: str, block: int, succeeded: bool = True) -> None:
        tx = self.txs[tx_hash]
        self.txs[tx_hash] = ChainTransaction(tx.tx_hash, tx.sender, tx.recipient, tx.value_wei, block)
        self.receipts[tx_hash] = ChainReceipt(tx_hash, block, succeeded)

    def _maybe_fail(self) -> None:
        if self.fail:
            raise TransientAdapterError("RPC unreachable")
        if self.fail_times > 0:
            self.fail_times -= 1
            raise TransientAdapterError("RPC unreachable")

    def get_transaction(self, tx_hash: str, timeout: float) -> Optional[ChainTransaction]:
        self._maybe_fail()
        return self.txs.get(tx_hash)

    def get_transaction_receipt(self, tx_hash: str, timeout: float) -> Optional[ChainReceipt]:
        self._maybe_fail()
        return self.receipts.get(tx_hash)

    def block_number(self, timeout: float) -> int:
        self._maybe_fail()
        return self.height


class FakeCardClient:
    """CardProcessorClient keeping intents in a dict."""

    def __init__(self) -> None:
        self.intents: Dict[str, ProcessorCharge] = {}
        self.refunds: List[ProcessorRefund] = []
        self.refunds_by_key: Dict[str, ProcessorRefund] = {}
        self.retrieve_calls = 0
        self.fail = False
        self.refund_fail_times = 0

    def put(self, intent_id: str, status: str, amount: str, currency: str = "USD") -> None:
        self.intents[intent_id] = ProcessorCharge(
            charge_id=intent_id, status=status, amount=Decimal(amount), currency=currency,
        )

    def create_payment_intent(self, amount, currency, metadata, timeout) -> ProcessorCharge:
        intent_id = f"pi_{len(self.intents) + 1}"
        charge = ProcessorCharge(
            charge_id=intent_id,
            status="requires_payment_method",
            amount=amount,
            currency=currency,
            client_secret=f"{intent_id}_secret",
        )
        self.intents[intent_id] = charge
        return charge

    def retrieve_payment_intent(self, intent_id, timeout) -> Optional[ProcessorCharge]:
        self.retrieve_calls += 1
        if self.fail:
            raise TransientAdapterError("processor 503", retry_after_seconds=7)
        return self.intents.get(intent_id)

    def create_refund(self, intent_id, amount, currency, timeout, idempotency_key) -> ProcessorRefund:
        if self.refund_fail_times > 0:
            self.refund_fail_times -= 1
            raise TransientAdapterError("processor 503")
        # A repeated key replays the first refund, as Stripe does.
        if idempotency_key in self.refunds_by_key:
            return self.refunds_by_key[idempotency_key]
        charge = self.intents[intent_id]
        refund = ProcessorRefund(
            refund_id=f"re_{len(self.refunds) + 1}",
            status="succeeded",
            amount=amount if amount is not None else charge.amount,
            currency=currency,
        )
        self.refunds.append(refund)
        self.refunds_by_key[idempotency_key] = refund
        return refund


class FakeWalletClient:
    """WalletProcessorClient: APPROVED orders complete when captured."""

    def __init__(self) -> None:
        self.orders: Dict[str, ProcessorCharge] = {}
        self.captured: List[str] = []

    def put(self, order_id: str, status: str, amount: str, currency: str = "USD") -> None:
        capture_id = f"cap_{order_id}" if status == "COMPLETED" else None
        self.orders[order_id] = ProcessorCharge(
            charge_id=order_id, status=status, amount=Decimal(amount), currency=currency,
            capture_id=capture_id,
        )

    def create_order(self, amount, currency, description, timeout) -> ProcessorCharge:
        order_id = f"ORDER{len(self.orders) + 1}"
        order = ProcessorCharge(
            charge_id=order_id, status="CREATED", amount=amount, currency=currency,
            approval_url=f"https://paypal.example/approve/{order_id}",
        )
        self.orders[order_id] = order
        return order

    def get_order(self, order_id, timeout) -> Optional[ProcessorCharge]:
        return self.orders.get(order_id)

    def capture_order(self, order_id, timeout) -> ProcessorCharge:
        order = self.orders[order_id]
        self.captured.append(order_id)
        self.put(order_id, "COMPLETED", str(order.amount), order.currency)
        return self.orders[order_id]

    def refund_capture(self, capture_id, amount, currency, timeout, request_id) -> ProcessorRefund:
        return ProcessorRefund(
            refund_id=f"rf_{capture_id}", status="completed", amount=amount, currency=currency,
        )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path) -> SettlementStore:
    s = SettlementStore(tmp_path / "settlement.db")
    yield s
    s.close()


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def oracle() -> FixedRateOracle:
    return FixedRateOracle({"ETH/USD": Decimal("2000"), "USDC/USD": Decimal("1")})


@pytest.fixture
def card_client() -> FakeCardClient:
    return FakeCardClient()


@pytest.fixture
def wallet_client() -> FakeWalletClient:
    return FakeWalletClient()
