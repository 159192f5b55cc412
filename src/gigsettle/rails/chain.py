"""Ethereum JSON-RPC access for the onchain rail.

Only three reads are needed: the transaction, its receipt, and the current
block height. web3 is imported lazily so the rest of the engine runs
without an RPC endpoint configured.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

from gigsettle.errors import TransientAdapterError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChainTransaction:
    """A transaction as seen on chain. block_number is None while unmined."""
    tx_hash: str
    sender: str
    recipient: Optional[str]
    value_wei: int
    block_number: Optional[int]


@dataclass(frozen=True)
class ChainReceipt:
    tx_hash: str
    block_number: int
    succeeded: bool


class ChainClient(Protocol):
    """Chain reads. timeout bounds each call in seconds."""

    def get_transaction(self, tx_hash: str, timeout: float) -> Optional[ChainTransaction]:
        ...

    def get_transaction_receipt(self, tx_hash: str, timeout: float) -> Optional[ChainReceipt]:
        ...

    def block_number(self, timeout: float) -> int:
        ...


class Web3ChainClient:
    """ChainClient over a web3 HTTP provider.

    Each call runs with the caller's timeout, capped at request_timeout.
    Timeouts are rounded up to whole seconds and one provider is kept per
    value, so at most a handful of providers exist.
    """

    def __init__(self, rpc_url: str, request_timeout: float = 15.0) -> None:
        self._rpc_url = rpc_url
        self._request_timeout = request_timeout
        self._providers: Dict[int, Any] = {}
        self._lock = threading.Lock()
        self._w3_for(request_timeout)

    def _w3_for(self, timeout: float) -> Any:
        seconds = max(1, math.ceil(min(timeout, self._request_timeout)))
        with self._lock:
            w3 = self._providers.get(seconds)
            if w3 is None:
                from web3 import HTTPProvider, Web3

                w3 = Web3(HTTPProvider(self._rpc_url, request_kwargs={"timeout": seconds}))
                self._providers[seconds] = w3
        return w3

    def get_transaction(self, tx_hash: str, timeout: float) -> Optional[ChainTransaction]:
        tx = self._call(self._w3_for(timeout).eth.get_transaction, tx_hash)
        if tx is None:
            return None
        return ChainTransaction(
            tx_hash=tx_hash,
            sender=str(tx["from"]),
            recipient=str(tx["to"]) if tx.get("to") else None,
            value_wei=int(tx["value"]),
            block_number=tx.get("blockNumber"),
        )

    def get_transaction_receipt(self, tx_hash: str, timeout: float) -> Optional[ChainReceipt]:
        receipt = self._call(self._w3_for(timeout).eth.get_transaction_receipt, tx_hash)
        if receipt is None:
            return None
        return ChainReceipt(
            tx_hash=tx_hash,
            block_number=int(receipt["blockNumber"]),
            succeeded=int(receipt["status"]) == 1,
        )

    def block_number(self, timeout: float) -> int:
        w3 = self._w3_for(timeout)
        height = self._call(lambda: w3.eth.block_number)
        if height is None:
            raise TransientAdapterError("RPC returned no block height")
        return int(height)

    @staticmethod
    def _call(fn: Any, *args: Any) -> Any:
        from web3.exceptions import TransactionNotFound, Web3Exception

        try:
            return fn(*args)
        except TransactionNotFound:
            return None
        except (OSError, Web3Exception) as e:
            # requests' connection and timeout errors are OSErrors.
            logger.info("RPC call failed: %s", e)
            raise TransientAdapterError(f"RPC failure: {e}") from e
