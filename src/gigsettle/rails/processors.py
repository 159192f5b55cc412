"""Card and wallet processor clients.

Thin REST clients for the processors behind the card rail (Stripe payment
intents) and the wallet rail (PayPal orders). The adapters depend only on
the CardProcessorClient / WalletProcessorClient Protocols, so any SDK or
test double that speaks the same contract can be swapped in.

HTTP failure mapping, shared by both clients:
- timeout, connection error, 429, 5xx → TransientAdapterError
- 404 (and 400 on lookups) → None, the processor does not know the id
- 401 / 403 → RailNotConfiguredError, credentials are wrong
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol

import httpx

from gigsettle.errors import RailNotConfiguredError, TransientAdapterError, ValidationError
from gigsettle.models.money import from_minor_units, to_minor_units

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessorCharge:
    """A processor-side payment (payment intent or order), normalised."""
    charge_id: str
    status: str
    amount: Decimal
    currency: str
    client_secret: Optional[str] = None
    approval_url: Optional[str] = None
    capture_id: Optional[str] = None


@dataclass(frozen=True)
class ProcessorRefund:
    refund_id: str
    status: str
    amount: Decimal
    currency: str


class CardProcessorClient(Protocol):
    def create_payment_intent(
        self, amount: Decimal, currency: str, metadata: Dict[str, str], timeout: float,
    ) -> ProcessorCharge:
        ...

    def retrieve_payment_intent(self, intent_id: str, timeout: float) -> Optional[ProcessorCharge]:
        ...

    def create_refund(
        self,
        intent_id: str,
        amount: Optional[Decimal],
        currency: str,
        timeout: float,
        idempotency_key: str,
    ) -> ProcessorRefund:
        ...


class WalletProcessorClient(Protocol):
    def create_order(
        self, amount: Decimal, currency: str, description: str, timeout: float,
    ) -> ProcessorCharge:
        ...

    def get_order(self, order_id: str, timeout: float) -> Optional[ProcessorCharge]:
        ...

    def capture_order(self, order_id: str, timeout: float) -> ProcessorCharge:
        ...

    def refund_capture(
        self,
        capture_id: str,
        amount: Optional[Decimal],
        currency: str,
        timeout: float,
        request_id: str,
    ) -> ProcessorRefund:
        ...


def _send(
    http: httpx.Client,
    method: str,
    url: str,
    timeout: float,
    lookup: bool = False,
    **kwargs: Any,
) -> Optional[httpx.Response]:
    """Issue a request and translate transport and status failures."""
    try:
        response = http.request(method, url, timeout=timeout, **kwargs)
    except httpx.TimeoutException as e:
        raise TransientAdapterError(f"Processor timeout: {method} {url}") from e
    except httpx.TransportError as e:
        raise TransientAdapterError(f"Processor unreachable: {e}") from e

    status = response.status_code
    if status == 429 or status >= 500:
        retry_after = response.headers.get("Retry-After")
        raise TransientAdapterError(
            f"Processor returned {status} for {method} {url}",
            retry_after_seconds=float(retry_after) if retry_after and retry_after.isdigit() else None,
        )
    if status in (401, 403):
        raise RailNotConfiguredError(f"Processor rejected credentials ({status})")
    if status == 404 or (lookup and status == 400):
        return None
    if status >= 400:
        raise ValidationError(f"Processor refused request ({status}): {response.text[:200]}")
    return response


class StripeClient:
    """Card processor client for Stripe payment intents."""

    def __init__(
        self,
        secret_key: str,
        base_url: str = "https://api.stripe.com/v1",
        http: Optional[httpx.Client] = None,
    ) -> None:
        if not secret_key:
            raise RailNotConfiguredError("Stripe secret key is not configured")
        self._base_url = base_url.rstrip("/")
        self._http = http or httpx.Client()
        self._headers = {"Authorization": f"Bearer {secret_key}"}

    def create_payment_intent(
        self, amount: Decimal, currency: str, metadata: Dict[str, str], timeout: float,
    ) -> ProcessorCharge:
        form: Dict[str, Any] = {
            "amount": to_minor_units(amount, currency),
            "currency": currency.lower(),
            "automatic_payment_methods[enabled]": "true",
        }
        for key, value in metadata.items():
            form[f"metadata[{key}]"] = value
        response = _send(
            self._http, "POST", f"{self._base_url}/payment_intents", timeout,
            data=form, headers=self._headers,
        )
        assert response is not None
        return self._charge(response.json())

    def retrieve_payment_intent(self, intent_id: str, timeout: float) -> Optional[ProcessorCharge]:
        response = _send(
            self._http, "GET", f"{self._base_url}/payment_intents/{intent_id}", timeout,
            lookup=True, headers=self._headers,
        )
        if response is None:
            return None
        return self._charge(response.json())

    def create_refund(
        self,
        intent_id: str,
        amount: Optional[Decimal],
        currency: str,
        timeout: float,
        idempotency_key: str,
    ) -> ProcessorRefund:
        """One refund per idempotency_key; a repeated key replays the first result."""
        form: Dict[str, Any] = {"payment_intent": intent_id}
        if amount is not None:
            form["amount"] = to_minor_units(amount, currency)
        response = _send(
            self._http, "POST", f"{self._base_url}/refunds", timeout,
            data=form, headers={**self._headers, "Idempotency-Key": idempotency_key},
        )
        assert response is not None
        body = response.json()
        cur = str(body.get("currency", currency)).upper()
        return ProcessorRefund(
            refund_id=body["id"],
            status=body.get("status", "pending"),
            amount=from_minor_units(int(body.get("amount", 0)), cur),
            currency=cur,
        )

    @staticmethod
    def _charge(body: Dict[str, Any]) -> ProcessorCharge:
        currency = str(body.get("currency", "")).upper()
        # amount_received is what actually settled; amount is what was asked.
        minor = body.get("amount_received") or body.get("amount") or 0
        return ProcessorCharge(
            charge_id=body["id"],
            status=body.get("status", ""),
            amount=from_minor_units(int(minor), currency),
            currency=currency,
            client_secret=body.get("client_secret"),
        )


class PayPalClient:
    """Wallet processor client for PayPal checkout orders."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        base_url: str = "https://api-m.sandbox.paypal.com",
        http: Optional[httpx.Client] = None,
    ) -> None:
        if not client_id or not client_secret:
            raise RailNotConfiguredError("PayPal client credentials are not configured")
        self._base_url = base_url.rstrip("/")
        self._auth = (client_id, client_secret)
        self._http = http or httpx.Client()
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    def _access_token(self, timeout: float) -> str:
        with self._token_lock:
            if self._token is not None and time.monotonic() < self._token_expires_at:
                return self._token
            response = _send(
                self._http, "POST", f"{self._base_url}/v1/oauth2/token", timeout,
                data={"grant_type": "client_credentials"}, auth=self._auth,
            )
            if response is None:
                raise RailNotConfiguredError("PayPal token endpoint not found")
            body = response.json()
            self._token = body["access_token"]
            # Refresh a minute early.
            self._token_expires_at = time.monotonic() + max(0, int(body.get("expires_in", 0)) - 60)
            return self._token

    def _headers(self, timeout: float, request_id: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self._access_token(timeout)}",
            "Content-Type": "application/json",
        }
        if request_id:
            headers["PayPal-Request-Id"] = request_id
        return headers

    def create_order(
        self, amount: Decimal, currency: str, description: str, timeout: float,
    ) -> ProcessorCharge:
        payload = {
            "intent": "CAPTURE",
            "purchase_units": [{
                "amount": {"currency_code": currency, "value": f"{amount:.2f}"},
                "description": description,
            }],
        }
        response = _send(
            self._http, "POST", f"{self._base_url}/v2/checkout/orders", timeout,
            json=payload, headers=self._headers(timeout),
        )
        assert response is not None
        return self._order(response.json())

    def get_order(self, order_id: str, timeout: float) -> Optional[ProcessorCharge]:
        response = _send(
            self._http, "GET", f"{self._base_url}/v2/checkout/orders/{order_id}", timeout,
            lookup=True, headers=self._headers(timeout),
        )
        if response is None:
            return None
        return self._order(response.json())

    def capture_order(self, order_id: str, timeout: float) -> ProcessorCharge:
        response = _send(
            self._http, "POST", f"{self._base_url}/v2/checkout/orders/{order_id}/capture", timeout,
            json={}, headers=self._headers(timeout, request_id=f"capture-{order_id}"),
        )
        if response is None:
            raise ValidationError(f"PayPal order not found: {order_id}")
        return self._order(response.json())

    def refund_capture(
        self,
        capture_id: str,
        amount: Optional[Decimal],
        currency: str,
        timeout: float,
        request_id: str,
    ) -> ProcessorRefund:
        payload: Dict[str, Any] = {}
        if amount is not None:
            payload["amount"] = {"currency_code": currency, "value": f"{amount:.2f}"}
        response = _send(
            self._http, "POST", f"{self._base_url}/v2/payments/captures/{capture_id}/refund", timeout,
            json=payload, headers=self._headers(timeout, request_id=request_id),
        )
        if response is None:
            raise ValidationError(f"PayPal capture not found: {capture_id}")
        body = response.json()
        amt = body.get("amount") or {}
        return ProcessorRefund(
            refund_id=body["id"],
            status=str(body.get("status", "PENDING")).lower(),
            amount=Decimal(str(amt.get("value", amount or "0"))),
            currency=str(amt.get("currency_code", currency)).upper(),
        )

    @staticmethod
    def _order(body: Dict[str, Any]) -> ProcessorCharge:
        units = body.get("purchase_units") or [{}]
        unit = units[0]
        amount = unit.get("amount") or {}
        captures = (unit.get("payments") or {}).get("captures") or []
        capture_id = None
        if captures:
            # A completed capture carries the amount that actually moved.
            amount = captures[0].get("amount") or amount
            capture_id = captures[0].get("id")
        approval_url = next(
            (link.get("href") for link in body.get("links", []) if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        return ProcessorCharge(
            charge_id=body["id"],
            status=str(body.get("status", "")).upper(),
            amount=Decimal(str(amount.get("value", "0"))),
            currency=str(amount.get("currency_code", "")).upper(),
            approval_url=approval_url,
            capture_id=capture_id,
        )
