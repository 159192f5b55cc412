"""Tests for the HTTP processor clients and the CoinGecko oracle (no network)."""

import json

import httpx
import pytest
from decimal import Decimal

from gigsettle.errors import (
    RailNotConfiguredError,
    RateOracleUnavailable,
    TransientAdapterError,
    ValidationError,
)
from gigsettle.models.obligation import Obligation, PaymentReference, Rail
from gigsettle.models.settlement import RailStatus
from gigsettle.oracle.rates import CoinGeckoRateOracle
from gigsettle.rails.processors import PayPalClient, StripeClient
from gigsettle.rails.wallet import WalletRailAdapter
from gigsettle.settlement.deadline import Deadline


def _client(handler) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(handler))


class TestStripeClient:
    def test_retrieve_intent(self) -> None:
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={
                "id": "pi_1", "status": "succeeded", "amount": 30000,
                "amount_received": 30000, "currency": "usd",
            })

        charge = StripeClient("sk_test", http=_client(handler)).retrieve_payment_intent("pi_1", 5.0)
        assert charge.status == "succeeded"
        assert charge.amount == Decimal("300.00")
        assert charge.currency == "USD"
        assert seen[0].url.path == "/v1/payment_intents/pi_1"
        assert seen[0].headers["Authorization"] == "Bearer sk_test"

    def test_unknown_intent_is_none(self) -> None:
        client = StripeClient("sk_test", http=_client(lambda r: httpx.Response(404, json={})))
        assert client.retrieve_payment_intent("pi_x", 5.0) is None

    def test_server_error_is_transient_with_retry_after(self) -> None:
        client = StripeClient(
            "sk_test",
            http=_client(lambda r: httpx.Response(503, headers={"Retry-After": "7"})),
        )
        with pytest.raises(TransientAdapterError) as exc:
            client.retrieve_payment_intent("pi_1", 5.0)
        assert exc.value.retry_after_seconds == 7.0

    def test_rate_limit_is_transient(self) -> None:
        client = StripeClient("sk_test", http=_client(lambda r: httpx.Response(429)))
        with pytest.raises(TransientAdapterError):
            client.retrieve_payment_intent("pi_1", 5.0)

    def test_connection_error_is_transient(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransientAdapterError):
            StripeClient("sk_test", http=_client(handler)).retrieve_payment_intent("pi_1", 5.0)

    def test_bad_credentials(self) -> None:
        client = StripeClient("sk_bad", http=_client(lambda r: httpx.Response(401, json={})))
        with pytest.raises(RailNotConfiguredError):
            client.retrieve_payment_intent("pi_1", 5.0)

    def test_refund_sends_minor_units_and_idempotency_key(self) -> None:
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={
                "id": "re_1", "status": "succeeded", "amount": 4000, "currency": "usd",
            })

        refund = StripeClient("sk_test", http=_client(handler)).create_refund(
            "pi_1", Decimal("40.00"), "USD", 5.0, "rfd_a",
        )
        assert refund.amount == Decimal("40.00")
        body = seen[0].content.decode()
        assert "amount=4000" in body
        assert "payment_intent=pi_1" in body
        assert seen[0].headers["Idempotency-Key"] == "rfd_a"

    def test_equal_partial_refunds_use_distinct_keys(self) -> None:
        by_key: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            key = request.headers["Idempotency-Key"]
            by_key.setdefault(key, f"re_{len(by_key) + 1}")
            return httpx.Response(200, json={
                "id": by_key[key], "status": "succeeded", "amount": 5000, "currency": "usd",
            })

        client = StripeClient("sk_test", http=_client(handler))
        first = client.create_refund("pi_1", Decimal("50.00"), "USD", 5.0, "rfd_a")
        second = client.create_refund("pi_1", Decimal("50.00"), "USD", 5.0, "rfd_b")
        retried = client.create_refund("pi_1", Decimal("50.00"), "USD", 5.0, "rfd_a")
        assert first.refund_id != second.refund_id
        assert retried.refund_id == first.refund_id

    def test_missing_key(self) -> None:
        with pytest.raises(RailNotConfiguredError):
            StripeClient("")


class TestPayPalClient:
    def _handler(self, calls: dict):
        def handler(request: httpx.Request) -> httpx.Response:
            path = request.url.path
            calls[path] = calls.get(path, 0) + 1
            if path == "/v1/oauth2/token":
                return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
            assert request.headers["Authorization"] == "Bearer tok"
            if path == "/v2/checkout/orders/ORDER1" and request.method == "GET":
                return httpx.Response(200, json={
                    "id": "ORDER1",
                    "status": "APPROVED",
                    "purchase_units": [{"amount": {"currency_code": "USD", "value": "100.00"}}],
                })
            if path == "/v2/checkout/orders/ORDER1/capture":
                assert request.headers["PayPal-Request-Id"] == "capture-ORDER1"
                return httpx.Response(201, json={
                    "id": "ORDER1",
                    "status": "COMPLETED",
                    "purchase_units": [{
                        "amount": {"currency_code": "USD", "value": "100.00"},
                        "payments": {"captures": [{
                            "id": "CAP1",
                            "amount": {"currency_code": "USD", "value": "100.00"},
                        }]},
                    }],
                })
            if path == "/v2/checkout/orders":
                payload = json.loads(request.content)
                assert payload["purchase_units"][0]["amount"]["value"] == "100.00"
                return httpx.Response(201, json={
                    "id": "ORDER2",
                    "status": "CREATED",
                    "purchase_units": payload["purchase_units"],
                    "links": [{"rel": "approve", "href": "https://paypal.example/approve/ORDER2"}],
                })
            return httpx.Response(404, json={})
        return handler

    def test_verify_captures_approved_order(self) -> None:
        calls: dict = {}
        client = PayPalClient("id", "secret", "https://paypal.test", http=_client(self._handler(calls)))
        adapter = WalletRailAdapter(client)
        obligation = Obligation.create("venue", "band", "100.00", "USD")
        reference = PaymentReference.create(obligation.obligation_id, Rail.WALLET, "ORDER1")

        result = adapter.verify(reference, obligation, Deadline.never())

        assert result.status == RailStatus.SUCCESS
        assert result.amount == Decimal("100.00")
        assert calls["/v2/checkout/orders/ORDER1/capture"] == 1
        # Token fetched once and reused.
        assert calls["/v1/oauth2/token"] == 1

    def test_create_order_returns_approval_link(self) -> None:
        client = PayPalClient("id", "secret", "https://paypal.test", http=_client(self._handler({})))
        order = client.create_order(Decimal("100.00"), "USD", "Gig", 5.0)
        assert order.charge_id == "ORDER2"
        assert order.approval_url == "https://paypal.example/approve/ORDER2"

    def test_unknown_order_is_none(self) -> None:
        client = PayPalClient("id", "secret", "https://paypal.test", http=_client(self._handler({})))
        assert client.get_order("NOPE", 5.0) is None

    def test_capture_of_unknown_order(self) -> None:
        client = PayPalClient("id", "secret", "https://paypal.test", http=_client(self._handler({})))
        with pytest.raises(ValidationError):
            client.capture_order("NOPE", 5.0)

    def test_refund_capture_sends_request_id(self) -> None:
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/v1/oauth2/token":
                return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
            seen.append(request)
            return httpx.Response(201, json={
                "id": "RF1", "status": "COMPLETED",
                "amount": {"currency_code": "USD", "value": "25.00"},
            })

        client = PayPalClient("id", "secret", "https://paypal.test", http=_client(handler))
        refund = client.refund_capture("CAP1", Decimal("25.00"), "USD", 5.0, "rfd_a")
        assert refund.refund_id == "RF1"
        assert refund.status == "completed"
        assert refund.amount == Decimal("25.00")
        assert seen[0].url.path == "/v2/payments/captures/CAP1/refund"
        assert seen[0].headers["PayPal-Request-Id"] == "rfd_a"
        assert json.loads(seen[0].content)["amount"]["value"] == "25.00"


class TestCoinGeckoOracle:
    def test_spot_rate_is_exact_decimal(self) -> None:
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, content=b'{"ethereum": {"usd": 2000.12}}')

        oracle = CoinGeckoRateOracle("https://cg.test/api/v3", http=_client(handler))
        assert oracle.get_rate("ETH", "USD") == Decimal("2000.12")
        assert seen[0].url.params["ids"] == "ethereum"
        assert seen[0].url.params["vs_currencies"] == "usd"

    def test_pegs_skip_network(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("network should not be used for pegged pairs")

        oracle = CoinGeckoRateOracle(
            "https://cg.test/api/v3", http=_client(handler), pegs={"USDC/USD": Decimal("1")},
        )
        assert oracle.get_rate("USDC", "USD") == Decimal("1")
        assert oracle.get_rate("USD", "USD") == Decimal("1")

    def test_outage_is_unavailable(self) -> None:
        oracle = CoinGeckoRateOracle(
            "https://cg.test/api/v3", http=_client(lambda r: httpx.Response(500)),
        )
        with pytest.raises(RateOracleUnavailable):
            oracle.get_rate("ETH", "USD")

    def test_missing_pair(self) -> None:
        oracle = CoinGeckoRateOracle(
            "https://cg.test/api/v3", http=_client(lambda r: httpx.Response(200, json={"ethereum": {}})),
        )
        with pytest.raises(RateOracleUnavailable):
            oracle.get_rate("ETH", "USD")

    def test_unsupported_unit(self) -> None:
        oracle = CoinGeckoRateOracle("https://cg.test/api/v3", http=_client(lambda r: httpx.Response(200)))
        with pytest.raises(RateOracleUnavailable):
            oracle.get_rate("DOGE", "USD")
