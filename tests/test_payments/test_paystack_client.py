"""
Test suite for the Paystack API client.

The HTTP layer is replaced with ``httpx.MockTransport`` so requests can be
inspected and failures simulated without network access.
"""

import hashlib
import hmac
import json

import httpx
import pytest

from orderflow.core.exceptions import GatewayError, GatewayMisconfigured
from orderflow.core.retry import RetryPolicy
from orderflow.services.payments.paystack_client import PaystackClient

BASE_URL = "https://api.paystack.test"


def build_client(handler, secret_key="sk_test_123", max_attempts=3) -> PaystackClient:
    return PaystackClient(
        secret_key=secret_key,
        base_url=BASE_URL,
        retry_policy=RetryPolicy(max_attempts=max_attempts, initial_backoff=0, max_backoff=0),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


# ============================================================================
# Transaction Tests
# ============================================================================


class TestInitializeTransaction:
    """Test transaction initialization."""

    @pytest.mark.asyncio
    async def test_initialize_sends_minor_units_and_bearer_token(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            seen["path"] = request.url.path
            return httpx.Response(
                200,
                json={
                    "status": True,
                    "data": {
                        "authorization_url": "https://checkout.paystack.com/abc",
                        "access_code": "abc",
                        "reference": "GZP-PAY-1",
                    },
                },
            )

        client = build_client(handler)
        result = await client.initialize_transaction(
            email="ada@example.com",
            amount_minor_units=10700,
            reference="GZP-PAY-1",
            metadata={"order_id": "o-1"},
            currency="USD",
        )

        assert result.authorization_url == "https://checkout.paystack.com/abc"
        assert result.reference == "GZP-PAY-1"
        assert seen["auth"] == "Bearer sk_test_123"
        assert seen["path"] == "/transaction/initialize"
        assert seen["body"]["amount"] == 10700
        assert seen["body"]["currency"] == "USD"
        assert seen["body"]["metadata"] == {"order_id": "o-1"}

    @pytest.mark.asyncio
    async def test_missing_secret_key_fails_before_any_request(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={"status": True, "data": {}})

        client = build_client(handler, secret_key="")

        with pytest.raises(GatewayMisconfigured):
            await client.initialize_transaction("ada@example.com", 100, "ref")
        assert calls == []

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400, json={"status": False, "message": "Invalid amount"})

        client = build_client(handler)

        with pytest.raises(GatewayError) as exc_info:
            await client.initialize_transaction("ada@example.com", 0, "ref")

        assert exc_info.value.status_code == 400
        assert exc_info.value.message == "Invalid amount"
        assert exc_info.value.response_body == {"status": False, "message": "Invalid amount"}
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_server_error_is_retried(self):
        responses = iter(
            [
                httpx.Response(502, text="bad gateway"),
                httpx.Response(
                    200,
                    json={
                        "status": True,
                        "data": {"authorization_url": "https://x", "reference": "ref"},
                    },
                ),
            ]
        )

        client = build_client(lambda request: next(responses))
        result = await client.initialize_transaction("ada@example.com", 100, "ref")

        assert result.reference == "ref"

    @pytest.mark.asyncio
    async def test_transport_error_exhausts_retries(self):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectTimeout("timed out", request=request)

        client = build_client(handler, max_attempts=2)

        with pytest.raises(GatewayError) as exc_info:
            await client.initialize_transaction("ada@example.com", 100, "ref")

        assert exc_info.value.status_code is None
        assert len(calls) == 2


class TestVerifyAndList:
    """Test verification, listing and refunds."""

    @pytest.mark.asyncio
    async def test_verify_transaction(self):
        def handler(request):
            assert request.url.path == "/transaction/verify/GZP-PAY-1"
            return httpx.Response(
                200,
                json={
                    "status": True,
                    "data": {
                        "reference": "GZP-PAY-1",
                        "status": "success",
                        "amount": 10700,
                        "currency": "USD",
                        "metadata": "",
                        "customer": {"email": "ada@example.com"},
                    },
                },
            )

        verification = await build_client(handler).verify_transaction("GZP-PAY-1")

        assert verification.is_successful
        assert verification.amount == 10700
        assert verification.metadata == {}
        assert verification.customer_email == "ada@example.com"

    @pytest.mark.asyncio
    async def test_list_transactions_pagination(self):
        def handler(request):
            assert request.url.params["perPage"] == "2"
            assert request.url.params["status"] == "success"
            return httpx.Response(
                200,
                json={
                    "status": True,
                    "data": [
                        {"reference": "a", "status": "success", "amount": 100},
                        {"reference": "b", "status": "success", "amount": 200},
                    ],
                    "meta": {"page": 1, "perPage": 2, "pageCount": 3, "total": 6},
                },
            )

        page = await build_client(handler).list_transactions(page=1, per_page=2, status="success")

        assert [t.reference for t in page.transactions] == ["a", "b"]
        assert page.has_next is True

    @pytest.mark.asyncio
    async def test_create_refund(self):
        def handler(request):
            assert json.loads(request.content) == {"transaction": "GZP-PAY-1", "amount": 500}
            return httpx.Response(
                200,
                json={
                    "status": True,
                    "data": {
                        "id": 9,
                        "status": "pending",
                        "amount": 500,
                        "currency": "USD",
                        "transaction": {"reference": "GZP-PAY-1"},
                    },
                },
            )

        refund = await build_client(handler).create_refund("GZP-PAY-1", amount_minor_units=500)

        assert refund.status == "pending"
        assert refund.transaction_reference == "GZP-PAY-1"


# ============================================================================
# Webhook Signature Tests
# ============================================================================


class TestWebhookSignature:
    """Test HMAC-SHA512 webhook verification."""

    BODY = b'{"event":"charge.success","data":{"reference":"GZP-PAY-1"}}'

    def _sign(self, body: bytes, secret: str = "sk_test_123") -> str:
        return hmac.new(secret.encode(), body, hashlib.sha512).hexdigest()

    def test_valid_signature(self):
        assert PaystackClient.verify_webhook_signature(
            self.BODY, self._sign(self.BODY), "sk_test_123"
        )

    def test_tampered_body(self):
        signature = self._sign(self.BODY)

        assert not PaystackClient.verify_webhook_signature(
            self.BODY.replace(b"GZP-PAY-1", b"GZP-PAY-2"), signature, "sk_test_123"
        )

    @pytest.mark.parametrize("signature,secret", [(None, "sk"), ("", "sk"), ("abc", None)])
    def test_missing_inputs_never_match(self, signature, secret):
        assert not PaystackClient.verify_webhook_signature(self.BODY, signature, secret)
