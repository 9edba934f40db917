"""
Test suite for the drop-ship partner client.
"""

import json

import httpx
import pytest

from orderflow.core.exceptions import PartnerPlacementError
from orderflow.core.retry import RetryPolicy
from orderflow.services.fulfillment.partner_client import FulfillmentPartnerClient

ADDRESS = {"name": "Ada Lovelace", "city": "London", "country": "GB"}


def build_client(handler, base_url="https://partner.test", max_attempts=3):
    return FulfillmentPartnerClient(
        base_url=base_url,
        api_key="partner-key",
        retry_policy=RetryPolicy(max_attempts=max_attempts, initial_backoff=0, max_backoff=0),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


async def place(client):
    return await client.place_item(
        product_ref="CJ-NOVA",
        variant_ref="CJ-NOVA-BLK",
        quantity=2,
        shipping_address=ADDRESS,
        order_memo="GameZone Order #GZP-1 - Customer: Ada Lovelace",
        idempotency_key="GZP-1-0",
    )


class TestPlaceItem:
    """Test placement and failure classification."""

    @pytest.mark.asyncio
    async def test_successful_placement(self):
        seen = {}

        def handler(request):
            seen["key"] = request.headers.get("X-API-Key")
            seen["idempotency"] = request.headers.get("Idempotency-Key")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"order_id": "PO-77", "status": "CREATED"})

        result = await place(build_client(handler))

        assert result.partner_reference == "PO-77"
        assert seen["key"] == "partner-key"
        assert seen["body"]["product_id"] == "CJ-NOVA"
        assert seen["body"]["quantity"] == 2
        assert seen["body"]["logistics_address"] == ADDRESS
        assert seen["body"]["external_order_id"] == "GZP-1-0"
        assert seen["idempotency"] == "GZP-1-0"

    @pytest.mark.asyncio
    async def test_refusal_is_permanent_and_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(422, json={"message": "Variant discontinued"})

        with pytest.raises(PartnerPlacementError) as exc_info:
            await place(build_client(handler))

        assert exc_info.value.transient is False
        assert exc_info.value.status_code == 422
        assert exc_info.value.message == "Variant discontinued"
        assert len(calls) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [429, 503])
    async def test_throttling_and_server_errors_are_transient(self, status_code):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(status_code, text="busy")

        with pytest.raises(PartnerPlacementError) as exc_info:
            await place(build_client(handler, max_attempts=2))

        assert exc_info.value.transient is True
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(PartnerPlacementError) as exc_info:
            await place(build_client(handler, max_attempts=1))

        assert exc_info.value.transient is True

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failure(self):
        responses = iter(
            [httpx.Response(503), httpx.Response(201, json={"partner_reference": "PO-1"})]
        )

        result = await place(build_client(lambda request: next(responses)))

        assert result.partner_reference == "PO-1"

    @pytest.mark.asyncio
    async def test_missing_reference_is_permanent(self):
        client = build_client(lambda request: httpx.Response(200, json={"status": "ok"}))

        with pytest.raises(PartnerPlacementError) as exc_info:
            await place(client)

        assert exc_info.value.transient is False

    @pytest.mark.asyncio
    async def test_unconfigured_partner_is_permanent(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={"order_id": "PO-1"})

        client = build_client(handler)
        client.base_url = ""

        with pytest.raises(PartnerPlacementError) as exc_info:
            await place(client)

        assert exc_info.value.transient is False
        assert calls == []


class TestResendSafety:
    """Test that a placement the partner may have accepted is never sent twice."""

    @pytest.mark.asyncio
    async def test_read_timeout_after_acceptance_is_not_resent(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                # Partner accepted the item but the response never arrived.
                raise httpx.ReadTimeout("slow", request=request)
            return httpx.Response(200, json={"order_id": "PO-DUPLICATE"})

        with pytest.raises(PartnerPlacementError) as exc_info:
            await place(build_client(handler, max_attempts=3))

        assert len(calls) == 1
        assert exc_info.value.transient is True

    @pytest.mark.asyncio
    async def test_ambiguous_server_error_is_not_resent(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500, text="boom")

        with pytest.raises(PartnerPlacementError) as exc_info:
            await place(build_client(handler, max_attempts=3))

        assert len(calls) == 1
        assert exc_info.value.transient is True

    @pytest.mark.asyncio
    async def test_connect_error_is_resent_with_same_key(self):
        keys = []

        def handler(request):
            keys.append(request.headers.get("Idempotency-Key"))
            if len(keys) == 1:
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(201, json={"partner_reference": "PO-9"})

        result = await place(build_client(handler, max_attempts=3))

        assert result.partner_reference == "PO-9"
        assert keys == ["GZP-1-0", "GZP-1-0"]

    @pytest.mark.asyncio
    async def test_no_key_sent_when_not_given(self):
        seen = {}

        def handler(request):
            seen["header"] = request.headers.get("Idempotency-Key")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"order_id": "PO-1"})

        client = build_client(handler)
        await client.place_item(
            product_ref="CJ-NOVA",
            variant_ref=None,
            quantity=1,
            shipping_address=ADDRESS,
            order_memo="memo",
        )

        assert seen["header"] is None
        assert "external_order_id" not in seen["body"]
