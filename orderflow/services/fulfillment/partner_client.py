"""
Drop-ship fulfillment partner client.

Places one line item per call. Failures are classified for the lifecycle
manager: a partner refusal (4xx other than 408/429) is permanent and needs
human review; timeouts, connection failures, throttling and partner 5xx
responses are transient and eligible for a later retry.

Within a single call the request is re-sent only when the partner cannot
have accepted it: the connection was never established, or the partner
answered 429/503. A read timeout or a 500 may follow an accepted placement,
so those are reported as transient without re-sending. Every request also
carries an idempotency key derived from the order and item, so a later
fulfillment retry of the same item is recognizable on the partner side.
"""

from typing import Any, Optional

import httpx
from pydantic import BaseModel

from orderflow.core.config import get_settings
from orderflow.core.exceptions import PartnerPlacementError
from orderflow.core.http import TRANSPORT_ERRORS, error_body, is_retryable_status
from orderflow.core.logging import get_logger
from orderflow.core.retry import RetryPolicy

logger = get_logger(__name__)

# Failures raised before any byte of the request reached the partner.
UNSENT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)

# Statuses the partner returns without processing the request.
NOT_PROCESSED_STATUS_CODES = frozenset({429, 503})


class PlacementResult(BaseModel):
    partner_reference: str
    status: Optional[str] = None


def _is_safe_to_resend(error: BaseException) -> bool:
    return isinstance(error, PartnerPlacementError) and bool(error.context.get("resendable"))


class FulfillmentPartnerClient:
    """HTTP client for the partner's order placement endpoint."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        retry_policy: Optional[RetryPolicy] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.fulfillment_partner_url or "").rstrip("/")
        self.api_key = api_key if api_key is not None else settings.fulfillment_partner_api_key
        self.retry_policy = retry_policy or RetryPolicy.from_settings(settings)
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout or settings.fulfillment_timeout_seconds)
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _headers(self, idempotency_key: Optional[str]) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    async def _post_order(
        self, body: dict[str, Any], idempotency_key: Optional[str]
    ) -> PlacementResult:
        try:
            response = await self._client.post(
                f"{self.base_url}/orders", json=body, headers=self._headers(idempotency_key)
            )
        except TRANSPORT_ERRORS as e:
            raise PartnerPlacementError(
                f"Partner request failed: {type(e).__name__}",
                transient=True,
                product_id=body.get("product_id"),
                resendable=isinstance(e, UNSENT_ERRORS),
            ) from e

        if not response.is_success:
            payload = error_body(response)
            message = payload.get("message") if isinstance(payload, dict) else None
            raise PartnerPlacementError(
                message or f"Partner returned HTTP {response.status_code}",
                transient=is_retryable_status(response.status_code),
                status_code=response.status_code,
                product_id=body.get("product_id"),
                resendable=response.status_code in NOT_PROCESSED_STATUS_CODES,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise PartnerPlacementError(
                "Partner returned a non-JSON response",
                transient=False,
                status_code=response.status_code,
            ) from e

        reference = data.get("partner_reference") or data.get("order_id")
        if not reference:
            raise PartnerPlacementError(
                "Partner accepted the item without returning a reference",
                transient=False,
                status_code=response.status_code,
            )
        return PlacementResult(partner_reference=str(reference), status=data.get("status"))

    async def place_item(
        self,
        product_ref: str,
        variant_ref: Optional[str],
        quantity: int,
        shipping_address: dict[str, str],
        order_memo: str,
        idempotency_key: Optional[str] = None,
    ) -> PlacementResult:
        """
        Place one line item with the partner.

        Args:
            product_ref: Partner product identifier
            variant_ref: Partner variant identifier, if any
            quantity: Units to ship
            shipping_address: Recipient address in partner format
            order_memo: Free text shown to the partner
            idempotency_key: Stable key for this order item, sent as the
                ``Idempotency-Key`` header and as ``external_order_id``

        Returns:
            Partner reference of the accepted placement

        Raises:
            PartnerPlacementError: With ``transient`` set according to the
                failure class, after any safe re-sends are exhausted
        """
        if not self.base_url:
            raise PartnerPlacementError(
                "Fulfillment partner URL is not configured",
                transient=False,
                product_id=product_ref,
            )

        body = {
            "product_id": product_ref,
            "variant_id": variant_ref,
            "quantity": quantity,
            "logistics_address": shipping_address,
            "order_memo": order_memo,
        }
        if idempotency_key:
            body["external_order_id"] = idempotency_key

        result = await self.retry_policy.run(
            "partner_place_item",
            lambda: self._post_order(body, idempotency_key),
            _is_safe_to_resend,
        )
        logger.info(
            "Partner accepted item",
            product_id=product_ref,
            variant=variant_ref,
            quantity=quantity,
            partner_reference=result.partner_reference,
            idempotency_key=idempotency_key,
        )
        return result
