"""
Paystack API client with error classification and bounded retries.

Wraps the bearer-token REST API (initialize, verify, list transactions,
refunds) on top of ``httpx.AsyncClient`` and verifies webhook signatures.
Amounts passed in and returned are integers in the smallest currency unit.
"""

import hashlib
import hmac
from typing import Any, Optional

import httpx

from orderflow.core.config import get_settings
from orderflow.core.exceptions import GatewayError, GatewayMisconfigured
from orderflow.core.http import TRANSPORT_ERRORS, error_body, is_retryable_status
from orderflow.core.logging import get_logger
from orderflow.core.retry import RetryPolicy
from orderflow.schemas.payments import (
    RefundResult,
    TransactionInitialization,
    TransactionPage,
    TransactionVerification,
)

logger = get_logger(__name__)

SIGNATURE_HEADER = "x-paystack-signature"
SUCCESS_EVENT = "charge.success"


def _is_transient(error: BaseException) -> bool:
    if isinstance(error, GatewayError):
        return error.status_code is None or is_retryable_status(error.status_code)
    return False


def _parse_verification(data: dict[str, Any]) -> TransactionVerification:
    metadata = data.get("metadata")
    customer = data.get("customer") or {}
    return TransactionVerification(
        reference=data.get("reference", ""),
        status=data.get("status", "unknown"),
        amount=int(data.get("amount") or 0),
        currency=data.get("currency"),
        # The gateway sends an empty string when no metadata was attached.
        metadata=metadata if isinstance(metadata, dict) else {},
        paid_at=data.get("paid_at") or data.get("paidAt"),
        gateway_response=data.get("gateway_response"),
        customer_email=customer.get("email") if isinstance(customer, dict) else None,
    )


class PaystackClient:
    """
    Paystack REST client.

    Transport failures, 429 and 5xx responses are retried according to the
    retry policy; any other non-2xx response raises ``GatewayError``
    immediately. A missing secret key raises ``GatewayMisconfigured`` before
    any request is made.
    """

    def __init__(
        self,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        retry_policy: Optional[RetryPolicy] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the client.

        Args:
            secret_key: Paystack secret key (defaults to settings)
            base_url: API base URL (defaults to settings)
            timeout: Per-request timeout in seconds (defaults to settings)
            retry_policy: Policy for transient failures (defaults to settings)
            http_client: Pre-built client, mainly for tests; not closed by ``aclose``
        """
        settings = get_settings()
        self.secret_key = secret_key if secret_key is not None else settings.paystack_secret_key
        self.base_url = (base_url or settings.paystack_base_url).rstrip("/")
        self.retry_policy = retry_policy or RetryPolicy.from_settings(settings)
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout or settings.gateway_timeout_seconds)
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.secret_key)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        if not self.secret_key:
            raise GatewayMisconfigured(
                "Paystack secret key is not configured",
                setting="APP_PAYSTACK_SECRET_KEY",
            )
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    async def _send(
        self,
        method: str,
        path: str,
        headers: dict[str, str],
        **kwargs: Any,
    ) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = await self._client.request(method, url, headers=headers, **kwargs)
        except TRANSPORT_ERRORS as e:
            raise GatewayError(
                f"Paystack request failed: {type(e).__name__}",
                path=path,
            ) from e

        if response.is_success:
            try:
                payload = response.json()
            except ValueError as e:
                raise GatewayError(
                    "Paystack returned a non-JSON response",
                    status_code=response.status_code,
                    response_body=response.text[:500],
                    path=path,
                ) from e
            if payload.get("status") is False:
                raise GatewayError(
                    payload.get("message") or "Paystack reported failure",
                    status_code=response.status_code,
                    response_body=payload,
                    path=path,
                )
            return payload

        body = error_body(response)
        message = body.get("message") if isinstance(body, dict) else None
        raise GatewayError(
            message or f"Paystack returned HTTP {response.status_code}",
            status_code=response.status_code,
            response_body=body,
            path=path,
        )

    async def _request(self, operation: str, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        headers = self._headers()
        try:
            return await self.retry_policy.run(
                operation,
                lambda: self._send(method, path, headers, **kwargs),
                _is_transient,
            )
        except GatewayError as e:
            logger.error(
                "Paystack request failed",
                operation=operation,
                status_code=e.status_code,
                error=e.message,
            )
            raise

    async def initialize_transaction(
        self,
        email: str,
        amount_minor_units: int,
        reference: str,
        metadata: Optional[dict[str, Any]] = None,
        currency: Optional[str] = None,
        callback_url: Optional[str] = None,
    ) -> TransactionInitialization:
        """
        Create a remote transaction.

        Args:
            email: Payer email
            amount_minor_units: Amount in the smallest currency unit
            reference: Unique transaction reference chosen by the caller
            metadata: Free-form metadata echoed back on verification
            currency: Settlement currency code
            callback_url: Where the gateway redirects after payment

        Returns:
            Authorization URL and the reference accepted by the gateway

        Raises:
            GatewayMisconfigured: If no secret key is configured
            GatewayError: If the gateway rejects or fails the request
        """
        body: dict[str, Any] = {
            "email": email,
            "amount": amount_minor_units,
            "reference": reference,
            "metadata": metadata or {},
        }
        if currency:
            body["currency"] = currency
        if callback_url:
            body["callback_url"] = callback_url

        payload = await self._request(
            "initialize_transaction", "POST", "/transaction/initialize", json=body
        )
        data = payload.get("data") or {}

        logger.info(
            "Paystack transaction initialized",
            reference=data.get("reference", reference),
            amount=amount_minor_units,
        )
        return TransactionInitialization(
            authorization_url=data.get("authorization_url", ""),
            access_code=data.get("access_code"),
            reference=data.get("reference", reference),
        )

    async def verify_transaction(self, reference: str) -> TransactionVerification:
        """
        Fetch the gateway's verdict on a transaction.

        Raises:
            GatewayMisconfigured: If no secret key is configured
            GatewayError: If the gateway rejects or fails the request
        """
        payload = await self._request(
            "verify_transaction", "GET", f"/transaction/verify/{reference}"
        )
        verification = _parse_verification(payload.get("data") or {})
        logger.info(
            "Paystack transaction verified",
            reference=reference,
            status=verification.status,
            amount=verification.amount,
        )
        return verification

    async def list_transactions(
        self,
        page: int = 1,
        per_page: int = 50,
        status: Optional[str] = None,
        customer: Optional[str] = None,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
    ) -> TransactionPage:
        """List transactions, one page at a time."""
        params: dict[str, Any] = {"page": page, "perPage": per_page}
        if status:
            params["status"] = status
        if customer:
            params["customer"] = customer
        if date_from:
            params["from"] = date_from
        if date_to:
            params["to"] = date_to

        payload = await self._request("list_transactions", "GET", "/transaction", params=params)
        meta = payload.get("meta") or {}
        transactions = [_parse_verification(item) for item in payload.get("data") or []]
        return TransactionPage(
            transactions=transactions,
            page=int(meta.get("page") or page),
            per_page=int(meta.get("perPage") or per_page),
            page_count=int(meta.get("pageCount") or 1),
            total=int(meta.get("total") or len(transactions)),
        )

    async def create_refund(
        self,
        transaction_reference: str,
        amount_minor_units: Optional[int] = None,
        currency: Optional[str] = None,
        customer_note: Optional[str] = None,
        merchant_note: Optional[str] = None,
    ) -> RefundResult:
        """Refund a transaction in full, or partially when an amount is given."""
        body: dict[str, Any] = {"transaction": transaction_reference}
        if amount_minor_units is not None:
            body["amount"] = amount_minor_units
        if currency:
            body["currency"] = currency
        if customer_note:
            body["customer_note"] = customer_note
        if merchant_note:
            body["merchant_note"] = merchant_note

        payload = await self._request("create_refund", "POST", "/refund", json=body)
        data = payload.get("data") or {}
        transaction = data.get("transaction") or {}

        logger.info(
            "Paystack refund created",
            reference=transaction_reference,
            amount=amount_minor_units,
            status=data.get("status"),
        )
        return RefundResult(
            id=data.get("id"),
            status=data.get("status", "pending"),
            transaction_reference=(
                transaction.get("reference")
                if isinstance(transaction, dict)
                else transaction_reference
            ),
            amount=data.get("amount"),
            currency=data.get("currency"),
        )

    @staticmethod
    def verify_webhook_signature(
        raw_body: bytes, signature: Optional[str], secret: Optional[str]
    ) -> bool:
        """
        Check the HMAC-SHA512 signature of a webhook body.

        Args:
            raw_body: Request body exactly as received, before any parsing
            signature: Hex digest from the signature header
            secret: Shared signing secret

        Returns:
            True only if the signature matches; missing inputs never match
        """
        if not signature or not secret:
            return False
        expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()
        return hmac.compare_digest(expected, signature.strip().lower())
