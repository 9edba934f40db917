"""
Payment API endpoints for Paystack integration.

Manual verification by reference, the signed webhook receiver and a sync
endpoint that reconciles successful gateway transactions whose webhook never
arrived. All three funnel into the same idempotent reconciliation.
"""

from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Query, Request, status
from pydantic import ValidationError as PydanticValidationError

from orderflow.api.deps import AppSettings, OrderManager, http_error
from orderflow.core.exceptions import OrderflowError, WebhookSignatureError
from orderflow.core.logging import get_logger
from orderflow.schemas.orders import GatewaySyncSummary, ReconciliationResult
from orderflow.schemas.payments import WebhookAck, WebhookEvent
from orderflow.services.payments.paystack_client import SIGNATURE_HEADER, PaystackClient

logger = get_logger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post(
    "/verify/{reference}",
    response_model=ReconciliationResult,
    summary="Verify payment",
    description="Verify a transaction with the gateway and reconcile its order",
)
async def verify_payment(reference: str, manager: OrderManager) -> ReconciliationResult:
    """
    Reconcile one payment reference.

    A failed verification is reported in the body with ``success`` false,
    not as an HTTP error.

    Raises:
        HTTPException: 503 if the gateway is not configured
    """
    logger.info("Manual payment verification", reference=reference)
    try:
        return await manager.reconcile_payment(reference)
    except OrderflowError as e:
        raise http_error(e) from e


@router.post(
    "/webhook",
    response_model=WebhookAck,
    status_code=status.HTTP_200_OK,
    summary="Handle Paystack webhook",
    description="Authenticate and process Paystack webhook events",
)
async def handle_webhook(
    request: Request,
    manager: OrderManager,
    settings: AppSettings,
    signature: Optional[str] = Header(None, alias=SIGNATURE_HEADER),
) -> WebhookAck:
    """
    Handle a Paystack webhook event.

    The signature is checked against the raw body before anything is
    parsed. Unsigned or mis-signed requests get a generic 401 and cause no
    state change.

    Raises:
        HTTPException: 401 for a bad signature, 400 for a malformed event,
            503 if the gateway is not configured
    """
    raw_body = await request.body()

    if not PaystackClient.verify_webhook_signature(raw_body, signature, settings.webhook_secret):
        logger.warning(
            "Webhook signature rejected",
            signature_present=bool(signature),
            client_host=request.client.host if request.client else None,
        )
        raise http_error(WebhookSignatureError("Invalid signature"))

    try:
        event = WebhookEvent.model_validate_json(raw_body)
    except PydanticValidationError as e:
        logger.warning("Malformed webhook event", error_count=e.error_count())
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": "Malformed event", "code": "INVALID_EVENT"},
        ) from e

    logger.info("Received Paystack webhook", gateway_event=event.event, reference=event.reference)

    try:
        result = await manager.handle_gateway_event(event)
    except OrderflowError as e:
        raise http_error(e) from e

    return WebhookAck(processed=bool(result and result.success))


@router.post(
    "/sync",
    response_model=GatewaySyncSummary,
    summary="Sync gateway transactions",
    description="Reconcile successful gateway transactions against stored orders",
)
async def sync_transactions(
    manager: OrderManager,
    per_page: int = Query(50, ge=1, le=100),
    max_pages: int = Query(20, ge=1, le=100),
) -> GatewaySyncSummary:
    try:
        return await manager.sync_gateway_transactions(per_page=per_page, max_pages=max_pages)
    except OrderflowError as e:
        raise http_error(e) from e
