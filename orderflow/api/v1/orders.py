"""
Order API endpoints.

Creation, lookup and listing, payment initialization, fulfillment runs,
tracking and delivery. Routes are thin: every rule lives in the lifecycle
manager and domain errors are mapped by ``http_error``.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Query, status

from orderflow.api.deps import OrderManager, http_error
from orderflow.core.exceptions import OrderflowError
from orderflow.core.logging import get_logger
from orderflow.schemas.orders import (
    FulfillmentSummary,
    Order,
    OrderCreateRequest,
    OrderListResponse,
    OrderStats,
    PaymentInitialization,
    PaymentInitializeRequest,
    RetryBatchSummary,
    TrackingRequest,
)
from orderflow.services.orders.enums import OrderStatus

logger = get_logger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post(
    "",
    response_model=Order,
    status_code=status.HTTP_201_CREATED,
    summary="Create order",
    description="Validate checkout details, price the order and store it as pending",
)
async def create_order(request: OrderCreateRequest, manager: OrderManager) -> Order:
    """
    Create an order from checkout details.

    Raises:
        HTTPException: 422 listing every invalid field
    """
    try:
        return await manager.create_order(
            customer_info=request.customer.model_dump(),
            items=[item.model_dump() for item in request.items],
        )
    except OrderflowError as e:
        raise http_error(e) from e


@router.get(
    "",
    response_model=OrderListResponse,
    summary="List orders",
    description="List orders newest first, optionally by status or customer email",
)
async def list_orders(
    manager: OrderManager,
    order_status: Optional[OrderStatus] = Query(None, alias="status"),
    email: Optional[str] = Query(None, description="Customer email (order history)"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
) -> OrderListResponse:
    orders = await manager.list_orders(
        status=order_status,
        email=email.strip().lower() if email else None,
        limit=limit,
        offset=offset,
    )
    return OrderListResponse(orders=orders, total=len(orders))


@router.get(
    "/stats",
    response_model=OrderStats,
    summary="Order statistics",
    description="Order counts by period and status, revenue and estimated profit",
)
async def order_stats(manager: OrderManager) -> OrderStats:
    return await manager.order_stats()


@router.get(
    "/number/{order_number}",
    response_model=Order,
    summary="Get order by number",
)
async def get_order_by_number(order_number: str, manager: OrderManager) -> Order:
    try:
        return await manager.get_order_by_number(order_number)
    except OrderflowError as e:
        raise http_error(e) from e


@router.get(
    "/{order_id}",
    response_model=Order,
    summary="Get order",
)
async def get_order(order_id: UUID, manager: OrderManager) -> Order:
    try:
        return await manager.get_order(order_id)
    except OrderflowError as e:
        raise http_error(e) from e


@router.post(
    "/{order_id}/payment",
    response_model=PaymentInitialization,
    summary="Initialize payment",
    description="Create the gateway transaction and return its authorization URL",
)
async def initialize_payment(
    order_id: UUID,
    manager: OrderManager,
    request: Optional[PaymentInitializeRequest] = None,
) -> PaymentInitialization:
    """
    Initialize payment for a pending order.

    Repeating the call for an initialized order returns the same reference.

    Raises:
        HTTPException: 404 unknown order, 409 wrong status, 502 gateway
            failure, 503 gateway not configured
    """
    logger.info("Initializing payment", order_id=str(order_id))
    try:
        return await manager.initialize_payment(
            order_id, email=request.email if request else None
        )
    except OrderflowError as e:
        raise http_error(e) from e


@router.post(
    "/fulfillment/retry-failed",
    response_model=RetryBatchSummary,
    summary="Retry failed fulfillment",
    description="Re-run fulfillment for every partially ordered or failed order",
)
async def retry_failed_fulfillment(manager: OrderManager) -> RetryBatchSummary:
    return await manager.retry_failed_fulfillment()


@router.post(
    "/{order_id}/fulfillment",
    response_model=FulfillmentSummary,
    summary="Run fulfillment",
    description="Place every item of a paid order that has not been placed yet",
)
async def run_fulfillment(order_id: UUID, manager: OrderManager) -> FulfillmentSummary:
    try:
        return await manager.run_fulfillment(order_id)
    except OrderflowError as e:
        raise http_error(e) from e


@router.post(
    "/{order_id}/tracking",
    response_model=Order,
    summary="Attach tracking",
    description="Record carrier tracking and mark the order shipped",
)
async def attach_tracking(
    order_id: UUID, request: TrackingRequest, manager: OrderManager
) -> Order:
    try:
        return await manager.attach_tracking(
            order_id,
            tracking_number=request.tracking_number,
            carrier=request.carrier,
        )
    except OrderflowError as e:
        raise http_error(e) from e


@router.post(
    "/{order_id}/delivered",
    response_model=Order,
    summary="Mark delivered",
)
async def mark_delivered(order_id: UUID, manager: OrderManager) -> Order:
    try:
        return await manager.mark_delivered(order_id)
    except OrderflowError as e:
        raise http_error(e) from e
