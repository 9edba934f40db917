"""
FastAPI dependencies for the order orchestrator.

Services are built once in the application lifespan and kept on
``app.state``; these providers hand them to the route handlers. The error
mapping turns domain errors into HTTP responses with a stable
``{"message", "code"}`` body.
"""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from orderflow.core.config import Settings
from orderflow.core.exceptions import (
    ConcurrentUpdateError,
    DuplicateOrderNumberError,
    GatewayError,
    GatewayMisconfigured,
    InvalidStateError,
    OrderflowError,
    OrderNotFoundError,
    PartnerPlacementError,
    ValidationError,
    WebhookSignatureError,
)
from orderflow.core.logging import get_logger
from orderflow.services.inventory.aggregator import InventoryAggregator
from orderflow.services.orders.service import OrderLifecycleManager

logger = get_logger(__name__)

ERROR_STATUS_CODES: dict[type[OrderflowError], int] = {
    ValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    OrderNotFoundError: status.HTTP_404_NOT_FOUND,
    InvalidStateError: status.HTTP_409_CONFLICT,
    ConcurrentUpdateError: status.HTTP_409_CONFLICT,
    DuplicateOrderNumberError: status.HTTP_409_CONFLICT,
    GatewayError: status.HTTP_502_BAD_GATEWAY,
    PartnerPlacementError: status.HTTP_502_BAD_GATEWAY,
    GatewayMisconfigured: status.HTTP_503_SERVICE_UNAVAILABLE,
    WebhookSignatureError: status.HTTP_401_UNAUTHORIZED,
}


def get_order_manager(request: Request) -> OrderLifecycleManager:
    return request.app.state.order_manager


def get_inventory(request: Request) -> InventoryAggregator:
    return request.app.state.inventory


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


OrderManager = Annotated[OrderLifecycleManager, Depends(get_order_manager)]
Inventory = Annotated[InventoryAggregator, Depends(get_inventory)]
AppSettings = Annotated[Settings, Depends(get_app_settings)]


def http_error(error: OrderflowError) -> HTTPException:
    """
    Convert a domain error into the HTTPException raised by a route.

    Upstream gateway and partner failures are reported without their
    response bodies; the details go to the log only.

    Args:
        error: Domain error raised by a service

    Returns:
        HTTPException with the mapped status code
    """
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type in type(error).__mro__:
        if error_type in ERROR_STATUS_CODES:
            status_code = ERROR_STATUS_CODES[error_type]
            break

    if status_code >= 500:
        logger.error(
            "Request failed on a dependency",
            error=error.message,
            error_code=error.code,
            status_code=status_code,
            context=error.context,
        )
        detail = {"message": _public_message(status_code), "code": error.code}
    else:
        detail = error.to_dict()

    return HTTPException(status_code=status_code, detail=detail)


def _public_message(status_code: int) -> str:
    if status_code == status.HTTP_502_BAD_GATEWAY:
        return "Upstream service failed"
    if status_code == status.HTTP_503_SERVICE_UNAVAILABLE:
        return "Service is not configured"
    return "An unexpected error occurred"
