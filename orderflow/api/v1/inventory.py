"""
Inventory API endpoints.

Serves the cached consolidated snapshot. Reads never fail because a source
is down; degraded figures are flagged with ``is_fallback``.
"""

from typing import Optional

from fastapi import APIRouter, HTTPException, Query, status

from orderflow.api.deps import Inventory
from orderflow.core.logging import get_logger
from orderflow.schemas.inventory import InventorySnapshot, ProductAvailability, ProductInventory

logger = get_logger(__name__)

router = APIRouter(prefix="/inventory", tags=["inventory"])


@router.get(
    "",
    response_model=InventorySnapshot,
    summary="Get inventory",
    description="Consolidated stock for every catalog product",
)
async def get_inventory(
    inventory: Inventory,
    refresh: bool = Query(False, description="Bypass the cache and refetch all sources"),
) -> InventorySnapshot:
    return await inventory.get_inventory(force_refresh=refresh)


@router.get(
    "/{product_id}",
    response_model=ProductInventory,
    summary="Get product inventory",
)
async def get_product_inventory(
    product_id: str,
    inventory: Inventory,
    refresh: bool = Query(False),
) -> ProductInventory:
    product = await inventory.get_product_inventory(product_id, force_refresh=refresh)
    if product is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"message": "Product not found", "code": "PRODUCT_NOT_FOUND"},
        )
    return product


@router.get(
    "/{product_id}/availability",
    response_model=ProductAvailability,
    summary="Check availability",
    description="Advisory check against the cached snapshot; stock is never reserved",
)
async def check_availability(
    product_id: str,
    inventory: Inventory,
    variant: Optional[str] = Query(None),
    quantity: int = Query(1, ge=1),
) -> ProductAvailability:
    available = inventory.check_stock(product_id, variant, quantity)
    logger.debug(
        "Availability checked",
        product_id=product_id,
        variant=variant,
        quantity=quantity,
        available=available,
    )
    return ProductAvailability(
        product_id=product_id,
        variant=variant,
        quantity=quantity,
        available=available,
    )
