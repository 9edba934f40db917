"""
Inventory snapshot models.

A snapshot is replaced wholesale on each refresh and never mutated in place,
so the models are frozen.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from orderflow.schemas.orders import utcnow


class SourceReading(BaseModel):
    """Raw stock figure reported by one source for one product."""

    model_config = ConfigDict(frozen=True)

    source: str
    product_id: str
    stock: int = Field(0, ge=0)
    in_stock: Optional[bool] = None
    unit_cost: Optional[Decimal] = None
    url: Optional[str] = None
    fetched_at: datetime = Field(default_factory=utcnow)


class VariantStock(BaseModel):
    model_config = ConfigDict(frozen=True)

    variant: str
    stock: int = Field(..., ge=0)


class ProductInventory(BaseModel):
    """
    Consolidated stock for one product.

    ``source_stock`` holds the per-source figure used for consolidation (0
    for a failed source) and ``source_errors`` the reason a source failed.
    """

    model_config = ConfigDict(frozen=True)

    product_id: str
    name: str
    variants: list[VariantStock]
    source_stock: dict[str, int] = Field(default_factory=dict)
    source_errors: dict[str, str] = Field(default_factory=dict)
    consolidated_stock: int = Field(..., ge=0)
    unit_cost: Optional[Decimal] = None
    fetched_at: datetime = Field(default_factory=utcnow)
    is_fallback: bool = False

    def variant_stock(self, variant: Optional[str]) -> Optional[int]:
        """
        Stock for ``variant`` (case-insensitive).

        With no variant given, the consolidated product stock is returned.
        Unknown variants return None.
        """
        if variant is None:
            return self.consolidated_stock
        wanted = variant.strip().lower()
        for entry in self.variants:
            if entry.variant.lower() == wanted:
                return entry.stock
        return None


class InventorySnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    products: list[ProductInventory]
    fetched_at: datetime = Field(default_factory=utcnow)

    @property
    def is_fallback(self) -> bool:
        """True when every product carries synthetic data."""
        return bool(self.products) and all(p.is_fallback for p in self.products)

    def get(self, product_id: str) -> Optional[ProductInventory]:
        for product in self.products:
            if product.product_id == product_id:
                return product
        return None


class ProductAvailability(BaseModel):
    product_id: str
    variant: Optional[str] = None
    quantity: int
    available: bool
