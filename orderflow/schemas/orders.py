"""
Order domain models and API request/response schemas.

The domain models (``CustomerSnapshot``, ``OrderItem``, ``FulfillmentAttempt``,
``Order``) are what the lifecycle manager reads and writes through the order
repository. Request models are intentionally permissive: field-level rules
are enforced by the lifecycle manager so that every violation can be
reported in a single ``ValidationError``.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

from orderflow.services.orders.enums import AttemptOutcome, OrderStatus, PaymentStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CustomerSnapshot(BaseModel):
    """Customer contact and shipping details captured when the order is created."""

    model_config = ConfigDict(frozen=True)

    full_name: str
    email: str
    phone: str
    address: str
    city: str
    state: str
    zip_code: str
    country: str
    notes: str = ""

    @property
    def shipping_address(self) -> dict[str, str]:
        """Shipping address in the shape the fulfillment partner expects."""
        return {
            "contact_person": self.full_name,
            "phone": self.phone,
            "address": self.address,
            "city": self.city,
            "province": self.state,
            "country": self.country,
            "zip": self.zip_code,
        }


class OrderItem(BaseModel):
    """Line item with its unit price frozen at order time."""

    model_config = ConfigDict(frozen=True)

    product_id: str
    variant: Optional[str] = None
    name: str
    unit_price: Decimal
    quantity: int
    partner_product_id: Optional[str] = None
    partner_variant_id: Optional[str] = None

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity

    @property
    def product_ref(self) -> str:
        return self.partner_product_id or self.product_id

    @property
    def variant_ref(self) -> Optional[str]:
        return self.partner_variant_id or self.variant


class FulfillmentAttempt(BaseModel):
    """
    One placement of one item with the fulfillment partner.

    Attempts are append-only. An item gets a second attempt only through an
    explicit fulfillment retry, and never after it has succeeded.
    """

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    item_index: int
    product_id: str
    variant: Optional[str] = None
    outcome: AttemptOutcome
    partner_reference: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False
    attempted_at: datetime = Field(default_factory=utcnow)


class TrackingInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    tracking_number: str
    carrier: str
    attached_at: datetime = Field(default_factory=utcnow)


class Order(BaseModel):
    """
    Order aggregate.

    Mutated only by the lifecycle manager. ``version`` increases by one on
    every successful save and is used for optimistic concurrency control.
    """

    model_config = ConfigDict(validate_assignment=True)

    id: UUID = Field(default_factory=uuid4)
    order_number: str
    customer: CustomerSnapshot
    items: list[OrderItem]
    subtotal: Decimal
    tax_amount: Decimal
    shipping_amount: Decimal = Decimal("0.00")
    total_amount: Decimal
    currency: str = "USD"
    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_reference: Optional[str] = None
    authorization_url: Optional[str] = None
    tracking: Optional[TrackingInfo] = None
    fulfillment_attempts: list[FulfillmentAttempt] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    payment_verified_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    version: int = 0

    @property
    def total_minor_units(self) -> int:
        """Total in the smallest unit of the settlement currency (cents)."""
        return int((self.total_amount * 100).to_integral_value())

    def succeeded_item_indexes(self) -> set[int]:
        return {
            attempt.item_index
            for attempt in self.fulfillment_attempts
            if attempt.outcome == AttemptOutcome.SUCCEEDED
        }

    def unfulfilled_item_indexes(self) -> list[int]:
        """Indexes of items with no succeeded attempt, in item order."""
        done = self.succeeded_item_indexes()
        return [index for index in range(len(self.items)) if index not in done]


# ============================================================================
# Requests
# ============================================================================


class CustomerInfoRequest(BaseModel):
    """Customer details as submitted at checkout."""

    model_config = ConfigDict(extra="ignore")

    full_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None
    notes: Optional[str] = None


class OrderItemRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    product_id: Optional[str] = None
    variant: Optional[str] = None
    name: Optional[str] = None
    unit_price: Optional[Decimal] = None
    quantity: Optional[int] = None
    partner_product_id: Optional[str] = None
    partner_variant_id: Optional[str] = None


class OrderCreateRequest(BaseModel):
    customer: CustomerInfoRequest = Field(default_factory=CustomerInfoRequest)
    items: list[OrderItemRequest] = Field(default_factory=list)


class PaymentInitializeRequest(BaseModel):
    email: Optional[str] = Field(
        None,
        description="Payer email; defaults to the customer email on the order",
    )


class TrackingRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    tracking_number: str = Field(..., min_length=1, max_length=100)
    carrier: str = Field(..., min_length=1, max_length=100)


# ============================================================================
# Results
# ============================================================================


class PaymentInitialization(BaseModel):
    """Outcome of ``initialize_payment``."""

    order_id: UUID
    reference: str
    authorization_url: Optional[str] = None
    amount_minor_units: int
    currency: str
    already_initialized: bool = False


class FulfillmentSummary(BaseModel):
    """Aggregate outcome of one fulfillment run."""

    order_id: UUID
    order_number: str
    status: OrderStatus
    total_items: int
    succeeded_items: int
    failed_items: int
    attempts: list[FulfillmentAttempt] = Field(default_factory=list)
    skipped_items: int = 0
    aborted: bool = False


class ReconciliationResult(BaseModel):
    """
    Outcome of reconciling one payment reference.

    Verification failures are reported here with ``success=False`` rather
    than raised.
    """

    success: bool
    reference: str
    order_id: Optional[UUID] = None
    status: Optional[OrderStatus] = None
    already_processed: bool = False
    message: str = ""
    fulfillment: Optional[FulfillmentSummary] = None


class RetryBatchSummary(BaseModel):
    total_retried: int
    successful: int
    failed: int
    results: list[FulfillmentSummary] = Field(default_factory=list)


class GatewaySyncSummary(BaseModel):
    """Outcome of syncing successful gateway transactions to stored orders."""

    processed: int = 0
    reconciled: int = 0
    already_processed: int = 0
    unmatched: int = 0
    failed: int = 0
    results: list[ReconciliationResult] = Field(default_factory=list)


class OrderStats(BaseModel):
    """
    Dashboard figures over all stored orders.

    Revenue and profit count only orders whose payment completed. Profit
    uses the unit cost from the current inventory snapshot; items whose
    product has no known cost are left out of profit and counted in
    ``uncosted_items``.
    """

    total_orders: int
    today_orders: int
    week_orders: int
    month_orders: int
    by_status: dict[OrderStatus, int]
    paid_orders: int
    total_revenue: Decimal
    revenue_currency: Optional[str] = None
    total_profit: Decimal
    profit_margin: Optional[int] = Field(None, description="Profit as a percentage of revenue")
    uncosted_items: int = 0
    generated_at: datetime


class OrderListResponse(BaseModel):
    orders: list[Order]
    total: int


def order_summary(order: Order) -> dict[str, Any]:
    """Compact description of an order used in gateway metadata and logs."""
    return {
        "order_id": str(order.id),
        "order_number": order.order_number,
        "customer_name": order.customer.full_name,
        "items": [
            {"product_id": item.product_id, "name": item.name, "quantity": item.quantity}
            for item in order.items
        ],
    }
