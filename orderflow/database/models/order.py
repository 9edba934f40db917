"""
ORM models for orders and their fulfillment attempts.

The customer snapshot and line items are stored as JSONB documents because
they are immutable once the order exists. Fulfillment attempts live in their
own append-only table.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from orderflow.database.base import Base, TimestampMixin, UUIDMixin
from orderflow.services.orders.enums import AttemptOutcome, OrderStatus, PaymentStatus


def _enum_values(enum_cls: type) -> list[str]:
    return [member.value for member in enum_cls]


class OrderRecord(Base, UUIDMixin, TimestampMixin):
    """Stored order row."""

    __tablename__ = "orders"

    order_number: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        unique=True,
        comment="Human-readable order number",
    )

    customer_email: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
        comment="Normalized customer email for order history lookups",
    )

    customer_info: Mapped[dict[str, Any]] = mapped_column(
        JSONB,
        nullable=False,
        comment="Customer contact and shipping snapshot",
    )

    items: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONB,
        nullable=False,
        comment="Line items with unit prices frozen at order time",
    )

    status: Mapped[OrderStatus] = mapped_column(
        SQLEnum(
            OrderStatus,
            name="order_status",
            values_callable=_enum_values,
            create_constraint=True,
        ),
        nullable=False,
        default=OrderStatus.PENDING,
        index=True,
        comment="Current order status",
    )

    payment_status: Mapped[PaymentStatus] = mapped_column(
        SQLEnum(
            PaymentStatus,
            name="payment_status",
            values_callable=_enum_values,
            create_constraint=True,
        ),
        nullable=False,
        default=PaymentStatus.PENDING,
        comment="Current payment status",
    )

    payment_reference: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        unique=True,
        comment="Gateway transaction reference, set at most once",
    )

    authorization_url: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Gateway checkout URL",
    )

    subtotal: Mapped[Decimal] = mapped_column(
        Numeric(precision=12, scale=2),
        nullable=False,
    )

    tax_amount: Mapped[Decimal] = mapped_column(
        Numeric(precision=12, scale=2),
        nullable=False,
    )

    shipping_amount: Mapped[Decimal] = mapped_column(
        Numeric(precision=12, scale=2),
        nullable=False,
        default=Decimal("0.00"),
    )

    total_amount: Mapped[Decimal] = mapped_column(
        Numeric(precision=12, scale=2),
        nullable=False,
    )

    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    tracking_info: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONB,
        nullable=True,
        comment="Carrier and tracking number once shipped",
    )

    payment_verified_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    shipped_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    delivered_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Optimistic concurrency version",
    )

    attempts: Mapped[list["FulfillmentAttemptRecord"]] = relationship(
        "FulfillmentAttemptRecord",
        back_populates="order",
        lazy="selectin",
        order_by=lambda: (
            FulfillmentAttemptRecord.attempted_at,
            FulfillmentAttemptRecord.item_index,
        ),
        cascade="all",
    )

    __table_args__ = (
        Index("ix_orders_status_created", "status", "created_at"),
        CheckConstraint("total_amount >= 0", name="ck_orders_total_non_negative"),
        CheckConstraint("version >= 0", name="ck_orders_version_non_negative"),
    )


class FulfillmentAttemptRecord(Base):
    """Append-only record of one item placement."""

    __tablename__ = "fulfillment_attempts"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)

    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("orders.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    item_index: Mapped[int] = mapped_column(Integer, nullable=False)
    product_id: Mapped[str] = mapped_column(String(255), nullable=False)
    variant: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    outcome: Mapped[AttemptOutcome] = mapped_column(
        SQLEnum(
            AttemptOutcome,
            name="attempt_outcome",
            values_callable=_enum_values,
            create_constraint=True,
        ),
        nullable=False,
    )

    partner_reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    retryable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    attempted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    order: Mapped[OrderRecord] = relationship("OrderRecord", back_populates="attempts")

    __table_args__ = (
        Index("ix_fulfillment_attempts_order_item", "order_id", "item_index"),
    )
