"""
PostgreSQL implementation of ``OrderRepository`` on async SQLAlchemy.

Each call opens its own short session. ``save`` issues a conditional
``UPDATE ... WHERE version = :expected`` and inserts only attempts that are
not stored yet, so the attempts table stays append-only.
"""

from typing import Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orderflow.core.exceptions import ConcurrentUpdateError, DuplicateOrderNumberError
from orderflow.core.logging import get_logger
from orderflow.database.connection import get_session
from orderflow.database.models.order import FulfillmentAttemptRecord, OrderRecord
from orderflow.schemas.orders import (
    CustomerSnapshot,
    FulfillmentAttempt,
    Order,
    OrderItem,
    TrackingInfo,
)
from orderflow.services.orders.enums import OrderStatus
from orderflow.services.orders.repository import OrderRepository

logger = get_logger(__name__)


def _attempt_to_record(order_id: UUID, attempt: FulfillmentAttempt) -> FulfillmentAttemptRecord:
    return FulfillmentAttemptRecord(
        id=attempt.id,
        order_id=order_id,
        item_index=attempt.item_index,
        product_id=attempt.product_id,
        variant=attempt.variant,
        outcome=attempt.outcome,
        partner_reference=attempt.partner_reference,
        error=attempt.error,
        retryable=attempt.retryable,
        attempted_at=attempt.attempted_at,
    )


def _record_to_order(record: OrderRecord) -> Order:
    return Order(
        id=record.id,
        order_number=record.order_number,
        customer=CustomerSnapshot.model_validate(record.customer_info),
        items=[OrderItem.model_validate(item) for item in record.items],
        subtotal=record.subtotal,
        tax_amount=record.tax_amount,
        shipping_amount=record.shipping_amount,
        total_amount=record.total_amount,
        currency=record.currency,
        status=record.status,
        payment_status=record.payment_status,
        payment_reference=record.payment_reference,
        authorization_url=record.authorization_url,
        tracking=(
            TrackingInfo.model_validate(record.tracking_info)
            if record.tracking_info
            else None
        ),
        fulfillment_attempts=[
            FulfillmentAttempt(
                id=a.id,
                item_index=a.item_index,
                product_id=a.product_id,
                variant=a.variant,
                outcome=a.outcome,
                partner_reference=a.partner_reference,
                error=a.error,
                retryable=a.retryable,
                attempted_at=a.attempted_at,
            )
            for a in record.attempts
        ],
        created_at=record.created_at,
        updated_at=record.updated_at,
        payment_verified_at=record.payment_verified_at,
        shipped_at=record.shipped_at,
        delivered_at=record.delivered_at,
        version=record.version,
    )


def _mutable_columns(order: Order) -> dict:
    return {
        "status": order.status,
        "payment_status": order.payment_status,
        "payment_reference": order.payment_reference,
        "authorization_url": order.authorization_url,
        "tracking_info": (
            order.tracking.model_dump(mode="json") if order.tracking else None
        ),
        "payment_verified_at": order.payment_verified_at,
        "shipped_at": order.shipped_at,
        "delivered_at": order.delivered_at,
        "updated_at": order.updated_at,
    }


class SQLAlchemyOrderRepository(OrderRepository):
    """Order repository backed by the ``orders`` and ``fulfillment_attempts`` tables."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_factory = session_factory

    async def add(self, order: Order) -> Order:
        record = OrderRecord(
            id=order.id,
            order_number=order.order_number,
            customer_email=order.customer.email,
            customer_info=order.customer.model_dump(mode="json"),
            items=[item.model_dump(mode="json") for item in order.items],
            subtotal=order.subtotal,
            tax_amount=order.tax_amount,
            shipping_amount=order.shipping_amount,
            total_amount=order.total_amount,
            currency=order.currency,
            created_at=order.created_at,
            version=order.version,
            **_mutable_columns(order),
        )
        try:
            async with get_session(self._session_factory) as session:
                session.add(record)
        except IntegrityError as e:
            raise DuplicateOrderNumberError(
                f"Order number {order.order_number} already exists",
                order_number=order.order_number,
            ) from e
        return order

    async def _fetch_one(self, *criteria) -> Optional[Order]:
        async with get_session(self._session_factory) as session:
            result = await session.execute(select(OrderRecord).where(*criteria))
            record = result.scalar_one_or_none()
            return _record_to_order(record) if record else None

    async def get(self, order_id: UUID) -> Optional[Order]:
        return await self._fetch_one(OrderRecord.id == order_id)

    async def get_by_order_number(self, order_number: str) -> Optional[Order]:
        return await self._fetch_one(OrderRecord.order_number == order_number)

    async def get_by_payment_reference(self, reference: str) -> Optional[Order]:
        return await self._fetch_one(OrderRecord.payment_reference == reference)

    async def list(
        self,
        status: Optional[OrderStatus] = None,
        email: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Order]:
        query = select(OrderRecord).order_by(OrderRecord.created_at.desc())
        if status is not None:
            query = query.where(OrderRecord.status == status)
        if email is not None:
            query = query.where(OrderRecord.customer_email == email.strip().lower())
        if offset:
            query = query.offset(offset)
        if limit is not None:
            query = query.limit(limit)

        async with get_session(self._session_factory) as session:
            result = await session.execute(query)
            return [_record_to_order(r) for r in result.scalars().all()]

    async def save(self, order: Order, expected_version: int) -> Order:
        async with get_session(self._session_factory) as session:
            result = await session.execute(
                update(OrderRecord)
                .where(
                    OrderRecord.id == order.id,
                    OrderRecord.version == expected_version,
                )
                .values(version=expected_version + 1, **_mutable_columns(order))
            )
            if result.rowcount != 1:
                logger.warning(
                    "Optimistic concurrency conflict",
                    order_id=str(order.id),
                    expected_version=expected_version,
                )
                raise ConcurrentUpdateError(
                    f"Order {order.id} was modified concurrently",
                    order_id=str(order.id),
                    expected_version=expected_version,
                )

            stored_ids = set(
                (
                    await session.execute(
                        select(FulfillmentAttemptRecord.id).where(
                            FulfillmentAttemptRecord.order_id == order.id
                        )
                    )
                ).scalars()
            )
            for attempt in order.fulfillment_attempts:
                if attempt.id not in stored_ids:
                    session.add(_attempt_to_record(order.id, attempt))

        order.version = expected_version + 1
        return order
