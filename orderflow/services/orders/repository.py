"""
Order persistence interface and its in-memory implementation.

The lifecycle manager talks to storage only through ``OrderRepository``. It
never learns whether orders live in PostgreSQL or in a dictionary.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Optional
from uuid import UUID

from orderflow.core.exceptions import ConcurrentUpdateError, DuplicateOrderNumberError
from orderflow.core.logging import get_logger
from orderflow.schemas.orders import Order
from orderflow.services.orders.enums import OrderStatus

logger = get_logger(__name__)


class OrderRepository(ABC):
    """
    Durable order records keyed by id and by unique order number.

    ``save`` is a compare-and-set on ``Order.version``: it succeeds only if
    the stored version equals ``expected_version`` and then stores the order
    with ``version = expected_version + 1``. The caller's object is updated
    to the new version.
    """

    @abstractmethod
    async def add(self, order: Order) -> Order:
        """
        Insert a new order.

        Raises:
            DuplicateOrderNumberError: If the order number is already taken
        """

    @abstractmethod
    async def get(self, order_id: UUID) -> Optional[Order]:
        ...

    @abstractmethod
    async def get_by_order_number(self, order_number: str) -> Optional[Order]:
        ...

    @abstractmethod
    async def get_by_payment_reference(self, reference: str) -> Optional[Order]:
        ...

    @abstractmethod
    async def list(
        self,
        status: Optional[OrderStatus] = None,
        email: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Order]:
        """
        List orders newest first.

        Args:
            status: Only orders in this status
            email: Only orders placed with this customer email
            limit: Maximum number of orders returned
            offset: Number of orders skipped
        """

    @abstractmethod
    async def save(self, order: Order, expected_version: int) -> Order:
        """
        Persist ``order`` if nobody else saved it since ``expected_version``.

        Raises:
            ConcurrentUpdateError: If the stored version differs
        """


class InMemoryOrderRepository(OrderRepository):
    """
    Dictionary-backed repository.

    Orders are deep-copied on the way in and out so callers can never mutate
    stored state without going through ``save``.
    """

    def __init__(self) -> None:
        self._orders: dict[UUID, Order] = {}
        self._lock = asyncio.Lock()

    async def add(self, order: Order) -> Order:
        async with self._lock:
            if any(o.order_number == order.order_number for o in self._orders.values()):
                raise DuplicateOrderNumberError(
                    f"Order number {order.order_number} already exists",
                    order_number=order.order_number,
                )
            self._orders[order.id] = order.model_copy(deep=True)
        return order

    async def get(self, order_id: UUID) -> Optional[Order]:
        stored = self._orders.get(order_id)
        return stored.model_copy(deep=True) if stored else None

    async def get_by_order_number(self, order_number: str) -> Optional[Order]:
        for stored in self._orders.values():
            if stored.order_number == order_number:
                return stored.model_copy(deep=True)
        return None

    async def get_by_payment_reference(self, reference: str) -> Optional[Order]:
        for stored in self._orders.values():
            if stored.payment_reference == reference:
                return stored.model_copy(deep=True)
        return None

    async def list(
        self,
        status: Optional[OrderStatus] = None,
        email: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Order]:
        orders = [
            o
            for o in self._orders.values()
            if (status is None or o.status == status)
            and (email is None or o.customer.email == email.strip().lower())
        ]
        orders.sort(key=lambda o: o.created_at, reverse=True)
        end = None if limit is None else offset + limit
        return [o.model_copy(deep=True) for o in orders[offset:end]]

    async def save(self, order: Order, expected_version: int) -> Order:
        async with self._lock:
            stored = self._orders.get(order.id)
            if stored is None or stored.version != expected_version:
                logger.warning(
                    "Optimistic concurrency conflict",
                    order_id=str(order.id),
                    expected_version=expected_version,
                    stored_version=stored.version if stored else None,
                )
                raise ConcurrentUpdateError(
                    f"Order {order.id} was modified concurrently",
                    order_id=str(order.id),
                    expected_version=expected_version,
                )
            order.version = expected_version + 1
            self._orders[order.id] = order.model_copy(deep=True)
        return order
