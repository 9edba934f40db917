"""
Notifier collaborator for customer and operator order notifications.

Email rendering and delivery belong to an external service. The lifecycle
manager only calls ``notify(event, order)``; a failing notifier raises
``NotificationError`` which the manager logs without touching order state.
"""

from typing import Protocol

from orderflow.core.logging import get_logger
from orderflow.schemas.orders import Order
from orderflow.services.orders.enums import NotificationEvent

logger = get_logger(__name__)


class Notifier(Protocol):
    async def notify(self, event: NotificationEvent, order: Order) -> None:
        """
        Deliver a notification about ``order``.

        Raises:
            NotificationError: If delivery failed
        """
        ...


class LoggingNotifier:
    """Notifier that records events in the application log only."""

    async def notify(self, event: NotificationEvent, order: Order) -> None:
        logger.info(
            "Order notification",
            notification_event=event.value,
            order_id=str(order.id),
            order_number=order.order_number,
            status=order.status.value,
            customer_email=order.customer.email,
        )
