"""Order, payment and fulfillment-attempt enums with the order transition table.

The order lifecycle is a closed set of states:

    pending -> initialized -> paid -> processing
        -> {ordered | partially_ordered | error} -> shipped -> delivered

``partially_ordered`` and ``error`` may re-enter ``processing`` through an
explicit fulfillment retry. ``delivered`` is terminal.
"""

from enum import Enum
from typing import Dict, Set


class OrderStatus(str, Enum):
    """Order lifecycle status."""

    PENDING = "pending"
    INITIALIZED = "initialized"
    PAID = "paid"
    PROCESSING = "processing"
    ORDERED = "ordered"
    PARTIALLY_ORDERED = "partially_ordered"
    ERROR = "error"
    SHIPPED = "shipped"
    DELIVERED = "delivered"

    @classmethod
    def from_string(cls, value: str) -> "OrderStatus":
        """Convert string to OrderStatus enum.

        Args:
            value: String representation of status

        Returns:
            OrderStatus enum value

        Raises:
            ValueError: If value is not a valid status
        """
        try:
            return cls(value.lower())
        except ValueError:
            valid_values = ", ".join([s.value for s in cls])
            raise ValueError(
                f"Invalid order status: {value}. "
                f"Valid values are: {valid_values}"
            )

    def is_terminal(self) -> bool:
        return self == OrderStatus.DELIVERED

    def is_paid_or_later(self) -> bool:
        """True once payment has been accepted for the order."""
        return self not in {OrderStatus.PENDING, OrderStatus.INITIALIZED}

    def is_retryable_fulfillment(self) -> bool:
        """True when failed items may be placed again."""
        return self in {OrderStatus.PARTIALLY_ORDERED, OrderStatus.ERROR}


class PaymentStatus(str, Enum):
    """Payment status, tracked independently of the order status."""

    PENDING = "pending"
    INITIALIZED = "initialized"
    COMPLETED = "completed"
    FAILED = "failed"


class AttemptOutcome(str, Enum):
    """Result of one item placement with the fulfillment partner."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"


class NotificationEvent(str, Enum):
    """Order events forwarded to the notifier."""

    PAYMENT_CONFIRMED = "payment_confirmed"
    FULFILLMENT_COMPLETED = "fulfillment_completed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"


ORDER_STATUS_TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
    OrderStatus.PENDING: {OrderStatus.INITIALIZED},
    OrderStatus.INITIALIZED: {OrderStatus.PAID},
    OrderStatus.PAID: {OrderStatus.PROCESSING},
    OrderStatus.PROCESSING: {
        OrderStatus.ORDERED,
        OrderStatus.PARTIALLY_ORDERED,
        OrderStatus.ERROR,
    },
    OrderStatus.ORDERED: {OrderStatus.SHIPPED},
    OrderStatus.PARTIALLY_ORDERED: {
        OrderStatus.PROCESSING,  # Retry of failed items
        OrderStatus.SHIPPED,
    },
    OrderStatus.ERROR: {OrderStatus.PROCESSING},  # Retry of failed items
    OrderStatus.SHIPPED: {
        OrderStatus.SHIPPED,  # Tracking update
        OrderStatus.DELIVERED,
    },
    OrderStatus.DELIVERED: set(),  # Terminal
}

# Statuses from which fulfillment may (re)start.
FULFILLMENT_ENTRY_STATUSES: Set[OrderStatus] = {
    OrderStatus.PAID,
    OrderStatus.PARTIALLY_ORDERED,
    OrderStatus.ERROR,
}

# Statuses from which tracking may be attached.
TRACKING_ENTRY_STATUSES: Set[OrderStatus] = {
    OrderStatus.ORDERED,
    OrderStatus.PARTIALLY_ORDERED,
    OrderStatus.SHIPPED,
}


def validate_order_transition(
    current_status: OrderStatus, target_status: OrderStatus
) -> bool:
    """Check whether ``current_status -> target_status`` is a legal move."""
    return target_status in ORDER_STATUS_TRANSITIONS.get(current_status, set())


def get_allowed_order_transitions(current_status: OrderStatus) -> Set[OrderStatus]:
    return ORDER_STATUS_TRANSITIONS.get(current_status, set()).copy()
