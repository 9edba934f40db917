"""Order state machine with transition validation, guards and side effects.

The state machine never persists anything. It validates a move against the
transition table, runs the guard registered for that move, switches the
status and applies the side effects of the target status (timestamps and
payment status). The lifecycle manager saves the result.
"""

from datetime import datetime
from typing import Callable, Dict, Optional, Set

from orderflow.core.exceptions import InvalidStateError
from orderflow.core.logging import get_logger
from orderflow.schemas.orders import Order, utcnow
from orderflow.services.orders.enums import (
    OrderStatus,
    PaymentStatus,
    get_allowed_order_transitions,
    validate_order_transition,
)

logger = get_logger(__name__)


class OrderStateMachine:
    """State machine for the order lifecycle.

    Guards are keyed by ``(current, target)`` and must return True for the
    move to proceed. Side effects are keyed by target status.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        """Initialize the state machine.

        Args:
            clock: Source of timezone-aware timestamps
        """
        self._clock = clock
        self._transition_guards: Dict[
            tuple[OrderStatus, OrderStatus], Callable[[Order], bool]
        ] = self._initialize_guards()
        self._side_effects: Dict[
            OrderStatus, Callable[[Order, datetime], None]
        ] = self._initialize_side_effects()

    def _initialize_guards(
        self,
    ) -> Dict[tuple[OrderStatus, OrderStatus], Callable[[Order], bool]]:
        return {
            (OrderStatus.PENDING, OrderStatus.INITIALIZED): self._guard_has_reference,
            (OrderStatus.INITIALIZED, OrderStatus.PAID): self._guard_has_reference,
            (OrderStatus.PARTIALLY_ORDERED, OrderStatus.PROCESSING): (
                self._guard_has_unfulfilled_items
            ),
            (OrderStatus.ERROR, OrderStatus.PROCESSING): (
                self._guard_has_unfulfilled_items
            ),
            (OrderStatus.ORDERED, OrderStatus.SHIPPED): self._guard_has_tracking,
            (OrderStatus.PARTIALLY_ORDERED, OrderStatus.SHIPPED): (
                self._guard_has_tracking
            ),
            (OrderStatus.SHIPPED, OrderStatus.SHIPPED): self._guard_has_tracking,
        }

    def _initialize_side_effects(
        self,
    ) -> Dict[OrderStatus, Callable[[Order, datetime], None]]:
        return {
            OrderStatus.INITIALIZED: self._effect_payment_initialized,
            OrderStatus.PAID: self._effect_payment_verified,
            OrderStatus.SHIPPED: self._effect_shipped,
            OrderStatus.DELIVERED: self._effect_delivered,
        }

    def validate_transition(self, order: Order, target_status: OrderStatus) -> bool:
        """Validate that ``order`` may move to ``target_status``.

        Args:
            order: Order to validate
            target_status: Desired target status

        Returns:
            True if transition is valid

        Raises:
            InvalidStateError: If the move is not in the transition table or
                its guard rejects it
        """
        current_status = order.status

        if not validate_order_transition(current_status, target_status):
            allowed = get_allowed_order_transitions(current_status)
            raise InvalidStateError(
                f"Invalid transition from {current_status.value} to "
                f"{target_status.value}",
                current_status=current_status.value,
                target_status=target_status.value,
                allowed_transitions=sorted(s.value for s in allowed),
            )

        guard = self._transition_guards.get((current_status, target_status))
        if guard is not None and not guard(order):
            raise InvalidStateError(
                f"Transition guard failed for {current_status.value} -> "
                f"{target_status.value}",
                current_status=current_status.value,
                target_status=target_status.value,
                guard_failed=True,
            )

        return True

    def apply_transition(
        self, order: Order, target_status: OrderStatus, reason: Optional[str] = None
    ) -> OrderStatus:
        """Move ``order`` to ``target_status`` in place and run side effects.

        Args:
            order: Order to transition
            target_status: Target status
            reason: Optional reason recorded in the log

        Returns:
            The status the order held before the move

        Raises:
            InvalidStateError: If the transition is not allowed; the order
                is left untouched
        """
        self.validate_transition(order, target_status)

        previous_status = order.status
        now = self._clock()
        order.status = target_status
        order.updated_at = now

        side_effect = self._side_effects.get(target_status)
        if side_effect is not None:
            side_effect(order, now)

        logger.info(
            "Order status changed",
            order_id=str(order.id),
            transition=f"{previous_status.value}->{target_status.value}",
            reason=reason,
        )
        return previous_status

    def get_allowed_transitions(self, order: Order) -> Set[OrderStatus]:
        return get_allowed_order_transitions(order.status)

    # Transition Guards

    def _guard_has_reference(self, order: Order) -> bool:
        return bool(order.payment_reference)

    def _guard_has_unfulfilled_items(self, order: Order) -> bool:
        return bool(order.unfulfilled_item_indexes())

    def _guard_has_tracking(self, order: Order) -> bool:
        return order.tracking is not None

    # Side Effects

    def _effect_payment_initialized(self, order: Order, now: datetime) -> None:
        order.payment_status = PaymentStatus.INITIALIZED

    def _effect_payment_verified(self, order: Order, now: datetime) -> None:
        order.payment_status = PaymentStatus.COMPLETED
        order.payment_verified_at = now

    def _effect_shipped(self, order: Order, now: datetime) -> None:
        if order.shipped_at is None:
            order.shipped_at = now

    def _effect_delivered(self, order: Order, now: datetime) -> None:
        order.delivered_at = now

