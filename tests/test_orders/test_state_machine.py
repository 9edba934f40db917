"""
Test suite for OrderStateMachine and the order transition table.

Tests cover legal and illegal transitions, guards, side effects and the
guarantee that a rejected transition leaves the order untouched.
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from orderflow.core.exceptions import InvalidStateError
from orderflow.schemas.orders import (
    CustomerSnapshot,
    FulfillmentAttempt,
    Order,
    OrderItem,
    TrackingInfo,
)
from orderflow.services.orders.enums import (
    ORDER_STATUS_TRANSITIONS,
    AttemptOutcome,
    OrderStatus,
    PaymentStatus,
    validate_order_transition,
)
from orderflow.services.orders.state_machine import OrderStateMachine

FIXED_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


# ============================================================================
# Test Fixtures
# ============================================================================


@pytest.fixture
def state_machine() -> OrderStateMachine:
    return OrderStateMachine(clock=lambda: FIXED_NOW)


@pytest.fixture
def order() -> Order:
    return Order(
        order_number="GZP-123456-789",
        customer=CustomerSnapshot(
            full_name="Ada Lovelace",
            email="ada@example.com",
            phone="+15550102030",
            address="12 Analytical Row",
            city="London",
            state="Greater London",
            zip_code="EC1A 1BB",
            country="GB",
        ),
        items=[
            OrderItem(product_id="a", name="A", unit_price=Decimal("10.00"), quantity=1),
            OrderItem(product_id="b", name="B", unit_price=Decimal("5.00"), quantity=2),
        ],
        subtotal=Decimal("20.00"),
        tax_amount=Decimal("1.40"),
        total_amount=Decimal("21.40"),
    )


def advance(machine: OrderStateMachine, order: Order, *statuses: OrderStatus) -> None:
    for status in statuses:
        machine.apply_transition(order, status)


# ============================================================================
# Transition Table Tests
# ============================================================================


class TestTransitionTable:
    """Test the static transition table."""

    def test_every_status_has_an_entry(self) -> None:
        assert set(ORDER_STATUS_TRANSITIONS) == set(OrderStatus)

    def test_delivered_is_terminal(self) -> None:
        assert ORDER_STATUS_TRANSITIONS[OrderStatus.DELIVERED] == set()
        assert OrderStatus.DELIVERED.is_terminal()

    @pytest.mark.parametrize(
        "current,target",
        [
            (OrderStatus.PENDING, OrderStatus.PAID),
            (OrderStatus.INITIALIZED, OrderStatus.PROCESSING),
            (OrderStatus.ORDERED, OrderStatus.PROCESSING),
            (OrderStatus.PAID, OrderStatus.SHIPPED),
            (OrderStatus.DELIVERED, OrderStatus.SHIPPED),
        ],
    )
    def test_illegal_moves(self, current: OrderStatus, target: OrderStatus) -> None:
        assert validate_order_transition(current, target) is False

    def test_status_from_string(self) -> None:
        assert OrderStatus.from_string("PARTIALLY_ORDERED") == OrderStatus.PARTIALLY_ORDERED
        with pytest.raises(ValueError):
            OrderStatus.from_string("cancelled")


# ============================================================================
# Transition Tests
# ============================================================================


class TestApplyTransition:
    """Test transitions, guards and side effects."""

    def test_initialize_requires_reference(
        self, state_machine: OrderStateMachine, order: Order
    ) -> None:
        with pytest.raises(InvalidStateError) as exc_info:
            state_machine.apply_transition(order, OrderStatus.INITIALIZED)

        assert exc_info.value.current_status == "pending"
        assert order.status == OrderStatus.PENDING

    def test_payment_side_effects(self, state_machine: OrderStateMachine, order: Order) -> None:
        order.payment_reference = "GZP-PAY-1"

        state_machine.apply_transition(order, OrderStatus.INITIALIZED)
        assert order.payment_status == PaymentStatus.INITIALIZED

        previous = state_machine.apply_transition(order, OrderStatus.PAID)
        assert previous == OrderStatus.INITIALIZED
        assert order.payment_status == PaymentStatus.COMPLETED
        assert order.payment_verified_at == FIXED_NOW
        assert order.updated_at == FIXED_NOW

    def test_rejected_transition_leaves_order_unchanged(
        self, state_machine: OrderStateMachine, order: Order
    ) -> None:
        before = order.model_copy(deep=True)

        with pytest.raises(InvalidStateError):
            state_machine.apply_transition(order, OrderStatus.DELIVERED)

        assert order == before

    def test_retry_requires_unfulfilled_items(
        self, state_machine: OrderStateMachine, order: Order
    ) -> None:
        order.payment_reference = "GZP-PAY-1"
        advance(
            state_machine,
            order,
            OrderStatus.INITIALIZED,
            OrderStatus.PAID,
            OrderStatus.PROCESSING,
        )
        order.fulfillment_attempts = [
            FulfillmentAttempt(
                item_index=i,
                product_id=item.product_id,
                outcome=AttemptOutcome.SUCCEEDED,
                partner_reference=f"PO-{i}",
            )
            for i, item in enumerate(order.items)
        ]
        advance(state_machine, order, OrderStatus.ERROR)

        with pytest.raises(InvalidStateError):
            state_machine.apply_transition(order, OrderStatus.PROCESSING)

    def test_shipping_requires_tracking(
        self, state_machine: OrderStateMachine, order: Order
    ) -> None:
        order.payment_reference = "GZP-PAY-1"
        advance(
            state_machine,
            order,
            OrderStatus.INITIALIZED,
            OrderStatus.PAID,
            OrderStatus.PROCESSING,
            OrderStatus.ORDERED,
        )

        with pytest.raises(InvalidStateError):
            state_machine.apply_transition(order, OrderStatus.SHIPPED)

        order.tracking = TrackingInfo(tracking_number="1Z", carrier="UPS")
        advance(state_machine, order, OrderStatus.SHIPPED, OrderStatus.DELIVERED)

        assert order.shipped_at == FIXED_NOW
        assert order.delivered_at == FIXED_NOW
        assert state_machine.get_allowed_transitions(order) == set()
