"""
Order lifecycle manager.

Drives an order from creation through payment, per-item drop-ship
fulfillment, shipping and delivery. Every state change goes through the
order state machine and is saved with an optimistic version check. Work on
a single order is serialized by a per-order lock; unrelated orders never
wait on each other.
"""

import asyncio
import random
import re
import time
import weakref
from collections import Counter
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Mapping, Optional, Sequence
from uuid import UUID, uuid4

from orderflow.core.config import Settings, get_settings
from orderflow.core.exceptions import (
    DuplicateOrderNumberError,
    GatewayError,
    InvalidStateError,
    NotificationError,
    OrderflowError,
    OrderNotFoundError,
    PartnerPlacementError,
    ValidationError,
)
from orderflow.core.logging import bind_order_id, get_logger
from orderflow.schemas.orders import (
    CustomerSnapshot,
    FulfillmentAttempt,
    FulfillmentSummary,
    GatewaySyncSummary,
    Order,
    OrderItem,
    OrderStats,
    PaymentInitialization,
    ReconciliationResult,
    RetryBatchSummary,
    TrackingInfo,
    order_summary,
    utcnow,
)
from orderflow.schemas.payments import WebhookEvent
from orderflow.services.fulfillment.partner_client import FulfillmentPartnerClient
from orderflow.services.inventory.aggregator import InventoryAggregator
from orderflow.services.orders.enums import (
    FULFILLMENT_ENTRY_STATUSES,
    TRACKING_ENTRY_STATUSES,
    AttemptOutcome,
    NotificationEvent,
    OrderStatus,
    PaymentStatus,
)
from orderflow.services.orders.notifications import Notifier
from orderflow.services.orders.repository import OrderRepository
from orderflow.services.orders.state_machine import OrderStateMachine
from orderflow.services.payments.paystack_client import SUCCESS_EVENT, PaystackClient

logger = get_logger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_PATTERN = re.compile(r"^\+?[1-9]\d{1,14}$")
PHONE_SEPARATORS = re.compile(r"[\s\-()]")

REQUIRED_CUSTOMER_FIELDS = {
    "full_name": "Full name",
    "email": "Email address",
    "phone": "Phone number",
    "address": "Shipping address",
    "city": "City",
    "state": "State/Province",
    "zip_code": "Zip/Postal code",
    "country": "Country",
}

NAME_MIN_LENGTH = 2
NAME_MAX_LENGTH = 100
ORDER_NUMBER_ATTEMPTS = 5
CENTS = Decimal("0.01")


def _text(value: Any) -> str:
    return str(value).strip() if value is not None else ""


class OrderLifecycleManager:
    """
    Orchestrates the order state machine against its external collaborators.

    Attributes:
        repository: Order persistence
        gateway: Payment gateway adapter
        partner: Fulfillment partner adapter
        inventory: Inventory aggregator consulted advisorily before placement
        notifier: Optional customer notification hook
    """

    def __init__(
        self,
        repository: OrderRepository,
        gateway: PaystackClient,
        partner: FulfillmentPartnerClient,
        inventory: Optional[InventoryAggregator] = None,
        notifier: Optional[Notifier] = None,
        settings: Optional[Settings] = None,
        state_machine: Optional[OrderStateMachine] = None,
        rng: Optional[random.Random] = None,
    ):
        self.repository = repository
        self.gateway = gateway
        self.partner = partner
        self.inventory = inventory
        self.notifier = notifier
        self.settings = settings or get_settings()
        self.state_machine = state_machine or OrderStateMachine()
        self._rng = rng or random.Random()
        self._locks: "weakref.WeakValueDictionary[UUID, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, order_id: UUID) -> asyncio.Lock:
        lock = self._locks.get(order_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[order_id] = lock
        return lock

    # ========================================================================
    # Queries
    # ========================================================================

    async def get_order(self, order_id: UUID) -> Order:
        """
        Load an order by id.

        Raises:
            OrderNotFoundError: If no such order exists
        """
        order = await self.repository.get(order_id)
        if order is None:
            raise OrderNotFoundError("Order not found", order_id=str(order_id))
        return order

    async def get_order_by_number(self, order_number: str) -> Order:
        order = await self.repository.get_by_order_number(order_number)
        if order is None:
            raise OrderNotFoundError("Order not found", order_number=order_number)
        return order

    async def list_orders(
        self,
        status: Optional[OrderStatus] = None,
        email: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Order]:
        return await self.repository.list(status=status, email=email, limit=limit, offset=offset)

    async def order_stats(self, now: Optional[datetime] = None) -> OrderStats:
        """
        Counts, revenue and estimated profit across all stored orders.

        Day and month windows start at UTC midnight and the first of the
        month; the week window is the last seven days.

        Args:
            now: Reference time, defaults to the current UTC time
        """
        now = now or utcnow()
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        windows = {
            "today": today,
            "week": now - timedelta(days=7),
            "month": today.replace(day=1),
        }

        orders = await self.repository.list()
        by_status = Counter(order.status for order in orders)
        paid = [o for o in orders if o.payment_status == PaymentStatus.COMPLETED]

        revenue = sum((o.total_amount for o in paid), Decimal("0"))
        profit = Decimal("0")
        uncosted = 0
        for order in paid:
            for item in order.items:
                cost = self._unit_cost(item.product_id)
                if cost is None:
                    uncosted += 1
                    continue
                profit += (item.unit_price - cost) * item.quantity

        currencies = Counter(o.currency for o in paid)
        return OrderStats(
            total_orders=len(orders),
            today_orders=sum(1 for o in orders if o.created_at >= windows["today"]),
            week_orders=sum(1 for o in orders if o.created_at >= windows["week"]),
            month_orders=sum(1 for o in orders if o.created_at >= windows["month"]),
            by_status={status: by_status.get(status, 0) for status in OrderStatus},
            paid_orders=len(paid),
            total_revenue=revenue.quantize(CENTS, rounding=ROUND_HALF_UP),
            revenue_currency=currencies.most_common(1)[0][0] if currencies else None,
            total_profit=profit.quantize(CENTS, rounding=ROUND_HALF_UP),
            profit_margin=(
                int((profit / revenue * 100).to_integral_value(rounding=ROUND_HALF_UP))
                if revenue > 0
                else None
            ),
            uncosted_items=uncosted,
            generated_at=now,
        )

    def _unit_cost(self, product_id: str) -> Optional[Decimal]:
        snapshot = self.inventory.snapshot if self.inventory is not None else None
        product = snapshot.get(product_id) if snapshot is not None else None
        return product.unit_cost if product is not None else None

    # ========================================================================
    # Creation
    # ========================================================================

    async def create_order(
        self,
        customer_info: Mapping[str, Any],
        items: Sequence[Mapping[str, Any]],
    ) -> Order:
        """
        Validate input, price the order and store it as pending.

        Args:
            customer_info: Customer contact and shipping fields
            items: Line items with product_id, name, unit_price and quantity

        Returns:
            The stored order

        Raises:
            ValidationError: Listing every violated field
        """
        violations = self._validate_customer(customer_info) + self._validate_items(items)
        if violations:
            logger.info(
                "Order rejected by validation",
                violation_count=len(violations),
                fields=[v["field"] for v in violations],
            )
            raise ValidationError(
                "Order validation failed",
                violations=violations,
            )

        customer = CustomerSnapshot(
            full_name=_text(customer_info.get("full_name")),
            email=_text(customer_info.get("email")).lower(),
            phone=_text(customer_info.get("phone")),
            address=_text(customer_info.get("address")),
            city=_text(customer_info.get("city")),
            state=_text(customer_info.get("state")),
            zip_code=_text(customer_info.get("zip_code")),
            country=_text(customer_info.get("country")),
            notes=_text(customer_info.get("notes")),
        )
        order_items = [
            OrderItem(
                product_id=_text(item.get("product_id")),
                variant=_text(item.get("variant")) or None,
                name=_text(item.get("name")) or _text(item.get("product_id")),
                unit_price=Decimal(str(item.get("unit_price"))).quantize(CENTS),
                quantity=int(item.get("quantity")),
                partner_product_id=_text(item.get("partner_product_id")) or None,
                partner_variant_id=_text(item.get("partner_variant_id")) or None,
            )
            for item in items
        ]
        pricing = self._calculate_order_pricing(order_items)

        for _ in range(ORDER_NUMBER_ATTEMPTS):
            order = Order(
                order_number=self._generate_order_number(),
                customer=customer,
                items=order_items,
                currency=self.settings.settlement_currency,
                **pricing,
            )
            try:
                await self.repository.add(order)
                break
            except DuplicateOrderNumberError:
                logger.warning("Order number collision", order_number=order.order_number)
        else:
            raise DuplicateOrderNumberError("Could not allocate a unique order number")

        bind_order_id(order.id)
        logger.info(
            "Order created",
            order_id=str(order.id),
            order_number=order.order_number,
            customer_email=customer.email,
            item_count=len(order_items),
            total_amount=str(order.total_amount),
        )
        return order

    def _validate_customer(self, customer_info: Mapping[str, Any]) -> list[dict[str, str]]:
        violations: list[dict[str, str]] = []
        if not isinstance(customer_info, Mapping):
            return [{"field": "customer", "message": "Customer information is required"}]

        for field, label in REQUIRED_CUSTOMER_FIELDS.items():
            if not _text(customer_info.get(field)):
                violations.append({"field": field, "message": f"{label} is required"})

        full_name = _text(customer_info.get("full_name"))
        if full_name and not NAME_MIN_LENGTH <= len(full_name) <= NAME_MAX_LENGTH:
            violations.append(
                {
                    "field": "full_name",
                    "message": (
                        f"Full name must be between {NAME_MIN_LENGTH} and "
                        f"{NAME_MAX_LENGTH} characters"
                    ),
                }
            )

        email = _text(customer_info.get("email"))
        if email and not EMAIL_PATTERN.match(email):
            violations.append(
                {"field": "email", "message": "Please provide a valid email address"}
            )

        phone = _text(customer_info.get("phone"))
        if phone and not PHONE_PATTERN.match(PHONE_SEPARATORS.sub("", phone)):
            violations.append(
                {"field": "phone", "message": "Please provide a valid phone number"}
            )

        return violations

    def _validate_items(self, items: Sequence[Mapping[str, Any]]) -> list[dict[str, str]]:
        if not items:
            return [{"field": "items", "message": "Order must contain at least one item"}]

        violations: list[dict[str, str]] = []
        for index, item in enumerate(items):
            prefix = f"items[{index}]"
            if not _text(item.get("product_id")):
                violations.append(
                    {"field": f"{prefix}.product_id", "message": "Product is required"}
                )

            quantity = item.get("quantity")
            if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
                violations.append(
                    {
                        "field": f"{prefix}.quantity",
                        "message": "Quantity must be a positive whole number",
                    }
                )

            try:
                price = Decimal(str(item.get("unit_price")))
                valid_price = price.is_finite() and price > 0
            except InvalidOperation:
                valid_price = False
            if not valid_price:
                violations.append(
                    {
                        "field": f"{prefix}.unit_price",
                        "message": "Unit price must be a positive amount",
                    }
                )
        return violations

    def _calculate_order_pricing(self, items: Sequence[OrderItem]) -> dict[str, Decimal]:
        """
        Subtotal, tax, shipping and total for the given items.

        Tax is rounded half-up to the cent; shipping is always free.
        """
        subtotal = sum((item.line_total for item in items), Decimal("0")).quantize(CENTS)
        tax_amount = (subtotal * self.settings.tax_rate).quantize(CENTS, rounding=ROUND_HALF_UP)
        shipping_amount = Decimal("0.00")
        return {
            "subtotal": subtotal,
            "tax_amount": tax_amount,
            "shipping_amount": shipping_amount,
            "total_amount": subtotal + tax_amount + shipping_amount,
        }

    def _generate_order_number(self) -> str:
        """
        Order numbers look like ``GZP-482913-527``: prefix, the last six
        digits of the millisecond clock and a random suffix.
        """
        stamp = int(time.time() * 1000) % 1_000_000
        suffix = self._rng.randint(100, 999)
        return f"{self.settings.order_number_prefix}-{stamp:06d}-{suffix}"

    def _generate_payment_reference(self) -> str:
        return f"{self.settings.order_number_prefix}-PAY-{uuid4().hex[:16].upper()}"

    # ========================================================================
    # Payment
    # ========================================================================

    async def initialize_payment(
        self, order_id: UUID, email: Optional[str] = None
    ) -> PaymentInitialization:
        """
        Create the remote transaction for an order and store its reference.

        Calling this again for an already initialized order returns the
        stored reference instead of creating a second transaction.

        Args:
            order_id: Order to pay for
            email: Payer email; defaults to the customer email

        Raises:
            OrderNotFoundError: If the order does not exist
            ValidationError: If the payer email is malformed
            InvalidStateError: If the order is past payment initialization
            GatewayMisconfigured: If gateway credentials are missing
            GatewayError: If the gateway call failed; the order stays pending
        """
        bind_order_id(order_id)
        async with self._lock_for(order_id):
            order = await self.get_order(order_id)

            if order.status == OrderStatus.INITIALIZED and order.payment_reference:
                logger.info(
                    "Payment already initialized",
                    order_id=str(order.id),
                    reference=order.payment_reference,
                )
                return self._initialization_result(order, already_initialized=True)

            if order.status != OrderStatus.PENDING:
                raise InvalidStateError(
                    f"Cannot initialize payment for an order in {order.status.value}",
                    current_status=order.status.value,
                    target_status=OrderStatus.INITIALIZED.value,
                )

            payer_email = _text(email).lower() or order.customer.email
            if not EMAIL_PATTERN.match(payer_email):
                raise ValidationError(
                    "Invalid payer email",
                    violations=[
                        {"field": "email", "message": "Please provide a valid email address"}
                    ],
                )

            reference = self._generate_payment_reference()
            initialization = await self.gateway.initialize_transaction(
                email=payer_email,
                amount_minor_units=order.total_minor_units,
                reference=reference,
                metadata=order_summary(order),
                currency=order.currency,
                callback_url=self.settings.payment_callback_url,
            )

            order.payment_reference = initialization.reference
            order.authorization_url = initialization.authorization_url
            self.state_machine.apply_transition(
                order, OrderStatus.INITIALIZED, reason="payment initialized"
            )
            await self._save(order)

        logger.info(
            "Payment initialized",
            order_id=str(order.id),
            reference=order.payment_reference,
            amount_minor_units=order.total_minor_units,
        )
        return self._initialization_result(order)

    def _initialization_result(
        self, order: Order, already_initialized: bool = False
    ) -> PaymentInitialization:
        return PaymentInitialization(
            order_id=order.id,
            reference=order.payment_reference,
            authorization_url=order.authorization_url,
            amount_minor_units=order.total_minor_units,
            currency=order.currency,
            already_initialized=already_initialized,
        )

    async def reconcile_payment(self, reference: str) -> ReconciliationResult:
        """
        Accept a payment once the gateway confirms it, then fulfill the order.

        Idempotent: an order already paid (or further along) is reported as
        success without side effects. Verification failures, including a
        short amount or currency mismatch, are reported in the result and
        leave the order untouched.

        Raises:
            GatewayMisconfigured: If gateway credentials are missing
        """
        order = await self.repository.get_by_payment_reference(reference)
        if order is None:
            logger.warning("Reconciliation for unknown reference", reference=reference)
            return ReconciliationResult(
                success=False,
                reference=reference,
                message="No order matches this payment reference",
            )

        bind_order_id(order.id)
        async with self._lock_for(order.id):
            order = await self.get_order(order.id)

            if order.status.is_paid_or_later():
                logger.info(
                    "Payment already reconciled",
                    order_id=str(order.id),
                    reference=reference,
                    status=order.status.value,
                )
                return ReconciliationResult(
                    success=True,
                    reference=reference,
                    order_id=order.id,
                    status=order.status,
                    already_processed=True,
                    message="Payment already processed",
                )

            try:
                verification = await self.gateway.verify_transaction(reference)
            except GatewayError as e:
                logger.warning(
                    "Payment verification call failed",
                    order_id=str(order.id),
                    reference=reference,
                    status_code=e.status_code,
                    error=e.message,
                )
                return self._reconciliation_failure(order, reference, "Payment verification failed")

            failure = self._verification_problem(order, verification)
            if failure:
                logger.warning(
                    "Payment not accepted",
                    order_id=str(order.id),
                    reference=reference,
                    gateway_status=verification.status,
                    amount=verification.amount,
                    expected_amount=order.total_minor_units,
                    reason=failure,
                )
                return self._reconciliation_failure(order, reference, failure)

            self.state_machine.apply_transition(order, OrderStatus.PAID, reason="payment verified")
            await self._save(order)
            logger.info(
                "Payment accepted",
                order_id=str(order.id),
                reference=reference,
                amount=verification.amount,
            )

            await self._notify(NotificationEvent.PAYMENT_CONFIRMED, order)

            # The payment is already stored; a fulfillment failure must not
            # turn a verified payment into a failed reconciliation.
            try:
                summary = await self._fulfill(order)
            except Exception as e:
                logger.error(
                    "Fulfillment could not complete after payment",
                    order_id=str(order.id),
                    error=e.message if isinstance(e, OrderflowError) else str(e),
                    error_type=type(e).__name__,
                )
                return ReconciliationResult(
                    success=True,
                    reference=reference,
                    order_id=order.id,
                    status=OrderStatus.PAID,
                    message="Payment verified; fulfillment pending",
                )

        return ReconciliationResult(
            success=True,
            reference=reference,
            order_id=order.id,
            status=summary.status,
            message="Payment verified",
            fulfillment=summary,
        )

    def _verification_problem(self, order: Order, verification) -> Optional[str]:
        if not verification.is_successful:
            return f"Gateway reports status '{verification.status}'"
        if verification.amount < order.total_minor_units:
            return "Paid amount is less than the order total"
        if verification.currency and verification.currency.upper() != order.currency:
            return "Payment currency does not match the order currency"
        return None

    def _reconciliation_failure(
        self, order: Order, reference: str, message: str
    ) -> ReconciliationResult:
        return ReconciliationResult(
            success=False,
            reference=reference,
            order_id=order.id,
            status=order.status,
            message=message,
        )

    async def handle_gateway_event(self, event: WebhookEvent) -> Optional[ReconciliationResult]:
        """
        Act on an authenticated webhook event.

        Only ``charge.success`` is processed; the reference comes from the
        event, or from the order named in its metadata when absent. Other
        events are acknowledged and ignored (None is returned).
        """
        if event.event != SUCCESS_EVENT:
            logger.info("Ignoring gateway event", gateway_event=event.event)
            return None

        reference = event.reference
        if not reference and event.order_id:
            try:
                order = await self.get_order(UUID(str(event.order_id)))
            except (ValueError, OrderNotFoundError):
                order = None
            reference = order.payment_reference if order else None

        if not reference:
            logger.warning("Success event without a usable reference")
            return ReconciliationResult(
                success=False,
                reference="",
                message="Event carries no payment reference",
            )
        return await self.reconcile_payment(reference)

    async def sync_gateway_transactions(
        self, per_page: int = 50, max_pages: int = 20
    ) -> GatewaySyncSummary:
        """
        Reconcile successful gateway transactions against stored orders.

        Catches payments whose webhook never arrived. Transactions with no
        matching order are counted and skipped; no order is ever created.
        """
        summary = GatewaySyncSummary()
        page_number = 1

        while page_number <= max_pages:
            page = await self.gateway.list_transactions(
                page=page_number, per_page=per_page, status="success"
            )
            for transaction in page.transactions:
                summary.processed += 1
                if await self.repository.get_by_payment_reference(transaction.reference) is None:
                    summary.unmatched += 1
                    continue

                result = await self.reconcile_payment(transaction.reference)
                summary.results.append(result)
                if not result.success:
                    summary.failed += 1
                elif result.already_processed:
                    summary.already_processed += 1
                else:
                    summary.reconciled += 1

            if not page.has_next or len(page.transactions) < per_page:
                break
            page_number += 1

        logger.info(
            "Gateway transactions synced",
            processed=summary.processed,
            reconciled=summary.reconciled,
            already_processed=summary.already_processed,
            unmatched=summary.unmatched,
            failed=summary.failed,
        )
        return summary

    # ========================================================================
    # Fulfillment
    # ========================================================================

    async def run_fulfillment(self, order_id: UUID) -> FulfillmentSummary:
        """
        Place every item that has no succeeded attempt yet.

        Valid for paid orders and, as a retry, for orders in
        ``partially_ordered`` or ``error``.

        Raises:
            OrderNotFoundError: If the order does not exist
            InvalidStateError: If the order is not eligible for fulfillment
        """
        bind_order_id(order_id)
        async with self._lock_for(order_id):
            order = await self.get_order(order_id)
            return await self._fulfill(order)

    async def retry_failed_fulfillment(self) -> RetryBatchSummary:
        """Re-run fulfillment for every partially ordered or failed order."""
        candidates = [
            order
            for status in OrderStatus
            if status.is_retryable_fulfillment()
            for order in await self.repository.list(status=status)
        ]

        results: list[FulfillmentSummary] = []
        failed = 0
        for order in candidates:
            try:
                summary = await self.run_fulfillment(order.id)
            except OrderflowError as e:
                failed += 1
                logger.error(
                    "Fulfillment retry failed",
                    order_id=str(order.id),
                    error=e.message,
                    error_code=e.code,
                )
                continue
            results.append(summary)
            if summary.status != OrderStatus.ORDERED:
                failed += 1

        logger.info(
            "Fulfillment retry batch finished",
            total_retried=len(candidates),
            failed=failed,
        )
        return RetryBatchSummary(
            total_retried=len(candidates),
            successful=len(candidates) - failed,
            failed=failed,
            results=results,
        )

    async def _fulfill(self, order: Order) -> FulfillmentSummary:
        """Fulfillment run for an order whose lock the caller holds."""
        if order.status not in FULFILLMENT_ENTRY_STATUSES:
            raise InvalidStateError(
                f"Cannot run fulfillment for an order in {order.status.value}",
                current_status=order.status.value,
                target_status=OrderStatus.PROCESSING.value,
            )
        self.state_machine.apply_transition(order, OrderStatus.PROCESSING, reason="fulfillment")
        await self._save(order)

        pending = order.unfulfilled_item_indexes()
        skipped = len(order.items) - len(pending)
        semaphore = asyncio.Semaphore(self.settings.fulfillment_concurrency)
        # Attempts of one run share a timestamp and are ordered by item index.
        run_started_at = utcnow()

        outcomes = await asyncio.gather(
            *(
                self._place_item(order, index, semaphore, run_started_at)
                for index in pending
            ),
            return_exceptions=True,
        )
        new_attempts: list[FulfillmentAttempt] = []
        for index, outcome in zip(pending, outcomes):
            if isinstance(outcome, FulfillmentAttempt):
                new_attempts.append(outcome)
            elif isinstance(outcome, Exception):
                logger.error(
                    "Unexpected error during item placement",
                    order_id=str(order.id),
                    item_index=index,
                    error=str(outcome),
                    error_type=type(outcome).__name__,
                )
                new_attempts.append(
                    self._failed_attempt(
                        order,
                        index,
                        f"{type(outcome).__name__}: {outcome}",
                        retryable=True,
                        attempted_at=run_started_at,
                    )
                )
            elif isinstance(outcome, BaseException):
                raise outcome
        aborted = len(new_attempts) < len(pending)

        try:
            latest = await self.get_order(order.id)
            if latest.version != order.version or latest.status != OrderStatus.PROCESSING:
                # Changed out of band while items were being placed: keep the
                # attempts, leave the status to whoever changed it.
                latest.fulfillment_attempts.extend(new_attempts)
                await self._save(latest)
                logger.warning(
                    "Order changed during fulfillment",
                    order_id=str(order.id),
                    status=latest.status.value,
                    placed=len(new_attempts),
                )
                return self._fulfillment_summary(latest, new_attempts, skipped, aborted=True)

            order.fulfillment_attempts.extend(new_attempts)
            final_status = self._final_fulfillment_status(order)
            self.state_machine.apply_transition(order, final_status, reason="fulfillment finished")
            await self._save(order)
        except Exception as e:
            logger.error(
                "Failed to record fulfillment outcome",
                order_id=str(order.id),
                partner_references=[
                    a.partner_reference for a in new_attempts if a.partner_reference
                ],
                error=str(e),
                error_type=type(e).__name__,
            )
            await self._record_attempts_after_failure(order.id, new_attempts)
            raise

        summary = self._fulfillment_summary(order, new_attempts, skipped, aborted=aborted)
        logger.info(
            "Fulfillment finished",
            order_id=str(order.id),
            status=final_status.value,
            succeeded=summary.succeeded_items,
            failed=summary.failed_items,
            skipped=skipped,
        )
        await self._notify(NotificationEvent.FULFILLMENT_COMPLETED, order)
        return summary

    @staticmethod
    def _final_fulfillment_status(order: Order) -> OrderStatus:
        if not order.unfulfilled_item_indexes():
            return OrderStatus.ORDERED
        if order.succeeded_item_indexes():
            return OrderStatus.PARTIALLY_ORDERED
        return OrderStatus.ERROR

    async def _record_attempts_after_failure(
        self, order_id: UUID, attempts: list[FulfillmentAttempt]
    ) -> None:
        """
        Second, best-effort write of placement outcomes.

        Attempts already stored are not added again. An order still in
        ``processing`` is moved to the status its attempts imply so that a
        later retry can pick it up. The caller re-raises the original error.
        """
        try:
            latest = await self.get_order(order_id)
            stored = {attempt.id for attempt in latest.fulfillment_attempts}
            latest.fulfillment_attempts.extend(a for a in attempts if a.id not in stored)
            if latest.status == OrderStatus.PROCESSING:
                self.state_machine.apply_transition(
                    latest,
                    self._final_fulfillment_status(latest),
                    reason="fulfillment outcome recovered",
                )
            await self._save(latest)
        except Exception as e:
            logger.critical(
                "Placement outcomes could not be recorded",
                order_id=str(order_id),
                partner_references=[a.partner_reference for a in attempts if a.partner_reference],
                error=str(e),
                error_type=type(e).__name__,
            )
            return
        logger.warning(
            "Placement outcomes recorded after failure",
            order_id=str(order_id),
            status=latest.status.value,
            attempts=len(attempts),
        )

    def _fulfillment_summary(
        self,
        order: Order,
        new_attempts: list[FulfillmentAttempt],
        skipped: int,
        aborted: bool,
    ) -> FulfillmentSummary:
        succeeded = order.succeeded_item_indexes()
        return FulfillmentSummary(
            order_id=order.id,
            order_number=order.order_number,
            status=order.status,
            total_items=len(order.items),
            succeeded_items=len(succeeded),
            failed_items=len(order.items) - len(succeeded),
            attempts=new_attempts,
            skipped_items=skipped,
            aborted=aborted,
        )

    def _order_memo(self, order: Order) -> str:
        memo = (
            f"{self.settings.store_name} Order #{order.order_number} - "
            f"Customer: {order.customer.full_name}"
        )
        if order.customer.notes:
            memo += f" - {order.customer.notes}"
        return memo

    def _failed_attempt(
        self,
        order: Order,
        index: int,
        error: str,
        retryable: bool,
        attempted_at: datetime,
    ) -> FulfillmentAttempt:
        item = order.items[index]
        return FulfillmentAttempt(
            item_index=index,
            product_id=item.product_id,
            variant=item.variant,
            outcome=AttemptOutcome.FAILED,
            error=error,
            retryable=retryable,
            attempted_at=attempted_at,
        )

    @staticmethod
    def _idempotency_key(order: Order, index: int) -> str:
        return f"{order.order_number}-{index}"

    async def _place_item(
        self,
        order: Order,
        index: int,
        semaphore: asyncio.Semaphore,
        attempted_at: datetime,
    ) -> Optional[FulfillmentAttempt]:
        """
        Place one item and describe the outcome as an attempt.

        Returns None without calling the partner when the stored order is no
        longer processing. Any error before or during placement becomes a
        failed, retryable attempt.
        """
        item = order.items[index]
        async with semaphore:
            try:
                current = await self.repository.get(order.id)
            except Exception as e:
                logger.error(
                    "Could not re-read order before placement",
                    order_id=str(order.id),
                    item_index=index,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                return self._failed_attempt(
                    order,
                    index,
                    f"Order re-check failed: {type(e).__name__}: {e}",
                    retryable=True,
                    attempted_at=attempted_at,
                )
            if current is None or current.status != OrderStatus.PROCESSING:
                logger.warning(
                    "Skipping placement, order no longer processing",
                    order_id=str(order.id),
                    item_index=index,
                    status=current.status.value if current else None,
                )
                return None

            self._advise_stock(order, item)

            try:
                placement = await self.partner.place_item(
                    product_ref=item.product_ref,
                    variant_ref=item.variant_ref,
                    quantity=item.quantity,
                    shipping_address=order.customer.shipping_address,
                    order_memo=self._order_memo(order),
                    idempotency_key=self._idempotency_key(order, index),
                )
            except PartnerPlacementError as e:
                logger.warning(
                    "Item placement failed",
                    order_id=str(order.id),
                    item_index=index,
                    product_id=item.product_id,
                    transient=e.transient,
                    error=e.message,
                )
                return self._failed_attempt(
                    order, index, e.message, retryable=e.transient, attempted_at=attempted_at
                )
            except Exception as e:
                logger.error(
                    "Unexpected error placing item",
                    order_id=str(order.id),
                    item_index=index,
                    product_id=item.product_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                return self._failed_attempt(
                    order,
                    index,
                    f"{type(e).__name__}: {e}",
                    retryable=True,
                    attempted_at=attempted_at,
                )

        return FulfillmentAttempt(
            item_index=index,
            product_id=item.product_id,
            variant=item.variant,
            outcome=AttemptOutcome.SUCCEEDED,
            partner_reference=placement.partner_reference,
            attempted_at=attempted_at,
        )

    def _advise_stock(self, order: Order, item: OrderItem) -> None:
        """Log when the inventory snapshot doubts an item; never blocks placement."""
        if self.inventory is None:
            return
        try:
            in_stock = self.inventory.check_stock(item.product_id, item.variant, item.quantity)
        except Exception as e:
            logger.warning(
                "Inventory check failed, placing anyway",
                order_id=str(order.id),
                product_id=item.product_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return
        if not in_stock:
            logger.info(
                "Inventory advises low or unknown stock, placing anyway",
                order_id=str(order.id),
                product_id=item.product_id,
                variant=item.variant,
                quantity=item.quantity,
            )

    # ========================================================================
    # Shipping and delivery
    # ========================================================================

    async def attach_tracking(
        self, order_id: UUID, tracking_number: str, carrier: str
    ) -> Order:
        """
        Record carrier tracking and mark the order shipped.

        Allowed from ordered, partially ordered and shipped (tracking update).

        Raises:
            OrderNotFoundError: If the order does not exist
            ValidationError: If tracking number or carrier is blank
            InvalidStateError: If the order is in any other status
        """
        violations = [
            {"field": field, "message": f"{label} is required"}
            for field, label, value in (
                ("tracking_number", "Tracking number", tracking_number),
                ("carrier", "Carrier", carrier),
            )
            if not _text(value)
        ]
        if violations:
            raise ValidationError("Invalid tracking details", violations=violations)

        bind_order_id(order_id)
        async with self._lock_for(order_id):
            order = await self.get_order(order_id)
            if order.status not in TRACKING_ENTRY_STATUSES:
                raise InvalidStateError(
                    f"Cannot attach tracking to an order in {order.status.value}",
                    current_status=order.status.value,
                    target_status=OrderStatus.SHIPPED.value,
                )

            order.tracking = TrackingInfo(
                tracking_number=_text(tracking_number), carrier=_text(carrier)
            )
            self.state_machine.apply_transition(order, OrderStatus.SHIPPED, reason="tracking attached")
            await self._save(order)

        logger.info(
            "Tracking attached",
            order_id=str(order.id),
            carrier=order.tracking.carrier,
            tracking_number=order.tracking.tracking_number,
        )
        await self._notify(NotificationEvent.SHIPPED, order)
        return order

    async def mark_delivered(self, order_id: UUID) -> Order:
        """
        Mark a shipped order delivered. Delivered is terminal.

        Raises:
            OrderNotFoundError: If the order does not exist
            InvalidStateError: If the order is not shipped; it is left unchanged
        """
        bind_order_id(order_id)
        async with self._lock_for(order_id):
            order = await self.get_order(order_id)
            self.state_machine.apply_transition(order, OrderStatus.DELIVERED, reason="delivered")
            await self._save(order)

        await self._notify(NotificationEvent.DELIVERED, order)
        return order

    # ========================================================================
    # Helpers
    # ========================================================================

    async def _save(self, order: Order) -> Order:
        return await self.repository.save(order, expected_version=order.version)

    async def _notify(self, event: NotificationEvent, order: Order) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.notify(event, order)
        except NotificationError as e:
            logger.error(
                "Failed to send order notification",
                order_id=str(order.id),
                notification_event=event.value,
                error=e.message,
            )
