"""
Pytest configuration and shared test fixtures.

Provides test settings, in-memory storage, mocked payment gateway and
fulfillment partner collaborators, and a lifecycle manager wired to them.
"""

from decimal import Decimal
from typing import Any, Callable, Generator, Optional
from unittest.mock import AsyncMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from orderflow.api.v1 import orders_router, payments_router
from orderflow.core.config import Settings
from orderflow.schemas.payments import TransactionInitialization, TransactionVerification
from orderflow.services.fulfillment.partner_client import (
    FulfillmentPartnerClient,
    PlacementResult,
)
from orderflow.services.orders.repository import InMemoryOrderRepository
from orderflow.services.orders.service import OrderLifecycleManager
from orderflow.services.payments.paystack_client import PaystackClient

WEBHOOK_SECRET = "sk_test_webhook_secret"


@pytest.fixture
def settings() -> Settings:
    """Settings for tests; no external service is contacted."""
    return Settings(
        environment="test",
        paystack_secret_key=WEBHOOK_SECRET,
        fulfillment_partner_url="https://partner.test/api",
        fulfillment_partner_api_key="partner-key",
        tax_rate=Decimal("0.07"),
        settlement_currency="USD",
        retry_max_attempts=3,
        retry_initial_backoff=0.0,
        retry_max_backoff=0.0,
        fulfillment_concurrency=4,
    )


@pytest.fixture
def customer_info() -> dict[str, Any]:
    return {
        "full_name": "  Ada Lovelace ",
        "email": "Ada@Example.COM",
        "phone": "+1 (555) 010-2030",
        "address": "12 Analytical Row",
        "city": "London",
        "state": "Greater London",
        "zip_code": "EC1A 1BB",
        "country": "GB",
        "notes": "Leave at the door",
    }


@pytest.fixture
def order_items() -> list[dict[str, Any]]:
    return [
        {
            "product_id": "gamesir-nova-lite",
            "variant": "Black",
            "name": "GameSir Nova Lite Gaming Controller",
            "unit_price": Decimal("40.00"),
            "quantity": 2,
        },
        {
            "product_id": "gamesir-x2s",
            "variant": "Black",
            "name": "GameSir X2s Mobile Gaming Controller",
            "unit_price": Decimal("20.00"),
            "quantity": 1,
        },
    ]


@pytest.fixture
def repository() -> InMemoryOrderRepository:
    return InMemoryOrderRepository()


def make_verification(
    reference: str,
    amount: int,
    status: str = "success",
    currency: Optional[str] = "USD",
) -> TransactionVerification:
    return TransactionVerification(
        reference=reference, status=status, amount=amount, currency=currency
    )


@pytest.fixture
def gateway() -> AsyncMock:
    """
    Mocked Paystack client.

    ``initialize_transaction`` echoes the caller's reference. Tests set
    ``verify_transaction.return_value`` (or a side effect) as needed.
    """
    mock = AsyncMock(spec=PaystackClient)

    async def initialize(email, amount_minor_units, reference, **kwargs):
        return TransactionInitialization(
            authorization_url=f"https://checkout.paystack.test/{reference}",
            access_code="access",
            reference=reference,
        )

    mock.initialize_transaction.side_effect = initialize
    return mock


@pytest.fixture
def partner() -> AsyncMock:
    """Mocked fulfillment partner that accepts every item by default."""
    mock = AsyncMock(spec=FulfillmentPartnerClient)
    counter = {"n": 0}

    async def place_item(
        product_ref, variant_ref, quantity, shipping_address, order_memo, idempotency_key=None
    ):
        counter["n"] += 1
        return PlacementResult(partner_reference=f"PO-{product_ref}-{counter['n']}")

    mock.place_item.side_effect = place_item
    return mock


@pytest.fixture
def notifier() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def manager(
    repository: InMemoryOrderRepository,
    gateway: AsyncMock,
    partner: AsyncMock,
    notifier: AsyncMock,
    settings: Settings,
) -> OrderLifecycleManager:
    return OrderLifecycleManager(
        repository=repository,
        gateway=gateway,
        partner=partner,
        notifier=notifier,
        settings=settings,
    )


@pytest.fixture
def verification_factory() -> Callable[[str, int], TransactionVerification]:
    return make_verification


@pytest.fixture
def client(manager: OrderLifecycleManager, settings: Settings) -> Generator[TestClient, None, None]:
    """
    Test client for the order and payment routers.

    The lifespan is not involved; services are placed on ``app.state``
    directly, the way the lifespan does it.
    """
    app = FastAPI()
    app.include_router(orders_router, prefix=settings.api_v1_prefix)
    app.include_router(payments_router, prefix=settings.api_v1_prefix)
    app.state.order_manager = manager
    app.state.settings = settings

    with TestClient(app) as test_client:
        yield test_client
