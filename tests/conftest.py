"""
Shared pytest fixtures.

Collaborators are in-memory fakes: a payment gateway that deduplicates by
idempotency key, and retailers that can be told to fail or stall. The
SQLAlchemy repository runs against an aiosqlite in-memory database.
"""

import asyncio
from decimal import Decimal
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from fulfillment.config import Settings
from fulfillment.core.exceptions import RetailerSubmissionError
from fulfillment.db.base import Base
from fulfillment.repositories.material_order_repository import InMemoryMaterialOrderRepository
from fulfillment.schemas.material_order import LineItem, Product
from fulfillment.services.payment_gateway import PaymentResult
from fulfillment.services.retailers import RetailerSubmission
from fulfillment.services.wiring import build_material_order_service

import fulfillment.models  # noqa: F401  (registers tables on Base.metadata)


# ============================================================================
# FAKES
# ============================================================================


class FakePaymentGateway:
    """Returns queued results for new keys; replays the recorded success for a known key."""

    def __init__(self, results: list[PaymentResult] | None = None) -> None:
        self.results = list(results or [])
        self.captured: dict[str, PaymentResult] = {}
        self.calls: list[dict] = []

    @property
    def successful_captures(self) -> int:
        return len(self.captured)

    async def capture(self, order_id, amount, currency, idempotency_key, payment_method_id=None) -> PaymentResult:
        self.calls.append({
            "order_id": order_id,
            "amount": amount,
            "currency": currency,
            "idempotency_key": idempotency_key,
            "payment_method_id": payment_method_id,
        })
        if idempotency_key in self.captured:
            return self.captured[idempotency_key]
        result = self.results.pop(0) if self.results else PaymentResult.succeeded(f"pi_{len(self.captured) + 1:04d}")
        if result.success:
            self.captured[idempotency_key] = result
        return result


class FakeRetailer:
    def __init__(self, retailer: str, fail_with: str | None = None, delay: float = 0.0) -> None:
        self.retailer = retailer
        self.fail_with = fail_with
        self.delay = delay
        self.submissions: list[dict] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def submit(
        self, purchase_order, delivery_address, tax_exempt_certificate, pro_account_id, requested_delivery=None
    ) -> RetailerSubmission:
        self.submissions.append({
            "requested_delivery": requested_delivery,
            "purchase_order_id": purchase_order.id,
            "delivery_address": delivery_address,
            "tax_exempt_certificate": tax_exempt_certificate,
            "pro_account_id": pro_account_id,
        })
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.fail_with:
                raise RetailerSubmissionError(self.retailer, self.fail_with)
        finally:
            self.in_flight -= 1
        n = len(self.submissions)
        return RetailerSubmission(order_number=f"{self.retailer.upper()}-{n:04d}", tracking_number=f"TRK-{self.retailer}-{n}")


# ============================================================================
# CONFIGURATION
# ============================================================================


@pytest.fixture
def settings() -> Settings:
    return Settings(
        DATABASE_URL="sqlite+aiosqlite:///:memory:",
        TAX_EXEMPT_CERT_NUMBER="NP-TX-0001",
        RETAILER_DISCOUNT_RATES={"homedepot": Decimal("0.15"), "lowes": Decimal("0.15")},
        RETAILER_PRO_ACCOUNTS={"homedepot": "PRO-HD-1"},
        TAX_EXEMPT_REQUIRED_RETAILERS=["homedepot", "lowes"],
        RETAILER_SUBMIT_TIMEOUT_SECONDS=0.2,
        MAX_CONCURRENT_SUBMISSIONS=5,
    )


# ============================================================================
# DATA
# ============================================================================


@pytest.fixture
def line_items() -> list[LineItem]:
    """10.00 x 5 at homedepot, 20.00 x 2 at lowes."""
    return [
        LineItem(
            product=Product(id="p-stud", name="2x4 Stud", price=Decimal("10.00"), retailer="homedepot", sku="HD-STUD"),
            quantity=5,
        ),
        LineItem(
            product=Product(id="p-drywall", name="Drywall Sheet", price=Decimal("20.00"), retailer="lowes", sku="LW-DRY"),
            quantity=2,
        ),
    ]


# ============================================================================
# SERVICES
# ============================================================================


@pytest.fixture
def repository() -> InMemoryMaterialOrderRepository:
    return InMemoryMaterialOrderRepository()


@pytest.fixture
def gateway() -> FakePaymentGateway:
    return FakePaymentGateway()


@pytest.fixture
def retailers() -> dict[str, FakeRetailer]:
    return {"homedepot": FakeRetailer("homedepot"), "lowes": FakeRetailer("lowes")}


@pytest.fixture
def handoffs() -> list[str]:
    """Order ids handed off for dispatch."""
    return []


@pytest.fixture
def service(settings, repository, gateway, retailers, handoffs):
    return build_material_order_service(
        settings,
        repository=repository,
        gateway=gateway,
        retailer_clients=retailers,
        dispatch_handoff=handoffs.append,
    )


@pytest.fixture
def create_order(service, line_items):
    async def _create(**overrides):
        params = {
            "estimate_id": "est-1",
            "project_id": "proj-1",
            "business_id": "biz-1",
            "items": line_items,
            "delivery_address": "100 Main St, Springfield",
            "tax_rate": Decimal("0.08"),
        }
        params.update(overrides)
        return await service.create_material_order(**params)

    return _create


@pytest.fixture
def paid_order(service, create_order):
    async def _paid():
        order = await create_order()
        return await service.process_payment(order.id, "pm_card_visa")

    return _paid


# ============================================================================
# DATABASE
# ============================================================================


@pytest_asyncio.fixture
async def sqlite_session_maker() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    await engine.dispose()
