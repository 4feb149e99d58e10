"""Fulfillment — Build the service graph from Settings."""
from typing import Mapping

from fulfillment.config import Settings, get_settings
from fulfillment.repositories.material_order_repository import (
    MaterialOrderRepository,
    SqlAlchemyMaterialOrderRepository,
)
from fulfillment.services.material_order_service import DispatchHandoff, MaterialOrderService, enqueue_dispatch
from fulfillment.services.order_state_machine import OrderStateMachine
from fulfillment.services.payment_gateway import HttpPaymentGateway, PaymentGateway
from fulfillment.services.pricing_service import PricingCalculator
from fulfillment.services.procurement_dispatcher import ProcurementDispatcher
from fulfillment.services.purchase_order_builder import PurchaseOrderBuilder
from fulfillment.services.retailers import Retailer, RetailerRegistry


def default_repository() -> MaterialOrderRepository:
    from fulfillment.db.session import async_session_maker

    return SqlAlchemyMaterialOrderRepository(async_session_maker)


def build_dispatcher(
    settings: Settings,
    repository: MaterialOrderRepository,
    registry: RetailerRegistry,
) -> ProcurementDispatcher:
    return ProcurementDispatcher(
        repository,
        OrderStateMachine(repository),
        registry,
        max_concurrency=settings.MAX_CONCURRENT_SUBMISSIONS,
        submit_timeout=settings.RETAILER_SUBMIT_TIMEOUT_SECONDS,
        default_delivery_days=settings.DEFAULT_DELIVERY_DAYS,
    )


def build_material_order_service(
    settings: Settings | None = None,
    repository: MaterialOrderRepository | None = None,
    gateway: PaymentGateway | None = None,
    retailer_clients: Mapping[str, Retailer] | None = None,
    dispatch_handoff: DispatchHandoff = enqueue_dispatch,
) -> MaterialOrderService:
    settings = settings or get_settings()
    repository = repository or default_repository()
    registry = RetailerRegistry.from_settings(settings, retailer_clients)
    calculator = PricingCalculator(settings.CONTRACTOR_DISCOUNT_AVERAGE)
    gateway = gateway or HttpPaymentGateway(
        settings.PAYMENT_API_URL,
        settings.PAYMENT_API_KEY,
        timeout=settings.PAYMENT_TIMEOUT_SECONDS,
    )
    return MaterialOrderService(
        repository=repository,
        state_machine=OrderStateMachine(repository),
        calculator=calculator,
        builder=PurchaseOrderBuilder(registry, calculator),
        gateway=gateway,
        dispatcher=build_dispatcher(settings, repository, registry),
        dispatch_handoff=dispatch_handoff,
        currency=settings.CURRENCY,
    )
