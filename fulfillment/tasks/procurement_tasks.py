"""Fulfillment — Procurement Celery tasks: dispatch after payment, stalled-order recovery."""
import logging
from datetime import datetime, timedelta, timezone

from fulfillment.core.exceptions import FulfillmentError, VersionConflict
from fulfillment.models.material_order import MaterialOrderStatus
from fulfillment.repositories.material_order_repository import MaterialOrderRepository
from fulfillment.services.material_order_service import MaterialOrderService
from fulfillment.services.procurement_dispatcher import ProcurementDispatcher
from fulfillment.worker import celery_app

logger = logging.getLogger(__name__)

STALLED_STATUSES = (MaterialOrderStatus.PAID, MaterialOrderStatus.PURCHASING)


def _dispatcher() -> ProcurementDispatcher:
    from fulfillment.config import get_settings
    from fulfillment.services.retailers import RetailerRegistry
    from fulfillment.services.wiring import build_dispatcher, default_repository

    settings = get_settings()
    return build_dispatcher(settings, default_repository(), RetailerRegistry.from_settings(settings))


def _service() -> MaterialOrderService:
    from fulfillment.services.wiring import build_material_order_service

    return build_material_order_service()


@celery_app.task(bind=True, max_retries=3, default_retry_delay=30)
def dispatch_material_order(self, order_id: str) -> str:
    """Submit a paid material order's purchase orders to its retailers."""
    import asyncio
    try:
        order = asyncio.run(_dispatcher().dispatch(order_id))
    except VersionConflict as exc:
        delay = (2 ** self.request.retries) * 5
        logger.warning(f"Dispatch of {order_id} hit a concurrent update, retrying in {delay}s")
        raise self.retry(exc=exc, countdown=delay)
    return order.status.value


@celery_app.task
def recover_stalled_orders() -> list[str]:
    """Re-dispatch orders a crashed worker left in paid or purchasing, then settle stale payment locks."""
    import asyncio
    from fulfillment.config import get_settings
    from fulfillment.services.wiring import default_repository

    settings = get_settings()
    order_ids = asyncio.run(_find_stalled_orders(default_repository(), settings.STALLED_ORDER_AFTER_SECONDS))
    for order_id in order_ids:
        dispatch_material_order.delay(order_id)
    if order_ids:
        logger.info(f"Re-dispatched {len(order_ids)} stalled material orders")

    settled = asyncio.run(_reconcile_stale_payments(_service(), settings.PAYMENT_LOCK_TIMEOUT_SECONDS))
    if settled:
        logger.info(f"Reconciled {len(settled)} material orders with stale payment locks")
    return order_ids


async def _find_stalled_orders(repository: MaterialOrderRepository, stalled_after_seconds: int) -> list[str]:
    cutoff = datetime.now(timezone.utc) - timedelta(seconds=stalled_after_seconds)
    orders = await repository.list_by_status(STALLED_STATUSES, updated_before=cutoff)
    return [order.id for order in orders]


async def _reconcile_stale_payments(service: MaterialOrderService, lock_timeout_seconds: int) -> list[str]:
    cutoff = datetime.now(timezone.utc) - timedelta(seconds=lock_timeout_seconds)
    orders = await service.repository.list_by_status([MaterialOrderStatus.PENDING_PAYMENT], updated_before=cutoff)
    settled = []
    for order in orders:
        if not order.payment_in_flight:
            continue
        try:
            await service.reconcile_stale_payment(order.id, cutoff)
        except FulfillmentError:
            # Retried by the next sweep while the lock is still held.
            logger.exception("Could not reconcile payment for material order %s", order.id)
            continue
        settled.append(order.id)
    return settled
