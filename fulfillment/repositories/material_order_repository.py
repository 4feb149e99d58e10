"""Fulfillment — MaterialOrder persistence.

Pricing and line items are written once, by ``save``. Afterwards ``update`` only
accepts the fields in MUTABLE_FIELDS, and child purchase orders only accept the
dispatch-populated fields in PURCHASE_ORDER_MUTABLE_FIELDS. Every update is
guarded by the order's ``version``.
"""
import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Protocol

from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment.core.exceptions import OrderNotFound, OrderValidationError, PaymentInFlight, VersionConflict
from fulfillment.models import material_order as db
from fulfillment.models.material_order import MaterialOrderStatus
from fulfillment.schemas.material_order import MaterialOrder, OrderItem, Product, PurchaseOrder

logger = logging.getLogger(__name__)

MUTABLE_FIELDS = frozenset({
    "status",
    "payment_status",
    "payment_in_flight",
    "payment_intent_id",
    "payment_method_id",
    "payment_failure_reason",
    "paid_at",
    "cancel_requested",
    "refund_amount_due",
    "cancelled_at",
    "actual_delivery_date",
    "actual_savings",
    "notes",
    "purchase_orders",
})

PURCHASE_ORDER_MUTABLE_FIELDS = frozenset({
    "status",
    "order_number",
    "tracking_number",
    "last_error",
    "submitted_at",
    "estimated_delivery",
    "actual_delivery",
})

# Purchase-order changes are keyed by purchase order id.
PurchaseOrderChanges = dict[str, dict[str, Any]]


class MaterialOrderRepository(Protocol):
    async def save(self, order: MaterialOrder) -> str: ...

    async def get(self, order_id: str) -> MaterialOrder: ...

    async def update(self, order_id: str, fields: dict[str, Any], expected_version: int) -> MaterialOrder: ...

    async def list_by_status(
        self,
        statuses: Iterable[MaterialOrderStatus],
        updated_before: datetime | None = None,
    ) -> list[MaterialOrder]: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    """SQLite drops tzinfo on the way back; stored values are always UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def apply_update(order: MaterialOrder, fields: dict[str, Any]) -> MaterialOrder:
    """Validate ``fields`` against the mutability rules and return the next revision of ``order``."""
    illegal = set(fields) - MUTABLE_FIELDS
    if illegal:
        raise OrderValidationError(f"Fields are immutable after creation: {', '.join(sorted(illegal))}")
    # While a capture is in flight only the payment writer may touch the order.
    if order.payment_in_flight and "payment_in_flight" not in fields:
        raise PaymentInFlight(f"Payment for material order {order.id} is in progress")

    changes = dict(fields)
    po_changes: PurchaseOrderChanges = changes.pop("purchase_orders", None) or {}
    known = {po.id for po in order.purchase_orders}
    for po_id, po_fields in po_changes.items():
        if po_id not in known:
            raise OrderValidationError(f"Purchase order {po_id} does not belong to order {order.id}")
        illegal = set(po_fields) - PURCHASE_ORDER_MUTABLE_FIELDS
        if illegal:
            raise OrderValidationError(
                f"Purchase order fields are immutable: {', '.join(sorted(illegal))}"
            )

    try:
        purchase_orders = [
            po.evolve(**po_changes[po.id]) if po.id in po_changes else po
            for po in order.purchase_orders
        ]
        return order.evolve(
            **changes,
            purchase_orders=purchase_orders,
            version=order.version + 1,
            updated_at=_utcnow(),
        )
    except ValidationError as exc:
        raise OrderValidationError(str(exc)) from exc


def _column_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


# ── Row <-> record mapping ───────────────────────────────────────────────────

def _item_to_record(row: db.OrderItem, retailer: str) -> OrderItem:
    return OrderItem(
        product=Product(
            id=row.product_id,
            name=row.product_name,
            price=row.client_unit_price,
            retailer=retailer,
            sku=row.sku,
            product_url=row.product_url,
        ),
        quantity=row.quantity,
        client_unit_price=row.client_unit_price,
        client_total=row.client_total,
        purchase_unit_price=row.purchase_unit_price,
        purchase_total=row.purchase_total,
        tax_savings=row.tax_savings,
        discount_savings=row.discount_savings,
        total_savings=row.total_savings,
    )


def _po_to_record(row: db.PurchaseOrder) -> PurchaseOrder:
    return PurchaseOrder(
        id=row.id,
        retailer=row.retailer,
        items=[_item_to_record(item, row.retailer) for item in row.items],
        subtotal=row.subtotal,
        tax_amount=row.tax_amount,
        discount_amount=row.discount_amount,
        total=row.total,
        status=row.status,
        tax_exempt_cert_number=row.tax_exempt_cert_number,
        pro_account_number=row.pro_account_number,
        order_number=row.order_number,
        tracking_number=row.tracking_number,
        last_error=row.last_error,
        submitted_at=_as_utc(row.submitted_at),
        estimated_delivery=row.estimated_delivery,
        actual_delivery=row.actual_delivery,
    )


def _order_to_record(row: db.MaterialOrder) -> MaterialOrder:
    return MaterialOrder(
        id=row.id,
        estimate_id=row.estimate_id,
        project_id=row.project_id,
        business_id=row.business_id,
        status=row.status,
        version=row.version,
        tax_rate=row.tax_rate,
        currency=row.currency,
        client_total=row.client_total,
        client_tax_amount=row.client_tax_amount,
        client_grand_total=row.client_grand_total,
        purchase_cost=row.purchase_cost,
        estimated_savings=row.estimated_savings,
        actual_savings=row.actual_savings,
        payment_status=row.payment_status,
        payment_in_flight=row.payment_in_flight,
        payment_intent_id=row.payment_intent_id,
        payment_method_id=row.payment_method_id,
        payment_failure_reason=row.payment_failure_reason,
        paid_at=_as_utc(row.paid_at),
        cancel_requested=row.cancel_requested,
        refund_amount_due=row.refund_amount_due,
        cancelled_at=_as_utc(row.cancelled_at),
        purchase_orders=[_po_to_record(po) for po in row.purchase_orders],
        delivery_address=row.delivery_address,
        requested_delivery_date=row.requested_delivery_date,
        actual_delivery_date=row.actual_delivery_date,
        notes=list(row.notes or []),
        created_at=_as_utc(row.created_at),
        updated_at=_as_utc(row.updated_at),
    )


def _order_to_row(order: MaterialOrder) -> db.MaterialOrder:
    row = db.MaterialOrder(
        id=order.id,
        estimate_id=order.estimate_id,
        project_id=order.project_id,
        business_id=order.business_id,
        status=order.status.value,
        version=order.version,
        tax_rate=order.tax_rate,
        currency=order.currency,
        client_total=order.client_total,
        client_tax_amount=order.client_tax_amount,
        client_grand_total=order.client_grand_total,
        purchase_cost=order.purchase_cost,
        estimated_savings=order.estimated_savings,
        actual_savings=order.actual_savings,
        payment_status=order.payment_status.value,
        payment_in_flight=order.payment_in_flight,
        payment_intent_id=order.payment_intent_id,
        payment_method_id=order.payment_method_id,
        payment_failure_reason=order.payment_failure_reason,
        paid_at=order.paid_at,
        cancel_requested=order.cancel_requested,
        refund_amount_due=order.refund_amount_due,
        cancelled_at=order.cancelled_at,
        delivery_address=order.delivery_address,
        requested_delivery_date=order.requested_delivery_date,
        actual_delivery_date=order.actual_delivery_date,
        notes=list(order.notes),
        created_at=order.created_at,
        updated_at=order.updated_at,
    )
    for position, po in enumerate(order.purchase_orders):
        po_row = db.PurchaseOrder(
            id=po.id,
            position=position,
            retailer=po.retailer,
            status=po.status.value,
            subtotal=po.subtotal,
            tax_amount=po.tax_amount,
            discount_amount=po.discount_amount,
            total=po.total,
            tax_exempt_cert_number=po.tax_exempt_cert_number,
            pro_account_number=po.pro_account_number,
            order_number=po.order_number,
            tracking_number=po.tracking_number,
            last_error=po.last_error,
            submitted_at=po.submitted_at,
            estimated_delivery=po.estimated_delivery,
            actual_delivery=po.actual_delivery,
        )
        for item_position, item in enumerate(po.items):
            po_row.items.append(db.OrderItem(
                position=item_position,
                product_id=item.product.id,
                product_name=item.product.name,
                sku=item.product.sku,
                product_url=item.product.product_url,
                quantity=item.quantity,
                client_unit_price=item.client_unit_price,
                client_total=item.client_total,
                purchase_unit_price=item.purchase_unit_price,
                purchase_total=item.purchase_total,
                tax_savings=item.tax_savings,
                discount_savings=item.discount_savings,
                total_savings=item.total_savings,
            ))
        row.purchase_orders.append(po_row)
    return row


# ── Implementations ─────────────────────────────────────────────────────────

class SqlAlchemyMaterialOrderRepository:
    """Async SQLAlchemy repository; each call runs in its own transaction."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self._session_maker = session_maker

    async def _load(self, session: AsyncSession, order_id: str) -> db.MaterialOrder | None:
        result = await session.execute(select(db.MaterialOrder).where(db.MaterialOrder.id == order_id))
        return result.scalar_one_or_none()

    async def save(self, order: MaterialOrder) -> str:
        now = _utcnow()
        order = order.model_copy(update={
            "created_at": order.created_at or now,
            "updated_at": order.updated_at or now,
        })
        async with self._session_maker() as session:
            async with session.begin():
                if await self._load(session, order.id) is not None:
                    raise OrderValidationError(f"Material order {order.id} already exists")
                session.add(_order_to_row(order))
        logger.info("Saved material order %s with %d purchase orders", order.id, len(order.purchase_orders))
        return order.id

    async def get(self, order_id: str) -> MaterialOrder:
        async with self._session_maker() as session:
            row = await self._load(session, order_id)
            if row is None:
                raise OrderNotFound(order_id)
            return _order_to_record(row)

    async def update(self, order_id: str, fields: dict[str, Any], expected_version: int) -> MaterialOrder:
        async with self._session_maker() as session:
            async with session.begin():
                row = await self._load(session, order_id)
                if row is None:
                    raise OrderNotFound(order_id)
                if row.version != expected_version:
                    raise VersionConflict(order_id, expected_version, row.version)

                updated = apply_update(_order_to_record(row), fields)
                values = {
                    name: _column_value(getattr(updated, name))
                    for name in fields
                    if name != "purchase_orders"
                }
                values["version"] = updated.version
                values["updated_at"] = updated.updated_at

                result = await session.execute(
                    update(db.MaterialOrder)
                    .where(db.MaterialOrder.id == order_id, db.MaterialOrder.version == expected_version)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise VersionConflict(order_id, expected_version)

                po_changes: PurchaseOrderChanges = fields.get("purchase_orders") or {}
                for po_id, po_fields in po_changes.items():
                    await session.execute(
                        update(db.PurchaseOrder)
                        .where(db.PurchaseOrder.id == po_id, db.PurchaseOrder.material_order_id == order_id)
                        .values(**{name: _column_value(value) for name, value in po_fields.items()})
                        .execution_options(synchronize_session=False)
                    )
        return updated

    async def list_by_status(
        self,
        statuses: Iterable[MaterialOrderStatus],
        updated_before: datetime | None = None,
    ) -> list[MaterialOrder]:
        q = select(db.MaterialOrder).where(db.MaterialOrder.status.in_([s.value for s in statuses]))
        if updated_before is not None:
            q = q.where(db.MaterialOrder.updated_at < updated_before)
        async with self._session_maker() as session:
            result = await session.execute(q.order_by(db.MaterialOrder.updated_at))
            return [_order_to_record(row) for row in result.scalars().all()]


class InMemoryMaterialOrderRepository:
    """Process-local repository for tests and single-process tools."""

    def __init__(self) -> None:
        self._orders: dict[str, MaterialOrder] = {}
        self._lock = asyncio.Lock()

    async def save(self, order: MaterialOrder) -> str:
        now = _utcnow()
        async with self._lock:
            if order.id in self._orders:
                raise OrderValidationError(f"Material order {order.id} already exists")
            self._orders[order.id] = order.model_copy(
                update={"created_at": order.created_at or now, "updated_at": order.updated_at or now},
                deep=True,
            )
        return order.id

    async def get(self, order_id: str) -> MaterialOrder:
        async with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                raise OrderNotFound(order_id)
            return order.model_copy(deep=True)

    async def update(self, order_id: str, fields: dict[str, Any], expected_version: int) -> MaterialOrder:
        async with self._lock:
            current = self._orders.get(order_id)
            if current is None:
                raise OrderNotFound(order_id)
            if current.version != expected_version:
                raise VersionConflict(order_id, expected_version, current.version)
            updated = apply_update(current, fields)
            self._orders[order_id] = updated
            return updated.model_copy(deep=True)

    async def list_by_status(
        self,
        statuses: Iterable[MaterialOrderStatus],
        updated_before: datetime | None = None,
    ) -> list[MaterialOrder]:
        wanted = set(statuses)
        async with self._lock:
            orders = [
                o.model_copy(deep=True) for o in self._orders.values()
                if o.status in wanted and (updated_before is None or o.updated_at < updated_before)
            ]
        return sorted(orders, key=lambda o: o.updated_at)
