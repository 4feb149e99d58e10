"""Fulfillment — MaterialOrder and PurchaseOrder status transitions."""
import logging
from datetime import datetime, timezone
from typing import Any

from fulfillment.core.exceptions import InvalidTransition
from fulfillment.core.money import ZERO, to_cents
from fulfillment.models.material_order import MaterialOrderStatus, PaymentStatus, PurchaseOrderStatus
from fulfillment.repositories.material_order_repository import MaterialOrderRepository
from fulfillment.schemas.material_order import TERMINAL_ORDER_STATUSES, MaterialOrder

logger = logging.getLogger(__name__)

S = MaterialOrderStatus
ORDER_TRANSITIONS: dict[MaterialOrderStatus, frozenset[MaterialOrderStatus]] = {
    S.PENDING_PAYMENT: frozenset({S.PAID, S.CANCELLED}),
    S.PAID: frozenset({S.PURCHASING, S.CANCELLED}),
    S.PURCHASING: frozenset({S.ORDERED, S.CANCELLED}),
    S.ORDERED: frozenset({S.SHIPPED, S.CANCELLED}),
    S.SHIPPED: frozenset({S.DELIVERED, S.CANCELLED}),
    S.DELIVERED: frozenset(),
    S.CANCELLED: frozenset(),
}

P = PurchaseOrderStatus
PURCHASE_ORDER_TRANSITIONS: dict[PurchaseOrderStatus, frozenset[PurchaseOrderStatus]] = {
    P.DRAFT: frozenset({P.SUBMITTED, P.CANCELLED}),
    P.SUBMITTED: frozenset({P.CONFIRMED, P.SHIPPED, P.CANCELLED}),
    P.CONFIRMED: frozenset({P.SHIPPED, P.CANCELLED}),
    P.SHIPPED: frozenset({P.DELIVERED}),
    P.DELIVERED: frozenset(),
    P.CANCELLED: frozenset(),
}


def validate_purchase_order_transition(current: PurchaseOrderStatus, target: PurchaseOrderStatus) -> None:
    if target not in PURCHASE_ORDER_TRANSITIONS[current]:
        raise InvalidTransition(current.value, target.value)


def cancellation_fields(order: MaterialOrder, reason: str | None = None, now: datetime | None = None) -> dict[str, Any]:
    """Fields written alongside ``status=cancelled``.

    Draft sub-orders are cancelled. Sub-orders already placed with a retailer
    stay as they are and their totals are deducted from the refund obligation.
    The refund itself is executed elsewhere and confirmed via ``record_refund``.
    """
    now = now or datetime.now(timezone.utc)
    notes = [*order.notes, f"Order cancelled: {reason}" if reason else "Order cancelled"]
    fields: dict[str, Any] = {
        "cancelled_at": now,
        "cancel_requested": False,
        "purchase_orders": {
            po.id: {"status": PurchaseOrderStatus.CANCELLED}
            for po in order.purchase_orders
            if po.status == PurchaseOrderStatus.DRAFT
        },
        "notes": notes,
    }
    if order.payment_status == PaymentStatus.COMPLETED:
        committed = sum((po.total for po in order.purchase_orders if po.is_placed), ZERO)
        refund = to_cents(max(order.client_grand_total - committed, ZERO))
        fields["refund_amount_due"] = refund
        if committed:
            notes.append(f"${committed:.2f} already committed to retailers")
        notes.append(f"Refund due to client: ${refund:.2f}")
    return fields


class OrderStateMachine:
    """Validates order transitions and writes them through the repository."""

    def __init__(self, repository: MaterialOrderRepository) -> None:
        self.repository = repository

    @staticmethod
    def validate(order: MaterialOrder, target: MaterialOrderStatus, fields: dict[str, Any] | None = None) -> None:
        current = order.status
        if current in TERMINAL_ORDER_STATUSES:
            raise InvalidTransition(current.value, target.value, "order is in a terminal state")
        if target not in ORDER_TRANSITIONS[current]:
            raise InvalidTransition(current.value, target.value)
        if target == S.PAID:
            payment_status = (fields or {}).get("payment_status", order.payment_status)
            if payment_status != PaymentStatus.COMPLETED:
                raise InvalidTransition(current.value, target.value, "payment has not completed")
        if target == S.SHIPPED and not any(po.is_placed for po in order.purchase_orders):
            raise InvalidTransition(current.value, target.value, "no purchase order was placed")

    async def transition(self, order: MaterialOrder, target: MaterialOrderStatus, **fields: Any) -> MaterialOrder:
        """Move ``order`` to ``target`` with ``fields`` in one versioned write.

        Raises VersionConflict when ``order`` is a stale snapshot.
        """
        self.validate(order, target, fields)
        updated = await self.repository.update(
            order.id,
            {**fields, "status": target},
            expected_version=order.version,
        )
        logger.info("Material order %s: %s -> %s", order.id, order.status.value, target.value)
        return updated
