"""Fulfillment — ProcurementDispatcher: submit a paid order's purchase orders to retailers.

Submissions run concurrently under a semaphore, each with its own timeout. One
retailer failing never blocks the others: the failed sub-order stays ``draft``
with ``last_error`` set and a note on the parent, ready for ``resubmit`` or
manual purchasing. The parent is written once, after every attempt finished.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable

from fulfillment.core.exceptions import InvalidTransition, OrderValidationError, RetailerSubmissionError, VersionConflict
from fulfillment.core.money import ZERO
from fulfillment.models.material_order import MaterialOrderStatus, PurchaseOrderStatus
from fulfillment.repositories.material_order_repository import MaterialOrderRepository
from fulfillment.schemas.material_order import PLACED_PURCHASE_ORDER_STATUSES, MaterialOrder, PurchaseOrder
from fulfillment.services.order_state_machine import (
    OrderStateMachine,
    cancellation_fields,
    validate_purchase_order_transition,
)
from fulfillment.services.retailers import RetailerRegistry

logger = logging.getLogger(__name__)

WRITE_ATTEMPTS = 3


@dataclass
class SubmissionOutcome:
    purchase_order_id: str
    changes: dict[str, Any] = field(default_factory=dict)
    note: str = ""
    submitted: bool = False


def actual_savings(order: MaterialOrder, po_changes: dict[str, dict[str, Any]] | None = None) -> Decimal:
    """Savings realized by sub-orders that reached a retailer."""
    po_changes = po_changes or {}
    total = ZERO
    for po in order.purchase_orders:
        status = po_changes.get(po.id, {}).get("status", po.status)
        if status in PLACED_PURCHASE_ORDER_STATUSES:
            total += sum((item.total_savings for item in po.items), ZERO)
    return total


class ProcurementDispatcher:
    def __init__(
        self,
        repository: MaterialOrderRepository,
        state_machine: OrderStateMachine,
        registry: RetailerRegistry,
        max_concurrency: int = 5,
        submit_timeout: float = 30.0,
        default_delivery_days: int = 3,
    ) -> None:
        self.repository = repository
        self.state_machine = state_machine
        self.registry = registry
        self.max_concurrency = max_concurrency
        self.submit_timeout = submit_timeout
        self.default_delivery_days = default_delivery_days

    async def dispatch(self, order_id: str) -> MaterialOrder:
        """Submit every draft sub-order of a paid order; resumes an order left in ``purchasing``."""
        order = await self.repository.get(order_id)
        if order.status == MaterialOrderStatus.PAID:
            order = await self.state_machine.transition(
                order,
                MaterialOrderStatus.PURCHASING,
                notes=[*order.notes, "Purchasing started"],
            )
        elif order.status == MaterialOrderStatus.PURCHASING:
            logger.info("Resuming dispatch of material order %s", order_id)
        else:
            raise InvalidTransition(order.status.value, MaterialOrderStatus.PURCHASING.value, "dispatch requires a paid order")

        drafts = order.unplaced_purchase_orders
        semaphore = asyncio.Semaphore(self.max_concurrency)
        outcomes = await asyncio.gather(*(self._submit(semaphore, order, po) for po in drafts))

        placed = sum(1 for o in outcomes if o.submitted)
        logger.info(f"Material order {order_id}: {placed}/{len(drafts)} purchase orders submitted")

        order = await self._write_with_retry(order, lambda current: self._record_outcomes(current, outcomes))
        if order.cancel_requested:
            order = await self._write_with_retry(order, self._apply_deferred_cancel)
        return order

    async def resubmit(self, order_id: str, purchase_order_id: str) -> MaterialOrder:
        """Retry one draft sub-order of an ``ordered`` order."""
        order = await self.repository.get(order_id)
        if order.status != MaterialOrderStatus.ORDERED:
            raise InvalidTransition(order.status.value, PurchaseOrderStatus.SUBMITTED.value, "only ordered orders can resubmit purchase orders")
        po = order.purchase_order(purchase_order_id)
        if po is None:
            raise OrderValidationError(f"Purchase order {purchase_order_id} does not belong to order {order_id}")
        validate_purchase_order_transition(po.status, PurchaseOrderStatus.SUBMITTED)

        outcome = await self._submit(asyncio.Semaphore(1), order, po)
        return await self._write_with_retry(order, lambda current: self._record_resubmission(current, outcome))

    async def _submit(self, semaphore: asyncio.Semaphore, order: MaterialOrder, po: PurchaseOrder) -> SubmissionOutcome:
        client = self.registry.client(po.retailer)
        if client is None:
            reason = "no retailer integration configured"
        else:
            async with semaphore:
                try:
                    submission = await asyncio.wait_for(
                        client.submit(
                            po,
                            order.delivery_address,
                            po.tax_exempt_cert_number,
                            po.pro_account_number,
                            requested_delivery=order.requested_delivery_date,
                        ),
                        timeout=self.submit_timeout,
                    )
                except asyncio.TimeoutError:
                    reason = f"timed out after {self.submit_timeout}s"
                except RetailerSubmissionError as exc:
                    reason = exc.reason
                except Exception as exc:
                    logger.exception("Unexpected error submitting purchase order %s to %s", po.id, po.retailer)
                    reason = f"unexpected error: {exc}"
                else:
                    now = datetime.now(timezone.utc)
                    estimated = submission.estimated_delivery or (now + timedelta(days=self.default_delivery_days)).date()
                    return SubmissionOutcome(
                        purchase_order_id=po.id,
                        changes={
                            "status": PurchaseOrderStatus.SUBMITTED,
                            "order_number": submission.order_number,
                            "tracking_number": submission.tracking_number,
                            "submitted_at": now,
                            "estimated_delivery": estimated,
                            "last_error": None,
                        },
                        note=f"Submitted {po.retailer} purchase order {submission.order_number}",
                        submitted=True,
                    )

        logger.warning(f"Purchase order {po.id} to {po.retailer} failed: {reason}")
        return SubmissionOutcome(
            purchase_order_id=po.id,
            changes={"last_error": reason},
            note=f"{po.retailer} purchase order failed ({reason}); needs resubmission or manual purchase",
        )

    async def _record_outcomes(self, order: MaterialOrder, outcomes: list[SubmissionOutcome]) -> MaterialOrder:
        po_changes = {o.purchase_order_id: o.changes for o in outcomes}
        return await self.state_machine.transition(
            order,
            MaterialOrderStatus.ORDERED,
            purchase_orders=po_changes,
            notes=[*order.notes, *(o.note for o in outcomes)],
            actual_savings=actual_savings(order, po_changes),
        )

    async def _record_resubmission(self, order: MaterialOrder, outcome: SubmissionOutcome) -> MaterialOrder:
        changes = {outcome.purchase_order_id: outcome.changes}
        return await self.repository.update(
            order.id,
            {
                "purchase_orders": changes,
                "notes": [*order.notes, outcome.note],
                "actual_savings": actual_savings(order, changes),
            },
            expected_version=order.version,
        )

    async def _apply_deferred_cancel(self, order: MaterialOrder) -> MaterialOrder:
        logger.info("Applying cancellation requested during purchasing for %s", order.id)
        return await self.state_machine.transition(
            order,
            MaterialOrderStatus.CANCELLED,
            **cancellation_fields(order, "requested during purchasing"),
        )

    async def _write_with_retry(
        self,
        order: MaterialOrder,
        write: Callable[[MaterialOrder], Awaitable[MaterialOrder]],
    ) -> MaterialOrder:
        """Retailer submissions cannot be undone, so their outcome is written against a fresh snapshot on conflict."""
        attempt = 1
        while True:
            try:
                return await write(order)
            except VersionConflict:
                if attempt >= WRITE_ATTEMPTS:
                    raise
                logger.info("Version conflict writing material order %s, reloading (attempt %d)", order.id, attempt)
                attempt += 1
                order = await self.repository.get(order.id)
