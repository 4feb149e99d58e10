"""Fulfillment — MaterialOrderService: create, pay, cancel, ship, deliver, refund.

Client pays retail price + tax. Purchases go out tax-exempt at contractor
prices, and the difference is retained as operating capital.
"""
import inspect
import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Awaitable, Callable, Sequence

from fulfillment.core.exceptions import (
    InvalidTransition,
    OrderValidationError,
    PaymentInFlight,
    PricingIntegrityError,
    VersionConflict,
)
from fulfillment.core.money import to_decimal
from fulfillment.models.material_order import MaterialOrderStatus, PaymentStatus, PurchaseOrderStatus
from fulfillment.repositories.material_order_repository import MaterialOrderRepository
from fulfillment.schemas.material_order import LineItem, MaterialOrder
from fulfillment.services.order_state_machine import (
    OrderStateMachine,
    cancellation_fields,
    validate_purchase_order_transition,
)
from fulfillment.services.payment_gateway import PaymentFailureReason, PaymentGateway, idempotency_key_for
from fulfillment.services.pricing_service import PricingCalculator
from fulfillment.services.procurement_dispatcher import WRITE_ATTEMPTS, ProcurementDispatcher, actual_savings
from fulfillment.services.purchase_order_builder import PurchaseOrderBuilder

logger = logging.getLogger(__name__)

DispatchHandoff = Callable[[str], Awaitable[None] | None]

PURCHASE_ORDER_UPDATABLE_STATUSES = (MaterialOrderStatus.ORDERED, MaterialOrderStatus.SHIPPED)


def enqueue_dispatch(order_id: str) -> None:
    """Default hand-off: run the dispatcher on a Celery worker."""
    from fulfillment.tasks.procurement_tasks import dispatch_material_order

    dispatch_material_order.delay(order_id)


class MaterialOrderService:
    def __init__(
        self,
        repository: MaterialOrderRepository,
        state_machine: OrderStateMachine,
        calculator: PricingCalculator,
        builder: PurchaseOrderBuilder,
        gateway: PaymentGateway,
        dispatcher: ProcurementDispatcher,
        dispatch_handoff: DispatchHandoff = enqueue_dispatch,
        currency: str = "USD",
    ) -> None:
        self.repository = repository
        self.state_machine = state_machine
        self.calculator = calculator
        self.builder = builder
        self.gateway = gateway
        self.dispatcher = dispatcher
        self.dispatch_handoff = dispatch_handoff
        self.currency = currency

    async def create_material_order(
        self,
        estimate_id: str,
        project_id: str,
        business_id: str | None,
        items: Sequence[LineItem],
        delivery_address: str,
        tax_rate: Decimal,
        requested_delivery_date: date | None = None,
    ) -> MaterialOrder:
        """Price the items, split them per retailer and save the order in ``pending-payment``."""
        if not delivery_address or not delivery_address.strip():
            raise OrderValidationError("delivery_address is required")
        tax_rate = to_decimal(tax_rate)

        summary = self.calculator.calculate(items, tax_rate, retailer_rates=self.builder.registry.discount_rates())
        purchase_orders = self.builder.build(items, tax_rate)

        if summary.client_grand_total < summary.purchase_cost:
            raise PricingIntegrityError(
                f"Client grand total {summary.client_grand_total} is below purchase cost {summary.purchase_cost}"
            )

        order = MaterialOrder(
            estimate_id=estimate_id,
            project_id=project_id,
            business_id=business_id,
            tax_rate=tax_rate,
            currency=self.currency,
            client_total=summary.client_total,
            client_tax_amount=summary.client_tax_amount,
            client_grand_total=summary.client_grand_total,
            purchase_cost=summary.purchase_cost,
            estimated_savings=summary.estimated_savings,
            purchase_orders=purchase_orders,
            delivery_address=delivery_address,
            requested_delivery_date=requested_delivery_date,
            notes=[
                "Client pays retail price + tax",
                "Nonprofit purchases tax-exempt",
                f"Estimated savings: ${summary.estimated_savings:.2f}",
                "Savings retained for operating capital",
            ],
        )
        await self.repository.save(order)
        logger.info(
            f"Created material order {order.id} for estimate {estimate_id}: "
            f"{len(purchase_orders)} purchase orders, grand total {summary.client_grand_total}"
        )
        return await self.repository.get(order.id)

    async def get_order(self, order_id: str) -> MaterialOrder:
        return await self.repository.get(order_id)

    async def process_payment(self, order_id: str, payment_method_id: str | None = None) -> MaterialOrder:
        """Capture the client grand total and hand the order off for purchasing.

        A failed capture is recorded on the order (``payment_status=failed``) and
        returned, not raised. Calling again after success returns the order
        without a second capture.
        """
        order = await self.repository.get(order_id)
        if order.payment_status in (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED):
            logger.info("Payment for %s already captured (%s)", order_id, order.payment_intent_id)
            return order
        if order.status != MaterialOrderStatus.PENDING_PAYMENT:
            raise InvalidTransition(order.status.value, MaterialOrderStatus.PAID.value)
        if order.payment_in_flight:
            raise PaymentInFlight(f"Payment for material order {order_id} is already in progress")

        if order.payment_status == PaymentStatus.FAILED and order.payment_failure_reason:
            reason = PaymentFailureReason(order.payment_failure_reason)
            if not reason.is_retryable and payment_method_id in (None, order.payment_method_id):
                raise OrderValidationError(
                    f"Previous payment was {reason.value}; a different payment method is required"
                )

        method = payment_method_id or order.payment_method_id
        try:
            order = await self.repository.update(
                order_id,
                {
                    "payment_in_flight": True,
                    "payment_method_id": method,
                    "payment_status": PaymentStatus.PENDING,
                    "payment_failure_reason": None,
                },
                expected_version=order.version,
            )
        except VersionConflict:
            current = await self.repository.get(order_id)
            if current.payment_in_flight:
                raise PaymentInFlight(f"Payment for material order {order_id} is already in progress")
            raise

        try:
            result = await self.gateway.capture(
                order.id,
                order.client_grand_total,
                order.currency,
                idempotency_key_for(order.id),
                method,
            )
        except Exception:
            logger.exception("Payment gateway raised while capturing %s; releasing payment lock", order_id)
            await self._write_payment(order, lambda current: {"payment_in_flight": False})
            raise

        if not result.success:
            logger.warning(f"Payment for material order {order_id} failed: {result.failure_reason.value} {result.message or ''}")
            order, _ = await self._write_payment(
                order,
                lambda current: {
                    "payment_status": PaymentStatus.FAILED,
                    "payment_in_flight": False,
                    "payment_failure_reason": result.failure_reason.value,
                    "notes": [*current.notes, f"Payment failed: {result.failure_reason.value}"],
                },
            )
            return order

        order, recorded = await self._write_payment(
            order,
            lambda current: {
                "status": MaterialOrderStatus.PAID,
                "payment_status": PaymentStatus.COMPLETED,
                "payment_in_flight": False,
                "payment_intent_id": result.transaction_id,
                "payment_failure_reason": None,
                "paid_at": datetime.now(timezone.utc),
                "notes": [*current.notes, f"Payment captured: {result.transaction_id}"],
            },
        )
        if recorded:
            await self._hand_off(order.id)
        return order

    async def _write_payment(
        self,
        order: MaterialOrder,
        build_fields: Callable[[MaterialOrder], dict],
    ) -> tuple[MaterialOrder, bool]:
        """Money has moved by now, so the outcome is written against a fresh snapshot on conflict.

        Returns the order and whether this call recorded the outcome; an order
        already settled by another writer is returned untouched.
        """
        attempt = 1
        while True:
            fields = build_fields(order)
            target = fields.pop("status", None)
            try:
                if target is not None:
                    return await self.state_machine.transition(order, target, **fields), True
                return await self.repository.update(order.id, fields, expected_version=order.version), True
            except VersionConflict:
                if attempt >= WRITE_ATTEMPTS:
                    raise
                logger.info("Version conflict recording payment for %s, reloading (attempt %d)", order.id, attempt)
                attempt += 1
                order = await self.repository.get(order.id)
                if order.payment_status == PaymentStatus.COMPLETED:
                    return order, False

    async def reconcile_stale_payment(self, order_id: str, locked_before: datetime) -> MaterialOrder:
        """Release a payment lock left by a crashed capture and settle it under the same idempotency key."""
        order = await self.repository.get(order_id)
        if not order.payment_in_flight or order.updated_at >= locked_before:
            return order

        logger.warning("Releasing stale payment lock on material order %s (locked at %s)", order_id, order.updated_at)
        await self.repository.update(
            order_id,
            {"payment_in_flight": False, "notes": [*order.notes, "Stale payment lock released"]},
            expected_version=order.version,
        )
        return await self.process_payment(order_id)

    async def _hand_off(self, order_id: str) -> None:
        try:
            outcome = self.dispatch_handoff(order_id)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            # The order is paid; the stalled-order sweep dispatches it later.
            logger.exception("Could not hand off dispatch for material order %s", order_id)

    async def cancel_order(self, order_id: str, reason: str | None = None) -> MaterialOrder:
        """Cancel now, or defer until dispatch finishes when the order is ``purchasing``."""
        order = await self.repository.get(order_id)
        if order.is_terminal:
            raise InvalidTransition(order.status.value, MaterialOrderStatus.CANCELLED.value, "order is in a terminal state")

        if order.status == MaterialOrderStatus.PENDING_PAYMENT and order.payment_in_flight:
            raise PaymentInFlight(f"Cannot cancel material order {order_id} while a payment is in progress")

        if order.status == MaterialOrderStatus.PURCHASING:
            if order.cancel_requested:
                return order
            logger.info("Deferring cancellation of %s until purchasing completes", order_id)
            note = "Cancellation requested during purchasing"
            return await self.repository.update(
                order_id,
                {"cancel_requested": True, "notes": [*order.notes, f"{note}: {reason}" if reason else note]},
                expected_version=order.version,
            )

        order = await self.state_machine.transition(
            order, MaterialOrderStatus.CANCELLED, **cancellation_fields(order, reason)
        )
        if order.refund_amount_due:
            logger.info(f"Material order {order_id} cancelled, refund due {order.refund_amount_due}")
        return order

    async def mark_shipped(self, order_id: str) -> MaterialOrder:
        order = await self.repository.get(order_id)
        return await self.state_machine.transition(
            order, MaterialOrderStatus.SHIPPED, notes=[*order.notes, "Materials shipped"]
        )

    async def mark_delivered(self, order_id: str, actual_delivery_date: date | None = None) -> MaterialOrder:
        order = await self.repository.get(order_id)
        delivered_on = actual_delivery_date or datetime.now(timezone.utc).date()
        return await self.state_machine.transition(
            order,
            MaterialOrderStatus.DELIVERED,
            actual_delivery_date=delivered_on,
            notes=[*order.notes, f"Materials delivered {delivered_on.isoformat()}"],
        )

    async def resubmit_purchase_order(self, order_id: str, purchase_order_id: str) -> MaterialOrder:
        return await self.dispatcher.resubmit(order_id, purchase_order_id)

    async def update_purchase_order_status(
        self,
        order_id: str,
        purchase_order_id: str,
        status: PurchaseOrderStatus,
        tracking_number: str | None = None,
        actual_delivery: date | None = None,
    ) -> MaterialOrder:
        """Apply a retailer confirmation, shipping or delivery update to one sub-order."""
        order = await self.repository.get(order_id)
        # Sub-orders are priced into the client total; they only change once the order is placed.
        if order.status not in PURCHASE_ORDER_UPDATABLE_STATUSES:
            raise InvalidTransition(
                order.status.value, status.value, "purchase orders can only change on ordered or shipped orders"
            )
        po = order.purchase_order(purchase_order_id)
        if po is None:
            raise OrderValidationError(f"Purchase order {purchase_order_id} does not belong to order {order_id}")
        if status == PurchaseOrderStatus.SUBMITTED:
            raise OrderValidationError("Purchase orders are submitted through dispatch or resubmit")
        validate_purchase_order_transition(po.status, status)

        changes: dict = {"status": status}
        if tracking_number:
            changes["tracking_number"] = tracking_number
        if status == PurchaseOrderStatus.DELIVERED:
            changes["actual_delivery"] = actual_delivery or datetime.now(timezone.utc).date()

        po_changes = {po.id: changes}
        fields: dict = {
            "purchase_orders": po_changes,
            "notes": [*order.notes, f"{po.retailer} purchase order {po.order_number or po.id}: {status.value}"],
        }
        if order.actual_savings is not None:
            fields["actual_savings"] = actual_savings(order, po_changes)
        return await self.repository.update(order_id, fields, expected_version=order.version)

    async def record_refund(self, order_id: str, transaction_id: str) -> MaterialOrder:
        """Mark the recorded refund obligation as executed by the payment integration."""
        order = await self.repository.get(order_id)
        if order.payment_status == PaymentStatus.REFUNDED:
            return order
        if order.status != MaterialOrderStatus.CANCELLED or not order.refund_amount_due:
            raise OrderValidationError(f"Material order {order_id} has no outstanding refund")

        logger.info("Refund of %s recorded for material order %s (%s)", order.refund_amount_due, order_id, transaction_id)
        return await self.repository.update(
            order_id,
            {
                "payment_status": PaymentStatus.REFUNDED,
                "refund_amount_due": Decimal("0.00"),
                "notes": [*order.notes, f"Refund of ${order.refund_amount_due:.2f} executed: {transaction_id}"],
            },
            expected_version=order.version,
        )
