"""Tests for MaterialOrderService."""

import asyncio
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from fulfillment.core.exceptions import (
    InvalidTransition,
    OrderNotFound,
    OrderValidationError,
    PaymentInFlight,
    PricingIntegrityError,
)
from fulfillment.models.material_order import MaterialOrderStatus, PaymentStatus, PurchaseOrderStatus
from fulfillment.schemas.material_order import LineItem, Product, PricingSummary, SavingsBreakdown
from fulfillment.services.payment_gateway import PaymentFailureReason, PaymentResult, idempotency_key_for


class TestCreateMaterialOrder:
    async def test_creates_pending_order_with_pricing(self, create_order):
        order = await create_order()

        assert order.status == MaterialOrderStatus.PENDING_PAYMENT
        assert order.payment_status == PaymentStatus.PENDING
        assert order.version == 1
        assert order.business_id == "biz-1"
        assert order.client_total == Decimal("90.00")
        assert order.client_tax_amount == Decimal("7.20")
        assert order.client_grand_total == Decimal("97.20")
        assert order.purchase_cost == Decimal("76.50")
        assert order.estimated_savings == Decimal("20.70")
        assert order.actual_savings is None
        assert order.created_at is not None

    async def test_purchase_cost_matches_purchase_orders(self, create_order):
        order = await create_order()
        assert sum(po.total for po in order.purchase_orders) == order.purchase_cost

    async def test_seeds_audit_notes(self, create_order):
        order = await create_order()
        assert order.notes == [
            "Client pays retail price + tax",
            "Nonprofit purchases tax-exempt",
            "Estimated savings: $20.70",
            "Savings retained for operating capital",
        ]

    async def test_persisted(self, create_order, repository):
        order = await create_order()
        assert await repository.get(order.id) == order

    async def test_unknown_retailer_rejected_before_save(self, create_order, repository):
        items = [LineItem(product=Product(id="x", name="X", price=Decimal("1"), retailer="acme"), quantity=1)]
        with pytest.raises(OrderValidationError):
            await create_order(items=items)
        assert await repository.list_by_status(list(MaterialOrderStatus)) == []

    async def test_empty_delivery_address_rejected(self, create_order):
        with pytest.raises(OrderValidationError):
            await create_order(delivery_address="  ")

    async def test_margin_violation_raises(self, service, create_order, monkeypatch):
        def broken_calculate(*args, **kwargs):
            return PricingSummary(
                client_total=Decimal("10.00"),
                client_tax_amount=Decimal("0.00"),
                client_grand_total=Decimal("10.00"),
                purchase_cost=Decimal("12.00"),
                estimated_savings=Decimal("-2.00"),
                savings_breakdown=SavingsBreakdown(tax_savings=Decimal("0"), discount_savings=Decimal("-2.00")),
            )

        monkeypatch.setattr(service.calculator, "calculate", broken_calculate)
        with pytest.raises(PricingIntegrityError):
            await create_order()


class TestProcessPayment:
    async def test_success_marks_paid_and_hands_off(self, service, create_order, gateway, handoffs):
        order = await create_order()

        paid = await service.process_payment(order.id, "pm_card_visa")

        assert paid.status == MaterialOrderStatus.PAID
        assert paid.payment_status == PaymentStatus.COMPLETED
        assert paid.payment_intent_id == "pi_0001"
        assert paid.paid_at is not None
        assert paid.payment_in_flight is False
        assert handoffs == [order.id]
        assert gateway.calls[0]["amount"] == Decimal("97.20")
        assert gateway.calls[0]["currency"] == "USD"
        assert gateway.calls[0]["idempotency_key"] == idempotency_key_for(order.id) == f"material-order:{order.id}"

    async def test_second_call_does_not_capture_again(self, service, create_order, gateway, handoffs):
        order = await create_order()
        first = await service.process_payment(order.id)

        second = await service.process_payment(order.id)

        assert second == first
        assert len(gateway.calls) == 1
        assert handoffs == [order.id]

    async def test_replayed_capture_with_same_key_records_one_success(self, service, create_order, gateway):
        order = await create_order()
        # A capture for this key already went through, e.g. before a crash.
        await gateway.capture(order.id, order.client_grand_total, "USD", idempotency_key_for(order.id))

        paid = await service.process_payment(order.id)

        assert gateway.successful_captures == 1
        assert paid.payment_intent_id == "pi_0001"

    async def test_decline_recorded_and_order_stays_pending(self, service, create_order, gateway, handoffs):
        gateway.results.append(PaymentResult.failed(PaymentFailureReason.DECLINED, "insufficient funds"))
        order = await create_order()

        failed = await service.process_payment(order.id, "pm_card_declined")

        assert failed.status == MaterialOrderStatus.PENDING_PAYMENT
        assert failed.payment_status == PaymentStatus.FAILED
        assert failed.payment_failure_reason == "declined"
        assert failed.payment_in_flight is False
        assert handoffs == []

    async def test_terminal_failure_requires_new_payment_method(self, service, create_order, gateway):
        gateway.results.append(PaymentResult.failed(PaymentFailureReason.DECLINED))
        order = await create_order()
        await service.process_payment(order.id, "pm_card_declined")

        with pytest.raises(OrderValidationError, match="different payment method"):
            await service.process_payment(order.id, "pm_card_declined")
        with pytest.raises(OrderValidationError):
            await service.process_payment(order.id)

        paid = await service.process_payment(order.id, "pm_card_visa")
        assert paid.status == MaterialOrderStatus.PAID
        assert paid.payment_method_id == "pm_card_visa"

    async def test_retryable_failure_allows_same_method(self, service, create_order, gateway):
        gateway.results.append(PaymentResult.failed(PaymentFailureReason.TIMEOUT))
        order = await create_order()
        await service.process_payment(order.id, "pm_card_visa")

        paid = await service.process_payment(order.id)

        assert paid.status == MaterialOrderStatus.PAID
        assert gateway.calls[-1]["payment_method_id"] == "pm_card_visa"

    async def test_concurrent_attempt_raises_payment_in_flight(self, service, create_order, gateway):
        order = await create_order()
        release = asyncio.Event()
        original_capture = gateway.capture

        async def blocking_capture(*args, **kwargs):
            await release.wait()
            return await original_capture(*args, **kwargs)

        gateway.capture = blocking_capture
        first = asyncio.create_task(service.process_payment(order.id))
        await asyncio.sleep(0.01)

        with pytest.raises(PaymentInFlight):
            await service.process_payment(order.id)

        release.set()
        paid = await first
        assert paid.status == MaterialOrderStatus.PAID
        assert gateway.successful_captures == 1

    async def test_gateway_exception_releases_lock(self, service, create_order, gateway):
        order = await create_order()

        async def exploding_capture(*args, **kwargs):
            raise RuntimeError("bug in gateway")

        gateway.capture = exploding_capture
        with pytest.raises(RuntimeError):
            await service.process_payment(order.id)
        assert (await service.get_order(order.id)).payment_in_flight is False

    async def test_handoff_failure_leaves_order_paid(self, service, create_order):
        def broken_handoff(order_id):
            raise ConnectionError("broker down")

        service.dispatch_handoff = broken_handoff
        order = await create_order()

        paid = await service.process_payment(order.id)
        assert paid.status == MaterialOrderStatus.PAID

    async def test_async_handoff_is_awaited(self, service, create_order):
        seen = []

        async def handoff(order_id):
            seen.append(order_id)

        service.dispatch_handoff = handoff
        order = await create_order()
        await service.process_payment(order.id)
        assert seen == [order.id]

    async def test_cancelled_order_cannot_be_paid(self, service, create_order):
        order = await create_order()
        await service.cancel_order(order.id)
        with pytest.raises(InvalidTransition):
            await service.process_payment(order.id)

    async def test_unknown_order(self, service):
        with pytest.raises(OrderNotFound):
            await service.process_payment("missing")


class TestPaymentLock:
    async def test_other_writers_refused_during_capture(self, service, create_order, gateway, repository):
        order = await create_order()
        release = asyncio.Event()
        original_capture = gateway.capture

        async def blocking_capture(*args, **kwargs):
            await release.wait()
            return await original_capture(*args, **kwargs)

        gateway.capture = blocking_capture
        payment = asyncio.create_task(service.process_payment(order.id))
        await asyncio.sleep(0.01)

        locked = await repository.get(order.id)
        with pytest.raises(PaymentInFlight):
            await repository.update(order.id, {"notes": [*locked.notes, "edit"]}, expected_version=locked.version)

        release.set()
        paid = await payment
        assert paid.status == MaterialOrderStatus.PAID
        assert "edit" not in paid.notes

    async def test_capture_outcome_written_against_fresh_snapshot(self, service, create_order, gateway, repository, handoffs):
        order = await create_order()
        original_capture = gateway.capture

        async def capture_with_concurrent_write(*args, **kwargs):
            current = await repository.get(order.id)
            await repository.update(
                order.id,
                {"payment_in_flight": True, "notes": [*current.notes, "operator note"]},
                expected_version=current.version,
            )
            return await original_capture(*args, **kwargs)

        gateway.capture = capture_with_concurrent_write

        paid = await service.process_payment(order.id)

        assert paid.status == MaterialOrderStatus.PAID
        assert paid.payment_status == PaymentStatus.COMPLETED
        assert paid.payment_in_flight is False
        assert "operator note" in paid.notes
        assert gateway.successful_captures == 1
        assert handoffs == [order.id]

    async def test_failed_capture_written_against_fresh_snapshot(self, service, create_order, gateway, repository):
        gateway.results.append(PaymentResult.failed(PaymentFailureReason.DECLINED))
        order = await create_order()
        original_capture = gateway.capture

        async def capture_with_concurrent_write(*args, **kwargs):
            current = await repository.get(order.id)
            await repository.update(
                order.id, {"payment_in_flight": True, "notes": [*current.notes, "operator note"]},
                expected_version=current.version,
            )
            return await original_capture(*args, **kwargs)

        gateway.capture = capture_with_concurrent_write

        failed = await service.process_payment(order.id, "pm_a")

        assert failed.payment_status == PaymentStatus.FAILED
        assert failed.payment_in_flight is False
        assert failed.notes[-2:] == ["operator note", "Payment failed: declined"]

    async def test_stale_lock_is_released_and_capture_replayed(self, service, create_order, gateway, repository, handoffs):
        order = await create_order()
        # The processor took the money but the worker died before recording it.
        first = await gateway.capture(order.id, order.client_grand_total, "USD", idempotency_key_for(order.id))
        await repository.update(order.id, {"payment_in_flight": True}, expected_version=order.version)

        settled = await service.reconcile_stale_payment(order.id, datetime.now(timezone.utc) + timedelta(seconds=1))

        assert settled.status == MaterialOrderStatus.PAID
        assert settled.payment_intent_id == first.transaction_id
        assert settled.payment_in_flight is False
        assert "Stale payment lock released" in settled.notes
        assert gateway.successful_captures == 1
        assert handoffs == [order.id]

    async def test_recent_lock_is_left_alone(self, service, create_order, gateway, repository):
        order = await create_order()
        locked = await repository.update(order.id, {"payment_in_flight": True}, expected_version=order.version)

        result = await service.reconcile_stale_payment(order.id, datetime.now(timezone.utc) - timedelta(minutes=5))

        assert result.version == locked.version
        assert result.payment_in_flight is True
        assert gateway.calls == []

    async def test_new_attempt_clears_previous_failure(self, service, create_order, gateway, repository):
        gateway.results.append(PaymentResult.failed(PaymentFailureReason.DECLINED))
        order = await create_order()
        await service.process_payment(order.id, "pm_a")
        seen = []
        original_capture = gateway.capture

        async def observing_capture(*args, **kwargs):
            seen.append(await repository.get(order.id))
            return await original_capture(*args, **kwargs)

        gateway.capture = observing_capture
        await service.process_payment(order.id, "pm_b")

        assert seen[0].payment_status == PaymentStatus.PENDING
        assert seen[0].payment_failure_reason is None
        assert seen[0].payment_method_id == "pm_b"


class TestCancelOrder:
    async def test_pending_payment_cancelled_without_refund(self, service, create_order):
        order = await create_order()

        cancelled = await service.cancel_order(order.id, "duplicate estimate")

        assert cancelled.status == MaterialOrderStatus.CANCELLED
        assert cancelled.refund_amount_due is None
        assert cancelled.cancelled_at is not None
        assert all(po.status == PurchaseOrderStatus.CANCELLED for po in cancelled.purchase_orders)
        assert "Order cancelled: duplicate estimate" in cancelled.notes

    async def test_refused_while_capture_in_flight(self, service, create_order, repository):
        order = await create_order()
        await repository.update(order.id, {"payment_in_flight": True}, expected_version=order.version)
        with pytest.raises(PaymentInFlight):
            await service.cancel_order(order.id)

    async def test_paid_order_refunds_everything(self, service, paid_order):
        order = await paid_order()

        cancelled = await service.cancel_order(order.id)

        assert cancelled.status == MaterialOrderStatus.CANCELLED
        assert cancelled.payment_status == PaymentStatus.COMPLETED
        assert cancelled.refund_amount_due == Decimal("97.20")

    async def test_purchasing_order_is_deferred(self, service, paid_order):
        order = await paid_order()
        order = await service.state_machine.transition(order, MaterialOrderStatus.PURCHASING)

        deferred = await service.cancel_order(order.id)

        assert deferred.status == MaterialOrderStatus.PURCHASING
        assert deferred.cancel_requested is True
        assert (await service.cancel_order(order.id)).version == deferred.version

    async def test_ordered_refund_excludes_committed_purchase_orders(self, service, paid_order, retailers):
        retailers["lowes"].fail_with = "store closed"
        order = await service.dispatcher.dispatch((await paid_order()).id)

        cancelled = await service.cancel_order(order.id)
        statuses = {po.retailer: po.status for po in cancelled.purchase_orders}

        assert cancelled.refund_amount_due == Decimal("54.70")
        assert statuses == {"homedepot": PurchaseOrderStatus.SUBMITTED, "lowes": PurchaseOrderStatus.CANCELLED}

    async def test_refund_never_negative(self, service, paid_order):
        order = await service.dispatcher.dispatch((await paid_order()).id)
        cancelled = await service.cancel_order(order.id)
        # 97.20 paid, 76.50 committed
        assert cancelled.refund_amount_due == Decimal("20.70")
        assert cancelled.refund_amount_due >= 0

    async def test_terminal_order_rejected(self, service, create_order):
        order = await create_order()
        await service.cancel_order(order.id)
        with pytest.raises(InvalidTransition):
            await service.cancel_order(order.id)


class TestShippingAndDelivery:
    async def test_full_lifecycle(self, service, paid_order):
        order = await service.dispatcher.dispatch((await paid_order()).id)

        shipped = await service.mark_shipped(order.id)
        delivered = await service.mark_delivered(order.id, date(2026, 11, 2))

        assert shipped.status == MaterialOrderStatus.SHIPPED
        assert delivered.status == MaterialOrderStatus.DELIVERED
        assert delivered.actual_delivery_date == date(2026, 11, 2)
        assert delivered.is_terminal

    async def test_ship_requires_a_placed_purchase_order(self, service, paid_order, retailers):
        for retailer in retailers.values():
            retailer.fail_with = "down"
        order = await service.dispatcher.dispatch((await paid_order()).id)

        with pytest.raises(InvalidTransition, match="no purchase order was placed"):
            await service.mark_shipped(order.id)

    async def test_deliver_before_ship_rejected(self, service, paid_order):
        order = await service.dispatcher.dispatch((await paid_order()).id)
        with pytest.raises(InvalidTransition):
            await service.mark_delivered(order.id)

    async def test_delivered_order_cannot_be_cancelled(self, service, paid_order):
        order = await service.dispatcher.dispatch((await paid_order()).id)
        await service.mark_shipped(order.id)
        await service.mark_delivered(order.id)
        with pytest.raises(InvalidTransition):
            await service.cancel_order(order.id)


class TestPurchaseOrderStatus:
    async def test_confirmation_and_shipping_updates(self, service, paid_order):
        order = await service.dispatcher.dispatch((await paid_order()).id)
        po = order.purchase_orders[0]

        order = await service.update_purchase_order_status(order.id, po.id, PurchaseOrderStatus.CONFIRMED)
        order = await service.update_purchase_order_status(
            order.id, po.id, PurchaseOrderStatus.SHIPPED, tracking_number="1Z999"
        )
        order = await service.update_purchase_order_status(
            order.id, po.id, PurchaseOrderStatus.DELIVERED, actual_delivery=date(2026, 10, 30)
        )
        updated = order.purchase_order(po.id)

        assert updated.status == PurchaseOrderStatus.DELIVERED
        assert updated.tracking_number == "1Z999"
        assert updated.actual_delivery == date(2026, 10, 30)
        assert order.purchase_orders[1].status == PurchaseOrderStatus.SUBMITTED

    async def test_cancelling_placed_purchase_order_adjusts_actual_savings(self, service, paid_order):
        order = await service.dispatcher.dispatch((await paid_order()).id)
        lowes = next(po for po in order.purchase_orders if po.retailer == "lowes")

        order = await service.update_purchase_order_status(order.id, lowes.id, PurchaseOrderStatus.CANCELLED)

        assert order.actual_savings == Decimal("11.50")

    async def test_unpaid_order_purchase_orders_cannot_change(self, service, create_order, gateway):
        order = await create_order()
        lowes = next(po for po in order.purchase_orders if po.retailer == "lowes")

        with pytest.raises(InvalidTransition):
            await service.update_purchase_order_status(order.id, lowes.id, PurchaseOrderStatus.CANCELLED)

        paid = await service.process_payment(order.id)
        assert paid.purchase_order(lowes.id).status == PurchaseOrderStatus.DRAFT
        assert gateway.calls[0]["amount"] == Decimal("97.20")

    async def test_paid_order_awaiting_dispatch_rejected(self, service, paid_order):
        order = await paid_order()
        with pytest.raises(InvalidTransition):
            await service.update_purchase_order_status(order.id, order.purchase_orders[0].id, PurchaseOrderStatus.CANCELLED)

    async def test_cancelled_order_rejected(self, service, paid_order):
        order = await service.dispatcher.dispatch((await paid_order()).id)
        await service.cancel_order(order.id)
        with pytest.raises(InvalidTransition):
            await service.update_purchase_order_status(order.id, order.purchase_orders[0].id, PurchaseOrderStatus.CONFIRMED)

    async def test_illegal_purchase_order_transition(self, service, paid_order):
        order = await service.dispatcher.dispatch((await paid_order()).id)
        po = order.purchase_orders[0]
        with pytest.raises(InvalidTransition):
            await service.update_purchase_order_status(order.id, po.id, PurchaseOrderStatus.DELIVERED)

    async def test_submitted_only_through_dispatch(self, service, paid_order, retailers):
        retailers["lowes"].fail_with = "down"
        order = await service.dispatcher.dispatch((await paid_order()).id)
        lowes = next(po for po in order.purchase_orders if po.retailer == "lowes")
        with pytest.raises(OrderValidationError):
            await service.update_purchase_order_status(order.id, lowes.id, PurchaseOrderStatus.SUBMITTED)

    async def test_unknown_purchase_order(self, service, paid_order):
        order = await service.dispatcher.dispatch((await paid_order()).id)
        with pytest.raises(OrderValidationError):
            await service.update_purchase_order_status(order.id, "nope", PurchaseOrderStatus.CONFIRMED)

    async def test_resubmit_delegates_to_dispatcher(self, service, paid_order, retailers):
        retailers["lowes"].fail_with = "down"
        order = await service.dispatcher.dispatch((await paid_order()).id)
        lowes = next(po for po in order.purchase_orders if po.retailer == "lowes")
        retailers["lowes"].fail_with = None

        order = await service.resubmit_purchase_order(order.id, lowes.id)

        assert order.purchase_order(lowes.id).status == PurchaseOrderStatus.SUBMITTED


class TestRecordRefund:
    async def test_marks_refund_executed(self, service, paid_order):
        order = await paid_order()
        await service.cancel_order(order.id)

        refunded = await service.record_refund(order.id, "re_123")

        assert refunded.payment_status == PaymentStatus.REFUNDED
        assert refunded.refund_amount_due == Decimal("0")
        assert refunded.notes[-1] == "Refund of $97.20 executed: re_123"
        assert (await service.record_refund(order.id, "re_123")).version == refunded.version

    async def test_requires_outstanding_refund(self, service, create_order, paid_order):
        unpaid = await create_order()
        await service.cancel_order(unpaid.id)
        with pytest.raises(OrderValidationError):
            await service.record_refund(unpaid.id, "re_1")

        active = await paid_order()
        with pytest.raises(OrderValidationError):
            await service.record_refund(active.id, "re_2")
