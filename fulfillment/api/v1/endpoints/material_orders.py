"""Fulfillment — Material order endpoints."""
from fastapi import APIRouter, HTTPException, status
from fastapi.responses import JSONResponse

from fulfillment.api.deps import OrderService
from fulfillment.core.exceptions import (
    FulfillmentError,
    InvalidTransition,
    OrderNotFound,
    PaymentInFlight,
    VersionConflict,
)
from fulfillment.models.material_order import PaymentStatus
from fulfillment.schemas.common import ApiResponse
from fulfillment.schemas.material_order import (
    CancelRequest,
    DeliveryConfirmation,
    MaterialOrder,
    MaterialOrderCreate,
    PaymentRequest,
    PurchaseOrderStatusUpdate,
    RefundRecord,
)

router = APIRouter()


def _http_error(exc: FulfillmentError) -> HTTPException:
    if isinstance(exc, OrderNotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, (InvalidTransition, VersionConflict, PaymentInFlight)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


@router.post("", response_model=ApiResponse[MaterialOrder], status_code=status.HTTP_201_CREATED)
async def create_material_order(body: MaterialOrderCreate, service: OrderService):
    """Price an estimate's materials and open a material order awaiting payment."""
    try:
        order = await service.create_material_order(
            estimate_id=body.estimate_id,
            project_id=body.project_id,
            business_id=body.business_id,
            items=body.line_items(),
            delivery_address=body.delivery_address,
            tax_rate=body.tax_rate,
            requested_delivery_date=body.requested_delivery_date,
        )
    except FulfillmentError as e:
        raise _http_error(e)
    return ApiResponse(data=order)


@router.get("/{order_id}", response_model=ApiResponse[MaterialOrder])
async def get_material_order(order_id: str, service: OrderService):
    try:
        order = await service.get_order(order_id)
    except FulfillmentError as e:
        raise _http_error(e)
    return ApiResponse(data=order)


@router.post("/{order_id}/payment", response_model=ApiResponse[MaterialOrder])
async def pay_material_order(order_id: str, body: PaymentRequest, service: OrderService):
    """Capture payment. A declined or failed capture answers 402 with the order."""
    try:
        order = await service.process_payment(order_id, body.payment_method_id)
    except FulfillmentError as e:
        raise _http_error(e)
    if order.payment_status == PaymentStatus.FAILED:
        envelope = ApiResponse[MaterialOrder](data=order, error=f"Payment failed: {order.payment_failure_reason}")
        return JSONResponse(status_code=status.HTTP_402_PAYMENT_REQUIRED, content=envelope.model_dump(mode="json"))
    return ApiResponse(data=order)


@router.post("/{order_id}/cancel", response_model=ApiResponse[MaterialOrder])
async def cancel_material_order(order_id: str, body: CancelRequest, service: OrderService):
    try:
        order = await service.cancel_order(order_id, body.reason)
    except FulfillmentError as e:
        raise _http_error(e)
    return ApiResponse(data=order)


@router.post("/{order_id}/ship", response_model=ApiResponse[MaterialOrder])
async def mark_material_order_shipped(order_id: str, service: OrderService):
    try:
        order = await service.mark_shipped(order_id)
    except FulfillmentError as e:
        raise _http_error(e)
    return ApiResponse(data=order)


@router.post("/{order_id}/deliver", response_model=ApiResponse[MaterialOrder])
async def mark_material_order_delivered(order_id: str, body: DeliveryConfirmation, service: OrderService):
    try:
        order = await service.mark_delivered(order_id, body.actual_delivery_date)
    except FulfillmentError as e:
        raise _http_error(e)
    return ApiResponse(data=order)


@router.post("/{order_id}/purchase-orders/{purchase_order_id}/resubmit", response_model=ApiResponse[MaterialOrder])
async def resubmit_purchase_order(order_id: str, purchase_order_id: str, service: OrderService):
    """Retry a sub-order that failed at dispatch."""
    try:
        order = await service.resubmit_purchase_order(order_id, purchase_order_id)
    except FulfillmentError as e:
        raise _http_error(e)
    return ApiResponse(data=order)


@router.post("/{order_id}/purchase-orders/{purchase_order_id}/status", response_model=ApiResponse[MaterialOrder])
async def update_purchase_order_status(
    order_id: str,
    purchase_order_id: str,
    body: PurchaseOrderStatusUpdate,
    service: OrderService,
):
    """Retailer confirmation / shipping / delivery callback for one sub-order."""
    try:
        order = await service.update_purchase_order_status(
            order_id,
            purchase_order_id,
            body.status,
            tracking_number=body.tracking_number,
            actual_delivery=body.actual_delivery,
        )
    except FulfillmentError as e:
        raise _http_error(e)
    return ApiResponse(data=order)


@router.post("/{order_id}/refund", response_model=ApiResponse[MaterialOrder])
async def record_material_order_refund(order_id: str, body: RefundRecord, service: OrderService):
    try:
        order = await service.record_refund(order_id, body.transaction_id)
    except FulfillmentError as e:
        raise _http_error(e)
    return ApiResponse(data=order)
