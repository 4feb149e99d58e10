"""Fulfillment — Typed records for material orders, plus API request bodies."""
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from fulfillment.models.material_order import MaterialOrderStatus, PaymentStatus, PurchaseOrderStatus

# Purchase-order states that only exist after a retailer accepted the order.
PLACED_PURCHASE_ORDER_STATUSES = frozenset({
    PurchaseOrderStatus.SUBMITTED,
    PurchaseOrderStatus.CONFIRMED,
    PurchaseOrderStatus.SHIPPED,
    PurchaseOrderStatus.DELIVERED,
})

# Order states reachable only through a completed capture.
PAID_ORDER_STATUSES = frozenset({
    MaterialOrderStatus.PAID,
    MaterialOrderStatus.PURCHASING,
    MaterialOrderStatus.ORDERED,
    MaterialOrderStatus.SHIPPED,
    MaterialOrderStatus.DELIVERED,
})

TERMINAL_ORDER_STATUSES = frozenset({MaterialOrderStatus.DELIVERED, MaterialOrderStatus.CANCELLED})


def new_id() -> str:
    return str(uuid.uuid4())


class _Record(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    def evolve(self, **changes: Any):
        """Copy with changes, re-running validation (model_copy skips it)."""
        return type(self).model_validate({**self.model_dump(), **changes})


class Product(_Record):
    id: str
    name: str
    price: Decimal
    retailer: str
    sku: str | None = None
    product_url: str | None = None


class LineItem(_Record):
    product: Product
    quantity: int


class SavingsBreakdown(_Record):
    tax_savings: Decimal
    discount_savings: Decimal


class PricingSummary(_Record):
    client_total: Decimal
    client_tax_amount: Decimal
    client_grand_total: Decimal
    purchase_cost: Decimal
    estimated_savings: Decimal
    savings_breakdown: SavingsBreakdown


class OrderItem(_Record):
    product: Product
    quantity: int

    # Client-facing price
    client_unit_price: Decimal
    client_total: Decimal

    # Actual purchase price
    purchase_unit_price: Decimal
    purchase_total: Decimal

    # Savings breakdown
    tax_savings: Decimal
    discount_savings: Decimal
    total_savings: Decimal


class PurchaseOrder(_Record):
    id: str = Field(default_factory=new_id)
    retailer: str
    items: list[OrderItem]

    subtotal: Decimal
    tax_amount: Decimal = Decimal("0.00")
    discount_amount: Decimal
    total: Decimal

    status: PurchaseOrderStatus = PurchaseOrderStatus.DRAFT
    tax_exempt_cert_number: str
    pro_account_number: str | None = None

    order_number: str | None = None
    tracking_number: str | None = None
    last_error: str | None = None
    submitted_at: datetime | None = None
    estimated_delivery: date | None = None
    actual_delivery: date | None = None

    @model_validator(mode="after")
    def _placed_orders_have_order_number(self) -> "PurchaseOrder":
        if self.status in PLACED_PURCHASE_ORDER_STATUSES and not self.order_number:
            raise ValueError(f"purchase order in status {self.status.value} requires an order_number")
        return self

    @property
    def is_placed(self) -> bool:
        return self.status in PLACED_PURCHASE_ORDER_STATUSES


class MaterialOrder(_Record):
    id: str = Field(default_factory=new_id)
    estimate_id: str
    project_id: str
    business_id: str | None = None
    status: MaterialOrderStatus = MaterialOrderStatus.PENDING_PAYMENT
    version: int = 1

    tax_rate: Decimal
    currency: str = "USD"
    client_total: Decimal
    client_tax_amount: Decimal
    client_grand_total: Decimal

    purchase_cost: Decimal
    estimated_savings: Decimal
    actual_savings: Decimal | None = None

    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_in_flight: bool = False
    payment_intent_id: str | None = None
    payment_method_id: str | None = None
    payment_failure_reason: str | None = None
    paid_at: datetime | None = None

    cancel_requested: bool = False
    refund_amount_due: Decimal | None = None
    cancelled_at: datetime | None = None

    purchase_orders: list[PurchaseOrder]
    delivery_address: str
    requested_delivery_date: date | None = None
    actual_delivery_date: date | None = None

    notes: list[str] = Field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @model_validator(mode="after")
    def _status_is_consistent(self) -> "MaterialOrder":
        if self.status in PAID_ORDER_STATUSES and self.payment_status != PaymentStatus.COMPLETED:
            raise ValueError(f"order in status {self.status.value} requires a completed payment")
        if self.status in (MaterialOrderStatus.SHIPPED, MaterialOrderStatus.DELIVERED) and not any(
            po.order_number for po in self.purchase_orders
        ):
            raise ValueError(f"order in status {self.status.value} has no placed purchase order")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ORDER_STATUSES

    @property
    def unplaced_purchase_orders(self) -> list[PurchaseOrder]:
        """Draft sub-orders; after dispatch these need manual follow-up or a resubmit."""
        return [po for po in self.purchase_orders if po.status == PurchaseOrderStatus.DRAFT]

    @property
    def is_partially_ordered(self) -> bool:
        return self.status == MaterialOrderStatus.ORDERED and bool(self.unplaced_purchase_orders)

    def purchase_order(self, purchase_order_id: str) -> PurchaseOrder | None:
        return next((po for po in self.purchase_orders if po.id == purchase_order_id), None)


# ── API request bodies ───────────────────────────────────────────────────────

class ProductIn(BaseModel):
    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=255)
    price: Decimal = Field(..., ge=0)
    retailer: str = Field(..., min_length=1, max_length=50)
    sku: str | None = None
    product_url: str | None = None


class LineItemIn(BaseModel):
    product: ProductIn
    quantity: int = Field(..., gt=0)


class MaterialOrderCreate(BaseModel):
    estimate_id: str = Field(..., min_length=1)
    project_id: str = Field(..., min_length=1)
    business_id: str | None = None
    items: list[LineItemIn] = Field(..., min_length=1)
    delivery_address: str = Field(..., min_length=1)
    tax_rate: Decimal = Field(..., ge=0)
    requested_delivery_date: date | None = None

    def line_items(self) -> list[LineItem]:
        return [LineItem.model_validate(item.model_dump()) for item in self.items]


class PaymentRequest(BaseModel):
    payment_method_id: str | None = None


class CancelRequest(BaseModel):
    reason: str | None = Field(None, max_length=500)


class DeliveryConfirmation(BaseModel):
    actual_delivery_date: date | None = None


class PurchaseOrderStatusUpdate(BaseModel):
    status: PurchaseOrderStatus
    tracking_number: str | None = None
    actual_delivery: date | None = None


class RefundRecord(BaseModel):
    transaction_id: str = Field(..., min_length=1)
