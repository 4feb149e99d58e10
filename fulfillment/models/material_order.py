"""Fulfillment — MaterialOrder, PurchaseOrder and OrderItem models."""
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum

from sqlalchemy import JSON, Boolean, CheckConstraint, Date, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fulfillment.db.base import Base


class MaterialOrderStatus(str, Enum):
    PENDING_PAYMENT = "pending-payment"
    PAID = "paid"
    PURCHASING = "purchasing"
    ORDERED = "ordered"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PurchaseOrderStatus(str, Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MaterialOrder(Base):
    """One client's paid procurement request, spanning one or more retailers."""

    __tablename__ = "material_orders"
    __table_args__ = (
        CheckConstraint("client_grand_total >= purchase_cost", name="ck_material_orders_margin"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    estimate_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    project_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    business_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=MaterialOrderStatus.PENDING_PAYMENT.value, index=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Client-facing pricing (retail + tax)
    tax_rate: Mapped[Decimal] = mapped_column(Numeric(8, 6), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    client_total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    client_tax_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    client_grand_total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    # Purchase side (tax-exempt + contractor discount)
    purchase_cost: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    estimated_savings: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    actual_savings: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)

    # Payment
    payment_status: Mapped[str] = mapped_column(String(20), nullable=False, default=PaymentStatus.PENDING.value)
    payment_in_flight: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payment_method_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payment_failure_reason: Mapped[str | None] = mapped_column(String(50), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Cancellation / refund obligation
    cancel_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    refund_amount_due: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Delivery
    delivery_address: Mapped[str] = mapped_column(Text, nullable=False)
    requested_delivery_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    actual_delivery_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    notes: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)

    purchase_orders: Mapped[list["PurchaseOrder"]] = relationship(
        "PurchaseOrder",
        back_populates="material_order",
        cascade="all, delete-orphan",
        order_by="PurchaseOrder.position",
        lazy="selectin",
    )


class PurchaseOrder(Base):
    """Retailer-scoped sub-order within a MaterialOrder."""

    __tablename__ = "purchase_orders"
    __table_args__ = (
        CheckConstraint(
            "status IN ('draft', 'cancelled') OR order_number IS NOT NULL",
            name="ck_purchase_orders_order_number",
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    material_order_id: Mapped[str] = mapped_column(String(36), ForeignKey("material_orders.id", ondelete="CASCADE"), nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    retailer: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=PurchaseOrderStatus.DRAFT.value)

    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    tax_exempt_cert_number: Mapped[str] = mapped_column(String(100), nullable=False)
    pro_account_number: Mapped[str | None] = mapped_column(String(100), nullable=True)

    order_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    tracking_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    estimated_delivery: Mapped[date | None] = mapped_column(Date, nullable=True)
    actual_delivery: Mapped[date | None] = mapped_column(Date, nullable=True)

    material_order: Mapped["MaterialOrder"] = relationship("MaterialOrder", back_populates="purchase_orders")
    items: Mapped[list["OrderItem"]] = relationship(
        "OrderItem",
        back_populates="purchase_order",
        cascade="all, delete-orphan",
        order_by="OrderItem.position",
        lazy="selectin",
    )


class OrderItem(Base):
    """A single line on a PurchaseOrder. Immutable once written."""

    __tablename__ = "order_items"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    purchase_order_id: Mapped[str] = mapped_column(String(36), ForeignKey("purchase_orders.id", ondelete="CASCADE"), nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    product_id: Mapped[str] = mapped_column(String(100), nullable=False)
    product_name: Mapped[str] = mapped_column(String(255), nullable=False)
    sku: Mapped[str | None] = mapped_column(String(100), nullable=True)
    product_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)

    client_unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    client_total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    purchase_unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    purchase_total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    tax_savings: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    discount_savings: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    total_savings: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    purchase_order: Mapped["PurchaseOrder"] = relationship("PurchaseOrder", back_populates="items")
