"""Fulfillment — SQLAlchemy models."""
from fulfillment.models.material_order import (
    MaterialOrder,
    MaterialOrderStatus,
    OrderItem,
    PaymentStatus,
    PurchaseOrder,
    PurchaseOrderStatus,
)

__all__ = [
    "MaterialOrder", "MaterialOrderStatus",
    "PurchaseOrder", "PurchaseOrderStatus",
    "OrderItem",
    "PaymentStatus",
]
