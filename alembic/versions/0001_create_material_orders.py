"""create material_orders, purchase_orders, order_items

Revision ID: 0001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "material_orders",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("estimate_id", sa.String(100), nullable=False),
        sa.Column("project_id", sa.String(100), nullable=False),
        sa.Column("business_id", sa.String(100), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending-payment"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("tax_rate", sa.Numeric(8, 6), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("client_total", sa.Numeric(12, 2), nullable=False),
        sa.Column("client_tax_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("client_grand_total", sa.Numeric(12, 2), nullable=False),
        sa.Column("purchase_cost", sa.Numeric(12, 2), nullable=False),
        sa.Column("estimated_savings", sa.Numeric(12, 2), nullable=False),
        sa.Column("actual_savings", sa.Numeric(12, 2), nullable=True),
        sa.Column("payment_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("payment_in_flight", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("payment_intent_id", sa.String(255), nullable=True),
        sa.Column("payment_method_id", sa.String(255), nullable=True),
        sa.Column("payment_failure_reason", sa.String(50), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_requested", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("refund_amount_due", sa.Numeric(12, 2), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivery_address", sa.Text(), nullable=False),
        sa.Column("requested_delivery_date", sa.Date(), nullable=True),
        sa.Column("actual_delivery_date", sa.Date(), nullable=True),
        sa.Column("notes", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint("client_grand_total >= purchase_cost", name="ck_material_orders_margin"),
    )
    op.create_index("ix_material_orders_estimate_id", "material_orders", ["estimate_id"])
    op.create_index("ix_material_orders_project_id", "material_orders", ["project_id"])
    op.create_index("ix_material_orders_status", "material_orders", ["status"])
    op.create_index("ix_material_orders_updated_at", "material_orders", ["updated_at"])

    op.create_table(
        "purchase_orders",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("material_order_id", sa.String(36), sa.ForeignKey("material_orders.id", ondelete="CASCADE"), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("retailer", sa.String(50), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="draft"),
        sa.Column("subtotal", sa.Numeric(12, 2), nullable=False),
        sa.Column("tax_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("discount_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("total", sa.Numeric(12, 2), nullable=False),
        sa.Column("tax_exempt_cert_number", sa.String(100), nullable=False),
        sa.Column("pro_account_number", sa.String(100), nullable=True),
        sa.Column("order_number", sa.String(100), nullable=True),
        sa.Column("tracking_number", sa.String(100), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("estimated_delivery", sa.Date(), nullable=True),
        sa.Column("actual_delivery", sa.Date(), nullable=True),
        sa.CheckConstraint(
            "status IN ('draft', 'cancelled') OR order_number IS NOT NULL",
            name="ck_purchase_orders_order_number",
        ),
    )
    op.create_index("ix_purchase_orders_material_order_id", "purchase_orders", ["material_order_id"])

    op.create_table(
        "order_items",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("purchase_order_id", sa.String(36), sa.ForeignKey("purchase_orders.id", ondelete="CASCADE"), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("product_id", sa.String(100), nullable=False),
        sa.Column("product_name", sa.String(255), nullable=False),
        sa.Column("sku", sa.String(100), nullable=True),
        sa.Column("product_url", sa.Text(), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("client_unit_price", sa.Numeric(12, 4), nullable=False),
        sa.Column("client_total", sa.Numeric(12, 2), nullable=False),
        sa.Column("purchase_unit_price", sa.Numeric(12, 4), nullable=False),
        sa.Column("purchase_total", sa.Numeric(12, 2), nullable=False),
        sa.Column("tax_savings", sa.Numeric(12, 2), nullable=False),
        sa.Column("discount_savings", sa.Numeric(12, 2), nullable=False),
        sa.Column("total_savings", sa.Numeric(12, 2), nullable=False),
        sa.CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
    )
    op.create_index("ix_order_items_purchase_order_id", "order_items", ["purchase_order_id"])


def downgrade() -> None:
    op.drop_table("order_items")
    op.drop_table("purchase_orders")
    op.drop_table("material_orders")
