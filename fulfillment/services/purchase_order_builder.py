"""Fulfillment — Split priced line items into one draft purchase order per retailer."""
from decimal import Decimal
from typing import Sequence

from fulfillment.core.exceptions import OrderValidationError
from fulfillment.core.money import ZERO, to_cents
from fulfillment.models.material_order import PurchaseOrderStatus
from fulfillment.schemas.material_order import LineItem, PurchaseOrder
from fulfillment.services.pricing_service import PricingCalculator
from fulfillment.services.retailers import RetailerRegistry


class PurchaseOrderBuilder:
    def __init__(self, registry: RetailerRegistry, calculator: PricingCalculator | None = None) -> None:
        self.registry = registry
        self.calculator = calculator or PricingCalculator()

    def build(self, items: Sequence[LineItem], tax_rate: Decimal) -> list[PurchaseOrder]:
        """One draft PurchaseOrder per retailer, in order of first appearance.

        Purchases are tax-exempt, so ``tax_amount`` is always zero; the client tax
        on each line is carried as that line's ``tax_savings``.
        """
        if not items:
            raise OrderValidationError("Material order must contain at least one item")

        by_retailer: dict[str, list[LineItem]] = {}
        for item in items:
            by_retailer.setdefault(item.product.retailer, []).append(item)

        purchase_orders = []
        for retailer, retailer_items in by_retailer.items():
            capability = self.registry.get(retailer)
            if capability.requires_tax_exempt and not self.registry.tax_exempt_certificate:
                raise OrderValidationError(
                    f"{retailer} requires a tax-exempt certificate and none is configured"
                )

            order_items = [
                self.calculator.price_item(item, tax_rate, capability.discount_rate)
                for item in retailer_items
            ]
            subtotal = sum((i.purchase_total for i in order_items), ZERO)
            discount_amount = sum((i.discount_savings for i in order_items), ZERO)
            tax_amount = to_cents(ZERO)

            purchase_orders.append(PurchaseOrder(
                retailer=retailer,
                items=order_items,
                subtotal=to_cents(subtotal),
                tax_amount=tax_amount,
                discount_amount=to_cents(discount_amount),
                total=to_cents(subtotal + tax_amount),
                status=PurchaseOrderStatus.DRAFT,
                tax_exempt_cert_number=self.registry.tax_exempt_certificate,
                pro_account_number=capability.pro_account,
            ))
        return purchase_orders
