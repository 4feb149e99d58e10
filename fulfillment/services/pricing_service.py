"""Fulfillment — PricingCalculator: client-facing vs. actual purchase pricing.

The client pays retail price plus sales tax. Purchases go out tax-exempt and at
the contractor discount, and the difference is retained as savings.
"""
from decimal import Decimal
from typing import Mapping, Sequence

from fulfillment.core.exceptions import OrderValidationError
from fulfillment.core.money import ZERO, to_cents, to_decimal, to_unit_price
from fulfillment.schemas.material_order import LineItem, OrderItem, PricingSummary, SavingsBreakdown

DEFAULT_CONTRACTOR_DISCOUNT = Decimal("0.15")


def _check_rate(rate: Decimal, name: str) -> Decimal:
    rate = to_decimal(rate)
    if not Decimal("0") <= rate <= Decimal("1"):
        raise OrderValidationError(f"{name} must be between 0 and 1, got {rate}")
    return rate


def _check_tax_rate(tax_rate: Decimal) -> Decimal:
    tax_rate = to_decimal(tax_rate)
    if tax_rate < 0:
        raise OrderValidationError(f"tax_rate cannot be negative, got {tax_rate}")
    return tax_rate


def _check_item(item: LineItem) -> None:
    if not isinstance(item.quantity, int) or item.quantity <= 0:
        raise OrderValidationError(f"Quantity for {item.product.id} must be a positive integer")
    if item.product.price < 0:
        raise OrderValidationError(f"Price for {item.product.id} cannot be negative")
    if not item.product.retailer:
        raise OrderValidationError(f"Product {item.product.id} has no retailer")


class PricingCalculator:
    """Pure, deterministic pricing. Rounds to cents only on output."""

    def __init__(self, default_discount_rate: Decimal = DEFAULT_CONTRACTOR_DISCOUNT) -> None:
        self.default_discount_rate = _check_rate(default_discount_rate, "default_discount_rate")

    def rate_for(
        self,
        retailer: str,
        discount_rate: Decimal | None = None,
        retailer_rates: Mapping[str, Decimal] | None = None,
    ) -> Decimal:
        if retailer_rates and retailer in retailer_rates:
            return _check_rate(retailer_rates[retailer], f"discount rate for {retailer}")
        if discount_rate is not None:
            return _check_rate(discount_rate, "discount_rate")
        return self.default_discount_rate

    def calculate(
        self,
        items: Sequence[LineItem],
        tax_rate: Decimal,
        discount_rate: Decimal | None = None,
        retailer_rates: Mapping[str, Decimal] | None = None,
    ) -> PricingSummary:
        if not items:
            raise OrderValidationError("Material order must contain at least one item")
        tax_rate = _check_tax_rate(tax_rate)

        client_total = ZERO
        purchase_cost = ZERO
        for item in items:
            _check_item(item)
            rate = self.rate_for(item.product.retailer, discount_rate, retailer_rates)
            retail = item.product.price * item.quantity
            client_total += retail
            purchase_cost += retail * (1 - rate)

        discount_savings = client_total - purchase_cost
        # Nonprofit purchases are tax-exempt, so the whole client tax is retained.
        client_tax_amount = client_total * tax_rate
        tax_savings = client_tax_amount

        return PricingSummary(
            client_total=to_cents(client_total),
            client_tax_amount=to_cents(client_tax_amount),
            client_grand_total=to_cents(client_total + client_tax_amount),
            purchase_cost=to_cents(purchase_cost),
            estimated_savings=to_cents(tax_savings + discount_savings),
            savings_breakdown=SavingsBreakdown(
                tax_savings=to_cents(tax_savings),
                discount_savings=to_cents(discount_savings),
            ),
        )

    def price_item(self, item: LineItem, tax_rate: Decimal, discount_rate: Decimal) -> OrderItem:
        """Price one line at a known rate."""
        _check_item(item)
        tax_rate = _check_tax_rate(tax_rate)
        discount_rate = _check_rate(discount_rate, "discount_rate")

        client_total = item.product.price * item.quantity
        purchase_unit_price = item.product.price * (1 - discount_rate)
        purchase_total = purchase_unit_price * item.quantity
        tax_savings = client_total * tax_rate
        discount_savings = client_total - purchase_total

        return OrderItem(
            product=item.product,
            quantity=item.quantity,
            client_unit_price=to_unit_price(item.product.price),
            client_total=to_cents(client_total),
            purchase_unit_price=to_unit_price(purchase_unit_price),
            purchase_total=to_cents(purchase_total),
            tax_savings=to_cents(tax_savings),
            discount_savings=to_cents(discount_savings),
            total_savings=to_cents(tax_savings + discount_savings),
        )
