"""Fulfillment — Error taxonomy.

Validation and concurrency errors propagate to the caller. Payment and retailer
failures are recorded on the order itself and only surface here when a caller
talks to a collaborator directly.
"""


class FulfillmentError(Exception):
    """Base class for all fulfillment errors."""


class OrderValidationError(FulfillmentError, ValueError):
    """Rejected input: empty items, non-positive amounts, unknown retailer, immutable field."""


class PricingIntegrityError(OrderValidationError):
    """client_grand_total < purchase_cost, usually a misconfigured discount or tax model."""


class InvalidTransition(FulfillmentError, ValueError):
    def __init__(self, current: str, target: str, reason: str | None = None) -> None:
        self.current = current
        self.target = target
        message = f"Cannot transition from {current} to {target}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class VersionConflict(FulfillmentError):
    """Stale write; reload the order and retry. Not a business failure."""

    def __init__(self, order_id: str, expected_version: int, actual_version: int | None = None) -> None:
        self.order_id = order_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Material order {order_id} changed concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )


class OrderNotFound(FulfillmentError, LookupError):
    def __init__(self, order_id: str) -> None:
        self.order_id = order_id
        super().__init__(f"Material order {order_id} not found")


class PaymentInFlight(FulfillmentError):
    """A capture for this order is already in progress."""


class RetailerSubmissionError(FulfillmentError):
    """Raised by retailer integrations; always retryable at the sub-order level."""

    def __init__(self, retailer: str, reason: str) -> None:
        self.retailer = retailer
        self.reason = reason
        super().__init__(f"{retailer}: {reason}")
