"""Fulfillment — Retailer capability registry and retailer API clients."""
import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Mapping, Protocol

import httpx

from fulfillment.config import Settings
from fulfillment.core.exceptions import OrderValidationError, RetailerSubmissionError
from fulfillment.schemas.material_order import PurchaseOrder

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetailerCapability:
    """What purchasing needs to know about one retailer."""

    id: str
    discount_rate: Decimal
    requires_tax_exempt: bool = True
    pro_account: str | None = None

    def __post_init__(self) -> None:
        if not Decimal("0") <= self.discount_rate <= Decimal("1"):
            raise ValueError(f"discount_rate for {self.id} must be between 0 and 1")


@dataclass(frozen=True)
class RetailerSubmission:
    order_number: str
    tracking_number: str | None = None
    estimated_delivery: date | None = None


class Retailer(Protocol):
    async def submit(
        self,
        purchase_order: PurchaseOrder,
        delivery_address: str,
        tax_exempt_certificate: str,
        pro_account_id: str | None,
        requested_delivery: date | None = None,
    ) -> RetailerSubmission: ...


class RetailerRegistry:
    """Retailer capabilities plus the client used to submit to each retailer."""

    def __init__(
        self,
        capabilities: list[RetailerCapability],
        tax_exempt_certificate: str = "",
        clients: Mapping[str, Retailer] | None = None,
    ) -> None:
        self._capabilities = {c.id: c for c in capabilities}
        self.tax_exempt_certificate = tax_exempt_certificate
        self._clients = clients if clients is not None else {}

    @classmethod
    def from_settings(cls, settings: Settings, clients: Mapping[str, Retailer] | None = None) -> "RetailerRegistry":
        if clients is None:
            clients = {
                retailer: HttpRetailerClient(
                    retailer,
                    base_url=url,
                    api_key=settings.RETAILER_API_KEYS.get(retailer, ""),
                    timeout=settings.RETAILER_SUBMIT_TIMEOUT_SECONDS,
                )
                for retailer, url in settings.RETAILER_API_URLS.items()
            }
        capabilities = [
            RetailerCapability(
                id=retailer,
                discount_rate=Decimal(str(rate)),
                requires_tax_exempt=retailer in settings.TAX_EXEMPT_REQUIRED_RETAILERS,
                pro_account=settings.RETAILER_PRO_ACCOUNTS.get(retailer),
            )
            for retailer, rate in settings.RETAILER_DISCOUNT_RATES.items()
        ]
        return cls(capabilities, settings.TAX_EXEMPT_CERT_NUMBER, clients)

    def __contains__(self, retailer: str) -> bool:
        return retailer in self._capabilities

    def get(self, retailer: str) -> RetailerCapability:
        capability = self._capabilities.get(retailer)
        if capability is None:
            raise OrderValidationError(f"Unknown retailer: {retailer}")
        return capability

    def discount_rates(self) -> dict[str, Decimal]:
        return {c.id: c.discount_rate for c in self._capabilities.values()}

    def client(self, retailer: str) -> Retailer | None:
        """None when no integration is configured; the sub-order then needs manual purchasing."""
        return self._clients.get(retailer)


class HttpRetailerClient:
    """Submits purchase orders to a retailer's pro-desk ordering API."""

    def __init__(self, retailer: str, base_url: str, api_key: str = "", timeout: float = 30.0, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.retailer = retailer
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    async def submit(
        self,
        purchase_order: PurchaseOrder,
        delivery_address: str,
        tax_exempt_certificate: str,
        pro_account_id: str | None,
        requested_delivery: date | None = None,
    ) -> RetailerSubmission:
        payload = {
            "reference": purchase_order.id,
            "account": pro_account_id,
            "taxExemptCert": tax_exempt_certificate,
            "deliveryAddress": delivery_address,
            "requestedDelivery": requested_delivery.isoformat() if requested_delivery else None,
            "items": [
                {"sku": item.product.sku or item.product.id, "quantity": item.quantity}
                for item in purchase_order.items
            ],
        }
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

        try:
            async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport) as client:
                response = await client.post("/orders", json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise RetailerSubmissionError(self.retailer, "timeout") from exc
        except httpx.RequestError as exc:
            raise RetailerSubmissionError(self.retailer, f"network error: {exc}") from exc

        if not 200 <= response.status_code < 300:
            logger.warning(f"{self.retailer} rejected purchase order {purchase_order.id}: HTTP {response.status_code}")
            raise RetailerSubmissionError(self.retailer, f"HTTP {response.status_code}: {response.text[:200]}")

        body = response.json()
        order_number = body.get("orderNumber")
        if not order_number:
            raise RetailerSubmissionError(self.retailer, "response did not include an order number")
        estimated = body.get("estimatedDelivery")
        return RetailerSubmission(
            order_number=order_number,
            tracking_number=body.get("trackingNumber"),
            estimated_delivery=date.fromisoformat(estimated) if estimated else None,
        )
