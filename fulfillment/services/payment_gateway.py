"""Fulfillment — Payment capture boundary.

Captures are idempotent: the key is derived from the order id, so replaying a
capture for the same order can never charge the client twice.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Protocol

import httpx

from fulfillment.core.money import to_minor_units

logger = logging.getLogger(__name__)


class PaymentFailureReason(str, Enum):
    DECLINED = "declined"
    INVALID_INSTRUMENT = "invalid_instrument"
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"

    @property
    def is_retryable(self) -> bool:
        return self in (PaymentFailureReason.NETWORK_ERROR, PaymentFailureReason.TIMEOUT)


@dataclass(frozen=True)
class PaymentResult:
    success: bool
    transaction_id: str | None = None
    failure_reason: PaymentFailureReason | None = None
    message: str | None = None

    @classmethod
    def succeeded(cls, transaction_id: str) -> "PaymentResult":
        return cls(success=True, transaction_id=transaction_id)

    @classmethod
    def failed(cls, reason: PaymentFailureReason, message: str | None = None) -> "PaymentResult":
        return cls(success=False, failure_reason=reason, message=message)


def idempotency_key_for(order_id: str) -> str:
    return f"material-order:{order_id}"


class PaymentGateway(Protocol):
    async def capture(
        self,
        order_id: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        payment_method_id: str | None = None,
    ) -> PaymentResult: ...


class HttpPaymentGateway:
    """Stripe-style payment intents API: create and confirm in one call."""

    def __init__(self, base_url: str, api_key: str, timeout: float = 20.0, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    async def capture(
        self,
        order_id: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        payment_method_id: str | None = None,
    ) -> PaymentResult:
        data = {
            "amount": str(to_minor_units(amount)),
            "currency": currency.lower(),
            "confirm": "true",
            "metadata[material_order_id]": order_id,
        }
        if payment_method_id:
            data["payment_method"] = payment_method_id
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Idempotency-Key": idempotency_key,
        }

        try:
            async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport) as client:
                response = await client.post("/payment_intents", data=data, headers=headers)
        except httpx.TimeoutException as exc:
            logger.warning("Payment capture for %s timed out: %s", order_id, exc)
            return PaymentResult.failed(PaymentFailureReason.TIMEOUT, str(exc))
        except httpx.RequestError as exc:
            logger.warning("Payment capture for %s failed in transport: %s", order_id, exc)
            return PaymentResult.failed(PaymentFailureReason.NETWORK_ERROR, str(exc))

        if response.status_code == 402:
            return PaymentResult.failed(PaymentFailureReason.DECLINED, _error_message(response))
        if 400 <= response.status_code < 500 and response.status_code not in (408, 409, 429):
            return PaymentResult.failed(PaymentFailureReason.INVALID_INSTRUMENT, _error_message(response))
        if response.status_code >= 400:
            return PaymentResult.failed(PaymentFailureReason.NETWORK_ERROR, f"HTTP {response.status_code}")

        body = response.json()
        if body.get("status") not in (None, "succeeded"):
            return PaymentResult.failed(PaymentFailureReason.DECLINED, f"payment intent status {body.get('status')}")
        return PaymentResult.succeeded(body["id"])


def _error_message(response: httpx.Response) -> str:
    try:
        return response.json().get("error", {}).get("message") or response.text[:200]
    except ValueError:
        return response.text[:200]
