from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol

import httpx

from ..core.config import settings

logger = logging.getLogger(__name__)


class PaymentGatewayError(Exception):
    """The payment collaborator could not confirm the payment."""


class PaymentGateway(Protocol):
    def mark_paid(self, booking_id: int, amount: Optional[Decimal] = None) -> bool: ...


class HttpPaymentGateway:
    """Payment collaborator reached over HTTP.

    ``transport`` lets tests plug in ``httpx.MockTransport``.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.base_url = (base_url or settings.PAYMENT_GATEWAY_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.PAYMENT_GATEWAY_TIMEOUT
        self.transport = transport

    def mark_paid(self, booking_id: int, amount: Optional[Decimal] = None) -> bool:
        payload: Dict[str, Any] = {"booking_id": booking_id}
        if amount is not None:
            payload["amount"] = str(amount)
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                r = client.post(
                    f"{self.base_url}/payments/mark-paid",
                    json=payload,
                )
                r.raise_for_status()
                data = r.json() if r.content else {}
        except httpx.HTTPError as exc:
            logger.warning("Payment gateway call failed for booking %s: %s", booking_id, exc)
            raise PaymentGatewayError(str(exc)) from exc
        ok = bool(data.get("ok", True))
        if not ok:
            logger.warning(
                "Payment gateway declined booking %s: %s", booking_id, data.get("error")
            )
        return ok


def get_payment_gateway() -> PaymentGateway:
    return HttpPaymentGateway()
