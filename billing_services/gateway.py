"""
Module: billing_services.gateway
Responsibility:
    Payment gateway client: order creation over the provider's REST API and
    verification of the HMAC signature the provider attaches to payment
    callbacks.

Architecture position:
    Services -- the only module that performs gateway network I/O.

Failure modes:
    - GatewayUnavailableError (retryable): timeout or connection failure.
    - GatewayError: the provider answered with an error status or a body
      without an order id.

Usage:
    gateway = RazorpayGateway(settings.gateway)
    order = gateway.create_order(106200, "INR", receipt="SUB-000001")
    gateway.verify_signature(order.order_id, payment_id, signature)
"""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass, field
from typing import Any, Protocol

import requests

from billing_config.schema import GatewaySettings
from billing_kernel.domain.values import Money
from billing_kernel.exceptions import GatewayError, GatewayUnavailableError
from billing_kernel.logging_config import get_logger

logger = get_logger("services.gateway")


@dataclass(frozen=True)
class GatewayOrder:
    order_id: str
    amount_minor_units: int
    currency: str
    receipt: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def amount(self) -> Money:
        return Money.from_minor_units(self.amount_minor_units, self.currency)


class PaymentGateway(Protocol):
    """What reconciliation needs from a payment provider."""

    key_id: str

    def create_order(
        self,
        amount_minor_units: int,
        currency: str,
        receipt: str | None = None,
        notes: dict[str, str] | None = None,
    ) -> GatewayOrder: ...

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool: ...


def sign_payment(secret: str, order_id: str, payment_id: str) -> str:
    """Hex HMAC-SHA256 of ``order_id|payment_id`` keyed by ``secret``."""
    message = f"{order_id}|{payment_id}".encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def signature_matches(secret: str, order_id: str, payment_id: str, signature: str) -> bool:
    """Constant-time comparison against the expected signature."""
    expected = sign_payment(secret, order_id, payment_id)
    return hmac.compare_digest(expected, signature or "")


class RazorpayGateway:
    """
    Razorpay orders API.

    Orders are created with HTTP basic auth (key id / key secret).  Every
    request carries ``settings.timeout_seconds``; a timeout surfaces as
    ``GatewayUnavailableError`` and no order is assumed to exist.
    """

    def __init__(self, settings: GatewaySettings, session: requests.Session | None = None):
        if not settings.key_secret:
            raise GatewayError("configure", "gateway key secret is not set")
        self._settings = settings
        self._http = session or requests.Session()
        self.key_id = settings.key_id

    def _post(self, endpoint: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self._settings.base_url}/{endpoint}"
        try:
            response = self._http.post(
                url,
                json=payload,
                auth=(self._settings.key_id, self._settings.key_secret),
                timeout=self._settings.timeout_seconds,
            )
            response.raise_for_status()
        except (requests.Timeout, requests.ConnectionError) as exc:
            logger.error(
                "gateway_unreachable",
                extra={"endpoint": endpoint, "error": str(exc)},
            )
            raise GatewayUnavailableError(endpoint, str(exc)) from exc
        except requests.HTTPError as exc:
            logger.error(
                "gateway_request_rejected",
                extra={
                    "endpoint": endpoint,
                    "status_code": exc.response.status_code if exc.response is not None else None,
                },
            )
            raise GatewayError(endpoint, str(exc)) from exc
        return response.json()

    def create_order(
        self,
        amount_minor_units: int,
        currency: str,
        receipt: str | None = None,
        notes: dict[str, str] | None = None,
    ) -> GatewayOrder:
        payload: dict[str, Any] = {"amount": amount_minor_units, "currency": currency}
        if receipt:
            payload["receipt"] = receipt
        if notes:
            payload["notes"] = notes
        body = self._post("orders", payload)
        order_id = body.get("id")
        if not order_id:
            raise GatewayError("orders", "response did not include an order id")
        logger.info(
            "gateway_order_created",
            extra={"order_id": order_id, "amount_minor_units": amount_minor_units},
        )
        return GatewayOrder(
            order_id=order_id,
            amount_minor_units=int(body.get("amount", amount_minor_units)),
            currency=body.get("currency", currency),
            receipt=body.get("receipt", receipt),
            raw=body,
        )

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        return signature_matches(self._settings.key_secret, order_id, payment_id, signature)
