"""Mapping of billing errors to caller-visible rejections."""

from decimal import Decimal

import pytest

from billing_kernel.exceptions import (
    AccessDeniedError,
    DiscountRejectedError,
    GatewayError,
    GatewayUnavailableError,
    ImmutabilityViolationError,
    InvalidLineError,
    InvalidStateError,
    NoPayableAmountError,
    NotFoundError,
    OverpaymentError,
    PolicyViolationError,
    SignatureMismatchError,
)
from billing_services.boundary import to_rejection


@pytest.mark.parametrize(
    "exc, status, code",
    [
        (NotFoundError("Discount", "NOPE"), 404, "NOT_FOUND"),
        (AccessDeniedError("Invoice", "x", "PORTAL_USER"), 403, "ACCESS_DENIED"),
        (InvalidStateError("Subscription", "s", "ACTIVE", "close"), 409, "INVALID_STATE"),
        (DiscountRejectedError("ONCE", "EXPIRED", "expired"), 422, "DISCOUNT_REJECTED"),
        (PolicyViolationError("plan_closable", "no"), 422, "POLICY_VIOLATION"),
        (NoPayableAmountError("s", Decimal("0")), 422, "NO_PAYABLE_AMOUNT"),
        (InvalidLineError("quantity", "must be at least 1"), 400, "INVALID_LINE"),
        (ImmutabilityViolationError("SubscriptionHistory", "h", "no"), 409, "IMMUTABILITY_VIOLATION"),
        (GatewayUnavailableError("orders", "timeout"), 503, "GATEWAY_UNAVAILABLE"),
        (GatewayError("orders", "bad request"), 502, "GATEWAY_ERROR"),
    ],
)
def test_status_mapping(exc, status, code):
    rejection = to_rejection(exc)
    assert rejection.status == status
    assert rejection.code == code


def test_invalid_state_details():
    exc = InvalidStateError("Subscription", "s", "CLOSED", "close", allowed=("ACTIVE",))
    assert to_rejection(exc).details["allowed_from"] == ["ACTIVE"]


def test_overpayment_details():
    rejection = to_rejection(OverpaymentError("inv", Decimal("360.01"), Decimal("360.00")))
    assert rejection.status == 422
    assert rejection.details == {"amount": "360.01", "remaining": "360.00"}


def test_discount_reason_exposed():
    rejection = to_rejection(DiscountRejectedError("ONCE", "USAGE_LIMIT_REACHED", "limit"))
    assert rejection.details["reason_code"] == "USAGE_LIMIT_REACHED"


def test_signature_message_is_generic():
    rejection = to_rejection(SignatureMismatchError("order_1", "pay_1"))
    assert rejection.status == 400
    assert rejection.message == "Invalid payment signature"
    assert "order_1" not in rejection.message


def test_only_retryable_for_unavailable_gateway():
    assert to_rejection(GatewayUnavailableError("orders", "t")).retryable is True
    assert to_rejection(GatewayError("orders", "t")).retryable is False


def test_non_billing_error_rejected():
    with pytest.raises(TypeError):
        to_rejection(RuntimeError("boom"))
