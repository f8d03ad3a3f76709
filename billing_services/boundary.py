"""
Request boundary: turns a ``BillingError`` into the rejection a caller sees.

Only ``BillingError`` subclasses are mapped.  Anything else is a defect and
propagates to the host's error handler.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from billing_kernel.exceptions import (
    AccessDeniedError,
    BillingError,
    DiscountRejectedError,
    FinancialPreconditionError,
    GatewayError,
    GatewayUnavailableError,
    ImmutabilityViolationError,
    InvalidStateError,
    NotFoundError,
    OverpaymentError,
    PolicyViolationError,
    SignatureMismatchError,
    ValidationError,
)
from billing_kernel.logging_config import get_logger

logger = get_logger("services.boundary")


@dataclass(frozen=True)
class Rejection:
    status: int
    code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    retryable: bool = False


# Most specific class first.
_STATUS_BY_TYPE: tuple[tuple[type[BillingError], int], ...] = (
    (NotFoundError, 404),
    (AccessDeniedError, 403),
    (InvalidStateError, 409),
    (DiscountRejectedError, 422),
    (PolicyViolationError, 422),
    (FinancialPreconditionError, 422),
    (SignatureMismatchError, 400),
    (ValidationError, 400),
    (ImmutabilityViolationError, 409),
    (GatewayUnavailableError, 503),
    (GatewayError, 502),
)


def _details(exc: BillingError) -> dict[str, Any]:
    if isinstance(exc, InvalidStateError):
        return {
            "entity_type": exc.entity_type,
            "current_status": exc.current_status,
            "action": exc.action,
            "allowed_from": list(exc.allowed),
        }
    if isinstance(exc, DiscountRejectedError):
        return {"discount_code": exc.discount_code, "reason_code": exc.reason_code}
    if isinstance(exc, OverpaymentError):
        return {"amount": str(exc.amount), "remaining": str(exc.remaining)}
    if isinstance(exc, NotFoundError):
        return {"entity_type": exc.entity_type}
    if isinstance(exc, ValidationError):
        return {"field": exc.field}
    return {}


def to_rejection(exc: BillingError) -> Rejection:
    """
    Map ``exc`` to a Rejection.

    Raises:
        TypeError: ``exc`` is not a BillingError.
    """
    if not isinstance(exc, BillingError):
        raise TypeError(f"not a billing error: {type(exc).__name__}")
    status = next((s for t, s in _STATUS_BY_TYPE if isinstance(exc, t)), 500)
    # Signature failures never echo what was received.
    message = "Invalid payment signature" if isinstance(exc, SignatureMismatchError) else str(exc)
    rejection = Rejection(
        status=status,
        code=exc.code,
        message=message,
        details=_details(exc),
        retryable=exc.retryable,
    )
    logger.info(
        "request_rejected",
        extra={"status": status, "code": exc.code, "error_type": type(exc).__name__},
    )
    return rejection
