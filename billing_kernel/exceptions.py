"""
Typed Exception Hierarchy for the Billing Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Billing errors cross the request boundary as stable reason codes. Callers
catch by type and read structured attributes instead of parsing messages:

    try:
        invoices.apply_payment(invoice_id, amount)
    except OverpaymentError as e:
        api_response(code=e.code, remaining=e.remaining)

Every exception class carries a ``code`` class attribute (machine-readable,
API-safe) and stores its context as attributes so it survives logging and
serialization.

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    BillingError (base)
    |
    +-- NotFoundError
    +-- AccessDeniedError
    +-- InvalidStateError
    +-- PolicyViolationError
    |   +-- DiscountRejectedError
    +-- FinancialPreconditionError
    |   +-- OverpaymentError
    |   +-- NoPayableAmountError
    |   +-- SettlementMismatchError
    +-- SignatureMismatchError
    +-- ValidationError
    |   +-- InvalidLineError
    +-- ImmutabilityViolationError
    +-- GatewayError
        +-- GatewayUnavailableError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Code                    | When Raised                                | Retry
------------------------|--------------------------------------------|------
NOT_FOUND               | Entity lookup miss (incl. discount codes)  | no
ACCESS_DENIED           | Caller scope excludes the record           | no
INVALID_STATE           | Illegal transition / status-gated mutation | no
POLICY_VIOLATION        | Plan policy rejects the action             | no
DISCOUNT_REJECTED       | Discount window/limit/minimums not met     | no
OVERPAYMENT             | Payment exceeds remaining invoice balance  | no
NO_PAYABLE_AMOUNT       | Computed order amount <= 0                 | no
SETTLEMENT_MISMATCH     | Re-priced invoice differs from amount paid | no
SIGNATURE_MISMATCH      | Gateway callback signature is not valid    | no
VALIDATION_ERROR        | Malformed input                            | no
INVALID_LINE            | quantity < 1 or negative line subtotal     | no
IMMUTABILITY_VIOLATION  | Update/delete of an append-only record     | no
GATEWAY_ERROR           | Gateway rejected the request               | no
GATEWAY_UNAVAILABLE     | Gateway timed out or is unreachable        | yes

===============================================================================
HANDLING PATTERNS
===============================================================================

1. Recover at the request boundary (``billing_services.boundary``), which
   maps each class to a caller-visible rejection.

2. SignatureMismatchError is security relevant: it is logged at CRITICAL
   where it is raised and must never be swallowed.

3. GatewayUnavailableError.retryable is True; everything else is final.
"""

from decimal import Decimal


class BillingError(Exception):
    """
    Base exception for all billing errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "BILLING_ERROR"
    retryable: bool = False


class NotFoundError(BillingError):
    """Entity with the given key was not found."""

    code: str = "NOT_FOUND"

    def __init__(self, entity_type: str, key: str):
        self.entity_type = entity_type
        self.key = key
        super().__init__(f"{entity_type} not found: {key}")


class AccessDeniedError(BillingError):
    """The caller's scope does not cover the requested record."""

    code: str = "ACCESS_DENIED"

    def __init__(self, entity_type: str, key: str, role: str):
        self.entity_type = entity_type
        self.key = key
        self.role = role
        super().__init__(f"Access denied to {entity_type} {key} for role {role}")


class InvalidStateError(BillingError):
    """Action is not allowed in the entity's current status."""

    code: str = "INVALID_STATE"

    def __init__(
        self,
        entity_type: str,
        entity_id: str,
        current_status: str,
        action: str,
        allowed: tuple[str, ...] = (),
    ):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.current_status = current_status
        self.action = action
        self.allowed = allowed
        allowed_text = ", ".join(allowed) if allowed else "none"
        super().__init__(
            f"Cannot {action} {entity_type} {entity_id} in status "
            f"{current_status} (allowed from: {allowed_text})"
        )


class PolicyViolationError(BillingError):
    """A plan or discount policy rejects the action."""

    code: str = "POLICY_VIOLATION"

    def __init__(self, policy: str, reason: str):
        self.policy = policy
        self.reason = reason
        super().__init__(f"Policy {policy} rejected the action: {reason}")


class DiscountRejectedError(PolicyViolationError):
    """
    Discount code exists but cannot be applied to this purchase.

    ``reason_code`` is one of NOT_STARTED, EXPIRED, USAGE_LIMIT_REACHED,
    MIN_PURCHASE_NOT_MET, MIN_QUANTITY_NOT_MET.
    """

    code: str = "DISCOUNT_REJECTED"

    def __init__(self, discount_code: str, reason_code: str, reason: str):
        self.discount_code = discount_code
        self.reason_code = reason_code
        super().__init__(policy=f"discount:{discount_code}", reason=reason)


class FinancialPreconditionError(BillingError):
    """Base exception for violated monetary preconditions."""

    code: str = "FINANCIAL_PRECONDITION"


class OverpaymentError(FinancialPreconditionError):
    """Payment amount exceeds the invoice's remaining balance."""

    code: str = "OVERPAYMENT"

    def __init__(self, invoice_id: str, amount: Decimal, remaining: Decimal):
        self.invoice_id = invoice_id
        self.amount = amount
        self.remaining = remaining
        super().__init__(
            f"Payment of {amount} exceeds remaining balance {remaining} "
            f"on invoice {invoice_id}"
        )


class NoPayableAmountError(FinancialPreconditionError):
    """Order amount computed for a subscription is not positive."""

    code: str = "NO_PAYABLE_AMOUNT"

    def __init__(self, subscription_id: str, amount: Decimal):
        self.subscription_id = subscription_id
        self.amount = amount
        super().__init__(
            f"Subscription {subscription_id} has no payable amount ({amount})"
        )


class SettlementMismatchError(FinancialPreconditionError):
    """The settlement invoice would not equal the amount the gateway collected."""

    code: str = "SETTLEMENT_MISMATCH"

    def __init__(self, subscription_id: str, collected: Decimal, invoiced: Decimal):
        self.subscription_id = subscription_id
        self.collected = collected
        self.invoiced = invoiced
        super().__init__(
            f"Subscription {subscription_id} collected {collected} but would be "
            f"invoiced {invoiced}"
        )


class SignatureMismatchError(BillingError):
    """Gateway callback signature does not match the expected HMAC."""

    code: str = "SIGNATURE_MISMATCH"

    def __init__(self, order_id: str, payment_id: str):
        self.order_id = order_id
        self.payment_id = payment_id
        super().__init__(
            f"Invalid payment signature for order {order_id}, payment {payment_id}"
        )


class ValidationError(BillingError):
    """Malformed input."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid {field}: {reason}")


class InvalidLineError(ValidationError):
    """Line quantity below 1 or line subtotal below zero."""

    code: str = "INVALID_LINE"


class ImmutabilityViolationError(BillingError):
    """Attempted to modify or delete an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


class GatewayError(BillingError):
    """Payment gateway rejected a request."""

    code: str = "GATEWAY_ERROR"

    def __init__(self, operation: str, detail: str):
        self.operation = operation
        self.detail = detail
        super().__init__(f"Gateway {operation} failed: {detail}")


class GatewayUnavailableError(GatewayError):
    """Gateway timed out or could not be reached. Safe to retry."""

    code: str = "GATEWAY_UNAVAILABLE"
    retryable: bool = True
