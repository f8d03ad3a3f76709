"""
Invoice Workflow.

DRAFT -> CONFIRMED -> PAID, with CANCELLED reachable from DRAFT or
CONFIRMED.  Line and detail edits are modelled as DRAFT self-transitions so
that every status-gated operation is resolved through the same table.
"""

from decimal import Decimal

from billing_kernel.domain.workflow import Guard, Transition, Workflow
from billing_kernel.exceptions import OverpaymentError
from billing_modules.invoicing.models import InvoiceStatus

DRAFT = InvoiceStatus.DRAFT.value
CONFIRMED = InvoiceStatus.CONFIRMED.value
PAID = InvoiceStatus.PAID.value
CANCELLED = InvoiceStatus.CANCELLED.value

BALANCE_ZERO = Guard(
    name="balance_zero",
    description="Paid amount has reached the invoice total",
)

INVOICE_WORKFLOW = Workflow(
    name="Invoice",
    description="Invoice lifecycle",
    # Settlement invoices are issued already PAID
    initial_states=(DRAFT, PAID),
    states=(DRAFT, CONFIRMED, PAID, CANCELLED),
    transitions=(
        Transition(DRAFT, DRAFT, action="add_line"),
        Transition(DRAFT, DRAFT, action="delete_line"),
        Transition(DRAFT, DRAFT, action="update_details"),
        Transition(DRAFT, CONFIRMED, action="confirm"),
        Transition(DRAFT, CANCELLED, action="cancel"),
        Transition(CONFIRMED, CANCELLED, action="cancel"),
        Transition(CONFIRMED, CONFIRMED, action="apply_payment"),
        Transition(CONFIRMED, PAID, action="apply_payment", guard=BALANCE_ZERO),
    ),
    terminal_states=(PAID, CANCELLED),
)


def settle(
    invoice_id: str,
    total_amount: Decimal,
    paid_amount: Decimal,
    amount: Decimal,
) -> tuple[Decimal, InvoiceStatus]:
    """
    Paid amount and status after applying ``amount``.

    Raises:
        OverpaymentError: ``amount`` exceeds ``total_amount - paid_amount``.
    """
    remaining = total_amount - paid_amount
    if amount > remaining:
        raise OverpaymentError(invoice_id=invoice_id, amount=amount, remaining=remaining)
    new_paid = paid_amount + amount
    status = InvoiceStatus.PAID if new_paid >= total_amount else InvoiceStatus.CONFIRMED
    return new_paid, status
