"""Invoice generation, line maintenance and payment application."""

from billing_modules.invoicing.models import (
    Invoice,
    InvoiceLine,
    InvoiceStatus,
    NewInvoiceLine,
    Payment,
    PaymentMethod,
    PaymentStatus,
)
from billing_modules.invoicing.service import DEFAULT_DUE_DAYS, InvoiceService
from billing_modules.invoicing.workflows import INVOICE_WORKFLOW

__all__ = [
    "DEFAULT_DUE_DAYS",
    "INVOICE_WORKFLOW",
    "Invoice",
    "InvoiceLine",
    "InvoiceService",
    "InvoiceStatus",
    "NewInvoiceLine",
    "Payment",
    "PaymentMethod",
    "PaymentStatus",
]
