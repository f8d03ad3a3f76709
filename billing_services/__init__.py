"""
Billing services: payment reconciliation, gateway and notification clients,
caller scoping and the request boundary.  This layer owns transactions.
"""

from billing_services.boundary import Rejection, to_rejection
from billing_services.gateway import GatewayOrder, PaymentGateway, RazorpayGateway
from billing_services.notifications import (
    InvoiceNotifier,
    LoggingInvoiceNotifier,
    SmtpInvoiceNotifier,
)
from billing_services.reconciliation import (
    OrderResult,
    PaymentReconciliationService,
    VerificationResult,
)
from billing_services.scoping import CallerRole, CallerScope

__all__ = [
    "CallerRole",
    "CallerScope",
    "GatewayOrder",
    "InvoiceNotifier",
    "LoggingInvoiceNotifier",
    "OrderResult",
    "PaymentGateway",
    "PaymentReconciliationService",
    "RazorpayGateway",
    "Rejection",
    "SmtpInvoiceNotifier",
    "VerificationResult",
    "to_rejection",
]
