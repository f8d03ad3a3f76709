"""
Invoice notifications.

Reconciliation calls the notifier after a settlement invoice is committed and
treats any failure as caught-and-logged; a notifier may therefore raise.
"""

from __future__ import annotations

import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Protocol

from billing_config.schema import SmtpSettings
from billing_kernel.logging_config import get_logger
from billing_modules.invoicing.models import Invoice

logger = get_logger("services.notifications")


class InvoiceNotifier(Protocol):
    def invoice_paid(self, invoice: Invoice, recipient: str, customer_name: str) -> None: ...


def render_invoice_paid(invoice: Invoice, customer_name: str) -> tuple[str, str]:
    """Subject and plain-text body for a paid invoice."""
    subject = f"Invoice {invoice.invoice_number} - Payment Confirmed"
    lines = [
        f"Hello {customer_name},",
        "",
        "We received your payment. Thank you.",
        "",
        f"Invoice No.:   {invoice.invoice_number}",
        f"Invoice date:  {invoice.invoice_date.isoformat()}",
        f"Subtotal:      {invoice.subtotal:.2f}",
        f"Tax:           {invoice.tax_amount:.2f}",
        f"Total paid:    {invoice.paid_amount:.2f}",
    ]
    if invoice.gateway_payment_id:
        lines.append(f"Payment ID:    {invoice.gateway_payment_id}")
    return subject, "\n".join(lines)


class LoggingInvoiceNotifier:
    """Writes the notification to the log instead of sending it."""

    def invoice_paid(self, invoice: Invoice, recipient: str, customer_name: str) -> None:
        subject, _ = render_invoice_paid(invoice, customer_name)
        logger.info(
            "invoice_notification_logged",
            extra={
                "invoice_id": str(invoice.id),
                "invoice_number": invoice.invoice_number,
                "recipient": recipient,
                "subject": subject,
            },
        )


class SmtpInvoiceNotifier:
    """Sends paid-invoice emails over SMTP."""

    def __init__(self, settings: SmtpSettings):
        self._settings = settings

    def invoice_paid(self, invoice: Invoice, recipient: str, customer_name: str) -> None:
        subject, body = render_invoice_paid(invoice, customer_name)
        message = MIMEMultipart("alternative")
        message["Subject"] = subject
        message["From"] = self._settings.sender
        message["To"] = recipient
        message.attach(MIMEText(body, "plain"))

        with smtplib.SMTP(self._settings.host, self._settings.port, timeout=30) as server:
            if self._settings.use_tls:
                server.starttls()
            if self._settings.username:
                server.login(self._settings.username, self._settings.password)
            server.send_message(message)
        logger.info(
            "invoice_notification_sent",
            extra={"invoice_id": str(invoice.id), "recipient": recipient},
        )


def notifier_from_settings(settings: SmtpSettings) -> InvoiceNotifier:
    if settings.enabled:
        return SmtpInvoiceNotifier(settings)
    return LoggingInvoiceNotifier()
