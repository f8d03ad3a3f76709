"""
Settings schema (``billing_config.schema``).

Frozen dataclasses produced by ``billing_config.loader``.  Amounts and rates
are Decimals; secrets are never read from YAML, only from the environment
(see ``billing_config.get_active_settings``).
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from decimal import Decimal


@dataclass(frozen=True)
class GatewaySettings:
    """Payment gateway connection.  ``key_secret`` signs callbacks."""

    provider: str = "razorpay"
    base_url: str = "https://api.razorpay.com/v1"
    key_id: str = ""
    key_secret: str = ""
    timeout_seconds: float = 10.0

    def with_secret(self, key_secret: str) -> GatewaySettings:
        return replace(self, key_secret=key_secret)


@dataclass(frozen=True)
class SmtpSettings:
    host: str = "localhost"
    port: int = 587
    username: str = ""
    password: str = ""
    sender: str = "billing@localhost"
    use_tls: bool = True
    enabled: bool = False

    def with_password(self, password: str) -> SmtpSettings:
        return replace(self, password=password)


@dataclass(frozen=True)
class BillingSettings:
    """
    Top-level billing settings.

    Attributes:
        currency: ISO 4217 code for gateway amounts.
        checkout_tax_rate: percentage applied at order creation.
        invoice_due_days: days from issue to due date, also the advance of
            a subscription's next invoice date.
        payment_link_ttl_hours: validity of a gateway order.
        default_tax_country: country assumed for customers without one.
    """

    currency: str = "INR"
    checkout_tax_rate: Decimal = Decimal("18")
    invoice_due_days: int = 30
    payment_link_ttl_hours: int = 24
    default_tax_country: str = "India"
    gateway: GatewaySettings = field(default_factory=GatewaySettings)
    smtp: SmtpSettings = field(default_factory=SmtpSettings)
    database_url: str = "sqlite:///billing.db"
