"""
Catalog domain values (``billing_modules.catalog.models``).

Enumerations shared by the catalog tables and the services that read them,
plus billing-period date arithmetic.
"""

from datetime import date
from enum import Enum

from dateutil.relativedelta import relativedelta


class BillingPeriod(str, Enum):
    """Recurring plan billing period."""

    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"

    @property
    def delta(self) -> relativedelta:
        return _PERIOD_DELTAS[self]


_PERIOD_DELTAS = {
    BillingPeriod.DAILY: relativedelta(days=1),
    BillingPeriod.WEEKLY: relativedelta(weeks=1),
    BillingPeriod.MONTHLY: relativedelta(months=1),
    BillingPeriod.YEARLY: relativedelta(years=1),
}


def period_end(start: date, period: BillingPeriod | str) -> date:
    """End of one billing period.  Month ends clamp (Jan 31 + 1 month = Feb 28)."""
    return start + BillingPeriod(period).delta


class ProductType(str, Enum):
    """Product classification used for tax rules."""

    SERVICE = "Service"
    DIGITAL = "Digital"
    PHYSICAL = "Physical"
