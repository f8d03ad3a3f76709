"""
Scoped read side: subscription, invoice and payment listings plus the
portal dashboard summary.  Every query goes through ``CallerScope``.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select

from billing_kernel.selectors.base import BaseSelector
from billing_modules.invoicing.models import Invoice, InvoiceStatus, Payment
from billing_modules.invoicing.orm import InvoiceModel, PaymentModel
from billing_modules.subscriptions.models import Subscription, SubscriptionStatus
from billing_modules.subscriptions.orm import SubscriptionModel
from billing_services.scoping import CallerScope


@dataclass(frozen=True)
class DashboardSummary:
    active_subscriptions: int
    total_invoices: int
    unpaid_invoices: int
    total_paid: Decimal


class SubscriptionSelector(BaseSelector):
    def find(
        self, scope: CallerScope, status: SubscriptionStatus | None = None
    ) -> list[Subscription]:
        stmt = select(SubscriptionModel)
        if status is not None:
            stmt = stmt.where(SubscriptionModel.status == status.value)
        stmt = stmt.order_by(SubscriptionModel.created_at.desc())
        return self._scoped_dtos(scope, stmt, SubscriptionModel.customer_id)

    def get(self, scope: CallerScope, subscription_id: UUID) -> Subscription:
        return self._scoped_get(scope, SubscriptionModel, subscription_id, "Subscription")


class InvoiceSelector(BaseSelector):
    def find(self, scope: CallerScope, status: InvoiceStatus | None = None) -> list[Invoice]:
        stmt = select(InvoiceModel)
        if status is not None:
            stmt = stmt.where(InvoiceModel.status == status.value)
        stmt = stmt.order_by(InvoiceModel.created_at.desc())
        return self._scoped_dtos(scope, stmt, InvoiceModel.customer_id)

    def get(self, scope: CallerScope, invoice_id: UUID) -> Invoice:
        return self._scoped_get(scope, InvoiceModel, invoice_id, "Invoice")


class PaymentSelector(BaseSelector):
    def find(self, scope: CallerScope) -> list[Payment]:
        stmt = select(PaymentModel).order_by(PaymentModel.payment_date.desc())
        return self._scoped_dtos(scope, stmt, PaymentModel.customer_id)


class DashboardSelector(BaseSelector):
    """Counts and sums shown on the customer portal home page."""

    def summary(self, scope: CallerScope) -> DashboardSummary:
        active = self._scoped_count(
            scope,
            select(func.count(SubscriptionModel.id)).where(
                SubscriptionModel.status == SubscriptionStatus.ACTIVE.value
            ),
            SubscriptionModel.customer_id,
        )
        total_invoices = self._scoped_count(
            scope, select(func.count(InvoiceModel.id)), InvoiceModel.customer_id
        )
        unpaid = self._scoped_count(
            scope,
            select(func.count(InvoiceModel.id)).where(
                InvoiceModel.status == InvoiceStatus.CONFIRMED.value
            ),
            InvoiceModel.customer_id,
        )
        paid_amounts = self.session.execute(
            scope.apply(select(PaymentModel.amount), PaymentModel.customer_id)
        ).scalars()
        total_paid = sum((Decimal(str(a)) for a in paid_amounts), Decimal("0"))
        return DashboardSummary(
            active_subscriptions=active,
            total_invoices=total_invoices,
            unpaid_invoices=unpaid,
            total_paid=total_paid.quantize(Decimal("0.01")),
        )
