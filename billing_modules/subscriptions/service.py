"""
Subscription Service - lifecycle transitions, line maintenance and history.

All status changes resolve through ``SUBSCRIPTION_WORKFLOW``; an action not
in the table for the current status raises ``InvalidStateError`` before
anything is written.  Each status change appends exactly one history entry.

Line amounts and ``recurring_total`` are recomputed from the full line list
through ``billing_engines.ledger`` after every line mutation.

Flush-only: the caller owns the transaction.  Payment-driven transitions
(``mark_payment_initiated``, ``mark_payment_verified``) are called by
``billing_services.reconciliation``.

Usage:
    service = SubscriptionService(session, clock)
    sub = service.create_subscription(customer_id, plan_id=plan.id,
                                      lines=[NewSubscriptionLine(product.id, 2)])
    service.close(sub.id, performed_by="admin")
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import delete, func, select

from billing_engines.ledger import compute_line, round_money
from billing_kernel.exceptions import (
    NotFoundError,
    PolicyViolationError,
    ValidationError,
)
from billing_kernel.logging_config import LogContext, get_logger
from billing_kernel.services.base import BaseService
from billing_kernel.services.sequence_service import (
    SequenceService,
    timestamp_document_number,
)
from billing_modules.catalog.models import period_end
from billing_modules.catalog.orm import (
    CustomerModel,
    ProductModel,
    QuotationTemplateModel,
    RecurringPlanModel,
    TaxModel,
)
from billing_modules.subscriptions.models import (
    HistoryAction,
    HistoryEntry,
    NewSubscriptionLine,
    Subscription,
    SubscriptionStatus,
)
from billing_modules.subscriptions.orm import (
    SubscriptionHistoryModel,
    SubscriptionLineModel,
    SubscriptionModel,
)
from billing_modules.subscriptions.workflows import SUBSCRIPTION_WORKFLOW

logger = get_logger("modules.subscriptions.service")

_ZERO = Decimal("0")
_EDITABLE_FIELDS = (
    "contact_id",
    "plan_id",
    "start_date",
    "expiration_date",
    "payment_terms",
    "internal_notes",
)


class SubscriptionService(BaseService):
    """Subscription lifecycle operations."""

    # =========================================================================
    # Lookup
    # =========================================================================

    def _get(self, subscription_id: UUID, lock: bool = False) -> SubscriptionModel:
        return self._load(SubscriptionModel, subscription_id, "Subscription", lock=lock)

    def get(self, subscription_id: UUID) -> Subscription:
        return self._get(subscription_id).to_dto()

    def get_model(self, subscription_id: UUID, lock: bool = False) -> SubscriptionModel:
        """ORM row for orchestrators sharing this session."""
        return self._get(subscription_id, lock=lock)

    def get_by_order(self, order_id: str, lock: bool = False) -> SubscriptionModel:
        stmt = select(SubscriptionModel).where(SubscriptionModel.gateway_order_id == order_id)
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        subscription = self.session.execute(stmt).scalar_one_or_none()
        if subscription is None:
            raise NotFoundError("Subscription", f"order {order_id}")
        return subscription

    def get_plan(self, plan_id: UUID | None) -> RecurringPlanModel | None:
        if plan_id is None:
            return None
        return self._load(RecurringPlanModel, plan_id, "RecurringPlan")

    def plan_for(self, subscription: SubscriptionModel) -> RecurringPlanModel | None:
        return self.get_plan(subscription.plan_id)

    def history(self, subscription_id: UUID) -> list[HistoryEntry]:
        """History entries, oldest first."""
        self._get(subscription_id)
        rows = self.session.execute(
            select(SubscriptionHistoryModel)
            .where(SubscriptionHistoryModel.subscription_id == subscription_id)
            .order_by(SubscriptionHistoryModel.entry_number)
        ).scalars().all()
        return [row.to_dto() for row in rows]

    # =========================================================================
    # History
    # =========================================================================

    def _record(
        self,
        subscription: SubscriptionModel,
        action: HistoryAction,
        description: str,
        performed_by: str | None,
        from_status: str | None = None,
        to_status: str | None = None,
    ) -> None:
        self.session.flush()
        last = self.session.execute(
            select(func.max(SubscriptionHistoryModel.entry_number)).where(
                SubscriptionHistoryModel.subscription_id == subscription.id
            )
        ).scalar()
        self.session.add(
            SubscriptionHistoryModel(
                subscription_id=subscription.id,
                entry_number=(last or 0) + 1,
                action=action.value,
                from_status=from_status,
                to_status=to_status,
                description=description,
                performed_by=performed_by,
                timestamp=self.clock.now(),
            )
        )
        self.session.flush()

    def _transition(
        self,
        subscription: SubscriptionModel,
        action: str,
        description: str,
        performed_by: str | None,
        history_action: HistoryAction = HistoryAction.STATUS_CHANGE,
    ) -> None:
        transition = SUBSCRIPTION_WORKFLOW.find_transition(
            subscription.status, action, str(subscription.id)
        )
        from_status = subscription.status
        subscription.status = transition.to_state
        if transition.writes_history:
            self._record(
                subscription,
                history_action,
                description,
                performed_by,
                from_status=from_status,
                to_status=transition.to_state,
            )
        else:
            self.session.flush()
        logger.info(
            "subscription_transitioned",
            extra={
                "subscription_id": str(subscription.id),
                "action": action,
                "from_status": from_status,
                "to_status": transition.to_state,
            },
        )

    # =========================================================================
    # Lines
    # =========================================================================

    def _build_line(self, line_number: int, line: NewSubscriptionLine) -> SubscriptionLineModel:
        product = self._load(ProductModel, line.product_id, "Product")
        tax_rate = None
        if line.tax_id is not None:
            tax_rate = self._load(TaxModel, line.tax_id, "Tax").rate
        unit_price = product.sales_price if line.unit_price is None else line.unit_price
        totals = compute_line(line.quantity, unit_price, line.discount, tax_rate)
        return SubscriptionLineModel(
            line_number=line_number,
            product_id=product.id,
            description=product.name,
            quantity=line.quantity,
            unit_price=unit_price,
            discount=line.discount,
            tax_id=line.tax_id,
            tax_amount=totals.tax_amount,
            amount=totals.amount,
        )

    @staticmethod
    def _copy_line(line_number: int, line: SubscriptionLineModel) -> SubscriptionLineModel:
        return SubscriptionLineModel(
            line_number=line_number,
            product_id=line.product_id,
            description=line.description,
            quantity=line.quantity,
            unit_price=line.unit_price,
            discount=line.discount,
            tax_id=line.tax_id,
            tax_amount=line.tax_amount,
            amount=line.amount,
        )

    def _recalculate(self, subscription: SubscriptionModel) -> None:
        subscription.recurring_total = round_money(
            sum((line.amount for line in subscription.lines), _ZERO)
        )
        self.session.flush()

    def add_line(
        self,
        subscription_id: UUID,
        line: NewSubscriptionLine,
        performed_by: str | None = None,
    ) -> Subscription:
        """Add a line to a DRAFT or QUOTATION subscription."""
        subscription = self._get(subscription_id, lock=True)
        SUBSCRIPTION_WORKFLOW.find_transition(subscription.status, "edit", str(subscription_id))
        next_number = max((l.line_number for l in subscription.lines), default=0) + 1
        model = self._build_line(next_number, line)
        subscription.lines.append(model)
        self._recalculate(subscription)
        self._record(
            subscription,
            HistoryAction.LINE_CHANGE,
            f"Line added: {model.description} x{model.quantity}",
            performed_by,
        )
        return subscription.to_dto()

    def delete_line(
        self,
        subscription_id: UUID,
        line_id: UUID,
        performed_by: str | None = None,
    ) -> Subscription:
        subscription = self._get(subscription_id, lock=True)
        SUBSCRIPTION_WORKFLOW.find_transition(subscription.status, "edit", str(subscription_id))
        line = next((l for l in subscription.lines if l.id == line_id), None)
        if line is None:
            raise NotFoundError("SubscriptionLine", str(line_id))
        subscription.lines.remove(line)
        self._recalculate(subscription)
        self._record(
            subscription,
            HistoryAction.LINE_CHANGE,
            f"Line removed: {line.description}",
            performed_by,
        )
        return subscription.to_dto()

    # =========================================================================
    # Creation and edits
    # =========================================================================

    def create_subscription(
        self,
        customer_id: UUID,
        plan_id: UUID | None = None,
        contact_id: UUID | None = None,
        start_date: date | None = None,
        expiration_date: date | None = None,
        lines: Sequence[NewSubscriptionLine] = (),
        performed_by: str | None = None,
        payment_terms: str | None = None,
        internal_notes: str | None = None,
        description: str = "Subscription created",
    ) -> Subscription:
        """
        Create a DRAFT subscription numbered ``SUB-NNNNNN``.

        Raises:
            NotFoundError: unknown customer, plan, product or tax.
            ValidationError: expiration precedes start.
            InvalidLineError: a line has quantity < 1 or a negative subtotal.
        """
        return self._create(
            SubscriptionStatus.DRAFT,
            SequenceService(self.session).next_number(SequenceService.SUBSCRIPTION, "SUB"),
            customer_id,
            plan_id,
            contact_id,
            start_date,
            expiration_date,
            lines,
            performed_by,
            description,
            payment_terms=payment_terms,
            internal_notes=internal_notes,
        )

    def create_from_quotation(
        self,
        template_id: UUID,
        customer_id: UUID,
        contact_id: UUID | None = None,
        performed_by: str | None = None,
    ) -> Subscription:
        """QUOTATION subscription from a template, numbered from the clock."""
        template = self._load(QuotationTemplateModel, template_id, "QuotationTemplate")
        lines = [
            NewSubscriptionLine(
                product_id=line.product_id,
                quantity=line.quantity,
                unit_price=line.unit_price,
                tax_id=line.tax_id,
            )
            for line in template.lines
        ]
        return self._create(
            SubscriptionStatus.QUOTATION,
            timestamp_document_number("SUB", self.clock.now()),
            customer_id,
            template.plan_id,
            contact_id,
            None,
            None,
            lines,
            performed_by,
            f"Quotation created from template {template.name}",
        )

    def _create(
        self,
        status: SubscriptionStatus,
        number: str,
        customer_id: UUID,
        plan_id: UUID | None,
        contact_id: UUID | None,
        start_date: date | None,
        expiration_date: date | None,
        lines: Sequence[NewSubscriptionLine],
        performed_by: str | None,
        description: str,
        **extra,
    ) -> Subscription:
        self._load(CustomerModel, customer_id, "Customer")
        self.get_plan(plan_id)
        start_date = start_date or self.clock.today()
        if expiration_date is not None and expiration_date < start_date:
            raise ValidationError("expiration_date", "must not precede the start date")

        subscription = SubscriptionModel(
            subscription_number=number,
            customer_id=customer_id,
            contact_id=contact_id,
            plan_id=plan_id,
            status=status.value,
            start_date=start_date,
            expiration_date=expiration_date,
            discount_amount=_ZERO,
            amount_due=_ZERO,
            **extra,
        )
        subscription.lines = [self._build_line(n, line) for n, line in enumerate(lines, start=1)]
        self.session.add(subscription)
        self._recalculate(subscription)
        self._record(
            subscription,
            HistoryAction.STATUS_CHANGE,
            description,
            performed_by,
            to_status=status.value,
        )
        logger.info(
            "subscription_created",
            extra={
                "subscription_id": str(subscription.id),
                "subscription_number": number,
                "status": status.value,
                "recurring_total": subscription.recurring_total,
            },
        )
        return subscription.to_dto()

    def update_subscription(self, subscription_id: UUID, **changes) -> Subscription:
        """
        Edit header fields of a DRAFT or QUOTATION subscription.

        Accepted fields: contact_id, plan_id, start_date, expiration_date,
        payment_terms, internal_notes.
        """
        unknown = set(changes) - set(_EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(sorted(unknown)[0], "field cannot be updated")
        subscription = self._get(subscription_id, lock=True)
        SUBSCRIPTION_WORKFLOW.find_transition(subscription.status, "edit", str(subscription_id))
        if "plan_id" in changes:
            self.get_plan(changes["plan_id"])
        start = changes.get("start_date", subscription.start_date)
        expiration = changes.get("expiration_date", subscription.expiration_date)
        if start is None:
            raise ValidationError("start_date", "is required")
        if expiration is not None and expiration < start:
            raise ValidationError("expiration_date", "must not precede the start date")
        for name, value in changes.items():
            setattr(subscription, name, value)
        self.session.flush()
        return subscription.to_dto()

    def delete_subscription(self, subscription_id: UUID) -> None:
        """
        Delete a DRAFT subscription with its lines and history.

        History is removed with bulk statements, the only path that may
        delete history rows.
        """
        subscription = self._get(subscription_id, lock=True)
        SUBSCRIPTION_WORKFLOW.find_transition(subscription.status, "delete", str(subscription_id))
        self.session.execute(
            delete(SubscriptionHistoryModel).where(
                SubscriptionHistoryModel.subscription_id == subscription_id
            )
        )
        self.session.execute(
            delete(SubscriptionLineModel).where(
                SubscriptionLineModel.subscription_id == subscription_id
            )
        )
        self.session.execute(
            delete(SubscriptionModel).where(SubscriptionModel.id == subscription_id)
        )
        self.session.expunge(subscription)
        logger.info("subscription_deleted", extra={"subscription_id": str(subscription_id)})

    # =========================================================================
    # Payment-driven transitions
    # =========================================================================

    def mark_payment_initiated(
        self,
        subscription: SubscriptionModel,
        order_id: str,
        amount_due: Decimal,
        payment_link_expiry: datetime,
        discount_id: UUID | None,
        discount_amount: Decimal,
        checkout_tax_rate: Decimal,
        performed_by: str | None = None,
        description: str = "Payment initiated via gateway",
    ) -> None:
        """DRAFT/QUOTATION -> CONFIRMED once a gateway order exists."""
        SUBSCRIPTION_WORKFLOW.find_transition(
            subscription.status, "initiate_payment", str(subscription.id)
        )
        subscription.gateway_order_id = order_id
        subscription.amount_due = amount_due
        subscription.payment_link_expiry = payment_link_expiry
        subscription.discount_id = discount_id
        subscription.discount_amount = discount_amount
        subscription.checkout_tax_rate = checkout_tax_rate
        self._transition(subscription, "initiate_payment", description, performed_by)

    def mark_payment_verified(
        self,
        subscription: SubscriptionModel,
        payment_id: str,
        performed_by: str | None = None,
    ) -> None:
        """CONFIRMED -> ACTIVE; the amount due is cleared."""
        SUBSCRIPTION_WORKFLOW.find_transition(
            subscription.status, "payment_verified", str(subscription.id)
        )
        subscription.gateway_payment_id = payment_id
        subscription.amount_due = _ZERO
        if subscription.next_invoice_date is None:
            plan = self.plan_for(subscription)
            if plan is not None:
                subscription.next_invoice_date = period_end(
                    self.clock.today(), plan.billing_period
                )
        self._transition(
            subscription,
            "payment_verified",
            f"Payment verified: {payment_id}",
            performed_by,
            history_action=HistoryAction.PAYMENT,
        )

    # =========================================================================
    # Closing, renewal, upsell
    # =========================================================================

    def close(
        self,
        subscription_id: UUID,
        performed_by: str | None = None,
        reason: str | None = None,
    ) -> Subscription:
        """
        ACTIVE -> CLOSED.

        Raises:
            InvalidStateError: not ACTIVE.
            PolicyViolationError: the plan is not closable.
        """
        subscription = self._get(subscription_id, lock=True)
        SUBSCRIPTION_WORKFLOW.find_transition(subscription.status, "close", str(subscription_id))
        plan = self.plan_for(subscription)
        if plan is not None and not plan.closable:
            logger.warning(
                "subscription_close_rejected",
                extra={"subscription_id": str(subscription_id), "plan_id": str(plan.id)},
            )
            raise PolicyViolationError("plan_closable", f"plan {plan.name} is not closable")
        self._transition(subscription, "close", reason or "Subscription closed", performed_by)
        return subscription.to_dto()

    def close_expired(self, as_of: date | None = None) -> list[UUID]:
        """Close ACTIVE subscriptions on auto-close plans past their expiration date."""
        as_of = as_of or self.clock.today()
        expired = self.session.execute(
            select(SubscriptionModel)
            .join(RecurringPlanModel, SubscriptionModel.plan_id == RecurringPlanModel.id)
            .where(
                SubscriptionModel.status == SubscriptionStatus.ACTIVE.value,
                RecurringPlanModel.auto_close.is_(True),
                SubscriptionModel.expiration_date.is_not(None),
                SubscriptionModel.expiration_date < as_of,
            )
            .order_by(SubscriptionModel.subscription_number)
            .with_for_update()
        ).scalars().all()
        closed: list[UUID] = []
        for subscription in expired:
            self._transition(
                subscription,
                "close",
                f"Auto-closed after expiration on {subscription.expiration_date}",
                "system",
            )
            closed.append(subscription.id)
        if closed:
            logger.info("subscriptions_auto_closed", extra={"count": len(closed)})
        return closed

    def _spawn(
        self,
        parent: SubscriptionModel,
        renewal_type: HistoryAction,
        lines: list[SubscriptionLineModel],
        performed_by: str | None,
    ) -> SubscriptionModel:
        child = SubscriptionModel(
            subscription_number=SequenceService(self.session).next_number(
                SequenceService.SUBSCRIPTION, "SUB"
            ),
            customer_id=parent.customer_id,
            contact_id=parent.contact_id,
            plan_id=parent.plan_id,
            status=SubscriptionStatus.DRAFT.value,
            start_date=self.clock.today(),
            payment_terms=parent.payment_terms,
            parent_subscription_id=parent.id,
            renewal_type=renewal_type.value,
            discount_amount=_ZERO,
            amount_due=_ZERO,
        )
        child.lines = lines
        self.session.add(child)
        self._recalculate(child)
        verb = "Renewed" if renewal_type == HistoryAction.RENEWAL else "Upsell"
        self._record(
            child,
            renewal_type,
            f"{verb} from {parent.subscription_number}",
            performed_by,
            to_status=SubscriptionStatus.DRAFT.value,
        )
        label = "Renewal" if renewal_type == HistoryAction.RENEWAL else "Upsell"
        self._record(
            parent,
            renewal_type,
            f"{label} created: {child.subscription_number}",
            performed_by,
        )
        logger.info(
            "subscription_spawned",
            extra={
                "subscription_id": str(child.id),
                "parent_subscription_id": str(parent.id),
                "renewal_type": renewal_type.value,
            },
        )
        return child

    def renew(self, subscription_id: UUID, performed_by: str | None = None) -> Subscription:
        """
        New DRAFT subscription copying an ACTIVE or CLOSED one.

        Raises:
            InvalidStateError: not ACTIVE or CLOSED.
            PolicyViolationError: the plan is not renewable.
        """
        parent = self._get(subscription_id, lock=True)
        SUBSCRIPTION_WORKFLOW.find_transition(parent.status, "renew", str(subscription_id))
        plan = self.plan_for(parent)
        if plan is not None and not plan.renewable:
            raise PolicyViolationError("plan_renewable", f"plan {plan.name} does not support renewal")
        with LogContext.bind(subscription_id=str(subscription_id)):
            lines = [self._copy_line(n, l) for n, l in enumerate(parent.lines, start=1)]
            return self._spawn(parent, HistoryAction.RENEWAL, lines, performed_by).to_dto()

    def upsell(
        self,
        subscription_id: UUID,
        additional_lines: Sequence[NewSubscriptionLine],
        performed_by: str | None = None,
    ) -> Subscription:
        """New DRAFT subscription with the ACTIVE one's lines plus ``additional_lines``."""
        parent = self._get(subscription_id, lock=True)
        SUBSCRIPTION_WORKFLOW.find_transition(parent.status, "upsell", str(subscription_id))
        if not additional_lines:
            raise ValidationError("additional_lines", "at least one line is required for an upsell")
        with LogContext.bind(subscription_id=str(subscription_id)):
            lines = [self._copy_line(n, l) for n, l in enumerate(parent.lines, start=1)]
            offset = len(lines)
            lines += [
                self._build_line(offset + n, line)
                for n, line in enumerate(additional_lines, start=1)
            ]
            return self._spawn(parent, HistoryAction.UPSELL, lines, performed_by).to_dto()
