"""
Discount Service (``billing_modules.discounts.service``).

Looks up discount codes, prices them through ``billing_engines.discount``
and redeems them.  Redemption is a single compare-and-swap UPDATE:

    UPDATE discounts
       SET usage_count = usage_count + 1
     WHERE id = :id
       AND (limit_usage IS NULL OR usage_count < limit_usage)

Exactly ``limit_usage`` concurrent redemptions match the WHERE clause; the
rest see ``rowcount == 0`` and are rejected with USAGE_LIMIT_REACHED.  A
read-then-write increment would let two checkouts pass the limit check
before either writes.

Flush-only: the caller owns the transaction.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, or_, select, update

from billing_engines.discount import (
    DiscountQuote,
    DiscountTerms,
    PurchaseContext,
    RejectionReason,
    evaluate_discount,
)
from billing_kernel.exceptions import DiscountRejectedError, NotFoundError
from billing_kernel.logging_config import get_logger
from billing_kernel.services.base import BaseService
from billing_modules.catalog.orm import DiscountModel

logger = get_logger("modules.discounts.service")


class DiscountService(BaseService):
    """Discount lookup, evaluation and redemption."""

    def get_by_code(self, code: str) -> DiscountModel:
        """
        Case-insensitive lookup.

        Raises:
            NotFoundError: no discount has this code.  Callers surface this
                as an invalid code.
        """
        normalized = (code or "").strip().lower()
        discount = self.session.execute(
            select(DiscountModel).where(func.lower(DiscountModel.name) == normalized)
        ).scalar_one_or_none()
        if discount is None:
            logger.info("discount_code_not_found", extra={"discount_code": code})
            raise NotFoundError("Discount", code)
        return discount

    def terms_for(self, code: str) -> DiscountTerms:
        return self.get_by_code(code).to_terms()

    def evaluate(
        self,
        code: str,
        subtotal: Decimal,
        quantity: int,
        reference_date: date | None = None,
    ) -> DiscountQuote:
        """Validate and price a code without redeeming it."""
        terms = self.terms_for(code)
        context = PurchaseContext(
            subtotal=subtotal,
            quantity=quantity,
            reference_date=reference_date or self.clock.today(),
        )
        quote = evaluate_discount(terms, context)
        logger.debug(
            "discount_evaluated",
            extra={"discount_code": terms.code, "subtotal": subtotal, "amount": quote.amount},
        )
        return quote

    def redeem(self, discount_id: UUID) -> None:
        """
        Consume one usage slot.

        Raises:
            NotFoundError: the discount no longer exists.
            DiscountRejectedError: USAGE_LIMIT_REACHED when the limit was
                hit, possibly by a concurrent redemption.
        """
        result = self.session.execute(
            update(DiscountModel)
            .where(DiscountModel.id == discount_id)
            .where(
                or_(
                    DiscountModel.limit_usage.is_(None),
                    DiscountModel.usage_count < DiscountModel.limit_usage,
                )
            )
            .values(usage_count=DiscountModel.usage_count + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            logger.info("discount_redeemed", extra={"discount_id": str(discount_id)})
            return

        discount = self.session.get(DiscountModel, discount_id, populate_existing=True)
        if discount is None:
            raise NotFoundError("Discount", str(discount_id))
        logger.warning(
            "discount_redemption_rejected",
            extra={
                "discount_code": discount.name,
                "usage_count": discount.usage_count,
                "limit_usage": discount.limit_usage,
            },
        )
        raise DiscountRejectedError(
            discount_code=discount.name,
            reason_code=RejectionReason.USAGE_LIMIT_REACHED.value,
            reason=f"usage limit {discount.limit_usage} reached",
        )

    def apply(
        self,
        code: str,
        subtotal: Decimal,
        quantity: int,
        reference_date: date | None = None,
    ) -> DiscountQuote:
        """Evaluate then redeem in the caller's transaction."""
        quote = self.evaluate(code, subtotal, quantity, reference_date)
        self.redeem(quote.discount_id)
        return quote
