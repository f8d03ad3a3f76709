"""
Tax Service (``billing_modules.tax.service``).

Ranks tax suggestions for a jurisdiction and product type by combining the
static rule table in ``billing_engines.tax`` with the active Tax records
already configured for the country.  Read-only.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from billing_engines.tax import (
    TaxRateValidation,
    TaxSuggestion,
    merge_suggestions,
    suggest_from_rules,
    validate_tax_rate,
)
from billing_config.schema import BillingSettings
from billing_kernel.domain.clock import Clock
from billing_kernel.logging_config import get_logger
from billing_kernel.services.base import BaseService
from billing_modules.catalog.orm import CustomerModel, ProductModel, TaxModel

logger = get_logger("modules.tax.service")


@dataclass(frozen=True)
class ApplicableTax:
    """Best suggestion for one product plus up to two alternatives."""

    product_id: UUID
    product_name: str
    suggested: TaxSuggestion
    alternatives: tuple[TaxSuggestion, ...]


class TaxService(BaseService):
    """
    ``default_country`` is the jurisdiction assumed for customers without a
    country; it comes from ``billing.default_tax_country``.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        default_country: str = BillingSettings.default_tax_country,
    ):
        super().__init__(session, clock)
        self.default_country = default_country

    @classmethod
    def for_settings(
        cls, session: Session, settings: BillingSettings, clock: Clock | None = None
    ) -> TaxService:
        return cls(session, clock, default_country=settings.default_tax_country)

    def suggest(
        self,
        country: str,
        state: str | None,
        product_type: str,
    ) -> list[TaxSuggestion]:
        """Ranked suggestions, highest confidence first."""
        historical = self.session.execute(
            select(TaxModel)
            .where(TaxModel.country == country, TaxModel.is_active.is_(True))
            .order_by(TaxModel.created_at, TaxModel.name)
        ).scalars().all()
        suggestions = merge_suggestions(
            country,
            suggest_from_rules(country, product_type),
            (tax.to_historical() for tax in historical),
        )
        logger.debug(
            "tax_suggestions_ranked",
            extra={
                "country": country,
                "state": state,
                "product_type": product_type,
                "count": len(suggestions),
            },
        )
        return suggestions

    def validate(self, rate: Decimal, country: str) -> TaxRateValidation:
        """Warnings only.  Creation of the tax is never blocked."""
        result = validate_tax_rate(rate, country)
        if not result.valid:
            logger.warning(
                "tax_rate_anomaly",
                extra={"rate": rate, "country": country, "warnings": list(result.warnings)},
            )
        return result

    def applicable_taxes(
        self,
        customer_id: UUID,
        product_ids: Sequence[UUID],
    ) -> list[ApplicableTax]:
        """
        Per-product suggestions for a customer's jurisdiction.

        Returns an empty list for an unknown customer.  Products with no
        suggestion are left out.
        """
        customer = self.session.get(CustomerModel, customer_id)
        if customer is None:
            return []
        if not product_ids:
            return []
        products = self.session.execute(
            select(ProductModel)
            .where(ProductModel.id.in_(list(product_ids)))
            .order_by(ProductModel.name)
        ).scalars().all()

        country = customer.country or self.default_country
        result: list[ApplicableTax] = []
        for product in products:
            suggestions = self.suggest(country, customer.state, product.product_type)
            if not suggestions:
                continue
            result.append(
                ApplicableTax(
                    product_id=product.id,
                    product_name=product.name,
                    suggested=suggestions[0],
                    alternatives=tuple(suggestions[1:3]),
                )
            )
        return result
