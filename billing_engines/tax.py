"""
Module: billing_engines.tax
Responsibility:
    Jurisdiction tax rules, suggestion ranking and rate sanity checks.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  Historical Tax records
    are loaded by ``billing_modules.tax.service`` and passed in.

Invariants enforced:
    - Rule-table suggestions carry confidence 0.9, historical ones 0.7.
    - A historical record is dropped when a suggestion with the same rate
      is already present.
    - Suggestions are ordered by confidence, highest first; ties keep
      their insertion order.
    - ``validate_tax_rate`` only warns; it never raises.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal

RULE_CONFIDENCE = Decimal("0.9")
HISTORICAL_CONFIDENCE = Decimal("0.7")


@dataclass(frozen=True)
class TaxRule:
    """A statutory rate for a country and set of product types."""

    country: str
    tax_type: str
    rate: Decimal
    product_types: tuple[str, ...]


@dataclass(frozen=True)
class TaxSuggestion:
    tax_name: str
    rate: Decimal
    tax_type: str
    confidence: Decimal
    reason: str


@dataclass(frozen=True)
class HistoricalTax:
    """Active Tax record previously configured for a country."""

    name: str
    rate: Decimal
    tax_type: str


@dataclass(frozen=True)
class TaxRateValidation:
    warnings: tuple[str, ...]

    @property
    def valid(self) -> bool:
        return not self.warnings


TAX_RULES: tuple[TaxRule, ...] = (
    TaxRule("India", "GST", Decimal("18"), ("Service", "Digital")),
    TaxRule("India", "CGST+SGST", Decimal("18"), ("Physical",)),
    TaxRule("USA", "Sales Tax", Decimal("7"), ("Physical",)),
    TaxRule("USA", "Digital Services Tax", Decimal("5"), ("Digital", "Service")),
    TaxRule("UK", "VAT", Decimal("20"), ("Service", "Physical", "Digital")),
)

STANDARD_RATES: dict[str, frozenset[Decimal]] = {
    "India": frozenset(Decimal(r) for r in ("5", "12", "18", "28")),
    "UK": frozenset(Decimal(r) for r in ("0", "5", "20")),
}

_RATE_WARNINGS = {
    "India": "Non-standard GST rate for India (typical: 5%, 12%, 18%, 28%)",
    "UK": "Non-standard VAT rate for UK (typical: 0%, 5%, 20%)",
}


def suggest_from_rules(
    country: str,
    product_type: str,
    rules: Iterable[TaxRule] = TAX_RULES,
) -> list[TaxSuggestion]:
    """Rule-table suggestions for a country and product type."""
    return [
        TaxSuggestion(
            tax_name=f"{country} {rule.tax_type}",
            rate=rule.rate,
            tax_type=rule.tax_type,
            confidence=RULE_CONFIDENCE,
            reason=f"Standard {rule.tax_type} for {product_type} in {country}",
        )
        for rule in rules
        if rule.country == country and product_type in rule.product_types
    ]


def merge_suggestions(
    country: str,
    rule_suggestions: Iterable[TaxSuggestion],
    historical: Iterable[HistoricalTax],
) -> list[TaxSuggestion]:
    """Append historical records with unseen rates and rank by confidence."""
    merged = list(rule_suggestions)
    for tax in historical:
        if any(s.rate == tax.rate for s in merged):
            continue
        merged.append(
            TaxSuggestion(
                tax_name=tax.name,
                rate=tax.rate,
                tax_type=tax.tax_type,
                confidence=HISTORICAL_CONFIDENCE,
                reason=f"Previously used tax configuration for {country}",
            )
        )
    # sorted() is stable, equal confidences keep their order
    return sorted(merged, key=lambda s: s.confidence, reverse=True)


def validate_tax_rate(rate: Decimal, country: str) -> TaxRateValidation:
    """Anomaly warnings for a configured rate."""
    warnings: list[str] = []
    if rate < 0 or rate > 50:
        warnings.append("Tax rate outside typical range (0-50%)")
    if rate > 30:
        warnings.append("Unusually high tax rate detected")
    standard = STANDARD_RATES.get(country)
    if standard is not None and rate not in standard:
        warnings.append(_RATE_WARNINGS[country])
    return TaxRateValidation(warnings=tuple(warnings))
