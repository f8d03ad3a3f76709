"""
Pure billing calculation engines.

Ledger primitives, discount pricing, tax rules and checkout pricing.  No
engine touches the database, the clock or the network; services resolve
inputs and call into these functions.
"""

from billing_engines.checkout import CheckoutQuote, PricedLine, price_checkout
from billing_engines.discount import (
    DiscountQuote,
    DiscountTerms,
    DiscountType,
    PurchaseContext,
    evaluate_discount,
)
from billing_engines.ledger import (
    LineTotals,
    Totals,
    aggregate_totals,
    allocate_discount,
    apply_tax,
    compute_line,
    line_amount,
    round_money,
    to_minor_units,
)
from billing_engines.tax import (
    TaxRateValidation,
    TaxSuggestion,
    suggest_from_rules,
    merge_suggestions,
    validate_tax_rate,
)

__all__ = [
    "CheckoutQuote",
    "PricedLine",
    "price_checkout",
    "DiscountQuote",
    "DiscountTerms",
    "DiscountType",
    "PurchaseContext",
    "evaluate_discount",
    "LineTotals",
    "Totals",
    "aggregate_totals",
    "allocate_discount",
    "apply_tax",
    "compute_line",
    "line_amount",
    "round_money",
    "to_minor_units",
    "TaxRateValidation",
    "TaxSuggestion",
    "suggest_from_rules",
    "merge_suggestions",
    "validate_tax_rate",
]
