"""
Module: billing_engines.ledger
Responsibility:
    Money-safe arithmetic for line amounts, tax and totals.  Every invoice,
    subscription and checkout total in the system is derived here.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - Two-decimal fixed point, ROUND_HALF_UP, on every returned amount.
    - ``aggregate_totals`` is a full recomputation from the line list; there
      is no incremental running total to drift.
    - ``allocate_discount`` preserves the allocated total exactly and never
      gives a line more than its subtotal.

Failure modes:
    - InvalidLineError when quantity < 1, unit price is negative, or the
      line subtotal would be negative.
    - ValidationError on a negative tax rate.

Usage:
    from billing_engines.ledger import compute_line, aggregate_totals

    lines = [
        compute_line(2, Decimal("500"), Decimal("0"), Decimal("18")),
        compute_line(1, Decimal("300"), Decimal("50"), None),
    ]
    totals = aggregate_totals(lines)   # 1250 / 180 / 1430
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal

from billing_kernel.domain.values import Money
from billing_kernel.exceptions import InvalidLineError, ValidationError

_TWO_PLACES = Decimal("0.01")
_ZERO = Decimal("0")
_HUNDRED = Decimal("100")


def round_money(value: Decimal) -> Decimal:
    """Round to cents, half-up."""
    return Decimal(value).quantize(_TWO_PLACES, rounding=ROUND_HALF_UP)


def line_amount(
    quantity: int,
    unit_price: Decimal,
    discount: Decimal = _ZERO,
) -> Decimal:
    """
    Line subtotal ``quantity * unit_price - discount``.

    Raises:
        InvalidLineError: quantity < 1, negative price or discount, or a
            negative subtotal.
    """
    if quantity < 1:
        raise InvalidLineError("quantity", f"must be at least 1, got {quantity}")
    if unit_price < _ZERO:
        raise InvalidLineError("unit_price", f"must not be negative, got {unit_price}")
    if discount < _ZERO:
        raise InvalidLineError("discount", f"must not be negative, got {discount}")
    subtotal = round_money(Decimal(quantity) * unit_price - discount)
    if subtotal < _ZERO:
        raise InvalidLineError(
            "discount",
            f"discount {discount} exceeds line value {Decimal(quantity) * unit_price}",
        )
    return subtotal


def apply_tax(subtotal: Decimal, rate_percent: Decimal | None) -> Decimal:
    """``round(subtotal * rate / 100, 2)``; no rate means no tax."""
    if rate_percent is None:
        return _ZERO.quantize(_TWO_PLACES)
    if rate_percent < _ZERO:
        raise ValidationError("tax_rate", f"must not be negative, got {rate_percent}")
    return round_money(subtotal * rate_percent / _HUNDRED)


@dataclass(frozen=True)
class LineTotals:
    """Derived amounts of one line.  ``amount == subtotal + tax_amount``."""

    subtotal: Decimal
    tax_amount: Decimal

    @property
    def amount(self) -> Decimal:
        return self.subtotal + self.tax_amount


@dataclass(frozen=True)
class Totals:
    """Document totals.  ``total == subtotal + tax_amount``."""

    subtotal: Decimal
    tax_amount: Decimal
    total: Decimal


def compute_line(
    quantity: int,
    unit_price: Decimal,
    discount: Decimal,
    tax_rate: Decimal | None,
) -> LineTotals:
    """Subtotal and tax of a single line."""
    subtotal = line_amount(quantity, unit_price, discount)
    return LineTotals(subtotal=subtotal, tax_amount=apply_tax(subtotal, tax_rate))


def aggregate_totals(lines: Iterable[LineTotals]) -> Totals:
    """Sum line subtotals and taxes.  An empty list totals to zero."""
    subtotal = _ZERO
    tax_amount = _ZERO
    for line in lines:
        subtotal += line.subtotal
        tax_amount += line.tax_amount
    subtotal = round_money(subtotal)
    tax_amount = round_money(tax_amount)
    return Totals(subtotal=subtotal, tax_amount=tax_amount, total=subtotal + tax_amount)


def to_minor_units(amount: Decimal, currency: str = "INR") -> int:
    """Gateway amount in minor units, ``round(amount * 100)`` for INR."""
    return Money.of(amount, currency).to_minor_units()


def allocate_discount(
    subtotals: Sequence[Decimal],
    discount: Decimal,
) -> tuple[Decimal, ...]:
    """
    Spread an order-level discount across lines pro rata to their subtotals.

    Postconditions:
        - ``sum(result) == round_money(discount)``.
        - ``0 <= share <= subtotal`` for every line.
        - Shares are rounded down to the cent; the leftover cents go one
          at a time to the lines with the largest dropped fraction (ties:
          larger subtotal, then earlier line).

    Raises:
        ValidationError: negative discount, or a discount larger than the
            subtotals it is spread over.
    """
    discount = round_money(discount)
    if discount < _ZERO:
        raise ValidationError("discount", f"must not be negative, got {discount}")
    if not subtotals:
        if discount != _ZERO:
            raise ValidationError("discount", "cannot allocate a discount without lines")
        return ()

    base = sum(subtotals, _ZERO)
    if discount > base:
        raise ValidationError("discount", f"discount {discount} exceeds subtotal {base}")
    if discount == _ZERO or base == _ZERO:
        return tuple(_ZERO.quantize(_TWO_PLACES) for _ in subtotals)

    exact = [discount * s / base for s in subtotals]
    shares = [e.quantize(_TWO_PLACES, rounding=ROUND_DOWN) for e in exact]
    leftover_cents = int((discount - sum(shares, _ZERO)) / _TWO_PLACES)
    order = sorted(
        range(len(subtotals)),
        key=lambda i: (exact[i] - shares[i], subtotals[i], -i),
        reverse=True,
    )
    for i in order[:leftover_cents]:
        shares[i] += _TWO_PLACES
    return tuple(shares)
