"""
Money amounts as they cross the gateway boundary.

Ledger arithmetic inside the billing core runs on plain two-decimal
Decimals (``billing_engines.ledger``).  ``Money`` exists for the edge where
an amount is handed to, or read back from, a payment gateway that counts in
minor units (paise for INR).

Invariants:
    - A ``Currency`` code is upper-case and one of ``CURRENCY_EXPONENTS``.
    - ``Money.amount`` is always a Decimal; floats are rejected.
    - Two amounts are equal only in the same currency.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

# ISO 4217 minor-unit exponents for the currencies we settle in.
CURRENCY_EXPONENTS: dict[str, int] = {
    "INR": 2,
    "USD": 2,
    "EUR": 2,
    "GBP": 2,
    "AED": 2,
    "SGD": 2,
    "AUD": 2,
    "CAD": 2,
    "JPY": 0,
}


@dataclass(frozen=True, slots=True)
class Currency:
    code: str

    def __post_init__(self) -> None:
        code = (self.code or "").strip().upper()
        if code not in CURRENCY_EXPONENTS:
            raise ValueError(f"Unsupported currency: {self.code!r}")
        object.__setattr__(self, "code", code)

    @property
    def exponent(self) -> int:
        return CURRENCY_EXPONENTS[self.code]

    @property
    def minor_factor(self) -> Decimal:
        return Decimal(10) ** self.exponent

    def __str__(self) -> str:
        return self.code


@dataclass(frozen=True, slots=True)
class Money:
    """An amount in a currency.  Build with ``Money.of``; never from floats."""

    amount: Decimal
    currency: Currency

    @classmethod
    def of(cls, amount: Decimal | str | int, currency: str | Currency) -> Money:
        if isinstance(amount, float):
            raise TypeError("Money amounts must not be floats")
        try:
            value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
        except InvalidOperation as exc:
            raise ValueError(f"Not an amount: {amount!r}") from exc
        if not isinstance(currency, Currency):
            currency = Currency(currency)
        return cls(amount=value, currency=currency)

    @classmethod
    def from_minor_units(cls, minor: int, currency: str | Currency) -> Money:
        """Amount the gateway reported in minor units."""
        money = cls.of(minor, currency)
        exact = money.amount / money.currency.minor_factor
        return cls(amount=exact.quantize(Decimal(1).scaleb(-money.currency.exponent)),
                   currency=money.currency)

    def to_minor_units(self) -> int:
        """Half-up rounding: ``Money.of("1062.00", "INR") -> 106200``."""
        scaled = self.amount * self.currency.minor_factor
        return int(scaled.quantize(Decimal(1), rounding=ROUND_HALF_UP))

    def __str__(self) -> str:
        return f"{self.amount} {self.currency}"
