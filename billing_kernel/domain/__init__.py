"""
Pure domain types: clock, money and workflow tables.

Nothing here touches the ORM, the database or the network; ``SystemClock``
is the one place wall-clock time enters.
"""

from billing_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from billing_kernel.domain.values import CURRENCY_EXPONENTS, Currency, Money
from billing_kernel.domain.workflow import Guard, Transition, Workflow

__all__ = [
    "Clock",
    "DeterministicClock",
    "SystemClock",
    "CURRENCY_EXPONENTS",
    "Currency",
    "Money",
    "Guard",
    "Transition",
    "Workflow",
]
