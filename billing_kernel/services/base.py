"""
Write-side service base.

Module services (subscriptions, invoicing, discounts, tax) share one
session with their caller and only ``flush()``.  Committing and rolling
back belongs to ``billing_services.reconciliation``, which composes them.
"""

from abc import ABC
from typing import TypeVar

from sqlalchemy.orm import Session

from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.exceptions import NotFoundError

_Row = TypeVar("_Row")


class BaseService(ABC):
    def __init__(self, session: Session, clock: Clock | None = None):
        self.session = session
        self.clock = clock or SystemClock()

    def _load(self, model: type[_Row], entity_id, label: str, *, lock: bool = False) -> _Row:
        """Fetch one row by primary key; ``lock`` takes a row lock and refreshes it."""
        if lock:
            row = self.session.get(
                model, entity_id, with_for_update=True, populate_existing=True
            )
        else:
            row = self.session.get(model, entity_id)
        if row is None:
            raise NotFoundError(label, str(entity_id))
        return row
