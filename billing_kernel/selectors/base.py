"""
Read-only query side.

A selector receives the caller's session and scope, runs SELECTs and hands
back frozen DTOs.  It never adds, deletes, flushes or commits.
"""

from abc import ABC
from typing import Any

from sqlalchemy import Select
from sqlalchemy.orm import Session

from billing_kernel.exceptions import NotFoundError


class BaseSelector(ABC):
    def __init__(self, session: Session):
        self.session = session

    def _scoped_dtos(self, scope: Any, stmt: Select, owner_column) -> list:
        """Run ``stmt`` narrowed to ``scope`` and convert each row to its DTO."""
        stmt = scope.apply(stmt, owner_column)
        return [row.to_dto() for row in self.session.execute(stmt).scalars()]

    def _scoped_count(self, scope: Any, stmt: Select, owner_column) -> int:
        return self.session.execute(scope.apply(stmt, owner_column)).scalar_one()

    def _scoped_get(self, scope: Any, model: type, entity_id, label: str):
        row = self.session.get(model, entity_id)
        if row is None:
            raise NotFoundError(label, str(entity_id))
        scope.require(row.customer_id, label, str(entity_id))
        return row.to_dto()
