"""
Caller scoping.

Back-office roles (ADMIN, INTERNAL) see every record.  A PORTAL_USER is
bound to one customer id and sees only that customer's rows; list queries
get a WHERE predicate, single-record reads are checked with ``require``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from uuid import UUID

from sqlalchemy import Select
from sqlalchemy.orm import InstrumentedAttribute

from billing_kernel.exceptions import AccessDeniedError, ValidationError


class CallerRole(str, Enum):
    ADMIN = "ADMIN"
    INTERNAL = "INTERNAL"
    PORTAL_USER = "PORTAL_USER"


@dataclass(frozen=True)
class CallerScope:
    role: CallerRole
    customer_id: UUID | None = None
    actor_id: str | None = None

    def __post_init__(self) -> None:
        if self.role == CallerRole.PORTAL_USER and self.customer_id is None:
            raise ValidationError("customer_id", "portal callers must be bound to a customer")

    @classmethod
    def admin(cls, actor_id: str | None = None) -> CallerScope:
        return cls(CallerRole.ADMIN, actor_id=actor_id)

    @classmethod
    def portal(cls, customer_id: UUID, actor_id: str | None = None) -> CallerScope:
        return cls(CallerRole.PORTAL_USER, customer_id=customer_id, actor_id=actor_id)

    @property
    def is_portal(self) -> bool:
        return self.role == CallerRole.PORTAL_USER

    def apply(self, stmt: Select, customer_column: InstrumentedAttribute) -> Select:
        """Restrict ``stmt`` to the caller's customer when scoped."""
        if self.is_portal:
            return stmt.where(customer_column == self.customer_id)
        return stmt

    def require(self, owner_id: UUID, entity_type: str, key: str) -> None:
        """Raise AccessDeniedError if a portal caller reads another customer's record."""
        if self.is_portal and owner_id != self.customer_id:
            raise AccessDeniedError(entity_type, key, self.role.value)

    def effective_customer(self, requested: UUID) -> UUID:
        """Portal callers always act for their own customer."""
        return self.customer_id if self.is_portal else requested
