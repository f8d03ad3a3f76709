"""
ORM-Level Immutability Enforcement for append-only audit rows.

SQLAlchemy fires events before UPDATE/DELETE operations reach the database.
The listeners registered here intercept those events for
``SubscriptionHistoryModel`` rows and raise ``ImmutabilityViolationError``:

    session.flush()
         |
         v
    [before_update event] --> _check_history_update() --> ImmutabilityViolationError

History rows are never edited or deleted through the ORM.  The one sanctioned
removal path is ``SubscriptionService.delete_subscription`` for DRAFT
subscriptions, which issues bulk DELETE statements (bulk statements do not
fire mapper events).
"""

from sqlalchemy import event

from billing_kernel.exceptions import ImmutabilityViolationError
from billing_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _reject(target, operation: str, reason: str) -> None:
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": "SubscriptionHistory",
            "entity_id": str(target.id),
            "operation": operation,
        },
    )
    raise ImmutabilityViolationError(
        entity_type="SubscriptionHistory",
        entity_id=str(target.id),
        reason=reason,
    )


def _check_history_update(mapper, connection, target):
    """Prevent any updates to subscription history rows."""
    _reject(target, "UPDATE", "History entries are append-only and cannot be modified")


def _check_history_delete(mapper, connection, target):
    """Prevent deletion of subscription history rows."""
    _reject(target, "DELETE", "History entries cannot be deleted")


_LISTENERS = (
    ("before_update", _check_history_update),
    ("before_delete", _check_history_delete),
)


def register_immutability_listeners() -> None:
    """Register history immutability listeners (idempotent)."""
    from billing_modules.subscriptions.orm import SubscriptionHistoryModel

    for name, fn in _LISTENERS:
        if not event.contains(SubscriptionHistoryModel, name, fn):
            event.listen(SubscriptionHistoryModel, name, fn)
