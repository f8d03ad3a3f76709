"""Subscription lifecycle: state machine, lines, renewals and history."""

from billing_modules.subscriptions.models import (
    HistoryAction,
    HistoryEntry,
    NewSubscriptionLine,
    Subscription,
    SubscriptionLine,
    SubscriptionStatus,
)
from billing_modules.subscriptions.service import SubscriptionService
from billing_modules.subscriptions.workflows import SUBSCRIPTION_WORKFLOW

__all__ = [
    "HistoryAction",
    "HistoryEntry",
    "NewSubscriptionLine",
    "SUBSCRIPTION_WORKFLOW",
    "Subscription",
    "SubscriptionLine",
    "SubscriptionService",
    "SubscriptionStatus",
]
