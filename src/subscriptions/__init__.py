"""Subscriptions: the persisted (kind, room, identity) records and their store."""

from src.subscriptions.repository import SubscriptionRepository
from src.subscriptions.schemas import SourceKind, Subscription

__all__ = [
    "SourceKind",
    "Subscription",
    "SubscriptionRepository",
]
