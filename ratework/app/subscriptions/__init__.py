"""Subscription lifecycle: aggregate, persistence, state machine and renewal sweep."""

from .config import SubscriptionConfig, load_subscription_config
from .locks import SubscriptionLockRegistry
from .models import (
    NotificationFact,
    RenewalOutcome,
    RenewalResult,
    Subscription,
    SubscriptionNotification,
    SubscriptionStatus,
    UsageCounter,
)
from .repository import InMemorySubscriptionRepository, PostgresSubscriptionRepository
from .service import SubscriptionLifecycleManager, SubscriptionNotifier, SubscriptionRepository
from .sweeper import RenewalSweeper, SweepSummary

__all__ = [
    "InMemorySubscriptionRepository",
    "NotificationFact",
    "PostgresSubscriptionRepository",
    "RenewalOutcome",
    "RenewalResult",
    "RenewalSweeper",
    "Subscription",
    "SubscriptionConfig",
    "SubscriptionLifecycleManager",
    "SubscriptionLockRegistry",
    "SubscriptionNotification",
    "SubscriptionNotifier",
    "SubscriptionRepository",
    "SubscriptionStatus",
    "SweepSummary",
    "UsageCounter",
    "load_subscription_config",
]
