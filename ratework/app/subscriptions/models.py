"""Domain models for company subscriptions."""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..entitlements.models import BillingCycle, FeatureKey, PlanTier
from ..feature_gates.quota import UsageCounter


class SubscriptionStatus(str, Enum):
    """Lifecycle states a subscription moves through."""

    TRIAL = "trial"
    ACTIVE = "active"
    GRACE_PERIOD = "grace_period"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: FrozenSet[SubscriptionStatus] = frozenset(
    {SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED}
)
LIVE_STATUSES: FrozenSet[SubscriptionStatus] = frozenset(
    {SubscriptionStatus.TRIAL, SubscriptionStatus.ACTIVE, SubscriptionStatus.GRACE_PERIOD}
)


class Subscription(BaseModel):
    """A company's subscription to one plan tier.

    Instances are immutable; every transition produces a new, re-validated
    copy through :meth:`evolve`.
    """

    subscription_id: str
    company_id: str
    tier: PlanTier
    billing_cycle: BillingCycle
    status: SubscriptionStatus
    price: Decimal = Field(ge=0)
    currency: str = Field(default="TRY", min_length=3, max_length=3)
    start_date: datetime
    current_period_start: datetime
    next_billing_date: datetime
    billing_anchor_day: int = Field(ge=1, le=31)
    trial_end_date: Optional[datetime] = None
    grace_period_end_date: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    end_date: Optional[datetime] = None
    last_charge_attempt_at: Optional[datetime] = None
    cancel_at_period_end: bool = False
    cancellation_reason: Optional[str] = None
    pending_tier: Optional[PlanTier] = None
    payment_method_ref: Optional[str] = None
    failed_charge_attempts: int = Field(default=0, ge=0)
    # Declines of on-demand charges (upgrade, early trial end); part of their idempotency key.
    declined_charge_attempts: int = Field(default=0, ge=0)
    entitlements: Tuple[FeatureKey, ...] = ()
    usage: Dict[str, UsageCounter] = Field(default_factory=dict)
    metadata: Dict[str, str] = Field(default_factory=dict)
    version: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    @model_validator(mode="after")
    def _check_invariants(self) -> "Subscription":
        if self.next_billing_date <= self.start_date:
            raise ValueError("next_billing_date must be after start_date")
        if self.next_billing_date <= self.current_period_start:
            raise ValueError("next_billing_date must be after current_period_start")
        if self.status == SubscriptionStatus.TRIAL and self.trial_end_date is None:
            raise ValueError("trial subscriptions require trial_end_date")
        if self.status == SubscriptionStatus.GRACE_PERIOD and self.grace_period_end_date is None:
            raise ValueError("grace period subscriptions require grace_period_end_date")
        if self.status.is_terminal and self.end_date is None:
            raise ValueError("terminal subscriptions require end_date")
        if self.pending_tier is not None and not self.pending_tier.is_below(self.tier):
            raise ValueError("pending_tier must rank below tier")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES

    def is_due(self, now: datetime) -> bool:
        return now >= self.next_billing_date

    def evolve(self, **changes: object) -> "Subscription":
        """Return a validated copy with ``changes`` applied.

        ``model_copy`` skips validation, so the copy is rebuilt to keep the
        invariants enforced on every transition.
        """

        data = self.model_dump()
        data.update(changes)
        return Subscription.model_validate(data)


class NotificationFact(str, Enum):
    """Facts published to the notification collaborator."""

    SUBSCRIPTION_CREATED = "subscription_created"
    UPGRADE_COMPLETED = "upgrade_completed"
    DOWNGRADE_SCHEDULED = "downgrade_scheduled"
    RENEWAL_SUCCEEDED = "renewal_succeeded"
    RENEWAL_FAILED = "renewal_failed"
    ENTERED_GRACE_PERIOD = "entered_grace_period"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class SubscriptionNotification(BaseModel):
    """Fire-and-forget fact about a completed transition."""

    fact: NotificationFact
    subscription_id: str
    company_id: str
    tier: PlanTier
    status: SubscriptionStatus
    amount: Optional[Decimal] = None
    credit: Optional[Decimal] = None
    currency: Optional[str] = None
    next_billing_date: Optional[datetime] = None
    grace_period_end_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    reason: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @classmethod
    def for_subscription(
        cls,
        fact: NotificationFact,
        subscription: Subscription,
        *,
        occurred_at: datetime,
        **extra: object,
    ) -> "SubscriptionNotification":
        return cls(
            fact=fact,
            subscription_id=subscription.subscription_id,
            company_id=subscription.company_id,
            tier=subscription.tier,
            status=subscription.status,
            currency=subscription.currency,
            next_billing_date=subscription.next_billing_date,
            grace_period_end_date=subscription.grace_period_end_date,
            end_date=subscription.end_date,
            occurred_at=occurred_at,
            **extra,
        )


class RenewalOutcome(str, Enum):
    """What a sweeper-driven operation did to a subscription."""

    RENEWED = "renewed"
    CONVERTED_FROM_TRIAL = "converted_from_trial"
    RECOVERED = "recovered"
    ENTERED_GRACE = "entered_grace"
    GRACE_RETRY_FAILED = "grace_retry_failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    NOT_DUE = "not_due"


class RenewalResult(BaseModel):
    """Subscription state after a renewal, grace retry or grace expiry."""

    subscription: Subscription
    outcome: RenewalOutcome

    model_config = ConfigDict(frozen=True)

    @property
    def changed(self) -> bool:
        return self.outcome != RenewalOutcome.NOT_DUE


__all__ = [
    "LIVE_STATUSES",
    "NotificationFact",
    "RenewalOutcome",
    "RenewalResult",
    "Subscription",
    "SubscriptionNotification",
    "SubscriptionStatus",
    "TERMINAL_STATUSES",
    "UsageCounter",
]
