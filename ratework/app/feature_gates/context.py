"""Convenience wrapper around a subscription for feature gating."""
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Optional, Tuple, Union

from ..entitlements.models import FeatureKey, PlanTier
from .enforcement import require_feature
from .quota import QuotaEvaluation, UsageCounter, assert_quota, evaluate_usage

if TYPE_CHECKING:
    from ..subscriptions.models import Subscription


@dataclass(frozen=True)
class EntitlementContext:
    """Facade exposing gating-centric helpers for one subscription snapshot."""

    subscription: "Subscription"

    @property
    def tier(self) -> PlanTier:
        return self.subscription.tier

    @property
    def entitlements(self) -> Tuple[FeatureKey, ...]:
        return tuple(self.subscription.entitlements)

    @property
    def usage(self) -> Dict[str, UsageCounter]:
        return dict(self.subscription.usage)

    def has(self, flag: Union[FeatureKey, str]) -> bool:
        """Return whether the subscription grants ``flag``."""

        wanted = flag.value if isinstance(flag, FeatureKey) else str(flag)
        return any(item.value == wanted for item in self.subscription.entitlements)

    def require(self, flag: Union[FeatureKey, str]) -> None:
        require_feature(
            self.subscription.entitlements,
            flag,
            subscription_id=self.subscription.subscription_id,
        )

    def _counter(self, feature_key: str) -> UsageCounter:
        counter = self.subscription.usage.get(feature_key)
        if counter is None:
            # Unknown counters surface the same way the meter reports them.
            require_feature((), feature_key, subscription_id=self.subscription.subscription_id)
        return counter

    def remaining(self, feature_key: str) -> Optional[int]:
        """Units left for ``feature_key``; ``None`` when unlimited."""

        return self._counter(feature_key).remaining

    def evaluate_usage(self, feature_key: str, amount: int = 1) -> QuotaEvaluation:
        return evaluate_usage(feature_key, self._counter(feature_key), amount)

    def assert_usage(self, feature_key: str, amount: int = 1) -> QuotaEvaluation:
        """Raise when consuming ``amount`` would exceed the quota."""

        return assert_quota(
            feature_key,
            self._counter(feature_key),
            amount,
            subscription_id=self.subscription.subscription_id,
        )
