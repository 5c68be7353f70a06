"""Per-feature usage counters and quota evaluation."""
from __future__ import annotations

from dataclasses import dataclass
from threading import Lock
from typing import Dict, Iterable, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..errors import FeatureNotEntitled, QuotaExceeded


class UsageCounter(BaseModel):
    """Consumption of one metered feature; ``limit=None`` means unlimited."""

    model_config = ConfigDict(frozen=True)

    limit: Optional[int] = Field(default=None, ge=0)
    used: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _used_within_limit(self) -> "UsageCounter":
        if self.limit is not None and self.used > self.limit:
            raise ValueError(f"used ({self.used}) exceeds limit ({self.limit})")
        return self

    @property
    def unlimited(self) -> bool:
        return self.limit is None

    @property
    def remaining(self) -> Optional[int]:
        if self.limit is None:
            return None
        return self.limit - self.used

    def allows(self, amount: int) -> bool:
        return self.limit is None or self.used + amount <= self.limit


@dataclass(frozen=True)
class QuotaEvaluation:
    """Represents the outcome of a usage quota check."""

    feature_key: str
    limit: Optional[int]
    used: int
    requested: int
    allowed: bool

    @property
    def projected_usage(self) -> int:
        return self.used + self.requested

    @property
    def remaining(self) -> Optional[int]:
        if self.limit is None:
            return None
        return max(self.limit - self.used, 0)

    def to_dict(self) -> dict[str, Optional[int] | bool | str]:
        """Serialize the evaluation for logging or telemetry."""

        return {
            "feature_key": self.feature_key,
            "limit": self.limit,
            "used": self.used,
            "requested": self.requested,
            "projected_usage": self.projected_usage,
            "allowed": self.allowed,
        }


def _validate_amount(amount: int) -> None:
    if amount < 1:
        raise ValueError("amount must be >= 1")


def evaluate_usage(feature_key: str, counter: UsageCounter, amount: int = 1) -> QuotaEvaluation:
    """Determine whether consuming ``amount`` units stays within the limit."""

    _validate_amount(amount)
    return QuotaEvaluation(
        feature_key=feature_key,
        limit=counter.limit,
        used=counter.used,
        requested=amount,
        allowed=counter.allows(amount),
    )


def assert_quota(
    feature_key: str,
    counter: UsageCounter,
    amount: int = 1,
    *,
    subscription_id: Optional[str] = None,
) -> QuotaEvaluation:
    """Raise :class:`QuotaExceeded` when consuming ``amount`` would pass the limit."""

    evaluation = evaluate_usage(feature_key, counter, amount)
    if not evaluation.allowed:
        raise QuotaExceeded(
            feature_key,
            limit=counter.limit,
            used=counter.used,
            requested=amount,
            subscription_id=subscription_id,
        )
    return evaluation


class UsageMeter:
    """Thread-safe set of usage counters for one subscription.

    ``consume`` checks and increments inside one critical section so two
    concurrent callers can never both pass the check against the last unit.
    """

    def __init__(
        self,
        counters: Optional[Mapping[str, UsageCounter]] = None,
        *,
        subscription_id: Optional[str] = None,
    ) -> None:
        self._counters: Dict[str, UsageCounter] = dict(counters or {})
        self._lock = Lock()
        self.subscription_id = subscription_id

    @classmethod
    def from_limits(
        cls,
        limits: Mapping[str, Optional[int]],
        *,
        subscription_id: Optional[str] = None,
    ) -> "UsageMeter":
        counters = {key: UsageCounter(limit=limit) for key, limit in limits.items()}
        return cls(counters, subscription_id=subscription_id)

    def _counter(self, feature_key: str) -> UsageCounter:
        try:
            return self._counters[feature_key]
        except KeyError:
            raise FeatureNotEntitled(feature_key, subscription_id=self.subscription_id) from None

    def evaluate(self, feature_key: str, amount: int = 1) -> QuotaEvaluation:
        with self._lock:
            counter = self._counter(feature_key)
        return evaluate_usage(feature_key, counter, amount)

    def consume(self, feature_key: str, amount: int = 1) -> UsageCounter:
        """Increment ``feature_key`` by ``amount`` or raise without mutating."""

        _validate_amount(amount)
        with self._lock:
            counter = self._counter(feature_key)
            assert_quota(feature_key, counter, amount, subscription_id=self.subscription_id)
            updated = counter.model_copy(update={"used": counter.used + amount})
            self._counters[feature_key] = updated
            return updated

    def reset(self) -> None:
        """Zero every counter, keeping the limits."""

        with self._lock:
            self._counters = {
                key: counter.model_copy(update={"used": 0}) for key, counter in self._counters.items()
            }

    def rebase(self, limits: Mapping[str, Optional[int]]) -> None:
        """Swap in new limits, keeping what has been consumed so far.

        Raises :class:`QuotaExceeded` and leaves the meter untouched when an
        existing counter is already above its new limit.
        """

        with self._lock:
            rebased: Dict[str, UsageCounter] = {}
            for key, limit in limits.items():
                used = self._counters[key].used if key in self._counters else 0
                if limit is not None and used > limit:
                    raise QuotaExceeded(
                        key,
                        limit=limit,
                        used=used,
                        requested=0,
                        subscription_id=self.subscription_id,
                    )
                rebased[key] = UsageCounter(limit=limit, used=used)
            self._counters = rebased

    def keys(self) -> Iterable[str]:
        with self._lock:
            return tuple(self._counters)

    def snapshot(self) -> Dict[str, UsageCounter]:
        with self._lock:
            return dict(self._counters)


__all__ = [
    "QuotaEvaluation",
    "UsageCounter",
    "UsageMeter",
    "assert_quota",
    "evaluate_usage",
]
