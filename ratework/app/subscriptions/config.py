"""Subscription engine configuration helpers."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, Mapping, Optional
import os

from ..entitlements.catalog import PLAN_CATALOG
from ..entitlements.models import PlanTier


@dataclass(frozen=True)
class SubscriptionConfig:
    """Configuration for lifecycle transitions, payments and the renewal sweep."""

    trial_days: Dict[PlanTier, int] = field(
        default_factory=lambda: {tier: plan.default_trial_days for tier, plan in PLAN_CATALOG.items()}
    )
    grace_period_days: int = 7
    max_conflict_retries: int = 3
    sweep_interval_seconds: int = 300
    sweep_workers: int = 1
    grace_retry_interval_hours: int = 24
    payment_timeout_seconds: float = 10.0
    payment_max_attempts: int = 3
    payment_backoff_seconds: float = 1.0
    currency: str = "TRY"

    def trial_days_for(self, tier: PlanTier) -> int:
        return self.trial_days.get(tier, 0)

    @property
    def grace_retry_interval(self) -> timedelta:
        return timedelta(hours=self.grace_retry_interval_hours)


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def load_subscription_config(env: Optional[Mapping[str, str]] = None) -> SubscriptionConfig:
    """Load :class:`SubscriptionConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    trial_days = {
        tier: max(
            0,
            _to_int(
                env_mapping.get(f"SUBSCRIPTION_TRIAL_DAYS_{tier.name}"),
                default=plan.default_trial_days,
            ),
        )
        for tier, plan in PLAN_CATALOG.items()
    }

    grace_period_days = max(0, _to_int(env_mapping.get("SUBSCRIPTION_GRACE_PERIOD_DAYS"), default=7))
    max_conflict_retries = max(1, _to_int(env_mapping.get("SUBSCRIPTION_MAX_CONFLICT_RETRIES"), default=3))
    sweep_interval_seconds = max(1, _to_int(env_mapping.get("SUBSCRIPTION_SWEEP_INTERVAL_SECONDS"), default=300))
    sweep_workers = max(1, _to_int(env_mapping.get("SUBSCRIPTION_SWEEP_WORKERS"), default=1))
    grace_retry_interval_hours = max(1, _to_int(env_mapping.get("SUBSCRIPTION_GRACE_RETRY_HOURS"), default=24))

    payment_timeout_seconds = max(0.1, _to_float(env_mapping.get("PAYMENT_TIMEOUT_SECONDS"), default=10.0))
    payment_max_attempts = max(1, _to_int(env_mapping.get("PAYMENT_MAX_ATTEMPTS"), default=3))
    payment_backoff_seconds = max(0.0, _to_float(env_mapping.get("PAYMENT_RETRY_BACKOFF"), default=1.0))

    currency = (env_mapping.get("SUBSCRIPTION_CURRENCY") or "TRY").strip().upper() or "TRY"
    if len(currency) != 3:
        raise ValueError(f"Expected a 3-letter currency code, got {currency!r}")

    return SubscriptionConfig(
        trial_days=trial_days,
        grace_period_days=grace_period_days,
        max_conflict_retries=max_conflict_retries,
        sweep_interval_seconds=sweep_interval_seconds,
        sweep_workers=sweep_workers,
        grace_retry_interval_hours=grace_retry_interval_hours,
        payment_timeout_seconds=payment_timeout_seconds,
        payment_max_attempts=payment_max_attempts,
        payment_backoff_seconds=payment_backoff_seconds,
        currency=currency,
    )


__all__ = ["SubscriptionConfig", "load_subscription_config"]
