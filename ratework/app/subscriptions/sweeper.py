"""Periodic scan that drives time-based subscription transitions."""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from .models import RenewalOutcome, RenewalResult
from .service import SubscriptionLifecycleManager, SubscriptionRepository, _current_time

logger = logging.getLogger(__name__)


@dataclass
class SweepSummary:
    """Counts of what one sweep did."""

    started_at: datetime
    candidates: int = 0
    outcomes: Dict[str, int] = field(default_factory=dict)
    failures: int = 0
    failed_ids: List[str] = field(default_factory=list)

    def record(self, outcome: RenewalOutcome) -> None:
        self.outcomes[outcome.value] = self.outcomes.get(outcome.value, 0) + 1

    @property
    def processed(self) -> int:
        return sum(self.outcomes.values())

    def count(self, outcome: RenewalOutcome) -> int:
        return self.outcomes.get(outcome.value, 0)

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "candidates": self.candidates,
            "processed": self.processed,
            "failures": self.failures,
            "outcomes": dict(self.outcomes),
        }


class RenewalSweeper:
    """Finds due subscriptions and hands each one to the lifecycle manager.

    Renewals, grace expiries and grace retries are collected up front and
    de-duplicated, so one subscription is handled at most once per sweep.
    Eligibility is checked again inside each locked transition, which makes
    overlapping or repeated sweeps harmless.
    """

    def __init__(
        self,
        manager: SubscriptionLifecycleManager,
        repository: SubscriptionRepository,
        *,
        workers: int = 1,
        grace_retry_interval: timedelta = timedelta(hours=24),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.manager = manager
        self.repository = repository
        self.workers = max(1, workers)
        self.grace_retry_interval = grace_retry_interval
        self.clock = clock

    def _collect(self, now: datetime) -> List[Tuple[str, str]]:
        seen = set()
        jobs: List[Tuple[str, str]] = []
        batches = (
            ("renew", self.repository.find_due_for_renewal(now)),
            ("process_grace_expiry", self.repository.find_due_for_grace_expiry(now)),
            ("retry_grace_charge", self.repository.find_due_for_grace_retry(now, self.grace_retry_interval)),
        )
        for operation, candidates in batches:
            for subscription in candidates:
                if subscription.subscription_id in seen:
                    continue
                seen.add(subscription.subscription_id)
                jobs.append((operation, subscription.subscription_id))
        return jobs

    def _run_one(self, operation: str, subscription_id: str) -> Tuple[Optional[RenewalResult], bool]:
        handler = getattr(self.manager, operation)
        try:
            return handler(subscription_id), True
        except Exception:
            logger.exception(
                "Renewal sweep item failed",
                extra={"subscription_id": subscription_id, "operation": operation},
            )
            return None, False

    def sweep(self, now: Optional[datetime] = None) -> SweepSummary:
        started_at = now or _current_time(self.clock)
        jobs = self._collect(started_at)
        summary = SweepSummary(started_at=started_at, candidates=len(jobs))
        if not jobs:
            return summary

        if self.workers > 1:
            with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="renewal-sweep") as pool:
                results = list(pool.map(lambda job: self._run_one(*job), jobs))
        else:
            results = [self._run_one(operation, subscription_id) for operation, subscription_id in jobs]

        for (_, subscription_id), (result, ok) in zip(jobs, results):
            if not ok:
                summary.failures += 1
                summary.failed_ids.append(subscription_id)
                continue
            summary.record(result.outcome)

        logger.info("Renewal sweep finished", extra=summary.to_dict())
        return summary


__all__ = ["RenewalSweeper", "SweepSummary"]
