"""Tests for usage counters, quota evaluation and feature gating helpers."""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from ratework.app.entitlements.models import BillingCycle, FeatureKey, PlanTier
from ratework.app.errors import FeatureNotEntitled, QuotaExceeded
from ratework.app.feature_gates import (
    EntitlementContext,
    UsageCounter,
    UsageMeter,
    assert_quota,
    evaluate_usage,
    require_feature,
)
from ratework.app.subscriptions.models import Subscription, SubscriptionStatus


def test_consuming_to_the_limit_then_one_more_is_rejected():
    meter = UsageMeter.from_limits({"job_postings": 2}, subscription_id="sub_1")
    assert meter.consume("job_postings").used == 1
    assert meter.consume("job_postings").used == 2

    with pytest.raises(QuotaExceeded) as excinfo:
        meter.consume("job_postings")

    assert excinfo.value.limit == 2
    assert excinfo.value.used == 2
    assert meter.snapshot()["job_postings"].used == 2


def test_unlimited_counter_never_blocks():
    meter = UsageMeter.from_limits({"review_responses": None})
    counter = meter.consume("review_responses", 10_000)
    assert counter.used == 10_000
    assert counter.remaining is None


def test_unknown_feature_is_not_entitled():
    meter = UsageMeter.from_limits({"job_postings": 2})
    with pytest.raises(FeatureNotEntitled):
        meter.consume("api_calls")


@pytest.mark.parametrize("amount", [0, -3])
def test_non_positive_amount_rejected(amount):
    meter = UsageMeter.from_limits({"job_postings": 2})
    with pytest.raises(ValueError):
        meter.consume("job_postings", amount)


def test_reset_zeroes_counters_and_keeps_limits():
    meter = UsageMeter.from_limits({"job_postings": 5})
    meter.consume("job_postings", 3)
    meter.reset()
    counter = meter.snapshot()["job_postings"]
    assert counter.used == 0
    assert counter.limit == 5


def test_rebase_preserves_consumption():
    meter = UsageMeter.from_limits({"job_postings": 5})
    meter.consume("job_postings", 4)
    meter.rebase({"job_postings": 20, "api_calls": 1000})
    snapshot = meter.snapshot()
    assert snapshot["job_postings"] == UsageCounter(limit=20, used=4)
    assert snapshot["api_calls"] == UsageCounter(limit=1000, used=0)


def test_rebase_below_consumption_is_rejected_without_change():
    meter = UsageMeter.from_limits({"job_postings": 5})
    meter.consume("job_postings", 4)
    with pytest.raises(QuotaExceeded):
        meter.rebase({"job_postings": 2})
    assert meter.snapshot()["job_postings"] == UsageCounter(limit=5, used=4)


def test_concurrent_consumers_never_exceed_limit():
    meter = UsageMeter.from_limits({"api_calls": 20})

    def attempt(_):
        try:
            meter.consume("api_calls")
        except QuotaExceeded:
            return False
        return True

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(attempt, range(50)))

    assert outcomes.count(True) == 20
    assert meter.snapshot()["api_calls"].used == 20


def test_counter_rejects_usage_above_limit():
    with pytest.raises(ValueError):
        UsageCounter(limit=1, used=2)


def test_evaluate_does_not_mutate():
    counter = UsageCounter(limit=3, used=2)
    evaluation = evaluate_usage("job_postings", counter, 2)
    assert not evaluation.allowed
    assert evaluation.projected_usage == 4
    assert evaluation.remaining == 1
    assert evaluation.to_dict()["allowed"] is False

    assert assert_quota("job_postings", counter, 1).allowed


def test_require_feature_accepts_enum_or_string():
    granted = (FeatureKey.VIEW_COMPANY_REVIEWS, FeatureKey.POST_JOB_LISTING)
    require_feature(granted, FeatureKey.POST_JOB_LISTING)
    require_feature(granted, "view_company_reviews")

    with pytest.raises(FeatureNotEntitled) as excinfo:
        require_feature(granted, FeatureKey.API_ACCESS, subscription_id="sub_1")

    assert excinfo.value.payload["missing_entitlement"] == "api_access"
    assert excinfo.value.code == "entitlement_required"


def test_entitlement_context_reads_subscription():
    now = datetime(2024, 4, 1, tzinfo=timezone.utc)
    subscription = Subscription(
        subscription_id="sub_ctx",
        company_id="company-1",
        tier=PlanTier.BASIC,
        billing_cycle=BillingCycle.MONTHLY,
        status=SubscriptionStatus.ACTIVE,
        price=Decimal("10.00"),
        start_date=now,
        current_period_start=now,
        next_billing_date=datetime(2024, 5, 1, tzinfo=timezone.utc),
        billing_anchor_day=1,
        entitlements=(FeatureKey.VIEW_COMPANY_REVIEWS, FeatureKey.POST_JOB_LISTING),
        usage={"job_postings": UsageCounter(limit=5, used=5), "review_responses": UsageCounter(limit=None)},
    )
    context = EntitlementContext(subscription)

    assert context.has(FeatureKey.POST_JOB_LISTING)
    assert not context.has("api_access")
    assert context.remaining("job_postings") == 0
    assert context.remaining("review_responses") is None
    assert not context.evaluate_usage("job_postings").allowed

    with pytest.raises(QuotaExceeded):
        context.assert_usage("job_postings")
    with pytest.raises(FeatureNotEntitled):
        context.require(FeatureKey.REVIEW_ANALYTICS)
    with pytest.raises(FeatureNotEntitled):
        context.remaining("api_calls")
