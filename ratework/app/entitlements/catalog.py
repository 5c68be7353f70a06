"""Static catalog mapping plan tiers to prices, features and usage limits."""
from __future__ import annotations

from decimal import Decimal
from typing import Dict

from .models import FeatureKey, PlanDefinition, PlanTier, UsageFeature

FREE_FEATURES = (
    FeatureKey.VIEW_COMPANY_REVIEWS,
    FeatureKey.RESPOND_TO_REVIEWS,
)

BASIC_FEATURES = FREE_FEATURES + (
    FeatureKey.POST_JOB_LISTING,
    FeatureKey.HR_VERIFICATION,
)

PREMIUM_FEATURES = BASIC_FEATURES + (
    FeatureKey.REVIEW_ANALYTICS,
    FeatureKey.APPLICANT_ANALYTICS,
    FeatureKey.JOB_POSTING_ANALYTICS,
    FeatureKey.MULTIPLE_HR_ACCOUNTS,
)

ENTERPRISE_FEATURES = PREMIUM_FEATURES + (
    FeatureKey.API_ACCESS,
    FeatureKey.CUSTOM_REPORTING,
    FeatureKey.COMPETITOR_ANALYSIS,
    FeatureKey.BRAND_MANAGEMENT,
    FeatureKey.PRIORITY_SUPPORT,
)

PLAN_CATALOG: Dict[PlanTier, PlanDefinition] = {
    PlanTier.FREE: PlanDefinition(
        tier=PlanTier.FREE,
        display_name="Free",
        monthly_price=Decimal("0.00"),
        annual_price=Decimal("0.00"),
        features=FREE_FEATURES,
        usage_limits={
            UsageFeature.JOB_POSTINGS: 0,
            UsageFeature.REVIEW_RESPONSES: 5,
            UsageFeature.HR_ACCOUNTS: 1,
            UsageFeature.API_CALLS: 0,
        },
    ),
    PlanTier.BASIC: PlanDefinition(
        tier=PlanTier.BASIC,
        display_name="Basic",
        monthly_price=Decimal("10.00"),
        annual_price=Decimal("100.00"),
        features=BASIC_FEATURES,
        usage_limits={
            UsageFeature.JOB_POSTINGS: 5,
            UsageFeature.REVIEW_RESPONSES: 20,
            UsageFeature.HR_ACCOUNTS: 1,
            UsageFeature.API_CALLS: 0,
        },
        default_trial_days=14,
    ),
    PlanTier.PREMIUM: PlanDefinition(
        tier=PlanTier.PREMIUM,
        display_name="Premium",
        monthly_price=Decimal("30.00"),
        annual_price=Decimal("300.00"),
        features=PREMIUM_FEATURES,
        usage_limits={
            UsageFeature.JOB_POSTINGS: 20,
            UsageFeature.REVIEW_RESPONSES: None,
            UsageFeature.HR_ACCOUNTS: 5,
            UsageFeature.API_CALLS: 1000,
        },
        default_trial_days=30,
    ),
    PlanTier.ENTERPRISE: PlanDefinition(
        tier=PlanTier.ENTERPRISE,
        display_name="Enterprise",
        monthly_price=Decimal("100.00"),
        annual_price=Decimal("1000.00"),
        features=ENTERPRISE_FEATURES,
        usage_limits={
            UsageFeature.JOB_POSTINGS: None,
            UsageFeature.REVIEW_RESPONSES: None,
            UsageFeature.HR_ACCOUNTS: None,
            UsageFeature.API_CALLS: 10000,
        },
        default_trial_days=30,
    ),
}


def get_plan_definition(tier: PlanTier) -> PlanDefinition:
    """Return a plan definition, raising if unsupported."""

    try:
        return PLAN_CATALOG[tier]
    except KeyError as exc:  # pragma: no cover - guarded by static catalog
        raise KeyError(f"Unknown plan tier: {tier}") from exc


def free_baseline() -> PlanDefinition:
    """Plan every expired subscription falls back to."""

    return PLAN_CATALOG[PlanTier.FREE]
