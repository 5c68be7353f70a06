"""Domain models for plan tiers, billing cycles and feature entitlements."""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Dict, Mapping, Optional, Tuple


class PlanTier(str, Enum):
    """Canonical identifiers for company subscription plans."""

    FREE = "free"
    BASIC = "basic"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]

    def is_above(self, other: "PlanTier") -> bool:
        return self.rank > other.rank

    def is_below(self, other: "PlanTier") -> bool:
        return self.rank < other.rank


_TIER_RANK: Dict[PlanTier, int] = {
    PlanTier.FREE: 0,
    PlanTier.BASIC: 1,
    PlanTier.PREMIUM: 2,
    PlanTier.ENTERPRISE: 3,
}


class BillingCycle(str, Enum):
    """Supported billing frequencies."""

    MONTHLY = "monthly"
    ANNUAL = "annual"


class FeatureKey(str, Enum):
    """Feature flags a plan tier can grant to a company account."""

    VIEW_COMPANY_REVIEWS = "view_company_reviews"
    RESPOND_TO_REVIEWS = "respond_to_reviews"
    POST_JOB_LISTING = "post_job_listing"
    HR_VERIFICATION = "hr_verification"
    REVIEW_ANALYTICS = "review_analytics"
    APPLICANT_ANALYTICS = "applicant_analytics"
    JOB_POSTING_ANALYTICS = "job_posting_analytics"
    MULTIPLE_HR_ACCOUNTS = "multiple_hr_accounts"
    API_ACCESS = "api_access"
    CUSTOM_REPORTING = "custom_reporting"
    COMPETITOR_ANALYSIS = "competitor_analysis"
    BRAND_MANAGEMENT = "brand_management"
    PRIORITY_SUPPORT = "priority_support"


class UsageFeature(str, Enum):
    """Metered features whose consumption is capped per billing period."""

    JOB_POSTINGS = "job_postings"
    REVIEW_RESPONSES = "review_responses"
    HR_ACCOUNTS = "hr_accounts"
    API_CALLS = "api_calls"


@dataclass(frozen=True)
class PlanDefinition:
    """Describes a plan tier: what it costs and what it grants.

    ``usage_limits`` maps a metered feature to its per-period cap; ``None``
    means the feature is metered but unlimited.
    """

    tier: PlanTier
    display_name: str
    monthly_price: Decimal
    annual_price: Decimal
    features: Tuple[FeatureKey, ...]
    usage_limits: Mapping[UsageFeature, Optional[int]] = field(default_factory=dict)
    default_trial_days: int = 0

    def price_for(self, cycle: BillingCycle) -> Decimal:
        if cycle == BillingCycle.ANNUAL:
            return self.annual_price
        return self.monthly_price

    def limits_by_key(self) -> Dict[str, Optional[int]]:
        """Return usage limits keyed by their string feature key."""

        return {feature.value: limit for feature, limit in self.usage_limits.items()}

    def grants(self, feature: FeatureKey) -> bool:
        return feature in self.features
