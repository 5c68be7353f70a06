"""Feature gating utilities coordinating entitlement and quota enforcement."""
from .context import EntitlementContext
from .enforcement import require_feature
from .quota import QuotaEvaluation, UsageCounter, UsageMeter, assert_quota, evaluate_usage

__all__ = [
    "EntitlementContext",
    "QuotaEvaluation",
    "UsageCounter",
    "UsageMeter",
    "assert_quota",
    "evaluate_usage",
    "require_feature",
]
