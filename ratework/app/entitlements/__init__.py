"""Entitlement catalog: plan tiers, prices, feature flags and usage limits."""

from .catalog import PLAN_CATALOG, free_baseline, get_plan_definition
from .models import BillingCycle, FeatureKey, PlanDefinition, PlanTier, UsageFeature

__all__ = [
    "PLAN_CATALOG",
    "free_baseline",
    "get_plan_definition",
    "BillingCycle",
    "FeatureKey",
    "PlanDefinition",
    "PlanTier",
    "UsageFeature",
]
