"""Helpers for enforcing entitlement checks on service layers."""
from __future__ import annotations

from typing import Iterable, Optional, Union

from ..entitlements.models import FeatureKey
from ..errors import FeatureNotEntitled


def _normalize(flag: Union[FeatureKey, str]) -> str:
    return flag.value if isinstance(flag, FeatureKey) else str(flag)


def require_feature(
    entitlements: Iterable[Union[FeatureKey, str]],
    flag: Union[FeatureKey, str],
    *,
    subscription_id: Optional[str] = None,
) -> None:
    """Ensure ``flag`` is among the granted entitlements before proceeding.

    Parameters
    ----------
    entitlements:
        Feature flags granted by the subscription's tier.
    flag:
        The feature that must be granted.
    subscription_id:
        Included in the raised error's detail when provided.
    """

    wanted = _normalize(flag)
    granted = {_normalize(item) for item in entitlements}
    if wanted not in granted:
        raise FeatureNotEntitled(wanted, subscription_id=subscription_id)
