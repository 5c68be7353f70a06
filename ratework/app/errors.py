"""Typed errors raised by the subscription engine."""
from __future__ import annotations

from typing import Any, Dict, Iterable, Mapping, Optional

from fastapi import HTTPException, status


class SubscriptionError(Exception):
    """Base class for actionable failures surfaced to callers.

    ``retryable`` marks transient failures the engine may retry on its own
    (``VersionConflict`` and ``PaymentUnavailable``); everything else is
    terminal for the current call.
    """

    code = "subscription_error"
    status_code = status.HTTP_400_BAD_REQUEST
    retryable = False

    def __init__(self, message: str, *, detail: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail: Dict[str, Any] = dict(detail or {})

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        body: Dict[str, Any] = {"error": self.code, "message": self.message}
        body.update(self.detail)
        return body

    def to_http_exception(self) -> HTTPException:
        """Convert the domain error into a FastAPI HTTPException."""

        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


class SubscriptionNotFound(SubscriptionError):
    code = "subscription_not_found"
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, subscription_id: str) -> None:
        super().__init__(
            f"Subscription {subscription_id} not found",
            detail={"subscription_id": subscription_id},
        )
        self.subscription_id = subscription_id


class InvalidTransition(SubscriptionError):
    """An operation was attempted from a state that does not allow it."""

    code = "invalid_transition"
    status_code = status.HTTP_409_CONFLICT

    def __init__(
        self,
        subscription_id: str,
        *,
        current_status: str,
        operation: str,
        allowed_states: Iterable[str],
    ) -> None:
        allowed = sorted(allowed_states)
        super().__init__(
            f"Cannot {operation} subscription {subscription_id} while {current_status}",
            detail={
                "subscription_id": subscription_id,
                "current_status": current_status,
                "operation": operation,
                "allowed_states": allowed,
            },
        )
        self.subscription_id = subscription_id
        self.current_status = current_status
        self.operation = operation
        self.allowed_states = tuple(allowed)


class InvalidTierChange(SubscriptionError):
    code = "invalid_tier_change"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, subscription_id: str, *, current_tier: str, requested_tier: str, operation: str) -> None:
        super().__init__(
            f"Cannot {operation} subscription {subscription_id} from {current_tier} to {requested_tier}",
            detail={
                "subscription_id": subscription_id,
                "current_tier": current_tier,
                "requested_tier": requested_tier,
                "operation": operation,
            },
        )


class SubscriptionAlreadyActive(SubscriptionError):
    code = "subscription_already_active"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, company_id: str, existing_subscription_id: str) -> None:
        super().__init__(
            f"Company {company_id} already has an active subscription",
            detail={"company_id": company_id, "existing_subscription_id": existing_subscription_id},
        )
        self.company_id = company_id
        self.existing_subscription_id = existing_subscription_id


class QuotaExceeded(SubscriptionError):
    code = "quota_exceeded"
    status_code = status.HTTP_403_FORBIDDEN

    def __init__(
        self,
        feature_key: str,
        *,
        limit: Optional[int],
        used: int,
        requested: int,
        subscription_id: Optional[str] = None,
    ) -> None:
        super().__init__(
            f"Quota exceeded for '{feature_key}'. Limit: {limit}",
            detail={
                "subscription_id": subscription_id,
                "feature_key": feature_key,
                "limit": limit,
                "used": used,
                "requested": requested,
            },
        )
        self.feature_key = feature_key
        self.limit = limit
        self.used = used
        self.requested = requested


class FeatureNotEntitled(SubscriptionError):
    code = "entitlement_required"
    status_code = status.HTTP_403_FORBIDDEN

    def __init__(self, feature_key: str, *, subscription_id: Optional[str] = None) -> None:
        super().__init__(
            f"Entitlement '{feature_key}' is required.",
            detail={"subscription_id": subscription_id, "missing_entitlement": feature_key},
        )
        self.feature_key = feature_key


class PaymentFailed(SubscriptionError):
    """The payment collaborator declined, or stayed unavailable past all retries."""

    code = "payment_failed"
    status_code = status.HTTP_402_PAYMENT_REQUIRED

    def __init__(self, reason: str, *, idempotency_key: Optional[str] = None) -> None:
        super().__init__(
            f"Payment failed: {reason}",
            detail={"reason": reason, "idempotency_key": idempotency_key},
        )
        self.reason = reason


class PaymentUnavailable(SubscriptionError):
    code = "payment_unavailable"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    retryable = True

    def __init__(self, reason: str) -> None:
        super().__init__(f"Payment provider unavailable: {reason}", detail={"reason": reason})
        self.reason = reason


class VersionConflict(SubscriptionError):
    code = "version_conflict"
    status_code = status.HTTP_409_CONFLICT
    retryable = True

    def __init__(self, subscription_id: str, *, expected_version: int, actual_version: Optional[int] = None) -> None:
        super().__init__(
            f"Subscription {subscription_id} was modified concurrently",
            detail={
                "subscription_id": subscription_id,
                "expected_version": expected_version,
                "actual_version": actual_version,
            },
        )
        self.subscription_id = subscription_id
        self.expected_version = expected_version
        self.actual_version = actual_version


__all__ = [
    "FeatureNotEntitled",
    "InvalidTierChange",
    "InvalidTransition",
    "PaymentFailed",
    "PaymentUnavailable",
    "QuotaExceeded",
    "SubscriptionAlreadyActive",
    "SubscriptionError",
    "SubscriptionNotFound",
    "VersionConflict",
]
