"""Tests for error payloads and HTTP mapping."""
from __future__ import annotations

from fastapi import HTTPException

from ratework.app.errors import (
    InvalidTransition,
    PaymentFailed,
    PaymentUnavailable,
    QuotaExceeded,
    SubscriptionError,
    SubscriptionNotFound,
    VersionConflict,
)


def test_invalid_transition_carries_context():
    error = InvalidTransition(
        "sub_1",
        current_status="cancelled",
        operation="upgrade",
        allowed_states=["trial", "active", "grace_period"],
    )

    assert error.current_status == "cancelled"
    assert error.operation == "upgrade"
    assert error.allowed_states == ("active", "grace_period", "trial")
    assert error.status_code == 409
    assert error.payload["error"] == "invalid_transition"


def test_quota_exceeded_converts_to_http_exception():
    error = QuotaExceeded("job_postings", limit=5, used=5, requested=1, subscription_id="sub_1")
    http_error = error.to_http_exception()

    assert isinstance(http_error, HTTPException)
    assert http_error.status_code == 403
    assert http_error.detail["feature_key"] == "job_postings"
    assert http_error.detail["limit"] == 5


def test_only_transient_errors_are_retryable():
    assert VersionConflict("sub_1", expected_version=2, actual_version=3).retryable
    assert PaymentUnavailable("timeout").retryable
    assert not PaymentFailed("card_declined").retryable
    assert not SubscriptionNotFound("sub_1").retryable


def test_all_errors_share_the_base_class():
    assert issubclass(PaymentFailed, SubscriptionError)
    error = SubscriptionNotFound("sub_missing")
    assert error.status_code == 404
    assert "sub_missing" in error.message
