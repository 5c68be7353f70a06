"""Tests for payment execution: declines, retries, timeouts and idempotency."""
from __future__ import annotations

import threading
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Union

import pytest

from ratework.app.billing.payments import ChargeResult, PaymentExecutor, PaymentGateway, idempotency_key
from ratework.app.errors import PaymentFailed


class ScriptedGateway(PaymentGateway):
    def __init__(self, outcomes: List[Union[ChargeResult, Exception]]) -> None:
        self.outcomes = list(outcomes)
        self.calls: List[dict] = []

    def charge(self, *, payment_method_ref, amount, currency, idempotency_key) -> ChargeResult:
        self.calls.append(
            {
                "payment_method_ref": payment_method_ref,
                "amount": amount,
                "currency": currency,
                "idempotency_key": idempotency_key,
            }
        )
        outcome = self.outcomes.pop(0) if self.outcomes else ChargeResult(succeeded=True, receipt_ref="rcpt")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class SlowGateway(PaymentGateway):
    def __init__(self) -> None:
        self.release = threading.Event()
        self.calls = 0

    def charge(self, *, payment_method_ref, amount, currency, idempotency_key) -> ChargeResult:
        self.calls += 1
        self.release.wait(2.0)
        return ChargeResult(succeeded=True)


def _executor(gateway, sleeps, **kwargs):
    kwargs.setdefault("timeout_seconds", 1.0)
    kwargs.setdefault("max_attempts", 3)
    kwargs.setdefault("backoff_seconds", 1.0)
    return PaymentExecutor(gateway, sleep=sleeps.append, **kwargs)


def _charge(executor, **overrides):
    params = dict(
        payment_method_ref="pm_card",
        amount=Decimal("10.00"),
        currency="TRY",
        idempotency_key="key-1",
        subscription_id="sub_1",
    )
    params.update(overrides)
    return executor.charge(**params)


def test_successful_charge_passes_idempotency_key():
    gateway = ScriptedGateway([ChargeResult(succeeded=True, receipt_ref="rcpt_1")])
    sleeps: List[float] = []
    result = _charge(_executor(gateway, sleeps))

    assert result.receipt_ref == "rcpt_1"
    assert gateway.calls[0]["idempotency_key"] == "key-1"
    assert sleeps == []


def test_decline_is_not_retried():
    gateway = ScriptedGateway([ChargeResult(succeeded=False, failure_reason="card_declined")])
    sleeps: List[float] = []

    with pytest.raises(PaymentFailed) as excinfo:
        _charge(_executor(gateway, sleeps))

    assert excinfo.value.reason == "card_declined"
    assert len(gateway.calls) == 1
    assert sleeps == []


def test_unavailable_gateway_is_retried_with_linear_backoff():
    gateway = ScriptedGateway([ConnectionError("reset"), ConnectionError("reset"), ChargeResult(succeeded=True)])
    sleeps: List[float] = []

    result = _charge(_executor(gateway, sleeps))

    assert result.succeeded
    assert len(gateway.calls) == 3
    assert sleeps == [1.0, 2.0]
    assert {call["idempotency_key"] for call in gateway.calls} == {"key-1"}


def test_exhausted_retries_become_payment_failed():
    gateway = ScriptedGateway([ConnectionError("down")] * 3)
    sleeps: List[float] = []

    with pytest.raises(PaymentFailed) as excinfo:
        _charge(_executor(gateway, sleeps))

    assert "unavailable" in excinfo.value.reason
    assert len(gateway.calls) == 3
    assert sleeps == [1.0, 2.0]


def test_retryable_result_counts_as_unavailable():
    gateway = ScriptedGateway(
        [ChargeResult(succeeded=False, retryable=True, failure_reason="try_again"), ChargeResult(succeeded=True)]
    )
    sleeps: List[float] = []

    assert _charge(_executor(gateway, sleeps)).succeeded
    assert len(gateway.calls) == 2


def test_timeout_is_treated_as_unavailable():
    gateway = SlowGateway()
    sleeps: List[float] = []
    executor = _executor(gateway, sleeps, timeout_seconds=0.05, max_attempts=2)
    try:
        with pytest.raises(PaymentFailed):
            _charge(executor)
    finally:
        gateway.release.set()
        executor.shutdown()

    assert gateway.calls >= 1
    assert sleeps == [1.0]


def test_missing_payment_method_fails_without_calling_gateway():
    gateway = ScriptedGateway([])
    sleeps: List[float] = []

    with pytest.raises(PaymentFailed):
        _charge(_executor(gateway, sleeps), payment_method_ref=None)

    assert gateway.calls == []


def test_idempotency_key_is_deterministic_per_period_and_attempt():
    period = datetime(2024, 5, 1, tzinfo=timezone.utc)
    first = idempotency_key("sub_1", period, "renewal", 0)

    assert first == idempotency_key("sub_1", period, "renewal", 0)
    assert first != idempotency_key("sub_1", period, "renewal", 1)
    assert first != idempotency_key("sub_1", datetime(2024, 6, 1, tzinfo=timezone.utc), "renewal", 0)
    assert len(first) == 64
