"""Unit tests for billing date arithmetic."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from ratework.app.billing.schedule import BillingScheduleCalculator
from ratework.app.entitlements.models import BillingCycle


@pytest.fixture
def schedule():
    return BillingScheduleCalculator()


def test_monthly_clamps_to_end_of_short_month(schedule):
    anchor = datetime(2024, 1, 31, tzinfo=timezone.utc)
    assert schedule.next_billing_date(anchor, BillingCycle.MONTHLY) == datetime(2024, 2, 29, tzinfo=timezone.utc)


def test_annual_from_leap_day_falls_back_to_feb_28(schedule):
    anchor = datetime(2024, 2, 29, tzinfo=timezone.utc)
    assert schedule.next_billing_date(anchor, BillingCycle.ANNUAL) == datetime(2025, 2, 28, tzinfo=timezone.utc)


def test_monthly_rolls_over_year(schedule):
    anchor = datetime(2023, 12, 15, tzinfo=timezone.utc)
    assert schedule.next_billing_date(anchor, BillingCycle.MONTHLY) == datetime(2024, 1, 15, tzinfo=timezone.utc)


def test_anchor_day_restores_day_after_short_month(schedule):
    clamped = datetime(2024, 2, 29, tzinfo=timezone.utc)
    result = schedule.next_billing_date(clamped, BillingCycle.MONTHLY, anchor_day=31)
    assert result == datetime(2024, 3, 31, tzinfo=timezone.utc)

    april = schedule.next_billing_date(result, BillingCycle.MONTHLY, anchor_day=31)
    assert april == datetime(2024, 4, 30, tzinfo=timezone.utc)


def test_time_of_day_and_timezone_preserved(schedule):
    tz = timezone(timedelta(hours=3))
    anchor = datetime(2024, 1, 31, 13, 45, tzinfo=tz)
    result = schedule.next_billing_date(anchor, BillingCycle.MONTHLY)
    assert (result.hour, result.minute) == (13, 45)
    assert result.tzinfo == tz


def test_invalid_anchor_day_rejected(schedule):
    with pytest.raises(ValueError):
        schedule.next_billing_date(datetime(2024, 1, 1, tzinfo=timezone.utc), BillingCycle.MONTHLY, anchor_day=0)


def test_trial_and_grace_boundaries(schedule):
    start = datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert schedule.trial_end_date(start, 14) == datetime(2024, 1, 15, tzinfo=timezone.utc)
    assert schedule.grace_period_end_date(start, 7) == datetime(2024, 1, 8, tzinfo=timezone.utc)
    with pytest.raises(ValueError):
        schedule.trial_end_date(start, -1)


def test_cycle_and_remaining_days(schedule):
    start = datetime(2024, 4, 1, tzinfo=timezone.utc)
    end = datetime(2024, 5, 1, tzinfo=timezone.utc)
    assert schedule.cycle_length_days(start, end) == 30
    assert schedule.remaining_days(datetime(2024, 4, 21, 18, tzinfo=timezone.utc), end) == 10
    assert schedule.remaining_days(datetime(2024, 5, 3, tzinfo=timezone.utc), end) == 0
    with pytest.raises(ValueError):
        schedule.cycle_length_days(end, start)
