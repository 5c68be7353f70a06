"""Billing date arithmetic for subscription cycles."""
from __future__ import annotations

import calendar
from datetime import datetime, timedelta
from typing import Optional

from ..entitlements.models import BillingCycle


def _add_months(anchor: datetime, months: int, anchor_day: Optional[int] = None) -> datetime:
    month_index = anchor.month - 1 + months
    year = anchor.year + (month_index // 12)
    month = month_index % 12 + 1
    day = anchor_day if anchor_day is not None else anchor.day
    day = min(day, calendar.monthrange(year, month)[1])
    return anchor.replace(year=year, month=month, day=day)


class BillingScheduleCalculator:
    """Computes renewal, trial and grace-period boundaries.

    Stateless and deterministic: every method is a pure function of its
    arguments. Time-of-day and tzinfo of the inputs are preserved.
    """

    def next_billing_date(
        self,
        anchor: datetime,
        cycle: BillingCycle,
        *,
        anchor_day: Optional[int] = None,
    ) -> datetime:
        """Return the billing date one cycle after ``anchor``.

        Monthly keeps the day of month, clamped to the last valid day of the
        target month. Annual keeps the date; Feb 29 becomes Feb 28 in a
        non-leap year. ``anchor_day`` overrides the day taken from ``anchor``
        so a subscription started on the 31st returns to the 31st after
        passing through a shorter month.
        """

        if anchor_day is not None and not 1 <= anchor_day <= 31:
            raise ValueError("anchor_day must be between 1 and 31")
        if cycle == BillingCycle.ANNUAL:
            return _add_months(anchor, 12, anchor_day)
        return _add_months(anchor, 1, anchor_day)

    def trial_end_date(self, start: datetime, trial_days: int) -> datetime:
        if trial_days < 0:
            raise ValueError("trial_days must be >= 0")
        return start + timedelta(days=trial_days)

    def grace_period_end_date(self, failed_at: datetime, grace_days: int) -> datetime:
        if grace_days < 0:
            raise ValueError("grace_days must be >= 0")
        return failed_at + timedelta(days=grace_days)

    def cycle_length_days(self, period_start: datetime, period_end: datetime) -> int:
        days = (period_end.date() - period_start.date()).days
        if days <= 0:
            raise ValueError("period_end must be after period_start")
        return days

    def remaining_days(self, now: datetime, period_end: datetime) -> int:
        """Whole days left in the period, never negative."""

        return max((period_end.date() - now.date()).days, 0)


__all__ = ["BillingScheduleCalculator"]
