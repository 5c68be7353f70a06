"""Unit tests for upgrade proration."""
from __future__ import annotations

from decimal import Decimal

import pytest

from ratework.app.billing.proration import ProrationCalculator


@pytest.fixture
def calculator():
    return ProrationCalculator()


def test_half_cycle_upgrade_charges_half_the_difference(calculator):
    assert calculator.prorate(100, 200, 30, 15) == Decimal("50.00")


def test_full_cycle_downgrade_is_a_full_credit(calculator):
    assert calculator.prorate(200, 100, 30, 30) == Decimal("-100.00")


def test_rounds_half_up_to_minor_unit(calculator):
    assert calculator.prorate(Decimal("10.00"), Decimal("30.00"), 30, 10) == Decimal("6.67")
    assert calculator.prorate(0, "0.01", 2, 1) == Decimal("0.01")


def test_zero_decimal_currency(calculator):
    assert calculator.prorate(0, 100, 3, 1, currency="JPY") == Decimal("33")


def test_no_time_left_is_free(calculator):
    assert calculator.prorate(10, 30, 30, 0) == Decimal("0.00")


@pytest.mark.parametrize(
    "cycle_days, remaining_days",
    [(0, 0), (30, 31), (30, -1)],
)
def test_rejects_invalid_day_counts(calculator, cycle_days, remaining_days):
    with pytest.raises(ValueError):
        calculator.prorate(10, 30, cycle_days, remaining_days)


def test_rejects_float_amounts(calculator):
    with pytest.raises(TypeError):
        calculator.prorate(10.0, 30, 30, 10)


def test_quote_splits_charge_and_credit(calculator):
    quote = calculator.quote(200, 100, 30, 15)
    assert quote.amount == Decimal("-50.00")
    assert quote.charge == Decimal(0)
    assert quote.credit == Decimal("50.00")
    assert quote.is_credit
    assert quote.to_dict()["amount"] == "-50.00"

    upgrade = calculator.quote(100, 200, 30, 15, currency="try")
    assert upgrade.charge == Decimal("50.00")
    assert upgrade.credit == Decimal(0)
    assert upgrade.currency == "TRY"
