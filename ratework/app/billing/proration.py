"""Prorated charges and credits for mid-cycle tier changes."""
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Mapping, Optional, Union

Number = Union[Decimal, int, str]

# Minor-unit exponent per currency; anything not listed uses two decimals.
CURRENCY_EXPONENTS: Dict[str, int] = {
    "JPY": 0,
    "KRW": 0,
    "KWD": 3,
}
_DEFAULT_EXPONENT = 2


def _to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        raise TypeError("Use Decimal or str for monetary amounts, not float")
    return Decimal(value)


@dataclass(frozen=True)
class ProrationQuote:
    """Outcome of a proration computation."""

    old_price: Decimal
    new_price: Decimal
    cycle_length_days: int
    remaining_days: int
    amount: Decimal
    currency: str

    @property
    def charge(self) -> Decimal:
        return self.amount if self.amount > 0 else Decimal(0)

    @property
    def credit(self) -> Decimal:
        return -self.amount if self.amount < 0 else Decimal(0)

    @property
    def is_credit(self) -> bool:
        return self.amount < 0

    def to_dict(self) -> dict[str, str | int]:
        """Serialize the quote for logging or notification metadata."""

        return {
            "old_price": str(self.old_price),
            "new_price": str(self.new_price),
            "cycle_length_days": self.cycle_length_days,
            "remaining_days": self.remaining_days,
            "amount": str(self.amount),
            "currency": self.currency,
        }


class ProrationCalculator:
    """Computes ``(new - old) * remaining / cycle`` rounded half-up to the minor unit."""

    def __init__(self, exponents: Optional[Mapping[str, int]] = None) -> None:
        self._exponents = dict(CURRENCY_EXPONENTS if exponents is None else exponents)

    def minor_unit(self, currency: str) -> Decimal:
        exponent = self._exponents.get(currency.upper(), _DEFAULT_EXPONENT)
        return Decimal(1).scaleb(-exponent)

    def prorate(
        self,
        old_price: Number,
        new_price: Number,
        cycle_length_days: int,
        remaining_days: int,
        *,
        currency: str = "TRY",
    ) -> Decimal:
        """Return the signed proration amount; negative values are credits."""

        if cycle_length_days <= 0:
            raise ValueError("cycle_length_days must be > 0")
        if not 0 <= remaining_days <= cycle_length_days:
            raise ValueError("remaining_days must be between 0 and cycle_length_days")

        delta = _to_decimal(new_price) - _to_decimal(old_price)
        raw = delta * Decimal(remaining_days) / Decimal(cycle_length_days)
        return raw.quantize(self.minor_unit(currency), rounding=ROUND_HALF_UP)

    def quote(
        self,
        old_price: Number,
        new_price: Number,
        cycle_length_days: int,
        remaining_days: int,
        *,
        currency: str = "TRY",
    ) -> ProrationQuote:
        amount = self.prorate(
            old_price,
            new_price,
            cycle_length_days,
            remaining_days,
            currency=currency,
        )
        return ProrationQuote(
            old_price=_to_decimal(old_price),
            new_price=_to_decimal(new_price),
            cycle_length_days=cycle_length_days,
            remaining_days=remaining_days,
            amount=amount,
            currency=currency.upper(),
        )


__all__ = ["CURRENCY_EXPONENTS", "ProrationCalculator", "ProrationQuote"]
