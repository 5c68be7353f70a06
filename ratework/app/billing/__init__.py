"""Billing arithmetic and payment execution for subscription charges."""

from .payments import ChargeResult, PaymentExecutor, PaymentGateway, idempotency_key
from .proration import CURRENCY_EXPONENTS, ProrationCalculator, ProrationQuote
from .schedule import BillingScheduleCalculator

__all__ = [
    "BillingScheduleCalculator",
    "CURRENCY_EXPONENTS",
    "ChargeResult",
    "PaymentExecutor",
    "PaymentGateway",
    "ProrationCalculator",
    "ProrationQuote",
    "idempotency_key",
]
