"""Payment execution with bounded timeouts, retries and idempotency keys."""
from __future__ import annotations

import hashlib
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional, Protocol

from pydantic import BaseModel, ConfigDict

from ..errors import PaymentFailed, PaymentUnavailable

logger = logging.getLogger(__name__)


class ChargeResult(BaseModel):
    """Outcome reported by a payment gateway for a single charge."""

    model_config = ConfigDict(frozen=True)

    succeeded: bool
    receipt_ref: Optional[str] = None
    failure_reason: Optional[str] = None
    retryable: bool = False


class PaymentGateway(Protocol):
    """External payment processor able to charge a stored payment method."""

    def charge(
        self,
        *,
        payment_method_ref: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
    ) -> ChargeResult:
        ...


def idempotency_key(subscription_id: str, period: datetime, purpose: str, attempt: int = 0) -> str:
    """Deterministic key for one charge of one billing period.

    Replaying the same subscription, period, purpose and attempt yields the
    same key, so a gateway that deduplicates on it never charges twice.
    """

    raw = f"{subscription_id}:{period.isoformat()}:{purpose}:{attempt}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class PaymentExecutor:
    """Runs gateway charges on a worker thread and classifies the outcome.

    Declines raise :class:`PaymentFailed` straight away. Timeouts, gateway
    exceptions and results flagged ``retryable`` count as unavailable and are
    retried up to ``max_attempts`` times with linear backoff; when the
    attempts run out the charge is reported as :class:`PaymentFailed`.
    """

    def __init__(
        self,
        gateway: PaymentGateway,
        *,
        timeout_seconds: float = 10.0,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        max_workers: int = 4,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.gateway = gateway
        self.timeout_seconds = max(0.001, timeout_seconds)
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = max(0.0, backoff_seconds)
        self._sleep = sleep
        self._pool = ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="payment")

    def shutdown(self) -> None:
        self._pool.shutdown(wait=False)

    def _attempt(
        self,
        *,
        payment_method_ref: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
    ) -> ChargeResult:
        future = self._pool.submit(
            self.gateway.charge,
            payment_method_ref=payment_method_ref,
            amount=amount,
            currency=currency,
            idempotency_key=idempotency_key,
        )
        try:
            result = future.result(timeout=self.timeout_seconds)
        except FutureTimeoutError as exc:
            future.cancel()
            raise PaymentUnavailable(f"gateway timed out after {self.timeout_seconds}s") from exc
        except PaymentUnavailable:
            raise
        except Exception as exc:
            raise PaymentUnavailable(str(exc) or exc.__class__.__name__) from exc

        if not result.succeeded and result.retryable:
            raise PaymentUnavailable(result.failure_reason or "gateway reported a transient failure")
        return result

    def charge(
        self,
        *,
        payment_method_ref: Optional[str],
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        subscription_id: Optional[str] = None,
    ) -> ChargeResult:
        """Charge ``amount`` and return the successful result.

        Raises :class:`PaymentFailed` on a decline, a missing payment method
        or exhausted retries.
        """

        if not payment_method_ref:
            raise PaymentFailed("no payment method on file", idempotency_key=idempotency_key)
        if amount <= 0:
            raise ValueError("amount must be > 0")

        last_reason = "unknown"
        for attempt in range(1, self.max_attempts + 1):
            try:
                result = self._attempt(
                    payment_method_ref=payment_method_ref,
                    amount=amount,
                    currency=currency,
                    idempotency_key=idempotency_key,
                )
            except PaymentUnavailable as exc:
                last_reason = exc.reason
                logger.warning(
                    "Payment gateway unavailable",
                    extra={
                        "subscription_id": subscription_id,
                        "payment_attempt": attempt,
                        "payment_attempts": self.max_attempts,
                        "reason": exc.reason,
                    },
                )
                if attempt >= self.max_attempts:
                    break
                if self.backoff_seconds > 0:
                    self._sleep(self.backoff_seconds * attempt)
                continue

            if not result.succeeded:
                reason = result.failure_reason or "declined"
                logger.warning(
                    "Payment declined",
                    extra={"subscription_id": subscription_id, "reason": reason},
                )
                raise PaymentFailed(reason, idempotency_key=idempotency_key)

            logger.info(
                "Payment captured",
                extra={
                    "subscription_id": subscription_id,
                    "amount": str(amount),
                    "currency": currency,
                    "receipt_ref": result.receipt_ref,
                },
            )
            return result

        raise PaymentFailed(
            f"gateway unavailable after {self.max_attempts} attempts: {last_reason}",
            idempotency_key=idempotency_key,
        )


__all__ = ["ChargeResult", "PaymentExecutor", "PaymentGateway", "idempotency_key"]
