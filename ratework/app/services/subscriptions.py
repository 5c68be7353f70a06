"""Application wiring for the subscription lifecycle engine."""
from __future__ import annotations

import logging
import math
import os
from decimal import Decimal
from functools import lru_cache
from typing import Dict, Mapping, Optional
from uuid import uuid4

import psycopg2
from dotenv import load_dotenv

from ... import app_context
from ..billing import ChargeResult, PaymentExecutor, PaymentGateway
from ..subscriptions import (
    InMemorySubscriptionRepository,
    PostgresSubscriptionRepository,
    RenewalSweeper,
    SubscriptionConfig,
    SubscriptionLifecycleManager,
    SubscriptionNotification,
    SubscriptionNotifier,
    load_subscription_config,
)

logger = logging.getLogger("subscriptions")


class LoggingSubscriptionNotifier(SubscriptionNotifier):
    """Notifier that records lifecycle facts to the application logger."""

    def publish(self, notification: SubscriptionNotification) -> None:
        logger.info(
            "Subscription %s %s company=%s tier=%s status=%s amount=%s %s",
            notification.subscription_id,
            notification.fact.value,
            notification.company_id,
            notification.tier.value,
            notification.status.value,
            notification.amount,
            notification.currency,
        )


class LocalSandboxPaymentGateway(PaymentGateway):
    """Minimal gateway for local development.

    Every charge succeeds except for payment methods starting with
    ``pm_decline``. Results are remembered per idempotency key so a replayed
    key returns the original outcome.
    """

    def __init__(self) -> None:
        self._results: Dict[str, ChargeResult] = {}

    def charge(
        self,
        *,
        payment_method_ref: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
    ) -> ChargeResult:
        existing = self._results.get(idempotency_key)
        if existing is not None:
            return existing
        if payment_method_ref.startswith("pm_decline"):
            result = ChargeResult(succeeded=False, failure_reason="card_declined")
        else:
            result = ChargeResult(succeeded=True, receipt_ref=f"rcpt_{uuid4().hex}")
        self._results[idempotency_key] = result
        logger.debug(
            "Sandbox charge %s %s method=%s succeeded=%s",
            amount,
            currency,
            payment_method_ref,
            result.succeeded,
        )
        return result


def _parse_connect_timeout(raw_value: str) -> int:
    try:
        timeout = float(raw_value)
    except ValueError as exc:
        raise ValueError("DB_CONNECT_TIMEOUT must be a number") from exc
    if timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")
    return int(math.ceil(timeout))


def database_config(env: Optional[Mapping[str, str]] = None) -> Dict[str, object]:
    env_mapping = os.environ if env is None else env
    return dict(
        host=env_mapping.get("DB_HOST", "127.0.0.1"),
        port=int(env_mapping.get("DB_PORT", "5432")),
        dbname=env_mapping.get("DB_NAME", "ratework_db"),
        user=env_mapping.get("DB_USER", "ratework_user"),
        password=env_mapping.get("DB_PASSWORD", "ratework_pass"),
        connect_timeout=_parse_connect_timeout(env_mapping.get("DB_CONNECT_TIMEOUT", "5")),
    )


def _store_backend() -> str:
    return (os.getenv("SUBSCRIPTION_STORE") or "memory").strip().lower()


@lru_cache(maxsize=1)
def get_subscription_config() -> SubscriptionConfig:
    load_dotenv()
    return load_subscription_config()


@lru_cache(maxsize=1)
def get_subscription_repository():
    config = get_subscription_config()
    backend = _store_backend()
    if backend == "postgres":
        db_config = database_config()
        app_context.configure(get_conn=lambda: psycopg2.connect(**db_config))
        return PostgresSubscriptionRepository()
    if backend != "memory":
        raise ValueError(f"Unknown SUBSCRIPTION_STORE {backend!r}; expected 'memory' or 'postgres'")
    logger.info("Using in-memory subscription store (currency=%s)", config.currency)
    return InMemorySubscriptionRepository()


@lru_cache(maxsize=1)
def get_lifecycle_manager() -> SubscriptionLifecycleManager:
    config = get_subscription_config()
    payments = PaymentExecutor(
        LocalSandboxPaymentGateway(),
        timeout_seconds=config.payment_timeout_seconds,
        max_attempts=config.payment_max_attempts,
        backoff_seconds=config.payment_backoff_seconds,
    )
    manager = SubscriptionLifecycleManager(
        repository=get_subscription_repository(),
        payments=payments,
        notifier=LoggingSubscriptionNotifier(),
        config=config,
    )
    return manager


@lru_cache(maxsize=1)
def get_renewal_sweeper() -> RenewalSweeper:
    config = get_subscription_config()
    manager = get_lifecycle_manager()
    return RenewalSweeper(
        manager,
        manager.repository,
        workers=config.sweep_workers,
        grace_retry_interval=config.grace_retry_interval,
    )


def reset_wiring() -> None:
    """Drop cached singletons so the next call re-reads configuration."""

    if get_lifecycle_manager.cache_info().currsize:
        get_lifecycle_manager().payments.shutdown()
    for factory in (get_renewal_sweeper, get_lifecycle_manager, get_subscription_repository, get_subscription_config):
        factory.cache_clear()


__all__ = [
    "LocalSandboxPaymentGateway",
    "LoggingSubscriptionNotifier",
    "database_config",
    "get_lifecycle_manager",
    "get_renewal_sweeper",
    "get_subscription_config",
    "get_subscription_repository",
    "reset_wiring",
]
