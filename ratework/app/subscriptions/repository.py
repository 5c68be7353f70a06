"""Persistence adapters for subscriptions with optimistic versioning."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timedelta
from threading import Lock
from typing import Dict, Iterable, List, Optional, Tuple

import psycopg2
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ...app_context import get_conn
from ..entitlements.models import BillingCycle, FeatureKey, PlanTier
from ..errors import SubscriptionNotFound, VersionConflict
from ..feature_gates.quota import UsageCounter
from .models import Subscription, SubscriptionStatus

_RENEWABLE = (SubscriptionStatus.TRIAL, SubscriptionStatus.ACTIVE)


class InMemorySubscriptionRepository:
    """Process-local repository used by tests and local runs."""

    def __init__(self, subscriptions: Optional[Iterable[Subscription]] = None) -> None:
        self._lock = Lock()
        self._items: Dict[str, Subscription] = {}
        for subscription in subscriptions or ():
            self._items[subscription.subscription_id] = subscription

    def load(self, subscription_id: str) -> Tuple[Subscription, int]:
        with self._lock:
            subscription = self._items.get(subscription_id)
        if subscription is None:
            raise SubscriptionNotFound(subscription_id)
        return subscription, subscription.version

    def save(self, subscription: Subscription, expected_version: int) -> Subscription:
        with self._lock:
            current = self._items.get(subscription.subscription_id)
            actual_version = current.version if current is not None else 0
            if current is None and expected_version != 0:
                raise SubscriptionNotFound(subscription.subscription_id)
            if actual_version != expected_version:
                raise VersionConflict(
                    subscription.subscription_id,
                    expected_version=expected_version,
                    actual_version=actual_version,
                )
            stored = subscription.model_copy(update={"version": expected_version + 1})
            self._items[stored.subscription_id] = stored
            return stored

    def find_by_company(self, company_id: str) -> List[Subscription]:
        with self._lock:
            items = [item for item in self._items.values() if item.company_id == company_id]
        return sorted(items, key=lambda item: item.created_at)

    def find_due_for_renewal(self, now: datetime) -> List[Subscription]:
        with self._lock:
            items = [
                item
                for item in self._items.values()
                if item.status in _RENEWABLE and item.next_billing_date <= now
            ]
        return sorted(items, key=lambda item: item.next_billing_date)

    def find_due_for_grace_expiry(self, now: datetime) -> List[Subscription]:
        with self._lock:
            items = [
                item
                for item in self._items.values()
                if item.status == SubscriptionStatus.GRACE_PERIOD
                and item.grace_period_end_date is not None
                and item.grace_period_end_date <= now
            ]
        return sorted(items, key=lambda item: item.grace_period_end_date)

    def find_due_for_grace_retry(self, now: datetime, retry_after: timedelta) -> List[Subscription]:
        with self._lock:
            items = [
                item
                for item in self._items.values()
                if item.status == SubscriptionStatus.GRACE_PERIOD
                and item.grace_period_end_date is not None
                and item.grace_period_end_date > now
                and (
                    item.last_charge_attempt_at is None
                    or item.last_charge_attempt_at + retry_after <= now
                )
            ]
        return sorted(items, key=lambda item: item.subscription_id)


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


def _row_to_subscription(row: dict) -> Subscription:
    usage = row.get("usage") or {}
    return Subscription(
        subscription_id=row["subscription_id"],
        company_id=row["company_id"],
        tier=PlanTier(row["tier"]),
        billing_cycle=BillingCycle(row["billing_cycle"]),
        status=SubscriptionStatus(row["status"]),
        price=row["price"],
        currency=row["currency"],
        start_date=row["start_date"],
        current_period_start=row["current_period_start"],
        next_billing_date=row["next_billing_date"],
        billing_anchor_day=int(row["billing_anchor_day"]),
        trial_end_date=row.get("trial_end_date"),
        grace_period_end_date=row.get("grace_period_end_date"),
        cancelled_at=row.get("cancelled_at"),
        end_date=row.get("end_date"),
        last_charge_attempt_at=row.get("last_charge_attempt_at"),
        cancel_at_period_end=bool(row.get("cancel_at_period_end")),
        cancellation_reason=row.get("cancellation_reason"),
        pending_tier=PlanTier(row["pending_tier"]) if row.get("pending_tier") else None,
        payment_method_ref=row.get("payment_method_ref"),
        failed_charge_attempts=int(row.get("failed_charge_attempts") or 0),
        declined_charge_attempts=int(row.get("declined_charge_attempts") or 0),
        entitlements=tuple(FeatureKey(item) for item in row.get("entitlements") or []),
        usage={key: UsageCounter(**value) for key, value in usage.items()},
        metadata=row.get("metadata") or {},
        version=int(row["version"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _subscription_params(subscription: Subscription) -> dict:
    return {
        "subscription_id": subscription.subscription_id,
        "company_id": subscription.company_id,
        "tier": subscription.tier.value,
        "billing_cycle": subscription.billing_cycle.value,
        "status": subscription.status.value,
        "price": subscription.price,
        "currency": subscription.currency,
        "start_date": subscription.start_date,
        "current_period_start": subscription.current_period_start,
        "next_billing_date": subscription.next_billing_date,
        "billing_anchor_day": subscription.billing_anchor_day,
        "trial_end_date": subscription.trial_end_date,
        "grace_period_end_date": subscription.grace_period_end_date,
        "cancelled_at": subscription.cancelled_at,
        "end_date": subscription.end_date,
        "last_charge_attempt_at": subscription.last_charge_attempt_at,
        "cancel_at_period_end": subscription.cancel_at_period_end,
        "cancellation_reason": subscription.cancellation_reason,
        "pending_tier": subscription.pending_tier.value if subscription.pending_tier else None,
        "payment_method_ref": subscription.payment_method_ref,
        "failed_charge_attempts": subscription.failed_charge_attempts,
        "declined_charge_attempts": subscription.declined_charge_attempts,
        "entitlements": psycopg2.extras.Json([item.value for item in subscription.entitlements]),
        "usage": psycopg2.extras.Json(
            {key: counter.model_dump() for key, counter in subscription.usage.items()}
        ),
        "metadata": psycopg2.extras.Json(subscription.metadata),
        "created_at": subscription.created_at,
    }


_COLUMNS = (
    "subscription_id, company_id, tier, billing_cycle, status, price, currency, "
    "start_date, current_period_start, next_billing_date, billing_anchor_day, "
    "trial_end_date, grace_period_end_date, cancelled_at, end_date, last_charge_attempt_at, "
    "cancel_at_period_end, cancellation_reason, pending_tier, payment_method_ref, "
    "failed_charge_attempts, declined_charge_attempts, entitlements, usage, metadata"
)


class PostgresSubscriptionRepository:
    """Concrete repository persisting subscriptions in PostgreSQL.

    Expects a ``company_subscriptions`` table whose columns mirror
    :class:`Subscription`, with ``entitlements``, ``usage`` and ``metadata``
    stored as JSONB and an integer ``version`` column.
    """

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterable[PgCursor]:
        with managed_connection(self._conn) as (connection, managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
                if managed:
                    connection.commit()
            except Exception:
                if managed:
                    connection.rollback()
                raise
            finally:
                cursor.close()

    def load(self, subscription_id: str) -> Tuple[Subscription, int]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM company_subscriptions
                WHERE subscription_id = %s
                LIMIT 1
                """,
                (subscription_id,),
            )
            row = cursor.fetchone()
        if not row:
            raise SubscriptionNotFound(subscription_id)
        subscription = _row_to_subscription(row)
        return subscription, subscription.version

    def save(self, subscription: Subscription, expected_version: int) -> Subscription:
        params = _subscription_params(subscription)
        params["expected_version"] = expected_version
        with self._cursor() as cursor:
            if expected_version == 0:
                cursor.execute(
                    f"""
                    INSERT INTO company_subscriptions ({_COLUMNS}, created_at, updated_at, version)
                    VALUES (%(subscription_id)s, %(company_id)s, %(tier)s, %(billing_cycle)s,
                            %(status)s, %(price)s, %(currency)s, %(start_date)s,
                            %(current_period_start)s, %(next_billing_date)s,
                            %(billing_anchor_day)s, %(trial_end_date)s,
                            %(grace_period_end_date)s, %(cancelled_at)s, %(end_date)s,
                            %(last_charge_attempt_at)s, %(cancel_at_period_end)s,
                            %(cancellation_reason)s, %(pending_tier)s,
                            %(payment_method_ref)s, %(failed_charge_attempts)s,
                            %(declined_charge_attempts)s,
                            %(entitlements)s, %(usage)s, %(metadata)s,
                            %(created_at)s, NOW(), 1)
                    ON CONFLICT (subscription_id) DO NOTHING
                    RETURNING *
                    """,
                    params,
                )
            else:
                cursor.execute(
                    """
                    UPDATE company_subscriptions
                    SET tier = %(tier)s,
                        billing_cycle = %(billing_cycle)s,
                        status = %(status)s,
                        price = %(price)s,
                        currency = %(currency)s,
                        current_period_start = %(current_period_start)s,
                        next_billing_date = %(next_billing_date)s,
                        billing_anchor_day = %(billing_anchor_day)s,
                        trial_end_date = %(trial_end_date)s,
                        grace_period_end_date = %(grace_period_end_date)s,
                        cancelled_at = %(cancelled_at)s,
                        end_date = %(end_date)s,
                        last_charge_attempt_at = %(last_charge_attempt_at)s,
                        cancel_at_period_end = %(cancel_at_period_end)s,
                        cancellation_reason = %(cancellation_reason)s,
                        pending_tier = %(pending_tier)s,
                        payment_method_ref = %(payment_method_ref)s,
                        failed_charge_attempts = %(failed_charge_attempts)s,
                        declined_charge_attempts = %(declined_charge_attempts)s,
                        entitlements = %(entitlements)s,
                        usage = %(usage)s,
                        metadata = %(metadata)s,
                        version = version + 1,
                        updated_at = NOW()
                    WHERE subscription_id = %(subscription_id)s
                      AND version = %(expected_version)s
                    RETURNING *
                    """,
                    params,
                )
            row = cursor.fetchone()
            if row:
                return _row_to_subscription(row)

            cursor.execute(
                "SELECT version FROM company_subscriptions WHERE subscription_id = %s",
                (subscription.subscription_id,),
            )
            current = cursor.fetchone()

        if current is None:
            raise SubscriptionNotFound(subscription.subscription_id)
        raise VersionConflict(
            subscription.subscription_id,
            expected_version=expected_version,
            actual_version=int(current["version"]),
        )

    def find_by_company(self, company_id: str) -> List[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM company_subscriptions
                WHERE company_id = %s
                ORDER BY created_at ASC
                """,
                (company_id,),
            )
            rows = cursor.fetchall() or []
            return [_row_to_subscription(row) for row in rows]

    def find_due_for_renewal(self, now: datetime) -> List[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM company_subscriptions
                WHERE status = ANY(%s) AND next_billing_date <= %s
                ORDER BY next_billing_date ASC
                """,
                ([status.value for status in _RENEWABLE], now),
            )
            rows = cursor.fetchall() or []
            return [_row_to_subscription(row) for row in rows]

    def find_due_for_grace_expiry(self, now: datetime) -> List[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM company_subscriptions
                WHERE status = %s AND grace_period_end_date <= %s
                ORDER BY grace_period_end_date ASC
                """,
                (SubscriptionStatus.GRACE_PERIOD.value, now),
            )
            rows = cursor.fetchall() or []
            return [_row_to_subscription(row) for row in rows]

    def find_due_for_grace_retry(self, now: datetime, retry_after: timedelta) -> List[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM company_subscriptions
                WHERE status = %s
                  AND grace_period_end_date > %s
                  AND (last_charge_attempt_at IS NULL OR last_charge_attempt_at <= %s)
                ORDER BY subscription_id ASC
                """,
                (SubscriptionStatus.GRACE_PERIOD.value, now, now - retry_after),
            )
            rows = cursor.fetchall() or []
            return [_row_to_subscription(row) for row in rows]


__all__ = [
    "InMemorySubscriptionRepository",
    "PostgresSubscriptionRepository",
    "managed_connection",
]
