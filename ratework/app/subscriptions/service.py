"""Service layer driving the subscription lifecycle state machine."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Tuple, Union
from uuid import uuid4

from ..billing.payments import PaymentExecutor, idempotency_key
from ..billing.proration import ProrationCalculator
from ..billing.schedule import BillingScheduleCalculator
from ..entitlements.catalog import free_baseline, get_plan_definition
from ..entitlements.models import BillingCycle, FeatureKey, PlanDefinition, PlanTier, UsageFeature
from ..errors import (
    InvalidTierChange,
    InvalidTransition,
    PaymentFailed,
    SubscriptionAlreadyActive,
    VersionConflict,
)
from ..feature_gates.context import EntitlementContext
from ..feature_gates.quota import QuotaEvaluation, UsageCounter, UsageMeter
from .config import SubscriptionConfig
from .locks import SubscriptionLockRegistry
from .models import (
    LIVE_STATUSES,
    NotificationFact,
    RenewalOutcome,
    RenewalResult,
    Subscription,
    SubscriptionNotification,
    SubscriptionStatus,
)

logger = logging.getLogger(__name__)

_RENEWABLE = frozenset({SubscriptionStatus.TRIAL, SubscriptionStatus.ACTIVE})
_GRACE_ONLY = frozenset({SubscriptionStatus.GRACE_PERIOD})
_TRIAL_ONLY = frozenset({SubscriptionStatus.TRIAL})


class SubscriptionRepository(Protocol):
    """Persistence operations required by the lifecycle manager."""

    def load(self, subscription_id: str) -> Tuple[Subscription, int]:
        ...

    def save(self, subscription: Subscription, expected_version: int) -> Subscription:
        ...

    def find_by_company(self, company_id: str) -> List[Subscription]:
        ...

    def find_due_for_renewal(self, now: datetime) -> List[Subscription]:
        ...

    def find_due_for_grace_expiry(self, now: datetime) -> List[Subscription]:
        ...

    def find_due_for_grace_retry(self, now: datetime, retry_after: timedelta) -> List[Subscription]:
        ...


class SubscriptionNotifier(Protocol):
    """Dispatches lifecycle facts to downstream consumers."""

    def publish(self, notification: SubscriptionNotification) -> None:
        ...


def _current_time(clock: Optional[Callable[[], datetime]]) -> datetime:
    if clock is None:
        return datetime.now(timezone.utc)
    value = clock()
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _new_subscription_id() -> str:
    return f"sub_{uuid4().hex}"


def _feature_key(feature: Union[UsageFeature, str]) -> str:
    return feature.value if isinstance(feature, UsageFeature) else str(feature)


Fact = Tuple[NotificationFact, Dict[str, Any]]


@dataclass(frozen=True)
class _Transition:
    """Result of applying an operation to a loaded subscription.

    ``error`` is raised to the caller once ``subscription`` has been saved.
    """

    subscription: Subscription
    changed: bool = True
    facts: Tuple[Fact, ...] = ()
    outcome: Optional[RenewalOutcome] = None
    value: Any = None
    error: Optional[PaymentFailed] = None


@dataclass
class SubscriptionLifecycleManager:
    """Owns every state transition of a company subscription.

    Each operation runs under the subscription's in-process lock, loads the
    current version, applies the transition and saves with an optimistic
    version check. A :class:`VersionConflict` restarts the operation from
    the load, up to ``config.max_conflict_retries`` attempts. Charges are
    keyed by subscription, period and attempt, so a restarted operation
    re-sends the same idempotency key rather than charging twice.
    """

    repository: SubscriptionRepository
    payments: PaymentExecutor
    notifier: SubscriptionNotifier
    config: SubscriptionConfig = field(default_factory=SubscriptionConfig)
    schedule: BillingScheduleCalculator = field(default_factory=BillingScheduleCalculator)
    proration: ProrationCalculator = field(default_factory=ProrationCalculator)
    locks: SubscriptionLockRegistry = field(default_factory=SubscriptionLockRegistry)
    clock: Optional[Callable[[], datetime]] = None
    id_factory: Callable[[], str] = _new_subscription_id

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    def create_subscription(
        self,
        company_id: str,
        tier: PlanTier,
        billing_cycle: BillingCycle,
        payment_method_ref: Optional[str] = None,
        *,
        start_trial: bool = True,
    ) -> Subscription:
        """Open a subscription for ``company_id``.

        Starts in Trial when the tier has a configured trial and the company
        has never had one; otherwise starts Active and, for a paid tier,
        charges the first period before anything is stored.
        """

        plan = get_plan_definition(tier)
        with self.locks.hold(f"company:{company_id}"):
            existing = self.repository.find_by_company(company_id)
            for item in existing:
                if not item.is_terminal:
                    raise SubscriptionAlreadyActive(company_id, item.subscription_id)

            now = _current_time(self.clock)
            subscription_id = self.id_factory()
            price = plan.price_for(billing_cycle)
            trial_days = self.config.trial_days_for(tier)
            had_trial = any(item.trial_end_date is not None for item in existing)

            if start_trial and trial_days > 0 and not had_trial:
                trial_end = self.schedule.trial_end_date(now, trial_days)
                status = SubscriptionStatus.TRIAL
                next_billing = trial_end
                anchor_day = trial_end.day
            else:
                trial_end = None
                anchor_day = now.day
                status = SubscriptionStatus.ACTIVE
                next_billing = self.schedule.next_billing_date(now, billing_cycle, anchor_day=anchor_day)

            charged_at: Optional[datetime] = None
            if status == SubscriptionStatus.ACTIVE and price > 0:
                # Stable across a retried create: company, creation day and plan.
                self.payments.charge(
                    payment_method_ref=payment_method_ref,
                    amount=price,
                    currency=self.config.currency,
                    idempotency_key=idempotency_key(
                        f"company:{company_id}",
                        now.replace(hour=0, minute=0, second=0, microsecond=0),
                        f"initial:{tier.value}:{billing_cycle.value}:{payment_method_ref}",
                        len(existing),
                    ),
                    subscription_id=subscription_id,
                )
                charged_at = now

            subscription = Subscription(
                subscription_id=subscription_id,
                company_id=company_id,
                tier=tier,
                billing_cycle=billing_cycle,
                status=status,
                price=price,
                currency=self.config.currency,
                start_date=now,
                current_period_start=now,
                next_billing_date=next_billing,
                billing_anchor_day=anchor_day,
                trial_end_date=trial_end,
                last_charge_attempt_at=charged_at,
                payment_method_ref=payment_method_ref,
                entitlements=plan.features,
                usage=UsageMeter.from_limits(plan.limits_by_key()).snapshot(),
                created_at=now,
                updated_at=now,
            )
            stored = self.repository.save(subscription, 0)

        logger.info(
            "Subscription created",
            extra={
                "subscription_id": stored.subscription_id,
                "company_id": company_id,
                "tier": tier.value,
                "status": stored.status.value,
            },
        )
        self._publish(
            [
                SubscriptionNotification.for_subscription(
                    NotificationFact.SUBSCRIPTION_CREATED,
                    stored,
                    occurred_at=now,
                    amount=price if charged_at is not None else None,
                )
            ]
        )
        return stored

    def upgrade(
        self,
        subscription_id: str,
        new_tier: PlanTier,
        payment_method_ref: Optional[str] = None,
        billing_cycle: Optional[BillingCycle] = None,
    ) -> Subscription:
        """Move to a higher tier immediately, charging what the state requires.

        ``billing_cycle`` switches the cycle in the same step. For an Active
        subscription that closes the current period: the unused part of the
        old price is credited against the new price and a new period starts
        now. A decline raises :class:`PaymentFailed` and keeps the plan; only
        ``declined_charge_attempts`` is recorded.
        """

        def apply(current: Subscription, now: datetime) -> _Transition:
            self._require_status(current, LIVE_STATUSES, "upgrade")
            if not new_tier.is_above(current.tier):
                raise InvalidTierChange(
                    subscription_id,
                    current_tier=current.tier.value,
                    requested_tier=new_tier.value,
                    operation="upgrade",
                )

            cycle = billing_cycle or current.billing_cycle
            plan = get_plan_definition(new_tier)
            new_price = plan.price_for(cycle)
            method = payment_method_ref or current.payment_method_ref
            meter = UsageMeter(current.usage, subscription_id=subscription_id)
            meter.rebase(plan.limits_by_key())

            changes: Dict[str, Any] = {
                "tier": new_tier,
                "billing_cycle": cycle,
                "price": new_price,
                "entitlements": plan.features,
                "usage": meter.snapshot(),
                "pending_tier": None,
                "payment_method_ref": method,
                "declined_charge_attempts": 0,
                "updated_at": now,
            }
            purpose = f"upgrade:{new_tier.value}:{cycle.value}"
            amount = Decimal(0)
            period = current.current_period_start

            if current.status == SubscriptionStatus.ACTIVE:
                cycle_days = self.schedule.cycle_length_days(
                    current.current_period_start, current.next_billing_date
                )
                remaining = min(self.schedule.remaining_days(now, current.next_billing_date), cycle_days)
                if cycle != current.billing_cycle:
                    unused = self.proration.quote(
                        current.price, Decimal(0), cycle_days, remaining, currency=current.currency
                    )
                    amount = new_price + unused.amount
                    changes.update(
                        current_period_start=now,
                        next_billing_date=self.schedule.next_billing_date(now, cycle, anchor_day=now.day),
                        billing_anchor_day=now.day,
                    )
                else:
                    amount = self.proration.quote(
                        current.price, new_price, cycle_days, remaining, currency=current.currency
                    ).amount
            elif current.status == SubscriptionStatus.GRACE_PERIOD:
                # The unpaid period is settled at the new tier's full price.
                amount = new_price
                period = current.next_billing_date
                changes.update(self._period_advance(current, plan, now, cycle=cycle))

            charged = Decimal(0)
            if amount > 0:
                try:
                    self._on_demand_charge(current, method, amount, period=period, purpose=purpose)
                except PaymentFailed as exc:
                    return self._declined(current, now, exc)
                charged = amount
                changes["last_charge_attempt_at"] = now

            updated = current.evolve(**changes)
            fact = (
                NotificationFact.UPGRADE_COMPLETED,
                {
                    "amount": charged,
                    "credit": -amount if amount < 0 else None,
                    "metadata": {
                        "from_tier": current.tier.value,
                        "to_tier": new_tier.value,
                        "billing_cycle": cycle.value,
                    },
                },
            )
            return _Transition(updated, facts=(fact,))

        return self._run_transition(subscription_id, "upgrade", apply).subscription

    def set_payment_method(self, subscription_id: str, payment_method_ref: str) -> Subscription:
        """Store the payment method used by future charges."""

        ref = (payment_method_ref or "").strip()
        if not ref:
            raise ValueError("payment_method_ref must not be blank")

        def apply(current: Subscription, now: datetime) -> _Transition:
            self._require_status(current, LIVE_STATUSES, "set_payment_method")
            if current.payment_method_ref == ref:
                return _Transition(current, changed=False)
            return _Transition(current.evolve(payment_method_ref=ref, updated_at=now))

        return self._run_transition(subscription_id, "set_payment_method", apply).subscription

    def end_trial(self, subscription_id: str) -> Subscription:
        """Convert a trial to a paid period starting now.

        The tier that applies next (a pending downgrade, if any) is charged in
        full. A decline raises :class:`PaymentFailed` and the trial keeps
        running.
        """

        def apply(current: Subscription, now: datetime) -> _Transition:
            self._require_status(current, _TRIAL_ONLY, "end_trial")
            plan = get_plan_definition(current.pending_tier or current.tier)
            amount = plan.price_for(current.billing_cycle)
            if amount > 0:
                try:
                    self._on_demand_charge(
                        current,
                        current.payment_method_ref,
                        amount,
                        period=current.current_period_start,
                        purpose="end_trial",
                    )
                except PaymentFailed as exc:
                    return self._declined(current, now, exc)

            changes = self._period_advance(current, plan, now, charged=amount > 0)
            changes.update(
                current_period_start=now,
                next_billing_date=self.schedule.next_billing_date(
                    now, current.billing_cycle, anchor_day=now.day
                ),
                billing_anchor_day=now.day,
                trial_end_date=now,
            )
            fact = (NotificationFact.RENEWAL_SUCCEEDED, {"amount": amount, "reason": "trial ended early"})
            return _Transition(current.evolve(**changes), facts=(fact,))

        return self._run_transition(subscription_id, "end_trial", apply).subscription

    def downgrade(self, subscription_id: str, new_tier: PlanTier) -> Subscription:
        """Schedule a lower tier to take effect at the next successful renewal."""

        def apply(current: Subscription, now: datetime) -> _Transition:
            self._require_status(current, LIVE_STATUSES, "downgrade")
            if not new_tier.is_below(current.tier):
                raise InvalidTierChange(
                    subscription_id,
                    current_tier=current.tier.value,
                    requested_tier=new_tier.value,
                    operation="downgrade",
                )
            updated = current.evolve(pending_tier=new_tier, updated_at=now)
            fact = (
                NotificationFact.DOWNGRADE_SCHEDULED,
                {"metadata": {"from_tier": current.tier.value, "to_tier": new_tier.value}},
            )
            return _Transition(updated, facts=(fact,))

        return self._run_transition(subscription_id, "downgrade", apply).subscription

    def cancel(
        self,
        subscription_id: str,
        reason: Optional[str] = None,
        cancel_immediately: bool = False,
    ) -> Subscription:
        def apply(current: Subscription, now: datetime) -> _Transition:
            self._require_status(current, LIVE_STATUSES, "cancel")
            if cancel_immediately or current.status == SubscriptionStatus.GRACE_PERIOD:
                updated = current.evolve(
                    status=SubscriptionStatus.CANCELLED,
                    cancelled_at=now,
                    end_date=now,
                    cancellation_reason=reason,
                    cancel_at_period_end=False,
                    pending_tier=None,
                    updated_at=now,
                )
                return _Transition(updated, facts=((NotificationFact.CANCELLED, {"reason": reason}),))

            updated = current.evolve(
                cancel_at_period_end=True,
                cancellation_reason=reason,
                updated_at=now,
            )
            return _Transition(updated)

        return self._run_transition(subscription_id, "cancel", apply).subscription

    def resume(self, subscription_id: str) -> Subscription:
        """Withdraw a cancellation scheduled for the end of the period."""

        def apply(current: Subscription, now: datetime) -> _Transition:
            self._require_status(current, LIVE_STATUSES, "resume")
            if not current.cancel_at_period_end:
                return _Transition(current, changed=False)
            updated = current.evolve(
                cancel_at_period_end=False,
                cancellation_reason=None,
                updated_at=now,
            )
            return _Transition(updated)

        return self._run_transition(subscription_id, "resume", apply).subscription

    def renew(self, subscription_id: str) -> RenewalResult:
        """Close the current period once ``next_billing_date`` has been reached.

        A subscription that is not yet due is returned unchanged with
        ``RenewalOutcome.NOT_DUE``, which is what makes repeated sweeps safe.
        """

        def apply(current: Subscription, now: datetime) -> _Transition:
            self._require_status(current, _RENEWABLE, "renew")
            if not current.is_due(now):
                return _Transition(current, changed=False, outcome=RenewalOutcome.NOT_DUE)

            if current.cancel_at_period_end:
                updated = current.evolve(
                    status=SubscriptionStatus.CANCELLED,
                    cancelled_at=now,
                    end_date=current.next_billing_date,
                    pending_tier=None,
                    updated_at=now,
                )
                fact = (NotificationFact.CANCELLED, {"reason": current.cancellation_reason})
                return _Transition(updated, facts=(fact,), outcome=RenewalOutcome.CANCELLED)

            was_trial = current.status == SubscriptionStatus.TRIAL
            plan = get_plan_definition(current.pending_tier or current.tier)
            amount = plan.price_for(current.billing_cycle)

            if was_trial and amount > 0 and not current.payment_method_ref:
                updated = self._expired_state(current, now)
                return _Transition(
                    updated,
                    facts=((NotificationFact.EXPIRED, {"reason": "trial ended without payment method"}),),
                    outcome=RenewalOutcome.EXPIRED,
                )

            try:
                if amount > 0:
                    self._charge(
                        current,
                        current.payment_method_ref,
                        amount,
                        period=current.next_billing_date,
                        purpose="renewal",
                    )
            except PaymentFailed as exc:
                return self._renewal_failed(current, now, amount, exc)

            updated = current.evolve(
                **self._period_advance(current, plan, now, charged=amount > 0)
            )
            outcome = RenewalOutcome.CONVERTED_FROM_TRIAL if was_trial else RenewalOutcome.RENEWED
            fact = (NotificationFact.RENEWAL_SUCCEEDED, {"amount": amount})
            return _Transition(updated, facts=(fact,), outcome=outcome)

        return self._renewal_result(self._run_transition(subscription_id, "renew", apply))

    def retry_grace_charge(self, subscription_id: str) -> RenewalResult:
        """Retry the charge that put the subscription into its grace period."""

        def apply(current: Subscription, now: datetime) -> _Transition:
            self._require_status(current, _GRACE_ONLY, "retry_grace_charge")
            if self._grace_elapsed(current, now):
                return self._grace_expired(current, now)

            plan = get_plan_definition(current.pending_tier or current.tier)
            amount = plan.price_for(current.billing_cycle)
            try:
                if amount > 0:
                    self._charge(
                        current,
                        current.payment_method_ref,
                        amount,
                        period=current.next_billing_date,
                        purpose="renewal",
                    )
            except PaymentFailed as exc:
                updated = current.evolve(
                    failed_charge_attempts=current.failed_charge_attempts + 1,
                    last_charge_attempt_at=now,
                    updated_at=now,
                )
                fact = (NotificationFact.RENEWAL_FAILED, {"amount": amount, "reason": exc.reason})
                return _Transition(updated, facts=(fact,), outcome=RenewalOutcome.GRACE_RETRY_FAILED)

            updated = current.evolve(
                **self._period_advance(current, plan, now, charged=amount > 0)
            )
            fact = (NotificationFact.RENEWAL_SUCCEEDED, {"amount": amount})
            return _Transition(updated, facts=(fact,), outcome=RenewalOutcome.RECOVERED)

        return self._renewal_result(self._run_transition(subscription_id, "retry_grace_charge", apply))

    def process_grace_expiry(self, subscription_id: str) -> RenewalResult:
        """Expire a subscription whose grace period has run out.

        Anything no longer eligible when re-checked under the lock is reported
        as ``NOT_DUE``.
        """

        def apply(current: Subscription, now: datetime) -> _Transition:
            if current.status != SubscriptionStatus.GRACE_PERIOD or not self._grace_elapsed(current, now):
                return _Transition(current, changed=False, outcome=RenewalOutcome.NOT_DUE)
            return self._grace_expired(current, now)

        return self._renewal_result(self._run_transition(subscription_id, "process_grace_expiry", apply))

    def expire(self, subscription_id: str) -> Subscription:
        def apply(current: Subscription, now: datetime) -> _Transition:
            self._require_status(current, LIVE_STATUSES, "expire")
            updated = self._expired_state(current, now)
            return _Transition(updated, facts=((NotificationFact.EXPIRED, {}),))

        return self._run_transition(subscription_id, "expire", apply).subscription

    def consume_usage(
        self,
        subscription_id: str,
        feature_key: Union[UsageFeature, str],
        amount: int = 1,
    ) -> UsageCounter:
        """Record ``amount`` units of a metered feature, or raise without change."""

        key = _feature_key(feature_key)

        def apply(current: Subscription, now: datetime) -> _Transition:
            self._require_status(current, LIVE_STATUSES, "consume_usage")
            meter = UsageMeter(current.usage, subscription_id=subscription_id)
            counter = meter.consume(key, amount)
            updated = current.evolve(usage=meter.snapshot(), updated_at=now)
            return _Transition(updated, value=counter)

        return self._run_transition(subscription_id, "consume_usage", apply).value

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_subscription(self, subscription_id: str) -> Subscription:
        subscription, _ = self.repository.load(subscription_id)
        return subscription

    def entitlement_context(self, subscription_id: str) -> EntitlementContext:
        return EntitlementContext(self.get_subscription(subscription_id))

    def check_usage(
        self,
        subscription_id: str,
        feature_key: Union[UsageFeature, str],
        amount: int = 1,
    ) -> QuotaEvaluation:
        return self.entitlement_context(subscription_id).evaluate_usage(_feature_key(feature_key), amount)

    def has_feature(self, subscription_id: str, feature: Union[FeatureKey, str]) -> bool:
        return self.entitlement_context(subscription_id).has(feature)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _run_transition(
        self,
        subscription_id: str,
        operation: str,
        apply: Callable[[Subscription, datetime], _Transition],
    ) -> _Transition:
        attempts = max(1, self.config.max_conflict_retries)
        with self.locks.hold(subscription_id):
            for attempt in range(1, attempts + 1):
                current, version = self.repository.load(subscription_id)
                now = _current_time(self.clock)
                transition = apply(current, now)
                if not transition.changed:
                    return transition
                try:
                    stored = self.repository.save(transition.subscription, version)
                except VersionConflict:
                    logger.warning(
                        "Subscription modified concurrently",
                        extra={
                            "subscription_id": subscription_id,
                            "operation": operation,
                            "attempt": attempt,
                            "attempts": attempts,
                        },
                    )
                    if attempt >= attempts:
                        raise
                    continue
                break

        if transition.error is not None:
            raise transition.error

        logger.info(
            "Subscription transition completed",
            extra={
                "subscription_id": subscription_id,
                "operation": operation,
                "status": stored.status.value,
                "outcome": transition.outcome.value if transition.outcome else None,
            },
        )
        self._publish(
            SubscriptionNotification.for_subscription(fact, stored, occurred_at=now, **extra)
            for fact, extra in transition.facts
        )
        return _Transition(
            stored,
            changed=True,
            facts=transition.facts,
            outcome=transition.outcome,
            value=transition.value,
        )

    def _renewal_result(self, transition: _Transition) -> RenewalResult:
        return RenewalResult(subscription=transition.subscription, outcome=transition.outcome)

    def _require_status(self, current: Subscription, allowed: Iterable[SubscriptionStatus], operation: str) -> None:
        allowed = frozenset(allowed)
        if current.status not in allowed:
            raise InvalidTransition(
                current.subscription_id,
                current_status=current.status.value,
                operation=operation,
                allowed_states=[status.value for status in allowed],
            )

    def _charge(
        self,
        current: Subscription,
        payment_method_ref: Optional[str],
        amount: Decimal,
        *,
        period: datetime,
        purpose: str,
        attempt: Optional[int] = None,
    ) -> None:
        if attempt is None:
            attempt = current.failed_charge_attempts
        self.payments.charge(
            payment_method_ref=payment_method_ref,
            amount=amount,
            currency=current.currency,
            idempotency_key=idempotency_key(current.subscription_id, period, purpose, attempt),
            subscription_id=current.subscription_id,
        )

    def _on_demand_charge(
        self,
        current: Subscription,
        payment_method_ref: Optional[str],
        amount: Decimal,
        *,
        period: datetime,
        purpose: str,
    ) -> None:
        """Charge outside the renewal schedule (upgrade, early trial end).

        The key carries ``declined_charge_attempts``, which the caller bumps on
        a decline, so a retry after a decline reaches the gateway again.
        """

        self._charge(
            current,
            payment_method_ref,
            amount,
            period=period,
            purpose=purpose,
            attempt=current.declined_charge_attempts,
        )

    def _declined(self, current: Subscription, now: datetime, exc: PaymentFailed) -> _Transition:
        updated = current.evolve(
            declined_charge_attempts=current.declined_charge_attempts + 1,
            updated_at=now,
        )
        return _Transition(updated, error=exc)

    def _period_advance(
        self,
        current: Subscription,
        plan: PlanDefinition,
        now: datetime,
        *,
        charged: bool = True,
        cycle: Optional[BillingCycle] = None,
    ) -> Dict[str, Any]:
        """Changes that open the next billing period on ``plan``."""

        cycle = cycle or current.billing_cycle
        next_billing = self.schedule.next_billing_date(
            current.next_billing_date,
            cycle,
            anchor_day=current.billing_anchor_day,
        )
        meter = UsageMeter(current.usage, subscription_id=current.subscription_id)
        meter.reset()
        meter.rebase(plan.limits_by_key())
        return {
            "status": SubscriptionStatus.ACTIVE,
            "tier": plan.tier,
            "billing_cycle": cycle,
            "price": plan.price_for(cycle),
            "entitlements": plan.features,
            "usage": meter.snapshot(),
            "pending_tier": None,
            "current_period_start": current.next_billing_date,
            "next_billing_date": next_billing,
            "grace_period_end_date": None,
            "failed_charge_attempts": 0,
            "declined_charge_attempts": 0,
            "last_charge_attempt_at": now if charged else current.last_charge_attempt_at,
            "updated_at": now,
        }

    def _renewal_failed(
        self,
        current: Subscription,
        now: datetime,
        amount: Decimal,
        exc: PaymentFailed,
    ) -> _Transition:
        failed = (NotificationFact.RENEWAL_FAILED, {"amount": amount, "reason": exc.reason})
        if current.status == SubscriptionStatus.TRIAL:
            updated = self._expired_state(current, now)
            return _Transition(
                updated,
                facts=(failed, (NotificationFact.EXPIRED, {"reason": exc.reason})),
                outcome=RenewalOutcome.EXPIRED,
            )

        grace_end = self.schedule.grace_period_end_date(now, self.config.grace_period_days)
        logger.warning(
            "Renewal charge failed; entering grace period",
            extra={
                "subscription_id": current.subscription_id,
                "reason": exc.reason,
                "grace_period_end_date": grace_end.isoformat(),
            },
        )
        updated = current.evolve(
            status=SubscriptionStatus.GRACE_PERIOD,
            grace_period_end_date=grace_end,
            failed_charge_attempts=current.failed_charge_attempts + 1,
            last_charge_attempt_at=now,
            updated_at=now,
        )
        return _Transition(
            updated,
            facts=(failed, (NotificationFact.ENTERED_GRACE_PERIOD, {"amount": amount})),
            outcome=RenewalOutcome.ENTERED_GRACE,
        )

    def _grace_elapsed(self, current: Subscription, now: datetime) -> bool:
        return current.grace_period_end_date is not None and now >= current.grace_period_end_date

    def _grace_expired(self, current: Subscription, now: datetime) -> _Transition:
        if current.cancel_at_period_end:
            updated = current.evolve(
                status=SubscriptionStatus.CANCELLED,
                cancelled_at=now,
                end_date=now,
                pending_tier=None,
                updated_at=now,
            )
            fact = (NotificationFact.CANCELLED, {"reason": current.cancellation_reason})
            return _Transition(updated, facts=(fact,), outcome=RenewalOutcome.CANCELLED)

        updated = self._expired_state(current, now)
        fact = (NotificationFact.EXPIRED, {"reason": "grace period elapsed"})
        return _Transition(updated, facts=(fact,), outcome=RenewalOutcome.EXPIRED)

    def _expired_state(self, current: Subscription, now: datetime) -> Subscription:
        baseline = free_baseline()
        metadata = dict(current.metadata)
        metadata["expired_from_tier"] = current.tier.value
        return current.evolve(
            status=SubscriptionStatus.EXPIRED,
            end_date=now,
            tier=baseline.tier,
            price=baseline.price_for(current.billing_cycle),
            entitlements=baseline.features,
            usage=UsageMeter.from_limits(baseline.limits_by_key()).snapshot(),
            pending_tier=None,
            cancel_at_period_end=False,
            metadata=metadata,
            updated_at=now,
        )

    def _publish(self, notifications: Iterable[SubscriptionNotification]) -> None:
        for notification in notifications:
            try:
                self.notifier.publish(notification)
            except Exception:
                logger.exception(
                    "Failed to publish subscription notification",
                    extra={
                        "subscription_id": notification.subscription_id,
                        "fact": notification.fact.value,
                    },
                )


__all__ = [
    "SubscriptionLifecycleManager",
    "SubscriptionNotifier",
    "SubscriptionRepository",
]
