from datetime import datetime, timedelta, timezone
from decimal import Decimal

from ratework.app.billing.payments import ChargeResult, PaymentExecutor
from ratework.app.entitlements.models import BillingCycle, PlanTier
from ratework.app.subscriptions import (
    InMemorySubscriptionRepository,
    RenewalOutcome,
    RenewalSweeper,
    SubscriptionConfig,
    SubscriptionLifecycleManager,
    SubscriptionStatus,
)

UTC = timezone.utc


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


class DeclineListGateway:
    """Declines charges for payment methods listed in ``declined``."""

    def __init__(self):
        self.declined = set()
        self.calls = []

    def charge(self, *, payment_method_ref, amount, currency, idempotency_key):
        self.calls.append((payment_method_ref, amount))
        if payment_method_ref in self.declined:
            return ChargeResult(succeeded=False, failure_reason="insufficient_funds")
        return ChargeResult(succeeded=True, receipt_ref=f"rcpt_{len(self.calls)}")


class RecordingNotifier:
    def __init__(self):
        self.notifications = []

    def publish(self, notification):
        self.notifications.append(notification)


class ExplodingManager:
    """Delegates to a real manager but fails renewals for selected ids."""

    def __init__(self, manager, failing_ids):
        self._manager = manager
        self._failing_ids = set(failing_ids)

    def renew(self, subscription_id):
        if subscription_id in self._failing_ids:
            raise RuntimeError("renewal backend exploded")
        return self._manager.renew(subscription_id)

    def __getattr__(self, name):
        return getattr(self._manager, name)


def _setup(workers=1):
    clock = Clock(datetime(2024, 1, 1, tzinfo=UTC))
    repository = InMemorySubscriptionRepository()
    gateway = DeclineListGateway()
    manager = SubscriptionLifecycleManager(
        repository=repository,
        payments=PaymentExecutor(gateway, backoff_seconds=0.0, sleep=lambda _: None),
        notifier=RecordingNotifier(),
        config=SubscriptionConfig(grace_period_days=7),
        clock=clock,
    )
    sweeper = RenewalSweeper(manager, repository, workers=workers, grace_retry_interval=timedelta(hours=24))
    return manager, repository, gateway, sweeper, clock


def _sweep_at(sweeper, clock, *args):
    clock.now = datetime(*args, tzinfo=UTC)
    return sweeper.sweep(clock.now)


def test_sweep_handles_mixed_due_subscriptions():
    manager, repository, gateway, sweeper, clock = _setup()
    no_card = manager.create_subscription("company-a", PlanTier.BASIC, BillingCycle.MONTHLY)
    with_card = manager.create_subscription(
        "company-b", PlanTier.BASIC, BillingCycle.MONTHLY, payment_method_ref="pm_b"
    )
    leaving = manager.create_subscription(
        "company-c", PlanTier.PREMIUM, BillingCycle.MONTHLY, payment_method_ref="pm_c"
    )
    manager.cancel(leaving.subscription_id, "closing down")
    free = manager.create_subscription("company-d", PlanTier.FREE, BillingCycle.MONTHLY)

    summary = _sweep_at(sweeper, clock, 2024, 1, 15)

    assert summary.candidates == 2
    assert summary.count(RenewalOutcome.EXPIRED) == 1
    assert summary.count(RenewalOutcome.CONVERTED_FROM_TRIAL) == 1
    assert summary.failures == 0
    assert manager.get_subscription(no_card.subscription_id).status == SubscriptionStatus.EXPIRED
    converted = manager.get_subscription(with_card.subscription_id)
    assert converted.status == SubscriptionStatus.ACTIVE
    assert converted.next_billing_date == datetime(2024, 2, 15, tzinfo=UTC)
    assert gateway.calls == [("pm_b", Decimal("10.00"))]

    # Premium trial runs 30 days; the deferred cancel lands at its end.
    summary = _sweep_at(sweeper, clock, 2024, 1, 31)
    assert summary.count(RenewalOutcome.CANCELLED) == 1
    cancelled = manager.get_subscription(leaving.subscription_id)
    assert cancelled.status == SubscriptionStatus.CANCELLED
    assert cancelled.end_date == datetime(2024, 1, 31, tzinfo=UTC)
    assert len(gateway.calls) == 1

    summary = _sweep_at(sweeper, clock, 2024, 2, 1)
    assert summary.count(RenewalOutcome.RENEWED) == 1
    assert manager.get_subscription(free.subscription_id).next_billing_date == datetime(2024, 3, 1, tzinfo=UTC)
    assert len(gateway.calls) == 1


def test_repeated_sweep_is_a_no_op():
    manager, repository, gateway, sweeper, clock = _setup()
    subscription = manager.create_subscription(
        "company-a", PlanTier.BASIC, BillingCycle.MONTHLY, payment_method_ref="pm_a"
    )
    _sweep_at(sweeper, clock, 2024, 1, 15)
    _, version = repository.load(subscription.subscription_id)

    summary = _sweep_at(sweeper, clock, 2024, 1, 15)

    assert summary.candidates == 0
    assert summary.processed == 0
    assert repository.load(subscription.subscription_id)[1] == version
    assert len(gateway.calls) == 1


def test_sweep_drives_grace_period_to_expiry():
    manager, _, gateway, sweeper, clock = _setup()
    subscription = manager.create_subscription(
        "company-a",
        PlanTier.BASIC,
        BillingCycle.MONTHLY,
        payment_method_ref="pm_broke",
        start_trial=False,
    )
    gateway.declined.add("pm_broke")

    assert _sweep_at(sweeper, clock, 2024, 2, 1).count(RenewalOutcome.ENTERED_GRACE) == 1
    assert _sweep_at(sweeper, clock, 2024, 2, 1, 12).candidates == 0
    assert _sweep_at(sweeper, clock, 2024, 2, 2).count(RenewalOutcome.GRACE_RETRY_FAILED) == 1

    summary = _sweep_at(sweeper, clock, 2024, 2, 8)

    assert summary.count(RenewalOutcome.EXPIRED) == 1
    expired = manager.get_subscription(subscription.subscription_id)
    assert expired.status == SubscriptionStatus.EXPIRED
    assert expired.tier == PlanTier.FREE
    assert expired.metadata["expired_from_tier"] == "basic"


def test_grace_retry_recovers_when_card_is_fixed():
    manager, _, gateway, sweeper, clock = _setup()
    subscription = manager.create_subscription(
        "company-a",
        PlanTier.BASIC,
        BillingCycle.MONTHLY,
        payment_method_ref="pm_flaky",
        start_trial=False,
    )
    gateway.declined.add("pm_flaky")
    _sweep_at(sweeper, clock, 2024, 2, 1)
    gateway.declined.clear()

    summary = _sweep_at(sweeper, clock, 2024, 2, 3)

    assert summary.count(RenewalOutcome.RECOVERED) == 1
    recovered = manager.get_subscription(subscription.subscription_id)
    assert recovered.status == SubscriptionStatus.ACTIVE
    assert recovered.next_billing_date == datetime(2024, 3, 1, tzinfo=UTC)


def test_one_failing_subscription_does_not_stop_the_sweep():
    manager, repository, _, _, clock = _setup()
    broken = manager.create_subscription(
        "company-a", PlanTier.BASIC, BillingCycle.MONTHLY, payment_method_ref="pm_a"
    )
    healthy = manager.create_subscription(
        "company-b", PlanTier.BASIC, BillingCycle.MONTHLY, payment_method_ref="pm_b"
    )
    sweeper = RenewalSweeper(ExplodingManager(manager, {broken.subscription_id}), repository)

    summary = _sweep_at(sweeper, clock, 2024, 1, 15)

    assert summary.candidates == 2
    assert summary.failures == 1
    assert summary.failed_ids == [broken.subscription_id]
    assert summary.count(RenewalOutcome.CONVERTED_FROM_TRIAL) == 1
    assert manager.get_subscription(healthy.subscription_id).status == SubscriptionStatus.ACTIVE
    assert manager.get_subscription(broken.subscription_id).status == SubscriptionStatus.TRIAL


def test_parallel_workers_process_each_subscription_once():
    manager, _, gateway, sweeper, clock = _setup(workers=4)
    ids = [
        manager.create_subscription(
            f"company-{index}", PlanTier.BASIC, BillingCycle.MONTHLY, payment_method_ref=f"pm_{index}"
        ).subscription_id
        for index in range(8)
    ]

    summary = _sweep_at(sweeper, clock, 2024, 1, 15)

    assert summary.candidates == 8
    assert summary.count(RenewalOutcome.CONVERTED_FROM_TRIAL) == 8
    assert len(gateway.calls) == 8
    assert all(manager.get_subscription(item).status == SubscriptionStatus.ACTIVE for item in ids)
    assert summary.to_dict()["processed"] == 8
