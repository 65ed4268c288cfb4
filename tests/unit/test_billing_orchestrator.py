"""Tests for BillingOrchestrator - billing transitions, renewals, retries and plan changes."""

import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from unittest.mock import Mock

import pytest

from billing_engine.config import Config
from billing_engine.models.billing import BillingContext, BillingRecordType
from billing_engine.models.events import BillingEventType
from billing_engine.models.plan import BillingSettings, GatewaySettings
from billing_engine.models.subscription import Subscription, SubscriptionStatus
from billing_engine.repositories.ledger import InMemoryLedger, LedgerWriteError
from billing_engine.repositories.plan_repository import PlanNotFoundError, PlanRepository
from billing_engine.repositories.subscription_store import (
    ConcurrentUpdateError,
    StoreUnavailableError,
    SubscriptionNotFoundError,
    SubscriptionStore,
)
from billing_engine.services.billing_orchestrator import BillingOrchestrator, BillingRunError
from billing_engine.services.event_dispatcher import EventDispatcher
from billing_engine.services.payment_executor import PaymentExecutor
from billing_engine.services.payment_gateway import SimulatedPaymentGateway
from billing_engine.utils.billing_cycle import BillingIntegrityError

CONFIG_PATH = Path(__file__).resolve().parents[2] / "config" / "billing.yaml"
NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)


def make_subscription(sub_id: str, **overrides) -> Subscription:
    fields = dict(
        id=sub_id,
        user_id=f"user-{sub_id}",
        plan_id="premium.monthly",
        plan_name="Premium Monthly",
        payment_method_ref=f"cus_{sub_id}",
        plan_price=Decimal("100.00"),
        billing_cycle_days=30,
        start_date=NOW - timedelta(days=28),
        next_billing_date=NOW,
    )
    fields.update(overrides)
    return Subscription(**fields)


def at(days: int = 0, actor: str = "tester", **kwargs) -> BillingContext:
    return BillingContext(actor=actor, now=NOW + timedelta(days=days), **kwargs)


class ConflictingStore(SubscriptionStore):
    """Store whose next conditional write loses the race."""

    def __init__(self):
        super().__init__(timeout_seconds=1.0)
        self.conflicts_left = 1

    def update(self, subscription):
        if self.conflicts_left:
            self.conflicts_left -= 1
            raise ConcurrentUpdateError(subscription.id, subscription.version, subscription.version + 1)
        return super().update(subscription)


class FlakyLedger(InMemoryLedger):
    """Ledger whose first append fails."""

    def __init__(self):
        super().__init__()
        self.failures_left = 1

    def append(self, record):
        if self.failures_left:
            self.failures_left -= 1
            raise RuntimeError("disk full")
        super().append(record)


@pytest.fixture
def store():
    return SubscriptionStore(timeout_seconds=1.0)


@pytest.fixture
def plan_repo():
    return PlanRepository(Config(str(CONFIG_PATH)))


@pytest.fixture
def gateway():
    return SimulatedPaymentGateway(settings=GatewaySettings(simulate_failures=False))


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def dispatcher():
    return Mock(spec=EventDispatcher)


@pytest.fixture
def executor(gateway, ledger, dispatcher):
    executor = PaymentExecutor(
        gateway=gateway, ledger=ledger, event_dispatcher=dispatcher, currency="USD", timeout_seconds=2.0
    )
    yield executor
    executor.shutdown()


@pytest.fixture
def settings():
    return BillingSettings(max_failed_attempts=3, renewal_window_days=7, max_workers=1)


@pytest.fixture
def orchestrator(store, plan_repo, executor, settings):
    return BillingOrchestrator(
        subscription_store=store,
        plan_repository=plan_repo,
        payment_executor=executor,
        settings=settings,
        time_controller=Mock(),
    )


def published(dispatcher) -> list:
    return [c.args[0] for c in dispatcher.publish_event.call_args_list]


class TestRecurringBilling:
    """Test process_recurring_billing transitions."""

    def test_due_subscription_charged_and_advanced(self, orchestrator, store, ledger):
        store.add(make_subscription("sub_1"))

        summary = orchestrator.process_recurring_billing(at())

        assert summary.processed == 1
        assert summary.succeeded == 1
        sub = store.get("sub_1")
        assert sub.status == SubscriptionStatus.ACTIVE
        assert sub.next_billing_date == datetime(2026, 4, 1, tzinfo=timezone.utc)
        assert sub.last_billing_date == NOW
        assert sub.version == 1
        assert sub.updated_by == "tester"
        records = ledger.get_records("sub_1")
        assert len(records) == 1
        assert records[0].amount == Decimal("100.00")
        assert records[0].record_type == BillingRecordType.RECURRING

    def test_not_due_subscription_untouched(self, orchestrator, store, gateway):
        store.add(make_subscription("sub_1", next_billing_date=NOW + timedelta(days=1)))

        summary = orchestrator.process_recurring_billing(at())

        assert summary.processed == 0
        assert gateway.charge_count() == 0
        assert store.get("sub_1").version == 0

    def test_decline_moves_to_payment_failed(self, orchestrator, store, gateway, ledger):
        store.add(make_subscription("sub_1"))
        gateway.decline_customer("cus_sub_1", reason="Insufficient funds")

        summary = orchestrator.process_recurring_billing(at())

        assert summary.failed == 1
        sub = store.get("sub_1")
        assert sub.status == SubscriptionStatus.PAYMENT_FAILED
        assert sub.failed_payment_attempts == 1
        assert sub.last_payment_error == "Insufficient funds"
        assert sub.last_payment_failed_date == NOW
        assert sub.next_billing_date == NOW
        assert ledger.count() == 0

    def test_second_run_at_same_time_is_noop(self, orchestrator, store, gateway, ledger):
        store.add(make_subscription("sub_1"))

        orchestrator.process_recurring_billing(at())
        second = orchestrator.process_recurring_billing(at())

        assert second.processed == 0
        assert gateway.charge_count() == 1
        assert ledger.count() == 1

    def test_suspended_and_failed_never_charged_by_recurring(self, orchestrator, store, gateway):
        store.add(make_subscription("suspended", status=SubscriptionStatus.SUSPENDED))
        store.add(make_subscription("failed", status=SubscriptionStatus.PAYMENT_FAILED, failed_payment_attempts=1))

        orchestrator.process_recurring_billing(at())

        assert gateway.charge_count() == 0

    def test_run_completed_event(self, orchestrator, store, dispatcher):
        store.add(make_subscription("sub_1"))

        orchestrator.process_recurring_billing(at())

        events = published(dispatcher)
        assert BillingEventType.PAYMENT_SUCCEEDED in events
        assert events[-1] == BillingEventType.BILLING_RUN_COMPLETED


class TestFailedPaymentRetry:
    """Test process_failed_payment_retry and suspension."""

    def test_retry_success_restores_active(self, orchestrator, store, ledger):
        store.add(
            make_subscription(
                "sub_1",
                status=SubscriptionStatus.PAYMENT_FAILED,
                failed_payment_attempts=2,
                last_payment_error="Card declined",
                last_payment_failed_date=NOW - timedelta(days=1),
            )
        )

        summary = orchestrator.process_failed_payment_retry(at())

        assert summary.succeeded == 1
        sub = store.get("sub_1")
        assert sub.status == SubscriptionStatus.ACTIVE
        assert sub.failed_payment_attempts == 0
        assert sub.last_payment_error is None
        assert sub.next_billing_date == datetime(2026, 4, 1, tzinfo=timezone.utc)
        assert ledger.get_records("sub_1")[0].record_type == BillingRecordType.RETRY

    def test_suspends_on_third_failure(self, orchestrator, store, gateway, dispatcher):
        store.add(make_subscription("sub_1"))
        gateway.decline_customer("cus_sub_1")

        orchestrator.process_recurring_billing(at(0))
        orchestrator.process_failed_payment_retry(at(1))
        assert store.get("sub_1").status == SubscriptionStatus.PAYMENT_FAILED
        assert store.get("sub_1").failed_payment_attempts == 2

        summary = orchestrator.process_failed_payment_retry(at(2))

        assert summary.suspended == 1
        sub = store.get("sub_1")
        assert sub.status == SubscriptionStatus.SUSPENDED
        assert sub.failed_payment_attempts == 3
        assert sub.suspended_date == NOW + timedelta(days=2)
        assert BillingEventType.SUBSCRIPTION_SUSPENDED in published(dispatcher)

    def test_each_retry_is_a_fresh_charge(self, orchestrator, store, gateway):
        store.add(make_subscription("sub_1"))
        gateway.decline_customer("cus_sub_1")

        orchestrator.process_recurring_billing(at(0))
        orchestrator.process_failed_payment_retry(at(1))
        orchestrator.process_failed_payment_retry(at(2))

        assert gateway.charge_count("cus_sub_1") == 3

    def test_suspended_is_terminal(self, orchestrator, store, gateway):
        store.add(make_subscription("sub_1", status=SubscriptionStatus.SUSPENDED, failed_payment_attempts=3))

        orchestrator.process_failed_payment_retry(at(10))
        orchestrator.process_recurring_billing(at(10))
        orchestrator.process_subscription_renewal(at(10))

        assert gateway.charge_count() == 0
        assert store.get("sub_1").status == SubscriptionStatus.SUSPENDED

    def test_failure_at_same_time_not_retried(self, orchestrator, store, gateway):
        store.add(
            make_subscription(
                "sub_1",
                status=SubscriptionStatus.PAYMENT_FAILED,
                failed_payment_attempts=1,
                last_payment_failed_date=NOW,
            )
        )

        summary = orchestrator.process_failed_payment_retry(at())

        assert summary.skipped == 1
        assert gateway.charge_count() == 0


class TestSubscriptionRenewal:
    """Test process_subscription_renewal."""

    def test_renews_term_ending_within_window(self, orchestrator, store, ledger, dispatcher):
        end = NOW + timedelta(days=3)
        store.add(make_subscription("sub_1", end_date=end, next_billing_date=end))

        summary = orchestrator.process_subscription_renewal(at())

        assert summary.succeeded == 1
        sub = store.get("sub_1")
        assert sub.end_date == datetime(2026, 4, 4, tzinfo=timezone.utc)
        assert sub.start_date == NOW
        assert sub.next_billing_date == datetime(2026, 4, 4, tzinfo=timezone.utc)
        assert sub.status == SubscriptionStatus.ACTIVE
        assert ledger.get_records("sub_1")[0].record_type == BillingRecordType.RENEWAL
        assert BillingEventType.SUBSCRIPTION_RENEWED in published(dispatcher)

    def test_expired_term_restarts_from_now(self, orchestrator, store):
        store.add(
            make_subscription(
                "sub_1",
                status=SubscriptionStatus.EXPIRED,
                end_date=NOW - timedelta(days=10),
                next_billing_date=NOW - timedelta(days=10),
            )
        )

        orchestrator.process_subscription_renewal(at())

        sub = store.get("sub_1")
        assert sub.status == SubscriptionStatus.ACTIVE
        assert sub.end_date == datetime(2026, 4, 1, tzinfo=timezone.utc)
        assert sub.next_billing_date > NOW

    def test_term_outside_window_skipped(self, orchestrator, store, gateway):
        store.add(make_subscription("sub_1", end_date=NOW + timedelta(days=8), next_billing_date=NOW + timedelta(days=8)))

        summary = orchestrator.process_subscription_renewal(at())

        assert summary.processed == 0
        assert gateway.charge_count() == 0

    def test_renewal_decline(self, orchestrator, store, gateway):
        end = NOW + timedelta(days=2)
        store.add(make_subscription("sub_1", end_date=end, next_billing_date=end))
        gateway.decline_customer("cus_sub_1", reason="Expired card")

        summary = orchestrator.process_subscription_renewal(at())

        assert summary.failed == 1
        sub = store.get("sub_1")
        assert sub.status == SubscriptionStatus.PAYMENT_FAILED
        assert sub.failed_payment_attempts == 1
        assert sub.end_date == end

    def test_renewal_decline_never_suspends(self, orchestrator, store, gateway):
        end = NOW + timedelta(days=2)
        store.add(
            make_subscription(
                "sub_1",
                status=SubscriptionStatus.EXPIRED,
                failed_payment_attempts=2,
                end_date=end,
                next_billing_date=end,
            )
        )
        gateway.decline_customer("cus_sub_1")

        summary = orchestrator.process_subscription_renewal(at())

        assert summary.failed == 1
        assert summary.suspended == 0
        sub = store.get("sub_1")
        assert sub.status == SubscriptionStatus.PAYMENT_FAILED
        assert sub.failed_payment_attempts == 3
        assert sub.suspended_date is None


class TestAuditSinkFailure:
    """A failing audit sink never blocks billing."""

    def test_charged_subscription_still_advanced(self, orchestrator, store, ledger, dispatcher):
        store.add(make_subscription("sub_1"))
        dispatcher.publish_event.side_effect = RuntimeError("audit down")

        summary = orchestrator.process_recurring_billing(at())

        assert summary.succeeded == 1
        assert summary.failed == 0
        sub = store.get("sub_1")
        assert sub.next_billing_date == datetime(2026, 4, 1, tzinfo=timezone.utc)
        assert sub.version == 1
        assert ledger.count() == 1

    def test_next_run_does_not_charge_again(self, orchestrator, store, gateway, ledger, dispatcher):
        store.add(make_subscription("sub_1"))
        dispatcher.publish_event.side_effect = RuntimeError("audit down")

        orchestrator.process_recurring_billing(at())
        orchestrator.process_recurring_billing(at(1))

        assert gateway.charge_count() == 1
        assert ledger.count() == 1

    def test_decline_still_recorded(self, orchestrator, store, gateway, dispatcher):
        store.add(make_subscription("sub_1"))
        gateway.decline_customer("cus_sub_1")
        dispatcher.publish_event.side_effect = RuntimeError("audit down")

        summary = orchestrator.process_recurring_billing(at())

        assert summary.failed == 1
        sub = store.get("sub_1")
        assert sub.status == SubscriptionStatus.PAYMENT_FAILED
        assert sub.failed_payment_attempts == 1


class TestPerItemIsolation:
    """Test that one bad subscription never aborts a run."""

    def test_invalid_cycle_counted_as_failure(self, orchestrator, store, gateway, ledger):
        bad = make_subscription("bad")
        bad.billing_cycle_days = 0
        store.add(bad)
        store.add(make_subscription("good"))

        summary = orchestrator.process_recurring_billing(at())

        assert summary.processed == 2
        assert summary.failed == 1
        assert summary.succeeded == 1
        assert summary.errors and summary.errors[0].startswith("bad:")
        assert gateway.charge_count("cus_bad") == 0
        assert len(ledger.get_records("good")) == 1

    def test_invalid_price_counted_as_failure(self, orchestrator, store, gateway):
        bad = make_subscription("bad")
        bad.plan_price = Decimal("-5")
        store.add(bad)

        summary = orchestrator.process_recurring_billing(at())

        assert summary.failed == 1
        assert gateway.charge_count() == 0
        assert store.get("bad").failed_payment_attempts == 0

    def test_lost_race_counted_as_conflict(self, plan_repo, executor, settings):
        store = ConflictingStore()
        store.add(make_subscription("sub_1"))
        orchestrator = BillingOrchestrator(
            subscription_store=store,
            plan_repository=plan_repo,
            payment_executor=executor,
            settings=settings,
            time_controller=Mock(),
        )

        summary = orchestrator.process_recurring_billing(at())

        assert summary.conflicts == 1
        assert summary.failed == 0
        assert store.get("sub_1").version == 0

    def test_unreachable_store_raises_run_error(self, plan_repo, executor, settings):
        store = Mock(spec=SubscriptionStore)
        store.get_due_for_billing.side_effect = StoreUnavailableError("lock timeout")
        orchestrator = BillingOrchestrator(
            subscription_store=store,
            plan_repository=plan_repo,
            payment_executor=executor,
            settings=settings,
            time_controller=Mock(),
        )

        with pytest.raises(BillingRunError, match="recurring_billing"):
            orchestrator.process_recurring_billing(at())


class TestRunControl:
    """Test cancellation, worker pools and the full cycle."""

    def test_cancelled_before_start(self, orchestrator, store, gateway):
        store.add(make_subscription("sub_1"))
        cancel = threading.Event()
        cancel.set()

        summary = orchestrator.process_recurring_billing(at(cancel_event=cancel))

        assert summary.cancelled
        assert summary.processed == 0
        assert gateway.charge_count() == 0

    def test_worker_pool_processes_every_subscription(self, store, plan_repo, executor, ledger):
        for i in range(10):
            store.add(make_subscription(f"sub_{i}"))
        orchestrator = BillingOrchestrator(
            subscription_store=store,
            plan_repository=plan_repo,
            payment_executor=executor,
            settings=BillingSettings(max_workers=4),
            time_controller=Mock(),
        )

        summary = orchestrator.process_recurring_billing(at())

        assert summary.processed == 10
        assert summary.succeeded == 10
        assert ledger.count() == 10

    def test_cycle_spends_one_attempt_per_decline(self, orchestrator, store, gateway):
        store.add(make_subscription("sub_1"))
        gateway.decline_customer("cus_sub_1")

        summary = orchestrator.run_cycle(at())

        assert summary.operation == "billing_cycle"
        assert summary.failed == 1
        assert summary.skipped == 1
        assert store.get("sub_1").failed_payment_attempts == 1

    def test_cycle_uses_time_controller_when_context_has_no_time(self, store, plan_repo, executor, settings):
        clock = Mock()
        clock.get_current_time.return_value = NOW
        store.add(make_subscription("sub_1"))
        orchestrator = BillingOrchestrator(
            subscription_store=store,
            plan_repository=plan_repo,
            payment_executor=executor,
            settings=settings,
            time_controller=clock,
        )

        summary = orchestrator.run_cycle(BillingContext(actor="scheduler"))

        assert summary.succeeded == 1
        clock.get_current_time.assert_called_once()


class TestManualBilling:
    """Test process_manual_billing."""

    def test_charges_active_subscription_before_due(self, orchestrator, store, ledger):
        store.add(make_subscription("sub_1", next_billing_date=NOW + timedelta(days=10)))

        summary = orchestrator.process_manual_billing("sub_1", at())

        assert summary.succeeded == 1
        assert ledger.get_records("sub_1")[0].record_type == BillingRecordType.MANUAL
        assert store.get("sub_1").next_billing_date == datetime(2026, 4, 1, tzinfo=timezone.utc)

    def test_suspended_skipped(self, orchestrator, store, gateway):
        store.add(make_subscription("sub_1", status=SubscriptionStatus.SUSPENDED))

        summary = orchestrator.process_manual_billing("sub_1", at())

        assert summary.skipped == 1
        assert gateway.charge_count() == 0

    def test_decline_of_payment_failed_can_suspend(self, orchestrator, store, gateway):
        store.add(make_subscription("sub_1", status=SubscriptionStatus.PAYMENT_FAILED, failed_payment_attempts=2))
        gateway.decline_customer("cus_sub_1")

        summary = orchestrator.process_manual_billing("sub_1", at())

        assert summary.suspended == 1
        assert store.get("sub_1").status == SubscriptionStatus.SUSPENDED

    def test_decline_of_active_stops_at_payment_failed(self, orchestrator, store, gateway):
        store.add(make_subscription("sub_1", failed_payment_attempts=2))
        gateway.decline_customer("cus_sub_1")

        summary = orchestrator.process_manual_billing("sub_1", at())

        assert summary.failed == 1
        assert store.get("sub_1").status == SubscriptionStatus.PAYMENT_FAILED

    def test_unknown_subscription(self, orchestrator):
        with pytest.raises(SubscriptionNotFoundError):
            orchestrator.process_manual_billing("missing", at())

    def test_integrity_error_propagates(self, orchestrator, store):
        bad = make_subscription("bad")
        bad.billing_cycle_days = -1
        store.add(bad)

        with pytest.raises(BillingIntegrityError):
            orchestrator.process_manual_billing("bad", at())


class TestPlanChange:
    """Test process_plan_change."""

    def test_prorates_and_switches_plan(self, orchestrator, store, ledger, gateway, dispatcher):
        store.add(make_subscription("sub_1", next_billing_date=NOW + timedelta(days=15)))

        summary = orchestrator.process_plan_change("sub_1", "basic.monthly", at())

        assert summary.succeeded == 1
        sub = store.get("sub_1")
        assert sub.plan_id == "basic.monthly"
        assert sub.plan_price == Decimal("29.99")
        assert sub.status == SubscriptionStatus.ACTIVE
        assert sub.version == 1
        records = ledger.get_records("sub_1", BillingRecordType.PLAN_CHANGE)
        assert len(records) == 1
        assert records[0].amount == Decimal("50.00")
        assert records[0].transaction_ref is None
        assert gateway.charge_count() == 0
        assert BillingEventType.PLAN_CHANGED in published(dispatcher)

    def test_keeps_payment_failed_status(self, orchestrator, store):
        store.add(
            make_subscription("sub_1", status=SubscriptionStatus.PAYMENT_FAILED, failed_payment_attempts=1)
        )

        orchestrator.process_plan_change("sub_1", "premium.annual", at())

        sub = store.get("sub_1")
        assert sub.status == SubscriptionStatus.PAYMENT_FAILED
        assert sub.billing_cycle_days == 365

    def test_same_plan_skipped(self, orchestrator, store, ledger):
        store.add(make_subscription("sub_1"))

        summary = orchestrator.process_plan_change("sub_1", "premium.monthly", at())

        assert summary.skipped == 1
        assert ledger.count() == 0

    def test_suspended_skipped(self, orchestrator, store, ledger):
        store.add(make_subscription("sub_1", status=SubscriptionStatus.SUSPENDED))

        summary = orchestrator.process_plan_change("sub_1", "basic.monthly", at())

        assert summary.skipped == 1
        assert store.get("sub_1").plan_id == "premium.monthly"

    def test_unknown_plan(self, orchestrator, store):
        store.add(make_subscription("sub_1"))
        with pytest.raises(PlanNotFoundError):
            orchestrator.process_plan_change("sub_1", "nope", at())

    def test_unknown_subscription(self, orchestrator):
        with pytest.raises(SubscriptionNotFoundError):
            orchestrator.process_plan_change("missing", "basic.monthly", at())

    def test_ledger_failure_reverts_plan(self, store, plan_repo, gateway, dispatcher, settings):
        flaky_ledger = FlakyLedger()
        executor = PaymentExecutor(
            gateway=gateway, ledger=flaky_ledger, event_dispatcher=dispatcher, currency="USD"
        )
        orchestrator = BillingOrchestrator(
            subscription_store=store,
            plan_repository=plan_repo,
            payment_executor=executor,
            settings=settings,
            time_controller=Mock(),
        )
        store.add(make_subscription("sub_1", next_billing_date=NOW + timedelta(days=15)))

        try:
            with pytest.raises(LedgerWriteError, match="disk full"):
                orchestrator.process_plan_change("sub_1", "basic.monthly", at())

            reverted = store.get("sub_1")
            assert reverted.plan_id == "premium.monthly"
            assert reverted.plan_price == Decimal("100.00")

            summary = orchestrator.process_plan_change("sub_1", "basic.monthly", at())
        finally:
            executor.shutdown()

        assert summary.succeeded == 1
        assert store.get("sub_1").plan_id == "basic.monthly"
        adjustments = flaky_ledger.get_records("sub_1", BillingRecordType.PLAN_CHANGE)
        assert len(adjustments) == 1
        assert adjustments[0].amount == Decimal("50.00")


class TestCreateSubscription:
    """Test create_subscription."""

    def test_create_on_catalog_plan(self, orchestrator, store):
        sub = orchestrator.create_subscription("premium.quarterly", "user-1", "cus_1", context=at())

        stored = store.get(sub.id)
        assert stored.status == SubscriptionStatus.ACTIVE
        assert stored.plan_price == Decimal("270.00")
        assert stored.start_date == NOW
        assert stored.next_billing_date == datetime(2026, 6, 1, tzinfo=timezone.utc)
        assert stored.updated_by == "tester"

    def test_unknown_plan(self, orchestrator):
        with pytest.raises(PlanNotFoundError):
            orchestrator.create_subscription("nope", "user-1", "cus_1", context=at())

    def test_calculate_next_billing_date(self):
        sub = make_subscription("sub_1", next_billing_date=datetime(2026, 1, 31, tzinfo=timezone.utc))
        assert BillingOrchestrator.calculate_next_billing_date(sub) == datetime(2026, 2, 28, tzinfo=timezone.utc)
