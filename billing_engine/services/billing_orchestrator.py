"""Subscription billing state machine.

Responsibilities:
- Charge subscriptions whose next billing date has come (recurring billing)
- Renew terms that end within the renewal window
- Retry failed payments and suspend once attempts are exhausted
- Switch plans mid-cycle and record the prorated adjustment
- Isolate per-subscription failures so one bad record never aborts a run

Transitions:
    Active         -> Active | PaymentFailed
    PaymentFailed  -> Active | PaymentFailed | Suspended (attempt ceiling reached)
    Active/Expired -> (renewal) Active | PaymentFailed
    Suspended is terminal for the engine.
"""

import contextvars
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Callable, List, Optional, Tuple

from billing_engine.logging_config import bound_context, get_logger
from billing_engine.models.billing import (
    BillingAttemptResult,
    BillingContext,
    BillingRecord,
    BillingRecordType,
    BillingRunSummary,
    utc_now,
)
from billing_engine.models.events import BillingEventType
from billing_engine.models.plan import BillingSettings
from billing_engine.models.subscription import Subscription, SubscriptionStatus
from billing_engine.repositories.ledger import LedgerWriteError
from billing_engine.repositories.plan_repository import PlanRepository, get_plan_repository
from billing_engine.repositories.subscription_store import (
    ConcurrentUpdateError,
    SubscriptionNotFoundError,
    SubscriptionStore,
    get_subscription_store,
)
from billing_engine.services.billing_calculator import (
    catch_up_billing_date,
    is_due,
    next_billing_date,
    prorated_amount,
    renewal_window_end,
    validate_plan_price,
)
from billing_engine.services.payment_executor import PaymentExecutor
from billing_engine.utils.billing_cycle import BillingCycle, BillingIntegrityError
from billing_engine.utils.id_generator import generate_subscription_id

logger = get_logger(__name__)


class BillingError(Exception):
    """Base exception for billing errors."""

    pass


class BillingRunError(BillingError):
    """Raised when a run cannot even compute its batch (store unreachable)."""

    def __init__(self, operation: str, message: str):
        self.operation = operation
        super().__init__(f"{operation} failed: {message}")


class _Outcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SUSPENDED = "suspended"
    SKIPPED = "skipped"
    CONFLICT = "conflict"


ItemHandler = Callable[[str, BillingContext, datetime], _Outcome]


class BillingOrchestrator:
    """Drives per-subscription billing transitions.

    Every operation takes an explicit BillingContext (actor, correlation id,
    optional fixed processing time, optional cancel event) and returns a
    BillingRunSummary.
    """

    def __init__(
            self,
            subscription_store: Optional[SubscriptionStore] = None,
            plan_repository: Optional[PlanRepository] = None,
            payment_executor: Optional[PaymentExecutor] = None,
            settings: Optional[BillingSettings] = None,
            time_controller=None,
            event_dispatcher=None,
    ):
        """Initialize billing orchestrator.

        Args:
            subscription_store: Subscription storage (defaults to global instance)
            plan_repository: Plan catalog (defaults to global instance)
            payment_executor: Charge executor (defaults to one using the global gateway and ledger)
            settings: Billing settings (defaults to billing.yaml)
            time_controller: Clock used when the context carries no time (defaults to global instance)
            event_dispatcher: Audit sink (defaults to global instance)
        """
        self.store = subscription_store if subscription_store is not None else get_subscription_store()
        self.plan_repo = plan_repository if plan_repository is not None else get_plan_repository()
        self.executor = payment_executor if payment_executor is not None else PaymentExecutor()
        if settings is None:
            from billing_engine.config import get_config

            settings = get_config().billing_settings
        self.settings = settings
        self._time_controller = time_controller  # Lazy loaded to avoid circular import
        self._event_dispatcher = event_dispatcher

        logger.info(
            "billing_orchestrator_initialized",
            max_failed_attempts=settings.max_failed_attempts,
            renewal_window_days=settings.renewal_window_days,
            max_workers=settings.max_workers,
        )

    def _get_time_controller(self):
        if self._time_controller is None:
            from billing_engine.services.time_controller import get_time_controller

            self._time_controller = get_time_controller()
        return self._time_controller

    def _get_event_dispatcher(self):
        if self._event_dispatcher is None:
            self._event_dispatcher = self.executor.event_dispatcher
        return self._event_dispatcher

    def _now(self, context: BillingContext) -> datetime:
        if context.now is not None:
            return context.now
        return self._get_time_controller().get_current_time()

    def _publish_event(self, event_type: BillingEventType, now: datetime, context: BillingContext, **fields) -> None:
        """Publish an audit event. Never raises."""
        try:
            self._get_event_dispatcher().publish_event(event_type, event_time=now, actor=context.actor, **fields)
        except Exception as e:
            logger.error(
                "event_publish_failed",
                event_type=event_type.value,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )

    @staticmethod
    def calculate_next_billing_date(subscription: Subscription, anchor: Optional[datetime] = None) -> datetime:
        """Next billing date one cycle after anchor (defaults to the current next_billing_date)."""
        return next_billing_date(anchor or subscription.next_billing_date, subscription.billing_cycle_days)

    @staticmethod
    def validate_billing_cycle(subscription: Subscription, now: datetime) -> bool:
        """True when the subscription is due: next_billing_date <= now."""
        return is_due(subscription.next_billing_date, now)

    @staticmethod
    def _validated_charge(subscription: Subscription) -> Tuple[Decimal, BillingCycle]:
        """Price and cycle to charge with, checked before any gateway call."""
        return validate_plan_price(subscription.plan_price), BillingCycle(subscription.billing_cycle_days)

    def _save(self, subscription: Subscription, context: BillingContext, now: datetime) -> None:
        subscription.updated_at = now
        subscription.updated_by = context.actor
        self.store.update(subscription)

    def _revert_plan_change(
            self,
            subscription: Subscription,
            old_plan_fields: dict,
            context: BillingContext,
            now: datetime,
    ) -> None:
        """Put the previous plan back after its adjustment could not be recorded."""
        for field, value in old_plan_fields.items():
            setattr(subscription, field, value)
        try:
            self._save(subscription, context, now)
            logger.warning("plan_change_reverted", plan_id=subscription.plan_id)
        except ConcurrentUpdateError as e:
            # Someone else wrote in between; their version wins
            logger.critical(
                "plan_change_revert_failed",
                plan_id=subscription.plan_id,
                expected_version=e.expected_version,
                actual_version=e.actual_version,
            )

    def _apply_success(self, subscription: Subscription, now: datetime, reason: str) -> None:
        subscription.failed_payment_attempts = 0
        subscription.last_payment_error = None
        subscription.last_billing_date = now
        subscription.set_status(SubscriptionStatus.ACTIVE, reason=reason)

    def _apply_failure(
            self,
            subscription: Subscription,
            result: BillingAttemptResult,
            context: BillingContext,
            now: datetime,
            may_suspend: bool = False,
    ) -> _Outcome:
        """Record a declined charge.

        Retries and manual charges of PaymentFailed subscriptions pass
        may_suspend; other failures stop at PaymentFailed.
        """
        subscription.failed_payment_attempts += 1
        subscription.last_payment_error = result.error_message
        subscription.last_payment_failed_date = now

        if may_suspend and subscription.failed_payment_attempts >= self.settings.max_failed_attempts:
            subscription.suspended_date = now
            subscription.set_status(SubscriptionStatus.SUSPENDED, reason="max_failed_attempts_reached")
            self._publish_event(
                BillingEventType.SUBSCRIPTION_SUSPENDED,
                now,
                context,
                subscription_id=subscription.id,
                user_id=subscription.user_id,
                message=result.error_message,
                failed_payment_attempts=subscription.failed_payment_attempts,
            )
            return _Outcome.SUSPENDED

        subscription.set_status(SubscriptionStatus.PAYMENT_FAILED, reason="payment_failed")
        return _Outcome.FAILED

    def _charge_and_advance(
            self,
            subscription: Subscription,
            record_type: BillingRecordType,
            description: str,
            context: BillingContext,
            now: datetime,
            may_suspend: bool = False,
    ) -> _Outcome:
        """Charge one cycle and advance next_billing_date from now on success.

        Shared by recurring, retry and manual billing.
        """
        amount, cycle = self._validated_charge(subscription)
        result = self.executor.charge(
            subscription,
            amount,
            record_type,
            description,
            context,
            anchor=subscription.next_billing_date,
            now=now,
        )

        if result.success:
            self._apply_success(subscription, now, reason=f"{record_type.value.lower()}_payment")
            subscription.set_next_billing_date(cycle.advance(now), reason=f"{record_type.value.lower()}_payment")
            outcome = _Outcome.SUCCEEDED
        else:
            outcome = self._apply_failure(subscription, result, context, now, may_suspend=may_suspend)

        self._save(subscription, context, now)
        return outcome

    def _bill_recurring(self, subscription_id: str, context: BillingContext, now: datetime) -> _Outcome:
        subscription = self.store.get(subscription_id)

        # The batch query may be stale: another run can have billed it already
        if subscription.status != SubscriptionStatus.ACTIVE or not self.validate_billing_cycle(subscription, now):
            logger.debug("recurring_billing_not_due", subscription_id=subscription_id)
            return _Outcome.SKIPPED

        return self._charge_and_advance(
            subscription,
            BillingRecordType.RECURRING,
            f"Recurring payment for {subscription.plan_name or subscription.plan_id}",
            context,
            now,
        )

    def _renew(self, subscription_id: str, context: BillingContext, now: datetime) -> _Outcome:
        subscription = self.store.get(subscription_id)

        window_end = renewal_window_end(now, self.settings.renewal_window_days)
        if (
            subscription.status not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.EXPIRED)
            or subscription.end_date is None
            or subscription.end_date > window_end
        ):
            logger.debug("renewal_not_due", subscription_id=subscription_id)
            return _Outcome.SKIPPED

        amount, cycle = self._validated_charge(subscription)
        result = self.executor.charge(
            subscription,
            amount,
            BillingRecordType.RENEWAL,
            f"Subscription renewal for {subscription.plan_name or subscription.plan_id}",
            context,
            anchor=subscription.end_date,
            now=now,
        )

        if not result.success:
            outcome = self._apply_failure(subscription, result, context, now)
            self._save(subscription, context, now)
            return outcome

        term_anchor = subscription.end_date if subscription.end_date > now else now
        subscription.extend_term(cycle.advance(term_anchor), reason="renewal")
        subscription.start_date = now
        subscription.set_next_billing_date(
            catch_up_billing_date(subscription.next_billing_date, cycle.days, now),
            reason="renewal",
        )
        self._apply_success(subscription, now, reason="renewal")
        self._save(subscription, context, now)

        self._publish_event(
            BillingEventType.SUBSCRIPTION_RENEWED,
            now,
            context,
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            amount=amount,
            end_date=subscription.end_date.isoformat(),
        )
        return _Outcome.SUCCEEDED

    def _retry(self, subscription_id: str, context: BillingContext, now: datetime) -> _Outcome:
        subscription = self.store.get(subscription_id)

        if subscription.status != SubscriptionStatus.PAYMENT_FAILED:
            logger.debug("payment_retry_not_needed", subscription_id=subscription_id, status=subscription.status.value)
            return _Outcome.SKIPPED

        # Failed at this processing time already (e.g. earlier in the same cycle)
        if subscription.last_payment_failed_date is not None and subscription.last_payment_failed_date >= now:
            logger.debug("payment_retry_already_attempted", subscription_id=subscription_id)
            return _Outcome.SKIPPED

        return self._charge_and_advance(
            subscription,
            BillingRecordType.RETRY,
            f"Payment retry for {subscription.plan_name or subscription.plan_id}",
            context,
            now,
            may_suspend=True,
        )

    def _process_item(
            self,
            subscription_id: str,
            handler: ItemHandler,
            context: BillingContext,
            now: datetime,
    ) -> Tuple[_Outcome, Optional[str]]:
        """Run one item, converting its failure into an outcome."""
        try:
            with bound_context(subscription_id=subscription_id):
                return handler(subscription_id, context, now), None
        except ConcurrentUpdateError as e:
            logger.warning(
                "subscription_update_conflict",
                subscription_id=subscription_id,
                expected_version=e.expected_version,
                actual_version=e.actual_version,
            )
            return _Outcome.CONFLICT, None
        except SubscriptionNotFoundError as e:
            logger.warning("subscription_disappeared", subscription_id=subscription_id, error=str(e))
            return _Outcome.SKIPPED, None
        except BillingIntegrityError as e:
            logger.critical(
                "billing_integrity_error",
                subscription_id=subscription_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return _Outcome.FAILED, f"{subscription_id}: {e}"
        except Exception as e:
            logger.error(
                "subscription_billing_failed",
                subscription_id=subscription_id,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            return _Outcome.FAILED, f"{subscription_id}: {e}"

    @staticmethod
    def _tally(summary: BillingRunSummary, outcome: _Outcome, error: Optional[str]) -> None:
        summary.processed += 1
        if outcome == _Outcome.SUCCEEDED:
            summary.succeeded += 1
        elif outcome == _Outcome.SKIPPED:
            summary.skipped += 1
        elif outcome == _Outcome.CONFLICT:
            summary.conflicts += 1
        else:
            summary.failed += 1
            if outcome == _Outcome.SUSPENDED:
                summary.suspended += 1
        if error:
            summary.errors.append(error)

    def _process_batch(
            self,
            subscription_ids: List[str],
            handler: ItemHandler,
            context: BillingContext,
            now: datetime,
            summary: BillingRunSummary,
    ) -> None:
        summary_lock = threading.Lock()

        def work(subscription_id: str) -> None:
            # Cancellation is honoured between subscriptions only
            if context.cancelled:
                with summary_lock:
                    summary.cancelled = True
                return
            outcome, error = self._process_item(subscription_id, handler, context, now)
            with summary_lock:
                self._tally(summary, outcome, error)

        if self.settings.max_workers <= 1:
            for subscription_id in subscription_ids:
                if context.cancelled:
                    summary.cancelled = True
                    break
                work(subscription_id)
            return

        with ThreadPoolExecutor(max_workers=self.settings.max_workers, thread_name_prefix="billing-worker") as pool:
            # Copy the logging context so worker logs keep the run correlation
            futures = [pool.submit(contextvars.copy_context().run, work, sid) for sid in subscription_ids]
            for future in futures:
                future.result()

    def _run(
            self,
            operation: str,
            fetch: Callable[[datetime], List[Subscription]],
            handler: ItemHandler,
            context: Optional[BillingContext],
    ) -> BillingRunSummary:
        context = context or BillingContext()
        now = self._now(context)
        summary = BillingRunSummary(operation=operation, correlation_id=context.correlation_id)

        with bound_context(operation=operation, correlation_id=context.correlation_id, actor=context.actor):
            logger.info("billing_run_started", as_of=now.isoformat())

            try:
                subscription_ids = [s.id for s in fetch(now)]
            except Exception as e:
                logger.error(
                    "billing_run_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
                raise BillingRunError(operation, str(e)) from e

            self._process_batch(subscription_ids, handler, context, now, summary)
            summary.completed_at = utc_now()

            logger.info(
                "billing_run_completed",
                candidates=len(subscription_ids),
                processed=summary.processed,
                succeeded=summary.succeeded,
                failed=summary.failed,
                skipped=summary.skipped,
                conflicts=summary.conflicts,
                suspended=summary.suspended,
                cancelled=summary.cancelled,
            )

        self._publish_event(
            BillingEventType.BILLING_RUN_COMPLETED,
            now,
            context,
            message=operation,
            correlation_id=context.correlation_id,
            processed=summary.processed,
            succeeded=summary.succeeded,
            failed=summary.failed,
        )
        return summary

    def process_recurring_billing(self, context: Optional[BillingContext] = None) -> BillingRunSummary:
        """Charge every active subscription whose next billing date has come.

        Raises:
            BillingRunError: If the due subscriptions cannot be fetched
        """
        return self._run("recurring_billing", self.store.get_due_for_billing, self._bill_recurring, context)

    def process_subscription_renewal(self, context: Optional[BillingContext] = None) -> BillingRunSummary:
        """Renew active or expired subscriptions whose term ends within the renewal window.

        Raises:
            BillingRunError: If the renewal candidates cannot be fetched
        """
        window_days = self.settings.renewal_window_days
        return self._run(
            "subscription_renewal",
            lambda now: self.store.get_renewal_candidates(now, window_days),
            self._renew,
            context,
        )

    def process_failed_payment_retry(self, context: Optional[BillingContext] = None) -> BillingRunSummary:
        """Retry every subscription in PaymentFailed, suspending at the attempt ceiling.

        Raises:
            BillingRunError: If the failed subscriptions cannot be fetched
        """
        return self._run(
            "failed_payment_retry",
            lambda now: self.store.get_by_status(SubscriptionStatus.PAYMENT_FAILED),
            self._retry,
            context,
        )

    def run_cycle(self, context: Optional[BillingContext] = None) -> BillingRunSummary:
        """Run recurring billing, renewals and retries in that order.

        All three share one processing time. A cancelled run stops before
        the next operation.
        """
        context = context or BillingContext()
        if context.now is None:
            context = context.model_copy(update={"now": self._now(context)})

        summary = BillingRunSummary(operation="billing_cycle", correlation_id=context.correlation_id)
        for operation in (
            self.process_recurring_billing,
            self.process_subscription_renewal,
            self.process_failed_payment_retry,
        ):
            if context.cancelled:
                summary.cancelled = True
                break
            summary.merge(operation(context))

        summary.completed_at = utc_now()
        return summary

    def process_manual_billing(self, subscription_id: str, context: Optional[BillingContext] = None) -> BillingRunSummary:
        """Charge one subscription immediately.

        Active and PaymentFailed subscriptions are charged with the same
        transitions as recurring billing and retries. Suspended and Expired
        ones are skipped.

        Raises:
            SubscriptionNotFoundError: If the subscription does not exist
            ConcurrentUpdateError: If another run changed the subscription meanwhile
            BillingIntegrityError: If the subscription's price or cycle is invalid
        """
        context = context or BillingContext()
        now = self._now(context)
        summary = BillingRunSummary(operation="manual_billing", correlation_id=context.correlation_id)

        with bound_context(
            operation="manual_billing",
            correlation_id=context.correlation_id,
            actor=context.actor,
            subscription_id=subscription_id,
        ):
            subscription = self.store.get(subscription_id)

            if subscription.status not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAYMENT_FAILED):
                logger.info("manual_billing_skipped", status=subscription.status.value)
                outcome = _Outcome.SKIPPED
            else:
                outcome = self._charge_and_advance(
                    subscription,
                    BillingRecordType.MANUAL,
                    f"Manual payment for {subscription.plan_name or subscription.plan_id}",
                    context,
                    now,
                    may_suspend=subscription.status == SubscriptionStatus.PAYMENT_FAILED,
                )

            self._tally(summary, outcome, None)
            summary.completed_at = utc_now()
            logger.info("manual_billing_completed", outcome=outcome.value)

        return summary

    def process_plan_change(
            self,
            subscription_id: str,
            new_plan_id: str,
            context: Optional[BillingContext] = None,
    ) -> BillingRunSummary:
        """Switch a subscription to another plan mid-cycle.

        The remainder of the current cycle is prorated under the current
        price and written to the ledger as a PlanChange record. No charge is
        made and the billing status is left alone.

        Raises:
            SubscriptionNotFoundError: If the subscription does not exist
            PlanNotFoundError: If the new plan does not exist
            ConcurrentUpdateError: If another run changed the subscription meanwhile
            BillingIntegrityError: If the current price or cycle is invalid
            LedgerWriteError: If the adjustment could not be recorded; the plan switch is reverted
        """
        context = context or BillingContext()
        now = self._now(context)
        summary = BillingRunSummary(operation="plan_change", correlation_id=context.correlation_id)

        with bound_context(
            operation="plan_change",
            correlation_id=context.correlation_id,
            actor=context.actor,
            subscription_id=subscription_id,
        ):
            subscription = self.store.get(subscription_id)
            new_plan = self.plan_repo.get_by_id(new_plan_id)

            if subscription.plan_id == new_plan.id or subscription.is_suspended:
                logger.info(
                    "plan_change_skipped",
                    plan_id=subscription.plan_id,
                    new_plan_id=new_plan_id,
                    status=subscription.status.value,
                )
                self._tally(summary, _Outcome.SKIPPED, None)
                summary.completed_at = utc_now()
                return summary

            amount = prorated_amount(
                subscription.plan_price,
                subscription.billing_cycle_days,
                subscription.next_billing_date,
                now,
            )
            BillingCycle(new_plan.billing_cycle_days)

            old_plan_id = subscription.plan_id
            old_plan_fields = {
                "plan_id": subscription.plan_id,
                "plan_name": subscription.plan_name,
                "plan_price": subscription.plan_price,
                "billing_cycle_days": subscription.billing_cycle_days,
            }
            subscription.plan_id = new_plan.id
            subscription.plan_name = new_plan.name
            subscription.plan_price = new_plan.price
            subscription.billing_cycle_days = new_plan.billing_cycle_days
            self._save(subscription, context, now)

            record = BillingRecord(
                subscription_id=subscription.id,
                user_id=subscription.user_id,
                amount=amount,
                currency=self.executor.currency,
                description=f"Plan change from {old_plan_id} to {new_plan.id} (prorated remainder of current cycle)",
                record_type=BillingRecordType.PLAN_CHANGE,
                created_at=now,
                created_by=context.actor,
            )
            try:
                self.executor.ledger.append(record)
            except Exception as e:
                logger.error("plan_change_record_failed", record_id=record.id, error=str(e), exc_info=True)
                self._revert_plan_change(subscription, old_plan_fields, context, now)
                if isinstance(e, LedgerWriteError):
                    raise
                raise LedgerWriteError(f"Could not record plan change for {subscription.id}: {e}") from e

            logger.info(
                "plan_changed",
                old_plan_id=old_plan_id,
                new_plan_id=new_plan.id,
                prorated_amount=str(amount),
            )
            self._tally(summary, _Outcome.SUCCEEDED, None)
            summary.completed_at = utc_now()

        self._publish_event(
            BillingEventType.PLAN_CHANGED,
            now,
            context,
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            amount=amount,
            currency=self.executor.currency,
            old_plan_id=old_plan_id,
            new_plan_id=new_plan.id,
        )
        return summary

    def create_subscription(
            self,
            plan_id: str,
            user_id: str,
            payment_method_ref: str,
            start_date: Optional[datetime] = None,
            next_billing_date: Optional[datetime] = None,
            end_date: Optional[datetime] = None,
            context: Optional[BillingContext] = None,
    ) -> Subscription:
        """Create an Active subscription on a catalog plan.

        Args:
            plan_id: Catalog plan ID
            user_id: Owning user
            payment_method_ref: Customer reference passed to the gateway
            start_date: Start of the first term (defaults to now)
            next_billing_date: First charge (defaults to one cycle after start_date)
            end_date: End of a fixed term, None for open-ended billing

        Raises:
            PlanNotFoundError: If plan ID not found
        """
        context = context or BillingContext()
        plan = self.plan_repo.get_by_id(plan_id)
        start = start_date or self._now(context)

        subscription = Subscription(
            id=generate_subscription_id(),
            user_id=user_id,
            plan_id=plan.id,
            plan_name=plan.name,
            payment_method_ref=payment_method_ref,
            plan_price=plan.price,
            billing_cycle_days=plan.billing_cycle_days,
            currency=self.executor.currency,
            status=SubscriptionStatus.ACTIVE,
            start_date=start,
            end_date=end_date,
            next_billing_date=next_billing_date or BillingCycle(plan.billing_cycle_days).advance(start),
            updated_at=start,
            updated_by=context.actor,
        )
        self.store.add(subscription)

        logger.info(
            "subscription_created",
            subscription_id=subscription.id,
            user_id=user_id,
            plan_id=plan.id,
            next_billing_date=subscription.next_billing_date.isoformat(),
        )
        return subscription


# Global orchestrator instance
_orchestrator_instance: Optional[BillingOrchestrator] = None
_orchestrator_lock = threading.Lock()


def get_billing_orchestrator() -> BillingOrchestrator:
    """Get global billing orchestrator instance (singleton)."""
    global _orchestrator_instance
    if _orchestrator_instance is None:
        with _orchestrator_lock:
            if _orchestrator_instance is None:
                _orchestrator_instance = BillingOrchestrator()
    return _orchestrator_instance


def reset_billing_orchestrator() -> None:
    """Drop the global orchestrator (for testing)."""
    global _orchestrator_instance
    with _orchestrator_lock:
        _orchestrator_instance = None
