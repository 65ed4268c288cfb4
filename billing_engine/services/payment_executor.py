"""Payment execution - one gateway charge and its bookkeeping.

Responsibilities:
- Call the gateway with a per-cycle idempotency key and a bounded timeout
- Append a billing record for every successful charge
- Emit payment audit events

Never raises for gateway, ledger or audit sink trouble: the outcome is always returned
as a BillingAttemptResult for the orchestrator to apply.
"""

from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import datetime
from decimal import Decimal
from typing import Optional

from billing_engine.logging_config import get_logger
from billing_engine.models.billing import (
    BillingAttemptResult,
    BillingContext,
    BillingRecord,
    BillingRecordType,
)
from billing_engine.models.events import BillingEventType
from billing_engine.models.subscription import Subscription
from billing_engine.repositories.ledger import LedgerWriter
from billing_engine.services.event_dispatcher import EventDispatcher
from billing_engine.services.payment_gateway import PaymentGateway
from billing_engine.state_logger import log_payment_attempt
from billing_engine.utils.id_generator import generate_idempotency_key, mask_reference

logger = get_logger(__name__)

GATEWAY_TIMEOUT_MESSAGE = "Payment gateway timed out"


class PaymentExecutor:
    """Executes charges against the payment gateway.

    Collaborators default to the global singletons and are resolved on first
    use, so tests can inject fakes through the constructor.
    """

    def __init__(
            self,
            gateway: Optional[PaymentGateway] = None,
            ledger: Optional[LedgerWriter] = None,
            event_dispatcher: Optional[EventDispatcher] = None,
            currency: Optional[str] = None,
            timeout_seconds: Optional[float] = None,
            max_concurrent_charges: int = 8,
    ):
        self._gateway = gateway
        self._ledger = ledger
        self._event_dispatcher = event_dispatcher
        self._currency = currency
        self._timeout_seconds = timeout_seconds
        self._pool = ThreadPoolExecutor(
            max_workers=max_concurrent_charges, thread_name_prefix="gateway-call"
        )

    @property
    def gateway(self) -> PaymentGateway:
        if self._gateway is None:
            from billing_engine.services.payment_gateway import get_payment_gateway

            self._gateway = get_payment_gateway()
        return self._gateway

    @property
    def ledger(self) -> LedgerWriter:
        if self._ledger is None:
            from billing_engine.repositories.ledger import get_ledger

            self._ledger = get_ledger()
        return self._ledger

    @property
    def event_dispatcher(self) -> EventDispatcher:
        if self._event_dispatcher is None:
            from billing_engine.services.event_dispatcher import get_event_dispatcher

            self._event_dispatcher = get_event_dispatcher()
        return self._event_dispatcher

    @property
    def currency(self) -> str:
        if self._currency is None:
            from billing_engine.config import get_config

            self._currency = get_config().currency
        return self._currency

    @property
    def timeout_seconds(self) -> float:
        if self._timeout_seconds is None:
            from billing_engine.config import get_config

            self._timeout_seconds = get_config().billing_settings.gateway_timeout_seconds
        return self._timeout_seconds

    def charge(
            self,
            subscription: Subscription,
            amount: Decimal,
            record_type: BillingRecordType,
            description: str,
            context: BillingContext,
            anchor: datetime,
            now: datetime,
    ) -> BillingAttemptResult:
        """Charge a subscription once and record the outcome.

        Args:
            subscription: Fresh snapshot of the subscription being charged
            amount: Amount to charge
            record_type: Why the charge happens (recurring, renewal, retry, manual)
            description: Billing record description
            context: Caller context (actor, correlation id)
            anchor: Cycle date the charge pays for, part of the idempotency key
            now: Processing time

        Returns:
            BillingAttemptResult; success only when the gateway accepted the charge
        """
        idempotency_key = generate_idempotency_key(
            subscription.id, anchor, record_type.value, subscription.failed_payment_attempts
        )

        result = self._call_gateway(subscription, amount, idempotency_key)

        log_payment_attempt(
            subscription_id=subscription.id,
            amount=amount,
            success=result.success,
            transaction_ref=result.transaction_ref,
            error_message=result.error_message,
            record_type=record_type.value,
            timed_out=result.timed_out,
            idempotency_key=idempotency_key,
        )

        if result.success:
            result.ledger_recorded = self._append_record(
                subscription, amount, record_type, description, result.transaction_ref, context, now
            )
            self._publish_event(
                BillingEventType.PAYMENT_SUCCEEDED,
                now,
                context,
                subscription_id=subscription.id,
                user_id=subscription.user_id,
                amount=amount,
                currency=self.currency,
                record_type=record_type.value,
                transaction_ref=result.transaction_ref,
            )
        else:
            self._publish_event(
                BillingEventType.PAYMENT_FAILED,
                now,
                context,
                subscription_id=subscription.id,
                user_id=subscription.user_id,
                amount=amount,
                currency=self.currency,
                message=result.error_message,
                record_type=record_type.value,
                timed_out=result.timed_out,
            )

        return result

    def _call_gateway(self, subscription: Subscription, amount: Decimal, idempotency_key: str) -> BillingAttemptResult:
        future = self._pool.submit(
            self.gateway.charge,
            subscription.payment_method_ref,
            amount,
            self.currency,
            idempotency_key,
        )
        try:
            response = future.result(timeout=self.timeout_seconds)
        except FutureTimeoutError:
            logger.warning(
                "payment_gateway_timeout",
                subscription_id=subscription.id,
                customer_ref=mask_reference(subscription.payment_method_ref),
                timeout_seconds=self.timeout_seconds,
            )
            return BillingAttemptResult(
                success=False, amount=amount, error_message=GATEWAY_TIMEOUT_MESSAGE, timed_out=True
            )
        except Exception as e:
            logger.error(
                "payment_gateway_error",
                subscription_id=subscription.id,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            return BillingAttemptResult(success=False, amount=amount, error_message=f"Payment gateway error: {e}")

        if response.success:
            return BillingAttemptResult(success=True, amount=amount, transaction_ref=response.transaction_ref)
        return BillingAttemptResult(
            success=False,
            amount=amount,
            error_message=response.error_message or "Payment declined",
        )

    def _append_record(
            self,
            subscription: Subscription,
            amount: Decimal,
            record_type: BillingRecordType,
            description: str,
            transaction_ref: Optional[str],
            context: BillingContext,
            now: datetime,
    ) -> bool:
        record = BillingRecord(
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            amount=amount,
            currency=self.currency,
            description=description,
            record_type=record_type,
            transaction_ref=transaction_ref,
            created_at=now,
            created_by=context.actor,
        )
        try:
            self.ledger.append(record)
            return True
        except Exception as e:
            # Charge is already captured at the gateway
            logger.error(
                "ledger_append_failed",
                subscription_id=subscription.id,
                transaction_ref=transaction_ref,
                amount=str(amount),
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            return False

    def _publish_event(self, event_type: BillingEventType, now: datetime, context: BillingContext, **fields) -> None:
        try:
            self.event_dispatcher.publish_event(event_type, event_time=now, actor=context.actor, **fields)
        except Exception as e:
            logger.error(
                "event_publish_failed",
                event_type=event_type.value,
                subscription_id=fields.get("subscription_id"),
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )

    def shutdown(self) -> None:
        """Stop the gateway worker threads."""
        self._pool.shutdown(wait=False)
