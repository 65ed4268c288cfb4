"""Billing trigger API.

Implements:
- POST /billing/runs/recurring - Charge due subscriptions
- POST /billing/runs/renewals - Renew terms ending within the renewal window
- POST /billing/runs/retries - Retry failed payments
- POST /billing/runs/cycle - Recurring, renewals and retries in one go
- POST /billing/subscriptions/{subscription_id}/plan-change - Switch plan mid-cycle
- POST /billing/subscriptions/{subscription_id}/charge - Charge one subscription now
- GET /billing/subscriptions/{subscription_id} - Subscription billing state
- GET /billing/subscriptions/{subscription_id}/records - Ledger records

The caller is identified by the X-Actor header and recorded on every change.
"""

from typing import Callable, NoReturn, Optional

from fastapi import APIRouter, Header, HTTPException

from billing_engine.logging_config import get_logger
from billing_engine.models import (
    BillingContext,
    BillingRecordsResponse,
    BillingRunSummary,
    PlanChangeRequest,
    Subscription,
)
from billing_engine.repositories.ledger import LedgerWriteError, get_ledger
from billing_engine.repositories.plan_repository import PlanNotFoundError
from billing_engine.repositories.subscription_store import (
    ConcurrentUpdateError,
    StoreUnavailableError,
    SubscriptionNotFoundError,
    get_subscription_store,
)
from billing_engine.services.billing_orchestrator import BillingRunError, get_billing_orchestrator

logger = get_logger(__name__)
router = APIRouter(tags=["Billing API"], prefix="/billing")

DEFAULT_ACTOR = "api"


def _context(x_actor: Optional[str]) -> BillingContext:
    return BillingContext(actor=x_actor or DEFAULT_ACTOR)


def _raise(status_code: int, error: str, message: str) -> NoReturn:
    raise HTTPException(status_code=status_code, detail={"error": error, "message": message})


def _run(operation: str, runner: Callable[[BillingContext], BillingRunSummary], x_actor: Optional[str]) -> BillingRunSummary:
    context = _context(x_actor)
    logger.info("billing_run_request", operation=operation, actor=context.actor)
    try:
        return runner(context)
    except BillingRunError as e:
        logger.error("billing_run_request_failed", operation=operation, error=str(e))
        _raise(503, "Billing run failed", str(e))


@router.post("/runs/recurring", response_model=BillingRunSummary, summary="Run recurring billing")
def run_recurring_billing(x_actor: Optional[str] = Header(default=None)) -> BillingRunSummary:
    """Charge every active subscription whose next billing date has come.

    Raises:
        503: Due subscriptions could not be fetched
    """
    return _run("recurring_billing", get_billing_orchestrator().process_recurring_billing, x_actor)


@router.post("/runs/renewals", response_model=BillingRunSummary, summary="Run subscription renewals")
def run_renewals(x_actor: Optional[str] = Header(default=None)) -> BillingRunSummary:
    return _run("subscription_renewal", get_billing_orchestrator().process_subscription_renewal, x_actor)


@router.post("/runs/retries", response_model=BillingRunSummary, summary="Retry failed payments")
def run_retries(x_actor: Optional[str] = Header(default=None)) -> BillingRunSummary:
    return _run("failed_payment_retry", get_billing_orchestrator().process_failed_payment_retry, x_actor)


@router.post("/runs/cycle", response_model=BillingRunSummary, summary="Run a full billing cycle")
def run_cycle(x_actor: Optional[str] = Header(default=None)) -> BillingRunSummary:
    """Run recurring billing, renewals and retries at one processing time."""
    return _run("billing_cycle", get_billing_orchestrator().run_cycle, x_actor)


@router.post(
    "/subscriptions/{subscription_id}/plan-change",
    response_model=BillingRunSummary,
    summary="Change a subscription's plan",
)
def change_plan(
        subscription_id: str,
        request: PlanChangeRequest,
        x_actor: Optional[str] = Header(default=None),
) -> BillingRunSummary:
    """Switch to another plan and record the prorated remainder of the cycle.

    Raises:
        404: Subscription or plan not found
        409: Subscription changed concurrently, retry the request
        500: Adjustment could not be recorded
    """
    context = _context(x_actor)
    logger.info(
        "plan_change_request",
        subscription_id=subscription_id,
        new_plan_id=request.new_plan_id,
        actor=context.actor,
    )

    try:
        return get_billing_orchestrator().process_plan_change(subscription_id, request.new_plan_id, context)
    except SubscriptionNotFoundError as e:
        _raise(404, "Subscription not found", str(e))
    except PlanNotFoundError as e:
        _raise(404, "Plan not found", str(e))
    except ConcurrentUpdateError as e:
        _raise(409, "Concurrent update", str(e))
    except StoreUnavailableError as e:
        _raise(503, "Store unavailable", str(e))
    except LedgerWriteError as e:
        _raise(500, "Ledger write failed", str(e))


@router.post(
    "/subscriptions/{subscription_id}/charge",
    response_model=BillingRunSummary,
    summary="Charge a subscription now",
)
def charge_subscription(subscription_id: str, x_actor: Optional[str] = Header(default=None)) -> BillingRunSummary:
    """Charge one Active or PaymentFailed subscription immediately.

    Raises:
        404: Subscription not found
        409: Subscription changed concurrently
    """
    context = _context(x_actor)
    logger.info("manual_billing_request", subscription_id=subscription_id, actor=context.actor)

    try:
        return get_billing_orchestrator().process_manual_billing(subscription_id, context)
    except SubscriptionNotFoundError as e:
        _raise(404, "Subscription not found", str(e))
    except ConcurrentUpdateError as e:
        _raise(409, "Concurrent update", str(e))
    except StoreUnavailableError as e:
        _raise(503, "Store unavailable", str(e))


@router.get("/subscriptions/{subscription_id}", response_model=Subscription, summary="Get subscription")
def get_subscription(subscription_id: str) -> Subscription:
    """Get a subscription's billing state, including the last decline reason."""
    try:
        return get_subscription_store().get(subscription_id)
    except SubscriptionNotFoundError as e:
        _raise(404, "Subscription not found", str(e))


@router.get(
    "/subscriptions/{subscription_id}/records",
    response_model=BillingRecordsResponse,
    summary="List billing records",
)
def list_billing_records(subscription_id: str) -> BillingRecordsResponse:
    if not get_subscription_store().exists(subscription_id):
        _raise(404, "Subscription not found", f"Subscription not found: {subscription_id}")

    ledger = get_ledger()
    return BillingRecordsResponse(
        subscription_id=subscription_id,
        records=ledger.get_records(subscription_id=subscription_id),
        total_charged=ledger.total_amount(subscription_id),
    )
