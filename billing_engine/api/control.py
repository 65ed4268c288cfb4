"""Control API for test orchestration and local engine management.

Implements:
- POST /control/subscriptions - Seed a subscription
- GET /control/time - Current virtual time
- POST /control/time/advance - Fast-forward time and run a billing cycle
- POST /control/gateway/declines - Script gateway declines for a customer
- DELETE /control/gateway/declines/{customer_ref} - Remove a scripted decline
- GET /control/status - Store and ledger statistics
- POST /control/reset - Reset all state
"""

from typing import Optional

from fastapi import APIRouter, Header, HTTPException

from billing_engine.logging_config import get_logger
from billing_engine.models import (
    AdvanceTimeRequest,
    AdvanceTimeResponse,
    BillingContext,
    CreateSubscriptionRequest,
    GatewayDeclineRequest,
    ResetResponse,
    Subscription,
)
from billing_engine.repositories.ledger import get_ledger
from billing_engine.repositories.plan_repository import PlanNotFoundError
from billing_engine.repositories.subscription_store import get_subscription_store
from billing_engine.services.billing_orchestrator import BillingRunError, get_billing_orchestrator
from billing_engine.services.payment_gateway import get_payment_gateway
from billing_engine.services.time_controller import get_time_controller
from billing_engine.utils.id_generator import mask_reference

logger = get_logger(__name__)
router = APIRouter(tags=["Control API"], prefix="/control")


@router.post(
    "/subscriptions",
    response_model=Subscription,
    status_code=201,
    summary="Create test subscription",
)
def create_subscription(
        request: CreateSubscriptionRequest,
        x_actor: Optional[str] = Header(default=None),
) -> Subscription:
    """Create an Active subscription on a catalog plan.

    Subscriptions are normally created by the surrounding system; this
    endpoint seeds them for local runs and tests.

    Raises:
        404: Plan not found
        400: Invalid request parameters
    """
    logger.info("create_subscription_request", plan_id=request.plan_id, user_id=request.user_id)

    try:
        subscription = get_billing_orchestrator().create_subscription(
            plan_id=request.plan_id,
            user_id=request.user_id,
            payment_method_ref=request.payment_method_ref,
            start_date=request.start_date,
            next_billing_date=request.next_billing_date,
            end_date=request.end_date,
            context=BillingContext(actor=x_actor or "control-api"),
        )
    except PlanNotFoundError as e:
        logger.warning("plan_not_found", plan_id=request.plan_id)
        raise HTTPException(
            status_code=404,
            detail={"error": "Plan not found", "message": str(e)},
        )
    except ValueError as e:
        logger.error("invalid_subscription_request", error=str(e))
        raise HTTPException(
            status_code=400,
            detail={"error": "Invalid request", "message": str(e)},
        )

    return subscription


@router.get("/time", summary="Get virtual time")
def get_time() -> dict:
    time_controller = get_time_controller()
    return {
        "current_time": time_controller.get_current_time().isoformat(),
        "offset_seconds": int(time_controller.get_offset().total_seconds()),
    }


@router.post(
    "/time/advance",
    response_model=AdvanceTimeResponse,
    summary="Advance virtual time",
)
def advance_time(request: AdvanceTimeRequest, x_actor: Optional[str] = Header(default=None)) -> AdvanceTimeResponse:
    """Advance the engine's virtual time forward.

    Unless run_billing is false, a full billing cycle (recurring billing,
    renewals, retries) runs at the new time.

    Raises:
        400: Invalid time parameters
        503: The billing cycle could not fetch its batch
    """
    logger.info(
        "advance_time_request",
        days=request.days,
        hours=request.hours,
        minutes=request.minutes,
        run_billing=request.run_billing,
    )

    try:
        result = get_time_controller().advance_time(
            days=request.days or 0,
            hours=request.hours or 0,
            minutes=request.minutes or 0,
            run_billing=request.run_billing,
            context=BillingContext(actor=x_actor or "virtual-clock"),
        )
    except ValueError as e:
        logger.error("invalid_time_request", error=str(e))
        raise HTTPException(
            status_code=400,
            detail={"error": "Invalid request", "message": str(e)},
        )
    except BillingRunError as e:
        raise HTTPException(
            status_code=503,
            detail={"error": "Billing run failed", "message": str(e)},
        )

    return AdvanceTimeResponse(old_time=result["old_time"], new_time=result["new_time"], cycle=result["cycle"])


@router.post("/gateway/declines", status_code=201, summary="Script gateway declines")
def add_gateway_decline(request: GatewayDeclineRequest) -> dict:
    """Make the simulated gateway decline a customer's charges.

    With times set, that many charges are declined and later ones approved.
    """
    get_payment_gateway().decline_customer(request.customer_ref, reason=request.reason, times=request.times)
    return {
        "customer_ref": request.customer_ref,
        "reason": request.reason,
        "times": request.times,
    }


@router.delete("/gateway/declines/{customer_ref}", summary="Remove scripted gateway decline")
def remove_gateway_decline(customer_ref: str) -> dict:
    if not get_payment_gateway().approve_customer(customer_ref):
        raise HTTPException(
            status_code=404,
            detail={
                "error": "Decline not found",
                "message": f"No scripted decline for customer {mask_reference(customer_ref)}",
            },
        )
    return {"customer_ref": customer_ref, "removed": True}


@router.get("/status", summary="Get engine status")
def get_status() -> dict:
    """Store statistics, ledger size and gateway charge count."""
    return {
        "current_time": get_time_controller().get_current_time().isoformat(),
        "subscriptions": get_subscription_store().get_statistics(),
        "billing_records": get_ledger().count(),
        "gateway_charges": get_payment_gateway().charge_count(),
    }


@router.post(
    "/reset",
    response_model=ResetResponse,
    summary="Reset engine state",
)
def reset_engine() -> ResetResponse:
    """Reset all local state.

    This clears:
    - All subscriptions
    - All billing records
    - Scripted declines and idempotency keys of the simulated gateway
    - Virtual time (resets to real time)
    """
    logger.info("reset_engine_request")

    store = get_subscription_store()
    ledger = get_ledger()
    subscriptions_count = store.count()
    records_count = ledger.count()

    store.clear()
    ledger.clear()
    get_payment_gateway().reset()
    get_time_controller().reset_time()

    logger.info(
        "reset_engine_success",
        subscriptions_cleared=subscriptions_count,
        records_cleared=records_count,
    )
    return ResetResponse(
        subscriptions_cleared=subscriptions_count,
        records_cleared=records_count,
        message="Billing engine state reset successfully",
    )
