"""API request and response models for the billing and control endpoints."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from .billing import BillingRecord, BillingRunSummary


class PlanChangeRequest(BaseModel):
    """Request to move a subscription to another plan."""

    new_plan_id: str = Field(..., description="Target plan ID")

    class Config:
        json_schema_extra = {"example": {"new_plan_id": "premium.quarterly"}}


class CreateSubscriptionRequest(BaseModel):
    """Request to seed a subscription via the control API."""

    plan_id: str = Field(..., description="Plan ID from the catalog")
    user_id: str = Field(..., description="User identifier")
    payment_method_ref: str = Field(..., description="Customer reference passed to the gateway")
    start_date: Optional[datetime] = Field(None, description="Start date (defaults to the virtual clock)")
    next_billing_date: Optional[datetime] = Field(
        None, description="First billing date (defaults to one cycle after start_date)"
    )
    end_date: Optional[datetime] = Field(None, description="End of the first term")

    class Config:
        json_schema_extra = {
            "example": {
                "plan_id": "premium.monthly",
                "user_id": "user-123",
                "payment_method_ref": "cus_test_1",
            }
        }


class AdvanceTimeRequest(BaseModel):
    """Request to advance the virtual clock."""

    days: Optional[int] = Field(None, ge=0, description="Days to advance")
    hours: Optional[int] = Field(None, ge=0, description="Hours to advance")
    minutes: Optional[int] = Field(None, ge=0, description="Minutes to advance")
    run_billing: bool = Field(default=True, description="Run a billing cycle at the new time")

    class Config:
        json_schema_extra = {"example": {"days": 30, "hours": 0, "minutes": 0, "run_billing": True}}


class AdvanceTimeResponse(BaseModel):
    """Response after advancing the virtual clock."""

    old_time: datetime = Field(..., description="Clock before advancing")
    new_time: datetime = Field(..., description="Clock after advancing")
    cycle: Optional[BillingRunSummary] = Field(None, description="Billing cycle run at the new time")


class GatewayDeclineRequest(BaseModel):
    """Script the simulated gateway to decline a customer."""

    customer_ref: str = Field(..., description="Customer reference to decline")
    reason: str = Field(default="Card declined", description="Decline reason returned by the gateway")
    times: Optional[int] = Field(None, gt=0, description="Decline this many charges, then approve")

    class Config:
        json_schema_extra = {
            "example": {"customer_ref": "cus_test_1", "reason": "Insufficient funds", "times": 3}
        }


class BillingRecordsResponse(BaseModel):
    """Ledger records of one subscription."""

    subscription_id: str = Field(..., description="Subscription ID")
    records: list[BillingRecord] = Field(default_factory=list, description="Records in append order")
    total_charged: Decimal = Field(..., description="Sum of charges, plan-change adjustments excluded")


class ResetResponse(BaseModel):
    """Response after resetting engine state."""

    subscriptions_cleared: int
    records_cleared: int
    message: str


class ErrorResponse(BaseModel):
    """Error payload returned by the HTTP surface."""

    error: str = Field(..., description="Error category")
    message: str = Field(..., description="Error details")
