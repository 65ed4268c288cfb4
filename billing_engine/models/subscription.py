"""Subscription state and lifecycle models.

Includes subscription statuses, billing dates and failed-payment tracking.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class SubscriptionStatus(str, Enum):
    """Billing status of a subscription."""

    ACTIVE = "Active"  # Paid up, billed on next_billing_date
    PAYMENT_FAILED = "PaymentFailed"  # Last charge failed, retry pending
    SUSPENDED = "Suspended"  # Retries exhausted, needs external reactivation
    EXPIRED = "Expired"  # Term ended, eligible for renewal


class Subscription(BaseModel):
    """Subscription record as seen by the billing engine."""

    id: str = Field(..., description="Unique subscription identifier")
    user_id: str = Field(..., description="User owning this subscription")
    plan_id: str = Field(..., description="Current plan ID")
    plan_name: Optional[str] = Field(None, description="Current plan name")
    payment_method_ref: str = Field(..., description="Customer/payment method reference passed to the gateway")

    # Pricing
    plan_price: Decimal = Field(..., ge=0, description="Amount charged per cycle")
    billing_cycle_days: int = Field(..., gt=0, description="Billing cycle length in days")
    currency: str = Field(default="USD", description="Currency code")

    # State
    status: SubscriptionStatus = Field(default=SubscriptionStatus.ACTIVE, description="Billing status")

    # Dates
    start_date: datetime = Field(..., description="Start of the current term")
    end_date: Optional[datetime] = Field(None, description="End of the current term")
    last_billing_date: Optional[datetime] = Field(None, description="Last successful charge")
    next_billing_date: datetime = Field(..., description="Next scheduled charge")

    # Failed payments
    failed_payment_attempts: int = Field(default=0, ge=0, description="Consecutive failed charges")
    last_payment_error: Optional[str] = Field(None, description="Gateway decline reason, verbatim")
    last_payment_failed_date: Optional[datetime] = Field(None, description="When the last charge failed")
    suspended_date: Optional[datetime] = Field(None, description="When retries were exhausted")

    # Bookkeeping
    version: int = Field(default=0, ge=0, description="Optimistic concurrency version")
    updated_at: Optional[datetime] = Field(None, description="Last engine update")
    updated_by: Optional[str] = Field(None, description="Actor of the last engine update")

    def set_status(self, new_status: SubscriptionStatus, reason: Optional[str] = None) -> None:
        """Change billing status and log the transition.

        Args:
            new_status: Status to transition to
            reason: Reason for the change
        """
        from billing_engine.state_logger import log_subscription_status_change

        old_status = self.status
        if old_status != new_status:
            self.status = new_status
            log_subscription_status_change(
                subscription_id=self.id,
                old_status=old_status.value,
                new_status=new_status.value,
                reason=reason,
                user_id=self.user_id,
                failed_payment_attempts=self.failed_payment_attempts,
            )

    def set_next_billing_date(self, new_date: datetime, reason: str) -> None:
        """Move the next billing date and log the change.

        Args:
            new_date: New next billing date
            reason: Reason for the change (recurring charge, renewal, ...)
        """
        from billing_engine.state_logger import log_billing_date_change

        old_date = self.next_billing_date
        self.next_billing_date = new_date
        log_billing_date_change(
            subscription_id=self.id,
            field="next_billing_date",
            old_date=old_date,
            new_date=new_date,
            reason=reason,
            user_id=self.user_id,
        )

    def extend_term(self, new_end_date: datetime, reason: str) -> None:
        """Move the end of the current term and log the change.

        Args:
            new_end_date: New end date
            reason: Reason for the change
        """
        from billing_engine.state_logger import log_billing_date_change

        old_end = self.end_date
        self.end_date = new_end_date
        log_billing_date_change(
            subscription_id=self.id,
            field="end_date",
            old_date=old_end,
            new_date=new_end_date,
            reason=reason,
            user_id=self.user_id,
        )

    @property
    def is_suspended(self) -> bool:
        return self.status == SubscriptionStatus.SUSPENDED

    @property
    def has_payment_issues(self) -> bool:
        return self.status == SubscriptionStatus.PAYMENT_FAILED or self.failed_payment_attempts > 0

    class Config:
        json_schema_extra = {
            "example": {
                "id": "sub_8f14e45fceea167a",
                "user_id": "user-123",
                "plan_id": "premium.monthly",
                "plan_name": "Premium Monthly",
                "payment_method_ref": "cus_test_1",
                "plan_price": "100.00",
                "billing_cycle_days": 30,
                "currency": "USD",
                "status": SubscriptionStatus.ACTIVE,
                "start_date": "2026-01-31T00:00:00Z",
                "end_date": "2026-02-28T00:00:00Z",
                "next_billing_date": "2026-02-28T00:00:00Z",
                "failed_payment_attempts": 0,
                "version": 0,
            }
        }
