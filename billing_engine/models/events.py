"""Audit event models published to the audit sink."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class BillingEventType(str, Enum):
    """Billing events emitted for operational visibility."""

    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_SUSPENDED = "subscription_suspended"
    SUBSCRIPTION_RENEWED = "subscription_renewed"
    PLAN_CHANGED = "plan_changed"
    BILLING_RUN_COMPLETED = "billing_run_completed"


class BillingEvent(BaseModel):
    """Message published to the audit topic."""

    version: str = Field(default="1.0", description="Event schema version")
    event_type: BillingEventType = Field(..., description="Type of event")
    event_time: datetime = Field(..., description="When the event happened")
    actor: str = Field(default="system", description="Who triggered the event")
    subscription_id: Optional[str] = Field(None, description="Subscription concerned")
    user_id: Optional[str] = Field(None, description="User concerned")
    amount: Optional[Decimal] = Field(None, description="Amount involved")
    currency: Optional[str] = Field(None, description="Currency code")
    message: Optional[str] = Field(None, description="Decline reason or summary")
    attributes: dict[str, Any] = Field(default_factory=dict, description="Extra event data")

    class Config:
        json_schema_extra = {
            "example": {
                "version": "1.0",
                "event_type": BillingEventType.PAYMENT_FAILED,
                "event_time": "2026-03-01T00:00:00Z",
                "actor": "system",
                "subscription_id": "sub_8f14e45fceea167a",
                "user_id": "user-123",
                "amount": "100.00",
                "currency": "USD",
                "message": "Card declined",
            }
        }
