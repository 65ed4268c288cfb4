"""Billing attempt, ledger record and run summary models."""

import threading
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from billing_engine.utils.id_generator import generate_billing_record_id


def utc_now() -> datetime:
    """Current wall-clock time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class BillingRecordType(str, Enum):
    """Why a billing record was written."""

    RECURRING = "Recurring"
    RENEWAL = "Renewal"
    RETRY = "Retry"
    MANUAL = "Manual"
    PLAN_CHANGE = "PlanChange"


class BillingAttemptResult(BaseModel):
    """Outcome of a single charge attempt. Not persisted."""

    success: bool = Field(..., description="Whether the gateway accepted the charge")
    amount: Decimal = Field(..., description="Amount attempted")
    transaction_ref: Optional[str] = Field(None, description="Gateway transaction reference")
    error_message: Optional[str] = Field(None, description="Decline reason or failure description")
    timed_out: bool = Field(default=False, description="Gateway call exceeded its timeout")
    ledger_recorded: bool = Field(default=False, description="A billing record was appended")


class BillingRecord(BaseModel):
    """Append-only ledger row written for a successful charge or a plan change."""

    id: str = Field(default_factory=generate_billing_record_id, description="Record ID")
    subscription_id: str = Field(..., description="Subscription charged")
    user_id: str = Field(..., description="User charged")
    amount: Decimal = Field(..., description="Amount charged or adjusted")
    currency: str = Field(default="USD", description="Currency code")
    description: str = Field(..., description="Human-readable description")
    record_type: BillingRecordType = Field(..., description="Record category")
    transaction_ref: Optional[str] = Field(None, description="Gateway transaction reference")
    created_at: datetime = Field(default_factory=utc_now, description="When the record was written")
    created_by: str = Field(default="system", description="Actor that triggered the record")

    class Config:
        frozen = True
        json_schema_extra = {
            "example": {
                "id": "br_0f8fad5bd9cb469fa165",
                "subscription_id": "sub_8f14e45fceea167a",
                "user_id": "user-123",
                "amount": "100.00",
                "currency": "USD",
                "description": "Recurring payment for Premium Monthly",
                "record_type": BillingRecordType.RECURRING,
                "transaction_ref": "txn_5f4dcc3b5aa765d6",
                "created_by": "system",
            }
        }


class BillingContext(BaseModel):
    """Explicit caller context passed into every billing operation.

    Attribution comes from here, never from ambient request state.
    """

    actor: str = Field(default="system", description="Who triggered the operation")
    correlation_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16], description="Run correlation ID")
    now: Optional[datetime] = Field(None, description="Processing time override (defaults to the clock)")
    cancel_event: Optional[threading.Event] = Field(None, description="Set to stop between subscriptions")

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    class Config:
        arbitrary_types_allowed = True


class BillingRunSummary(BaseModel):
    """Counts returned by every billing operation for observability."""

    operation: str = Field(..., description="Operation name")
    correlation_id: Optional[str] = Field(None, description="Run correlation ID")
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = Field(None)
    processed: int = Field(default=0, description="Subscriptions examined")
    succeeded: int = Field(default=0, description="Successful charges or changes")
    failed: int = Field(default=0, description="Declined charges and per-item errors")
    skipped: int = Field(default=0, description="Not due, already handled or ineligible")
    conflicts: int = Field(default=0, description="Lost optimistic-concurrency races")
    suspended: int = Field(default=0, description="Subscriptions moved to Suspended")
    cancelled: bool = Field(default=False, description="Run stopped early by cancellation")
    errors: list[str] = Field(default_factory=list, description="Per-item error descriptions")

    def merge(self, other: "BillingRunSummary") -> None:
        """Fold another summary's counts into this one."""
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.skipped += other.skipped
        self.conflicts += other.conflicts
        self.suspended += other.suspended
        self.cancelled = self.cancelled or other.cancelled
        self.errors.extend(other.errors)
