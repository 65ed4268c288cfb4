"""Pydantic models for subscriptions, billing records, configuration and API payloads."""

# Plan and configuration models
from .plan import (
    Plan,
    BillingSettings,
    GatewaySettings,
    AuditSettings,
    BillingConfig,
)

# Subscription models
from .subscription import (
    SubscriptionStatus,
    Subscription,
)

# Billing models
from .billing import (
    BillingRecordType,
    BillingAttemptResult,
    BillingRecord,
    BillingContext,
    BillingRunSummary,
)

# Audit events
from .events import (
    BillingEventType,
    BillingEvent,
)

# API request models (billing and control API)
from .api_request import (
    PlanChangeRequest,
    CreateSubscriptionRequest,
    AdvanceTimeRequest,
    AdvanceTimeResponse,
    GatewayDeclineRequest,
    BillingRecordsResponse,
    ResetResponse,
    ErrorResponse,
)

__all__ = [
    # Plans and configuration
    "Plan",
    "BillingSettings",
    "GatewaySettings",
    "AuditSettings",
    "BillingConfig",
    # Subscription
    "SubscriptionStatus",
    "Subscription",
    # Billing
    "BillingRecordType",
    "BillingAttemptResult",
    "BillingRecord",
    "BillingContext",
    "BillingRunSummary",
    # Events
    "BillingEventType",
    "BillingEvent",
    # API requests
    "PlanChangeRequest",
    "CreateSubscriptionRequest",
    "AdvanceTimeRequest",
    "AdvanceTimeResponse",
    "GatewayDeclineRequest",
    "BillingRecordsResponse",
    "ResetResponse",
    "ErrorResponse",
]
