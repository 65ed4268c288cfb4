"""Utility functions and helpers for the billing engine."""

from billing_engine.utils.billing_cycle import (
    BillingCycle,
    BillingIntegrityError,
    InvalidBillingCycleError,
    format_billing_period,
    parse_billing_period,
    validate_cycle_days,
)
from billing_engine.utils.id_generator import (
    generate_billing_record_id,
    generate_idempotency_key,
    generate_subscription_id,
    generate_transaction_ref,
    mask_reference,
)

__all__ = [
    # Billing cycles
    "BillingCycle",
    "BillingIntegrityError",
    "InvalidBillingCycleError",
    "parse_billing_period",
    "format_billing_period",
    "validate_cycle_days",
    # Identifiers
    "generate_subscription_id",
    "generate_transaction_ref",
    "generate_billing_record_id",
    "generate_idempotency_key",
    "mask_reference",
]
