"""State change logging for subscriptions and payment attempts.

Tracks transitions with before/after values for debugging and auditing.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from billing_engine.logging_config import get_logger

logger = get_logger(__name__)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def log_subscription_status_change(
    subscription_id: str,
    old_status: Any,
    new_status: Any,
    reason: Optional[str] = None,
    **extra_context: Any,
) -> None:
    """Log subscription status change.

    Args:
        subscription_id: Subscription ID
        old_status: Previous status value
        new_status: New status value
        reason: Reason for status change
        **extra_context: Additional context (user_id, attempts, etc.)
    """
    logger.info(
        "subscription_status_changed",
        subscription_id=subscription_id,
        old_status=str(old_status),
        new_status=str(new_status),
        reason=reason,
        **extra_context,
    )


def log_billing_date_change(
    subscription_id: str,
    field: str,
    old_date: Optional[datetime],
    new_date: Optional[datetime],
    reason: str,
    **extra_context: Any,
) -> None:
    """Log a change to next_billing_date or end_date.

    Args:
        subscription_id: Subscription ID
        field: Name of the date field that moved
        old_date: Previous value
        new_date: New value
        reason: Reason for change (recurring charge, renewal, ...)
        **extra_context: Additional context
    """
    shift_days = None
    if old_date is not None and new_date is not None:
        shift_days = round((new_date - old_date).total_seconds() / 86400, 2)

    logger.info(
        "billing_date_changed",
        subscription_id=subscription_id,
        field=field,
        old_date=_iso(old_date),
        new_date=_iso(new_date),
        shift_days=shift_days,
        reason=reason,
        **extra_context,
    )


def log_payment_attempt(
    subscription_id: str,
    amount: Decimal,
    success: bool,
    transaction_ref: Optional[str] = None,
    error_message: Optional[str] = None,
    **extra_context: Any,
) -> None:
    """Log the outcome of a gateway charge.

    Declines are logged at warning level so they stand out in the run output.
    """
    log = logger.info if success else logger.warning
    log(
        "payment_attempted",
        subscription_id=subscription_id,
        amount=str(amount),
        success=success,
        transaction_ref=transaction_ref,
        error_message=error_message,
        **extra_context,
    )
