"""Identifier generation utilities.

Generates subscription IDs, gateway transaction references, billing record
IDs and per-cycle idempotency keys.
"""

import uuid
from datetime import datetime
from typing import Optional


def generate_subscription_id(prefix: str = "sub") -> str:
    """Generate a unique subscription ID.

    Format: {prefix}_{16 hex chars}
    Example: sub_8f14e45fceea167a
    """
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


def generate_transaction_ref(prefix: str = "txn") -> str:
    """Generate a gateway transaction reference.

    Format: {prefix}_{24 hex chars}
    Example: txn_5f4dcc3b5aa765d61d8327de
    """
    return f"{prefix}_{uuid.uuid4().hex[:24]}"


def generate_billing_record_id() -> str:
    """Generate a billing record ID (br_{32 hex chars})."""
    return f"br_{uuid.uuid4().hex}"


def generate_idempotency_key(subscription_id: str, anchor: datetime, purpose: str, attempt: int = 0) -> str:
    """Build the gateway idempotency key for one billing cycle.

    The key is deterministic: two runs charging the same subscription for
    the same cycle anchor, purpose and attempt number produce the same key,
    so the gateway can collapse them into a single charge. A later retry
    carries a higher attempt number and therefore a fresh key.

    Example:
        >>> generate_idempotency_key("sub_1", datetime(2026, 2, 28), "Recurring")
        'sub_1:2026-02-28T00:00:00:recurring:0'
    """
    return f"{subscription_id}:{anchor.isoformat()}:{purpose.lower()}:{attempt}"


def mask_reference(reference: Optional[str], visible: int = 8) -> Optional[str]:
    """Shorten a customer or transaction reference for logs.

    Example:
        >>> mask_reference("cus_1234567890abcdef")
        'cus_1234...'
    """
    if reference is None:
        return None
    if len(reference) <= visible:
        return reference
    return reference[:visible] + "..."
