"""Billing ledger - append-only storage for billing records.

One record per successful charge and per plan-change adjustment. Records
are write-once: the ledger never updates or deletes them.
"""

import threading
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import List, Optional

from billing_engine.models.billing import BillingRecord, BillingRecordType


class LedgerWriteError(Exception):
    """Raised when a billing record cannot be appended."""

    pass


class LedgerWriter(ABC):
    """Append-only billing record sink."""

    @abstractmethod
    def append(self, record: BillingRecord) -> None:
        """Durably append a record.

        Raises:
            LedgerWriteError: If the record could not be written
        """


class InMemoryLedger(LedgerWriter):
    """Thread-safe in-memory ledger.

    Record IDs are unique; appending a record whose ID already exists
    raises LedgerWriteError instead of overwriting it.
    """

    def __init__(self):
        self._records: List[BillingRecord] = []
        self._ids: set[str] = set()
        self._lock = threading.RLock()

    def append(self, record: BillingRecord) -> None:
        with self._lock:
            if record.id in self._ids:
                raise LedgerWriteError(f"Billing record '{record.id}' already exists")
            self._records.append(record)
            self._ids.add(record.id)

    def get_records(
        self,
        subscription_id: Optional[str] = None,
        record_type: Optional[BillingRecordType] = None,
    ) -> List[BillingRecord]:
        """Get records in append order, optionally filtered.

        Args:
            subscription_id: Only records for this subscription
            record_type: Only records of this type

        Returns:
            List of BillingRecord objects
        """
        with self._lock:
            return [
                r
                for r in self._records
                if (subscription_id is None or r.subscription_id == subscription_id)
                and (record_type is None or r.record_type == record_type)
            ]

    def total_amount(self, subscription_id: Optional[str] = None) -> Decimal:
        """Sum of charged amounts (plan-change adjustments excluded)."""
        return sum(
            (
                r.amount
                for r in self.get_records(subscription_id=subscription_id)
                if r.record_type != BillingRecordType.PLAN_CHANGE
            ),
            Decimal("0"),
        )

    def count(self) -> int:
        with self._lock:
            return len(self._records)

    def clear(self) -> None:
        """Remove all records. Only meant for resetting local state."""
        with self._lock:
            self._records.clear()
            self._ids.clear()

    def __len__(self) -> int:
        return self.count()

    def __repr__(self) -> str:
        return f"InMemoryLedger(records={self.count()})"


# Global ledger instance
_ledger_instance: Optional[InMemoryLedger] = None
_ledger_lock = threading.Lock()


def get_ledger() -> InMemoryLedger:
    """Get global ledger instance (singleton)."""
    global _ledger_instance
    if _ledger_instance is None:
        with _ledger_lock:
            if _ledger_instance is None:
                _ledger_instance = InMemoryLedger()
    return _ledger_instance
