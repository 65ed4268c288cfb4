"""Subscription store - in-memory storage for subscription billing state.

Reads hand out copies; writes go through compare-and-swap on the record
version so two runs can never both apply a transition to the same
subscription.
"""

import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterator, List, Optional

from billing_engine.models.subscription import Subscription, SubscriptionStatus


class SubscriptionNotFoundError(Exception):
    """Raised when a subscription is not found in the store."""

    pass


class ConcurrentUpdateError(Exception):
    """Raised when a write is based on a stale version of the subscription."""

    def __init__(self, subscription_id: str, expected_version: int, actual_version: int):
        self.subscription_id = subscription_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Subscription {subscription_id} was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )


class StoreUnavailableError(Exception):
    """Raised when the store cannot be accessed within its timeout."""

    pass


class SubscriptionStore:
    """In-memory storage for subscription records.

    Thread-safe storage with lookup by id, status and billing dates.
    Every read returns deep copies, so callers mutate their own snapshot and
    persist it with update().
    """

    def __init__(self, timeout_seconds: float = 5.0):
        """Initialize subscription store with empty storage.

        Args:
            timeout_seconds: How long to wait for the store lock before giving up
        """
        self._subscriptions: Dict[str, Subscription] = {}
        self._lock = threading.RLock()
        self._timeout_seconds = timeout_seconds

    @contextmanager
    def _locked(self) -> Iterator[None]:
        if not self._lock.acquire(timeout=self._timeout_seconds):
            raise StoreUnavailableError(
                f"Subscription store did not respond within {self._timeout_seconds}s"
            )
        try:
            yield
        finally:
            self._lock.release()

    def _select(self, predicate: Callable[[Subscription], bool]) -> List[Subscription]:
        with self._locked():
            return [s.model_copy(deep=True) for s in self._subscriptions.values() if predicate(s)]

    def add(self, subscription: Subscription) -> None:
        """Add a subscription to the store.

        Raises:
            ValueError: If the subscription id already exists
        """
        with self._locked():
            if subscription.id in self._subscriptions:
                raise ValueError(f"Subscription with id '{subscription.id}' already exists")
            self._subscriptions[subscription.id] = subscription.model_copy(deep=True)

    def get(self, subscription_id: str) -> Subscription:
        """Get a fresh copy of a subscription.

        Raises:
            SubscriptionNotFoundError: If id not found
        """
        with self._locked():
            subscription = self._subscriptions.get(subscription_id)
            if subscription is None:
                raise SubscriptionNotFoundError(f"Subscription not found: {subscription_id}")
            return subscription.model_copy(deep=True)

    def find(self, subscription_id: str) -> Optional[Subscription]:
        """Find subscription by id (returns None if not found)."""
        with self._locked():
            subscription = self._subscriptions.get(subscription_id)
            return subscription.model_copy(deep=True) if subscription else None

    def get_due_for_billing(self, as_of: datetime) -> List[Subscription]:
        """Get active subscriptions whose next billing date is at or before as_of.

        Args:
            as_of: Processing time

        Returns:
            Subscriptions ordered by next_billing_date, oldest first
        """
        due = self._select(
            lambda s: s.status == SubscriptionStatus.ACTIVE and s.next_billing_date <= as_of
        )
        return sorted(due, key=lambda s: s.next_billing_date)

    def get_by_status(self, status: SubscriptionStatus) -> List[Subscription]:
        """Get all subscriptions in a specific status."""
        return self._select(lambda s: s.status == status)

    def get_renewal_candidates(self, as_of: datetime, window_days: int) -> List[Subscription]:
        """Get subscriptions whose term ends within window_days of as_of.

        Only Active and Expired subscriptions with an end_date are candidates.
        Terms that already lapsed are included.

        Args:
            as_of: Processing time
            window_days: Days ahead of as_of to look

        Returns:
            Subscriptions ordered by end_date
        """
        window_end = as_of + timedelta(days=window_days)
        renewable = (SubscriptionStatus.ACTIVE, SubscriptionStatus.EXPIRED)
        candidates = self._select(
            lambda s: s.status in renewable and s.end_date is not None and s.end_date <= window_end
        )
        return sorted(candidates, key=lambda s: s.end_date)

    def update(self, subscription: Subscription) -> Subscription:
        """Persist a modified subscription if nobody else changed it first.

        The write succeeds only when subscription.version matches the stored
        version. The stored copy gets version + 1, which is also set on the
        passed object.

        Raises:
            SubscriptionNotFoundError: If id not found
            ConcurrentUpdateError: If the stored version moved on
        """
        with self._locked():
            current = self._subscriptions.get(subscription.id)
            if current is None:
                raise SubscriptionNotFoundError(f"Subscription not found: {subscription.id}")
            if current.version != subscription.version:
                raise ConcurrentUpdateError(subscription.id, subscription.version, current.version)

            subscription.version = current.version + 1
            self._subscriptions[subscription.id] = subscription.model_copy(deep=True)
            return subscription

    def exists(self, subscription_id: str) -> bool:
        with self._locked():
            return subscription_id in self._subscriptions

    def get_all(self) -> List[Subscription]:
        return self._select(lambda s: True)

    def count(self) -> int:
        with self._locked():
            return len(self._subscriptions)

    def clear(self) -> None:
        """Clear all subscriptions from the store.

        Warning: This removes all data. Use with caution.
        """
        with self._locked():
            self._subscriptions.clear()

    def get_statistics(self) -> Dict[str, int]:
        """Get subscription store statistics.

        Returns:
            Dictionary with total_subscriptions, unique_users, unique_plans and
            one count per status (active, payment_failed, suspended, expired)
        """
        with self._locked():
            subscriptions = list(self._subscriptions.values())
            return {
                "total_subscriptions": len(subscriptions),
                "unique_users": len({s.user_id for s in subscriptions}),
                "unique_plans": len({s.plan_id for s in subscriptions}),
                "active": sum(1 for s in subscriptions if s.status == SubscriptionStatus.ACTIVE),
                "payment_failed": sum(
                    1 for s in subscriptions if s.status == SubscriptionStatus.PAYMENT_FAILED
                ),
                "suspended": sum(1 for s in subscriptions if s.status == SubscriptionStatus.SUSPENDED),
                "expired": sum(1 for s in subscriptions if s.status == SubscriptionStatus.EXPIRED),
            }

    def __len__(self) -> int:
        return self.count()

    def __contains__(self, subscription_id: str) -> bool:
        return self.exists(subscription_id)

    def __repr__(self) -> str:
        return f"SubscriptionStore(subscriptions={self.count()})"


# Global store instance
_store_instance: Optional[SubscriptionStore] = None
_store_lock = threading.Lock()


def get_subscription_store() -> SubscriptionStore:
    """Get global subscription store instance (singleton).

    The lock timeout comes from billing.store_timeout_seconds.
    """
    global _store_instance
    if _store_instance is None:
        with _store_lock:
            if _store_instance is None:
                from billing_engine.config import get_config

                timeout = get_config().billing_settings.store_timeout_seconds
                _store_instance = SubscriptionStore(timeout_seconds=timeout)
    return _store_instance


def reset_subscription_store() -> None:
    """Reset global subscription store (clears all data).

    Warning: This removes all subscription data. Use with caution.
    """
    get_subscription_store().clear()
