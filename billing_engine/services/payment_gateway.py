"""Payment gateway contract and the simulated gateway used locally.

Responsibilities:
- Define the narrow charge contract the engine depends on
- Simulate approvals, scripted declines, random declines and latency
- Replay results for repeated idempotency keys so a cycle is charged once
"""

import random
import threading
import time
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from billing_engine.logging_config import get_logger
from billing_engine.models.plan import GatewaySettings
from billing_engine.utils.id_generator import generate_transaction_ref, mask_reference

logger = get_logger(__name__)


class GatewayChargeResult(BaseModel):
    """Result returned by a gateway for one charge request."""

    success: bool = Field(..., description="Whether the charge was accepted")
    transaction_ref: Optional[str] = Field(None, description="Opaque gateway reference")
    error_message: Optional[str] = Field(None, description="Decline reason")


class PaymentGateway(ABC):
    """Synchronous charge contract. Implementations must resolve or raise."""

    @abstractmethod
    def charge(
            self,
            customer_ref: str,
            amount: Decimal,
            currency: str,
            idempotency_key: Optional[str] = None,
    ) -> GatewayChargeResult:
        """Charge amount to the customer's stored payment method."""


class _ScriptedDecline:
    __slots__ = ("reason", "remaining")

    def __init__(self, reason: str, remaining: Optional[int]):
        self.reason = reason
        self.remaining = remaining


class SimulatedPaymentGateway(PaymentGateway):
    """In-process gateway for local runs and tests.

    Approves everything by default. Declines can be scripted per customer
    (forever or for the next N charges) or drawn at random using the
    configured failure rate. Every decision is remembered per idempotency
    key, so a replayed key returns the original result without charging
    again.

    Thread-safe.
    """

    def __init__(
            self,
            settings: Optional[GatewaySettings] = None,
            rng: Optional[random.Random] = None,
    ):
        self._settings = settings or GatewaySettings()
        self._rng = rng or random.Random()
        self._lock = threading.RLock()
        self._declines: dict[str, _ScriptedDecline] = {}
        self._results_by_key: dict[str, GatewayChargeResult] = {}
        self._charges: list[dict] = []
        self._latency_ms = self._settings.latency_ms

    def charge(
            self,
            customer_ref: str,
            amount: Decimal,
            currency: str,
            idempotency_key: Optional[str] = None,
    ) -> GatewayChargeResult:
        if amount < 0:
            raise ValueError(f"Cannot charge a negative amount: {amount}")

        if self._latency_ms:
            time.sleep(self._latency_ms / 1000)

        with self._lock:
            if idempotency_key is not None and idempotency_key in self._results_by_key:
                logger.info(
                    "gateway_idempotent_replay",
                    customer_ref=mask_reference(customer_ref),
                    idempotency_key=idempotency_key,
                )
                return self._results_by_key[idempotency_key]

            decline_reason = self._decline_reason(customer_ref)
            if decline_reason is None:
                result = GatewayChargeResult(success=True, transaction_ref=generate_transaction_ref())
            else:
                result = GatewayChargeResult(success=False, error_message=decline_reason)

            if idempotency_key is not None:
                self._results_by_key[idempotency_key] = result

            self._charges.append(
                {
                    "customer_ref": customer_ref,
                    "amount": amount,
                    "currency": currency,
                    "idempotency_key": idempotency_key,
                    "success": result.success,
                    "transaction_ref": result.transaction_ref,
                }
            )

        logger.debug(
            "gateway_charge_processed",
            customer_ref=mask_reference(customer_ref),
            amount=str(amount),
            currency=currency,
            success=result.success,
        )
        return result

    def _decline_reason(self, customer_ref: str) -> Optional[str]:
        """Decide whether this charge is declined. Caller holds the lock."""
        scripted = self._declines.get(customer_ref)
        if scripted is not None:
            if scripted.remaining is not None:
                scripted.remaining -= 1
                if scripted.remaining <= 0:
                    del self._declines[customer_ref]
            return scripted.reason

        if self._settings.simulate_failures and self._rng.random() < self._settings.failure_rate:
            return "Card declined (simulated)"
        return None

    def decline_customer(self, customer_ref: str, reason: str = "Card declined", times: Optional[int] = None) -> None:
        """Decline charges for a customer.

        Args:
            customer_ref: Customer to decline
            reason: Decline reason returned to the engine
            times: Number of charges to decline, None for all until cleared
        """
        if times is not None and times <= 0:
            raise ValueError("times must be positive")
        with self._lock:
            self._declines[customer_ref] = _ScriptedDecline(reason, times)
        logger.info("gateway_decline_scripted", customer_ref=mask_reference(customer_ref), reason=reason, times=times)

    def approve_customer(self, customer_ref: str) -> bool:
        """Remove a scripted decline. Returns True if one existed."""
        with self._lock:
            return self._declines.pop(customer_ref, None) is not None

    def set_latency(self, latency_ms: int) -> None:
        """Set artificial latency applied before every charge."""
        if latency_ms < 0:
            raise ValueError("latency_ms must be non-negative")
        self._latency_ms = latency_ms

    @property
    def charges(self) -> list[dict]:
        """Charges processed so far (replays excluded)."""
        with self._lock:
            return list(self._charges)

    def charge_count(self, customer_ref: Optional[str] = None) -> int:
        with self._lock:
            if customer_ref is None:
                return len(self._charges)
            return sum(1 for c in self._charges if c["customer_ref"] == customer_ref)

    def reset(self) -> None:
        """Forget scripted declines, charge history and idempotency keys."""
        with self._lock:
            self._declines.clear()
            self._results_by_key.clear()
            self._charges.clear()
            self._latency_ms = self._settings.latency_ms


# Global gateway instance
_gateway_instance: Optional[SimulatedPaymentGateway] = None
_gateway_lock = threading.Lock()


def get_payment_gateway() -> SimulatedPaymentGateway:
    """Get global simulated gateway (singleton), configured from billing.yaml."""
    global _gateway_instance
    if _gateway_instance is None:
        with _gateway_lock:
            if _gateway_instance is None:
                from billing_engine.config import get_config

                _gateway_instance = SimulatedPaymentGateway(settings=get_config().gateway_settings)
    return _gateway_instance


def reset_payment_gateway() -> None:
    """Reset global gateway state (for testing)."""
    global _gateway_instance
    with _gateway_lock:
        if _gateway_instance is not None:
            _gateway_instance.reset()
