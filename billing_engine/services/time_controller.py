"""Virtual clock for billing runs and fast-forwarding.

Responsibilities:
- Maintain the engine's current time (wall clock plus an offset, or a frozen time)
- Advance time (days, hours, minutes)
- Run a billing cycle at the new time so due charges, renewals and retries happen
"""

import threading
from datetime import datetime, timedelta
from typing import Optional

from billing_engine.logging_config import get_logger
from billing_engine.models.billing import BillingContext, utc_now

logger = get_logger(__name__)


class TimeController:
    """Virtual clock used whenever a billing context carries no explicit time.

    By default time follows the wall clock shifted by an offset. When a
    start_time is given the clock is frozen and only moves when advanced.

    Args:
        orchestrator: optional billing orchestrator, if missing the global
        instance is used
        start_time: freeze the clock at this time
    """

    def __init__(self, orchestrator=None, start_time: Optional[datetime] = None) -> None:
        self._lock = threading.RLock()
        self._frozen_time = start_time
        self._offset = timedelta(0)
        self._orchestrator = orchestrator

        logger.info(
            "time_controller_initialized",
            frozen=start_time is not None,
            current_time=self.get_current_time().isoformat(),
        )

    def bind_orchestrator(self, orchestrator) -> None:
        """Use this orchestrator for cycles triggered by time changes."""
        self._orchestrator = orchestrator

    def _get_orchestrator(self):
        if self._orchestrator is None:
            from billing_engine.services.billing_orchestrator import get_billing_orchestrator

            self._orchestrator = get_billing_orchestrator()
        return self._orchestrator

    def get_current_time(self) -> datetime:
        """Current virtual time (timezone-aware UTC)."""
        with self._lock:
            if self._frozen_time is not None:
                return self._frozen_time
            return utc_now() + self._offset

    def get_offset(self) -> timedelta:
        """How far the virtual clock is ahead of the wall clock."""
        with self._lock:
            if self._frozen_time is not None:
                return self._frozen_time - utc_now()
            return self._offset

    def _shift(self, delta: timedelta) -> tuple[datetime, datetime]:
        with self._lock:
            old_time = self.get_current_time()
            if self._frozen_time is not None:
                self._frozen_time += delta
            else:
                self._offset += delta
            return old_time, self.get_current_time()

    def _run_cycle(self, now: datetime, context: Optional[BillingContext]):
        context = (context or BillingContext(actor="virtual-clock")).model_copy(update={"now": now})
        try:
            return self._get_orchestrator().run_cycle(context)
        except Exception as e:
            logger.error(
                "time_triggered_cycle_failed",
                now=now.isoformat(),
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            raise

    def advance_time(
            self,
            days: int = 0,
            hours: int = 0,
            minutes: int = 0,
            run_billing: bool = True,
            context: Optional[BillingContext] = None,
    ) -> dict:
        """Advance virtual time (days, hours, minutes).

        Runs a full billing cycle at the new time unless run_billing is False.

        Returns:
            Dictionary with:
                - old_time: time before advancement
                - new_time: time after advancement
                - time_advanced_seconds: amount of time advanced
                - cycle: BillingRunSummary of the triggered cycle, or None
        Raises:
            ValueError: if any value is negative
        """
        if days < 0 or hours < 0 or minutes < 0:
            raise ValueError("Cannot advance time backwards, negative values are not allowed")

        delta = timedelta(days=days, hours=hours, minutes=minutes)
        if not delta:
            current_time = self.get_current_time()
            return {
                "old_time": current_time,
                "new_time": current_time,
                "time_advanced_seconds": 0,
                "cycle": None,
            }

        old_time, new_time = self._shift(delta)
        logger.info(
            "time_advanced",
            old_time=old_time.isoformat(),
            new_time=new_time.isoformat(),
            days=days,
            hours=hours,
            minutes=minutes,
        )

        cycle = self._run_cycle(new_time, context) if run_billing else None
        return {
            "old_time": old_time,
            "new_time": new_time,
            "time_advanced_seconds": int(delta.total_seconds()),
            "cycle": cycle,
        }

    def set_time(self, new_time: datetime, run_billing: bool = True, context: Optional[BillingContext] = None) -> dict:
        """Jump to a specific time.

        Raises:
            ValueError: If new_time is naive or before the current virtual time
        """
        if new_time.tzinfo is None:
            raise ValueError("new_time must be timezone-aware")

        with self._lock:
            old_time = self.get_current_time()
            if new_time < old_time:
                raise ValueError(
                    f"Cannot set time backwards, current: {old_time.isoformat()}, requested: {new_time.isoformat()}"
                )
            self._shift(new_time - old_time)

        logger.info("time_set", old_time=old_time.isoformat(), new_time=new_time.isoformat())

        cycle = self._run_cycle(new_time, context) if run_billing else None
        return {"old_time": old_time, "new_time": new_time, "cycle": cycle}

    def reset_time(self) -> dict:
        """Reset virtual time back to the wall clock."""
        with self._lock:
            old_time = self.get_current_time()
            self._frozen_time = None
            self._offset = timedelta(0)
            new_time = self.get_current_time()

        logger.info("time_reset", old_time=old_time.isoformat(), new_time=new_time.isoformat())
        return {"old_time": old_time, "new_time": new_time}


_time_controller_instance: Optional[TimeController] = None
_controller_lock = threading.Lock()


def get_time_controller() -> TimeController:
    global _time_controller_instance
    if _time_controller_instance is None:
        with _controller_lock:
            if _time_controller_instance is None:
                _time_controller_instance = TimeController()
    return _time_controller_instance


def reset_time_controller() -> None:
    global _time_controller_instance
    with _controller_lock:
        _time_controller_instance = None
