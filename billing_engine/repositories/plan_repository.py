"""Plan repository - loads and provides access to plan definitions.

Loads from config/billing.yaml and provides lookup methods.
"""

from typing import Dict, List, Optional

from billing_engine.config import Config, get_config
from billing_engine.models import Plan


class PlanNotFoundError(Exception):
    """Raised when a plan is not found in the repository."""

    pass


class PlanRepository:
    """Repository for subscription plan definitions.

    Thread-safe for read operations.
    """

    def __init__(self, config: Optional[Config] = None):
        """Initialize plan repository.

        Args:
            config: Configuration instance. If not provided, uses global config.
        """
        self._config = config or get_config()
        self._plans_by_id: Dict[str, Plan] = {}
        self._load_plans()

    def _load_plans(self) -> None:
        self._plans_by_id = {plan.id: plan for plan in self._config.plans}

    def get_by_id(self, plan_id: str) -> Plan:
        """Get plan definition by ID.

        Args:
            plan_id: Plan ID (e.g., "premium.monthly")

        Returns:
            Plan

        Raises:
            PlanNotFoundError: If plan ID not found
        """
        plan = self._plans_by_id.get(plan_id)
        if plan is None:
            raise PlanNotFoundError(
                f"Plan not found: {plan_id}. Available plans: {list(self._plans_by_id.keys())}"
            )
        return plan

    def find_by_id(self, plan_id: str) -> Optional[Plan]:
        """Find plan definition by ID (returns None if not found)."""
        return self._plans_by_id.get(plan_id)

    def get_all(self) -> List[Plan]:
        return list(self._plans_by_id.values())

    def get_by_cycle(self, billing_cycle_days: int) -> List[Plan]:
        """Get plans billed every billing_cycle_days days."""
        return [p for p in self._plans_by_id.values() if p.billing_cycle_days == billing_cycle_days]

    def exists(self, plan_id: str) -> bool:
        return plan_id in self._plans_by_id

    def reload(self) -> None:
        """Reload plan definitions from configuration.

        Useful when configuration file has been modified.
        """
        self._config.reload()
        self._load_plans()

    def __len__(self) -> int:
        return len(self._plans_by_id)

    def __contains__(self, plan_id: str) -> bool:
        return plan_id in self._plans_by_id

    def __repr__(self) -> str:
        return f"PlanRepository(plans={len(self._plans_by_id)})"


# Global repository instance
_repository_instance: Optional[PlanRepository] = None


def get_plan_repository(config: Optional[Config] = None) -> PlanRepository:
    """Get global plan repository instance (singleton).

    Args:
        config: Optional configuration instance (only used on first call)
    """
    global _repository_instance
    if _repository_instance is None:
        _repository_instance = PlanRepository(config)
    return _repository_instance


def reload_plan_repository() -> None:
    """Reload global plan repository from configuration."""
    global _repository_instance
    if _repository_instance:
        _repository_instance.reload()
    else:
        _repository_instance = PlanRepository()
