"""Configuration management - loads billing.yaml and environment variables."""

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import ValidationError

from billing_engine.models import AuditSettings, BillingConfig, BillingSettings, GatewaySettings, Plan


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""

    pass


class Config:
    """Application configuration loader and manager.

    Loads billing.yaml and provides validated access to:
    - Plan catalog
    - Billing run settings
    - Simulated gateway settings
    - Audit sink settings
    """

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration loader.

        Args:
            config_path: Path to billing.yaml. If not provided, uses CONFIG_PATH env var
                        or defaults to ./config/billing.yaml
        """
        self._config_path = self._resolve_config_path(config_path)
        self._billing_config: Optional[BillingConfig] = None
        self._load_config()

    def _resolve_config_path(self, config_path: Optional[str]) -> Path:
        """Resolve configuration file path from argument, env var, or default."""
        if config_path:
            return Path(config_path)

        env_path = os.getenv("CONFIG_PATH")
        if env_path:
            return Path(env_path)

        return Path("config/billing.yaml")

    def _load_config(self) -> None:
        """Load and validate billing.yaml configuration."""
        if not self._config_path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {self._config_path}\n"
                f"Please create config/billing.yaml or set CONFIG_PATH environment variable"
            )

        try:
            with open(self._config_path, encoding="utf-8") as f:
                raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse YAML configuration: {e}") from e

        if not raw_config:
            raise ConfigurationError(f"Configuration file is empty: {self._config_path}")

        try:
            self._billing_config = BillingConfig(**raw_config)
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed:\n{e}") from e

        plan_ids = [plan.id for plan in self._billing_config.plans]
        duplicates = sorted({plan_id for plan_id in plan_ids if plan_ids.count(plan_id) > 1})
        if duplicates:
            raise ConfigurationError(f"Duplicate plan IDs in configuration: {duplicates}")

    @property
    def billing_config(self) -> BillingConfig:
        """Get validated billing configuration."""
        if self._billing_config is None:
            raise ConfigurationError("Configuration not loaded")
        return self._billing_config

    @property
    def config_path(self) -> Path:
        """Get path to configuration file."""
        return self._config_path

    @property
    def plans(self) -> list[Plan]:
        """Get the plan catalog."""
        return self.billing_config.plans

    @property
    def currency(self) -> str:
        """Get the fixed currency used for gateway charges (e.g., "USD")."""
        return self.billing_config.currency

    @property
    def billing_settings(self) -> BillingSettings:
        """Get billing run settings (attempt ceiling, renewal window, timeouts, workers)."""
        return self.billing_config.billing

    @property
    def gateway_settings(self) -> GatewaySettings:
        """Get simulated gateway settings."""
        return self.billing_config.gateway

    @property
    def audit_settings(self) -> AuditSettings:
        """Get audit sink settings."""
        return self.billing_config.audit

    def reload(self) -> None:
        """Reload configuration from disk."""
        self._load_config()


# Global configuration instance
_config_instance: Optional[Config] = None


def get_config(config_path: Optional[str] = None) -> Config:
    """Get global configuration instance (singleton).

    Args:
        config_path: Optional path to configuration file (only used on first call)

    Returns:
        Config instance
    """
    global _config_instance
    if _config_instance is None:
        _config_instance = Config(config_path)
    return _config_instance


def reload_config() -> None:
    """Reload global configuration from disk."""
    global _config_instance
    if _config_instance:
        _config_instance.reload()
    else:
        _config_instance = Config()


def reset_config() -> None:
    """Drop the global configuration instance (for testing)."""
    global _config_instance
    _config_instance = None
