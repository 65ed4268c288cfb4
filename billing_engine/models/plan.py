"""Plan definition and engine configuration models.

Models from billing.yaml configuration.
"""

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field, field_validator


class Plan(BaseModel):
    """Subscription plan definition from configuration."""

    id: str = Field(..., description="Plan ID (e.g., premium.monthly)")
    name: str = Field(..., description="Human-readable plan name")
    price: Decimal = Field(..., ge=0, description="Price charged per billing cycle")
    billing_cycle_days: int = Field(..., gt=0, description="Billing cycle length in days")
    currency: str = Field(default="USD", description="ISO 4217 currency code")
    description: Optional[str] = Field(None, description="Plan description")

    class Config:
        json_schema_extra = {
            "example": {
                "id": "premium.monthly",
                "name": "Premium Monthly",
                "price": "100.00",
                "billing_cycle_days": 30,
                "currency": "USD",
                "description": "Unlimited consultations",
            }
        }


class BillingSettings(BaseModel):
    """Billing run behaviour."""

    max_failed_attempts: int = Field(default=3, gt=0, description="Failed attempts before suspension")
    renewal_window_days: int = Field(default=7, ge=0, description="Days before end_date a renewal is attempted")
    gateway_timeout_seconds: float = Field(default=10.0, gt=0, description="Timeout for a single gateway charge")
    store_timeout_seconds: float = Field(default=5.0, gt=0, description="Timeout for store reads and writes")
    max_workers: int = Field(default=1, ge=1, description="Subscriptions processed concurrently per run")
    run_interval_minutes: int = Field(default=60, gt=0, description="Scheduler interval hint")

    class Config:
        json_schema_extra = {
            "example": {
                "max_failed_attempts": 3,
                "renewal_window_days": 7,
                "gateway_timeout_seconds": 10.0,
                "store_timeout_seconds": 5.0,
                "max_workers": 4,
                "run_interval_minutes": 60,
            }
        }


class GatewaySettings(BaseModel):
    """Simulated payment gateway behaviour."""

    simulate_failures: bool = Field(default=False, description="Randomly decline charges")
    failure_rate: float = Field(default=0.05, ge=0.0, le=1.0, description="Decline rate (0.0-1.0)")
    latency_ms: int = Field(default=0, ge=0, description="Artificial latency per charge")


class AuditSettings(BaseModel):
    """Audit sink (Pub/Sub) configuration."""

    enabled: bool = Field(default=False, description="Publish billing events to Pub/Sub")
    project_id: str = Field(default="billing-engine-local", description="GCP project ID")
    topic: str = Field(default="billing-events", description="Pub/Sub topic name")
    publish_timeout_seconds: float = Field(default=5.0, gt=0, description="Wait for publish ack")


class BillingConfig(BaseModel):
    """Complete billing.yaml configuration."""

    currency: str = Field(default="USD", description="Currency used for every gateway charge")
    plans: list[Plan] = Field(default_factory=list, description="Plan catalog")
    billing: BillingSettings = Field(default_factory=BillingSettings)
    gateway: GatewaySettings = Field(default_factory=GatewaySettings)
    audit: AuditSettings = Field(default_factory=AuditSettings)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()
