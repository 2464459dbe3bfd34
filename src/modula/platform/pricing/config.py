"""
Pricing engine configuration
"""

import os
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class ProrationRemainderPolicy(str, Enum):
    """What happens to proration credit that exceeds the new plan's price."""

    FORFEIT = "forfeit"
    CARRY_FORWARD = "carry_forward"


class CurrencyConfig(BaseModel):
    """Currency configuration"""

    model_config = ConfigDict()

    default_currency: str = Field("USD", description="Default currency code")
    supported_currencies: list[str] = Field(
        default_factory=list, description="Accepted currencies (empty = any ISO 4217)"
    )
    default_locale: str = Field("en_US", description="Locale for formatting")


class ProrationConfig(BaseModel):
    """Proration configuration"""

    model_config = ConfigDict()

    remainder_policy: ProrationRemainderPolicy = Field(
        ProrationRemainderPolicy.FORFEIT,
        description="Forfeit or carry forward credit beyond the new price",
    )


class ConcurrencyConfig(BaseModel):
    """Optimistic locking configuration"""

    model_config = ConfigDict()

    max_attempts: int = Field(3, ge=1, description="Attempts before ConcurrencyConflictError")
    retry_wait_ms: int = Field(0, ge=0, description="Wait between attempts in milliseconds")


class SweepConfig(BaseModel):
    """Period sweep configuration"""

    model_config = ConfigDict()

    concurrency: int = Field(10, ge=1, description="Subscriptions advanced in parallel")
    past_due_grace_days: int = Field(
        3, ge=0, description="Days after period end before past-due subscriptions expire"
    )


class UsageConfig(BaseModel):
    """Usage metering configuration"""

    model_config = ConfigDict()

    counter_attempts: int = Field(
        3, ge=1, description="Attempts when racing to create a hard-quota counter"
    )


class PricingConfig(BaseModel):
    """Main pricing engine configuration"""

    model_config = ConfigDict()

    currency: CurrencyConfig = Field(default_factory=CurrencyConfig)
    proration: ProrationConfig = Field(default_factory=ProrationConfig)
    concurrency: ConcurrencyConfig = Field(default_factory=ConcurrencyConfig)
    sweep: SweepConfig = Field(default_factory=SweepConfig)
    usage: UsageConfig = Field(default_factory=UsageConfig)

    @classmethod
    def from_env(cls) -> "PricingConfig":
        """Create configuration from settings"""
        from modula.platform.settings import settings

        pricing = settings.pricing

        return cls(
            currency=CurrencyConfig(
                default_currency=pricing.default_currency.upper(),
                supported_currencies=[code.upper() for code in pricing.supported_currencies],
                default_locale=os.getenv("PRICING_LOCALE", pricing.default_locale),
            ),
            proration=ProrationConfig(
                remainder_policy=ProrationRemainderPolicy(pricing.proration_remainder_policy),
            ),
            concurrency=ConcurrencyConfig(
                max_attempts=pricing.optimistic_lock_attempts,
                retry_wait_ms=pricing.retry_wait_ms,
            ),
            sweep=SweepConfig(
                concurrency=pricing.sweep_concurrency,
                past_due_grace_days=pricing.past_due_grace_days,
            ),
            usage=UsageConfig(counter_attempts=pricing.usage_counter_attempts),
        )


# Global configuration instance
_pricing_config: PricingConfig | None = None


def get_pricing_config() -> PricingConfig:
    """Get the global pricing configuration instance"""
    global _pricing_config
    if _pricing_config is None:
        _pricing_config = PricingConfig.from_env()
    return _pricing_config


def set_pricing_config(config: PricingConfig | None) -> None:
    """Set the global pricing configuration instance"""
    global _pricing_config
    _pricing_config = config
