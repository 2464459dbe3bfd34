"""
Usage metering.
"""

from modula.platform.pricing.usage.models import (
    QuotaCheckResult,
    ResourceUsage,
    UsageRecord,
    UsageSummary,
)
from modula.platform.pricing.usage.service import UsageMeterService

__all__ = [
    "QuotaCheckResult",
    "ResourceUsage",
    "UsageMeterService",
    "UsageRecord",
    "UsageSummary",
]
