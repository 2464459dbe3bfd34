"""
Plan and price catalog.
"""

from modula.platform.pricing.catalog.models import (
    FeatureType,
    ImportMode,
    LimitEnforcement,
    Plan,
    PlanAnalytics,
    PlanComparison,
    PlanCreateRequest,
    PlanExport,
    PlanFeature,
    PlanFeatureInput,
    PlanImportError,
    PlanImportResult,
    PlanKind,
    PlanLimit,
    PlanLimitInput,
    PlanStatus,
    PricePoint,
    PricePointInput,
)
from modula.platform.pricing.catalog.service import PriceCatalogService

__all__ = [
    "FeatureType",
    "ImportMode",
    "LimitEnforcement",
    "Plan",
    "PlanAnalytics",
    "PlanComparison",
    "PlanCreateRequest",
    "PlanExport",
    "PlanFeature",
    "PlanFeatureInput",
    "PlanImportError",
    "PlanImportResult",
    "PlanKind",
    "PlanLimit",
    "PlanLimitInput",
    "PlanStatus",
    "PricePoint",
    "PricePointInput",
    "PriceCatalogService",
]
