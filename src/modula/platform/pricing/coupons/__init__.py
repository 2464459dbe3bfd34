"""
Coupon engine.
"""

from modula.platform.pricing.coupons.models import (
    Coupon,
    CouponCreateRequest,
    CouponInvalidReason,
    CouponRedemption,
    CouponValidationResult,
    DiscountType,
    normalize_code,
)
from modula.platform.pricing.coupons.service import CouponService

__all__ = [
    "Coupon",
    "CouponCreateRequest",
    "CouponInvalidReason",
    "CouponRedemption",
    "CouponValidationResult",
    "CouponService",
    "DiscountType",
    "normalize_code",
]
