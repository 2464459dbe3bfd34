"""
Modula Platform - pricing and subscription services.

This package provides:
- Plan and price catalog with time-windowed prices
- Coupon engine with bounded redemptions
- Usage metering and quota checks
- Subscription lifecycle with proration and period sweeps
"""

__version__ = "1.0.0"
__author__ = "Modula Team"


def get_version() -> str:
    """Get platform version."""
    return __version__
