"""Storefront caching, coupon usage and performance telemetry."""

from .cache import CacheKeys, SimpleCache
from .config import Settings
from .metrics import PerformanceRecorder

__all__ = ["CacheKeys", "PerformanceRecorder", "SimpleCache", "Settings"]
