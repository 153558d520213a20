"""
Serving Module
"""
from .cache import CacheManager, init_redis, close_redis, get_redis
from .analytics import AnalyticsFilters, RangeAnalytics, RangeAnalyticsService

__all__ = [
    "CacheManager",
    "init_redis",
    "close_redis",
    "get_redis",
    "AnalyticsFilters",
    "RangeAnalytics",
    "RangeAnalyticsService",
]
