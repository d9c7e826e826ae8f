"""Health check engine: scheduling, scoring, caching and analytics."""

from .analytics import AnalyticsEngine, TimeRange, last_7_days, last_24_hours, last_30_days
from .cache import ResultCache, cache_key
from .models import (
    Category,
    CheckConfig,
    CheckResult,
    GlobalConfig,
    HealthCheckReport,
    RunOverrides,
    Severity,
    Status,
    make_result,
)
from .registry import CancelToken, CheckRegistry
from .scheduler import HealthCheckScheduler, RunHandle

__all__ = [
    "AnalyticsEngine",
    "CancelToken",
    "Category",
    "CheckConfig",
    "CheckRegistry",
    "CheckResult",
    "GlobalConfig",
    "HealthCheckReport",
    "HealthCheckScheduler",
    "ResultCache",
    "RunHandle",
    "RunOverrides",
    "Severity",
    "Status",
    "TimeRange",
    "cache_key",
    "last_24_hours",
    "last_30_days",
    "last_7_days",
    "make_result",
]
