"""Exception taxonomy for the health check engine."""

from __future__ import annotations


class HealthCheckError(Exception):
    """Base class for health engine errors."""


class CheckExecutionError(HealthCheckError):
    """A single category's check raised or returned a failure."""

    def __init__(self, message: str, code: str = "CHECK_EXECUTION_FAILED") -> None:
        self.code = code
        super().__init__(message)


class CheckTimeoutError(CheckExecutionError):
    """A check attempt did not finish within its timeout."""

    def __init__(self, timeout_ms: int) -> None:
        self.timeout_ms = timeout_ms
        super().__init__(f"Check timed out after {timeout_ms}ms", code="CHECK_TIMEOUT")


class OrchestrationError(HealthCheckError):
    """Failure outside any single category (config resolution, report assembly)."""


class RepositoryError(HealthCheckError):
    """Persistence layer failed to read or write."""


class CacheError(HealthCheckError):
    """Result cache misbehaved; callers treat it as a miss."""


class ConfigValidationError(HealthCheckError, ValueError):
    """A check config or run override is out of range."""
