"""Shared test fixtures."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from oumu_health.health.models import (
    Category,
    CheckConfig,
    CheckResult,
    HealthCheckReport,
    Status,
    SystemInfo,
    make_result,
)
from oumu_health.health.registry import CancelToken, CheckRegistry
from oumu_health.health.scheduler import HealthCheckScheduler
from oumu_health.health.scoring import summarize
from oumu_health.storage.repository import SQLiteReportRepository


class FakeCheck:
    """Scripted check function that counts its invocations."""

    def __init__(
        self,
        category: Category,
        status: Status = Status.PASSED,
        error: Exception | None = None,
        delay: float = 0.0,
    ) -> None:
        self.category = category
        self.status = status
        self.error = error
        self.delay = delay
        self.calls = 0
        self.configs: list[CheckConfig] = []
        self.tokens: list[CancelToken] = []

    async def __call__(self, config: CheckConfig, token: CancelToken) -> CheckResult:
        self.calls += 1
        self.configs.append(config)
        self.tokens.append(token)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return make_result(self.category, self.status, f"{self.category.value} {self.status.value}")


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_check():
    return FakeCheck


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def repository(tmp_path) -> SQLiteReportRepository:
    return SQLiteReportRepository(tmp_path / "health.db")


@pytest.fixture
def registry() -> CheckRegistry:
    return CheckRegistry()


@pytest.fixture
def scheduler(repository, registry) -> HealthCheckScheduler:
    """Scheduler with no backoff delay between retries."""
    return HealthCheckScheduler(repository, registry, retry_base_delay=0.0)


def make_report(
    statuses: list[tuple[Category, Status]],
    timestamp: datetime | None = None,
    score: int | None = None,
    duration_ms: float = 1000.0,
    report_id: str | None = None,
    result_metrics: dict[str, float] | None = None,
) -> HealthCheckReport:
    results = tuple(
        make_result(c, s, f"{c.value} {s.value}", metrics=result_metrics) for c, s in statuses
    )
    summary = summarize(results)
    if score is not None:
        summary = replace(summary, score=score)
    ts = timestamp or datetime.now(timezone.utc)
    return HealthCheckReport(
        id=report_id or f"check-{int(ts.timestamp() * 1000)}",
        timestamp=ts,
        duration_ms=duration_ms,
        summary=summary,
        results=results,
        issues=(),
        recommendations=(),
        system_info=SystemInfo("Linux", "3.12.0", "test-host", "en_US", "UTC"),
        metadata={"version": "0.1.0", "environment": "test"},
    )


@pytest.fixture
def report_factory():
    """Build reports directly, bypassing the scheduler."""
    return make_report


@pytest.fixture
def history(report_factory):
    """Reports one hour apart ending now, one per (statuses, score) entry."""

    def _history(entries: list[tuple[list[tuple[Category, Status]], int]]) -> list[HealthCheckReport]:
        now = datetime.now(timezone.utc)
        start = now - timedelta(hours=len(entries))
        return [
            report_factory(statuses, timestamp=start + timedelta(hours=i), score=score)
            for i, (statuses, score) in enumerate(entries)
        ]

    return _history
