"""Report assembly: scored summary, issues, recommendations, system info."""

from __future__ import annotations

import locale
import os
import platform
import socket
import traceback
from collections.abc import Sequence
from datetime import datetime

from .issues import generate_issues, generate_recommendations
from .models import (
    Category,
    CheckError,
    CheckResult,
    HealthCheckReport,
    Issue,
    Recommendation,
    Resolution,
    Severity,
    Status,
    Summary,
    SystemInfo,
    make_result,
    utcnow,
)
from .scoring import summarize

APP_VERSION = "0.1.0"

ORCHESTRATION_CHECK_NAME = "Health Check Orchestration"


def system_info() -> SystemInfo:
    lang = locale.getlocale()[0] or os.environ.get("LANG", "en")
    return SystemInfo(
        platform=platform.platform(),
        python_version=platform.python_version(),
        hostname=socket.gethostname(),
        language=lang,
        time_zone=datetime.now().astimezone().tzname() or "UTC",
    )


def _metadata(environment: str) -> dict[str, str]:
    return {"version": APP_VERSION, "environment": environment}


def _elapsed_ms(started_at: datetime) -> float:
    return round((utcnow() - started_at).total_seconds() * 1000, 1)


def build_report(
    run_id: str,
    results: Sequence[CheckResult],
    started_at: datetime,
    environment: str = "production",
) -> HealthCheckReport:
    """Score the results and wrap them, with derived issues, into a report."""
    issues = generate_issues(results)
    recommendations = generate_recommendations(results, issues)
    return HealthCheckReport(
        id=run_id,
        timestamp=utcnow(),
        duration_ms=_elapsed_ms(started_at),
        summary=summarize(results),
        results=tuple(results),
        issues=tuple(issues),
        recommendations=tuple(recommendations),
        system_info=system_info(),
        metadata=_metadata(environment),
    )


def orchestration_failure_result(error: BaseException) -> CheckResult:
    return make_result(
        Category.ERROR_HANDLING,
        Status.FAILED,
        f"Health check execution failed: {error}",
        name=ORCHESTRATION_CHECK_NAME,
        description="Run-level failure outside any single category",
        severity=Severity.CRITICAL,
        error=CheckError(
            code="ORCHESTRATION_FAILED",
            message=str(error),
            stack="".join(traceback.format_exception(type(error), error, error.__traceback__)),
        ),
        suggestions=["Review error logs", "Check system configuration", "Verify dependencies"],
    )


def build_failed_report(
    run_id: str,
    error: BaseException,
    started_at: datetime,
    collected: Sequence[CheckResult],
    environment: str = "production",
) -> HealthCheckReport:
    """Best-effort report: collected results plus one synthetic failure.

    Overall status is forced to failed and the score to 0 regardless of
    what the collected results would score.
    """
    failure = orchestration_failure_result(error)
    results = (*collected, failure)
    counted = summarize(results)
    summary = Summary(
        total=counted.total,
        passed=counted.passed,
        failed=counted.failed,
        warnings=counted.warnings,
        skipped=counted.skipped,
        overall_status=Status.FAILED,
        score=0,
    )
    issue = Issue(
        id=f"critical-error-{run_id}",
        category=Category.ERROR_HANDLING,
        severity=Severity.CRITICAL,
        title="Health Check Execution Failed",
        description=f"The health check execution failed with error: {error}",
        affected_checks=(failure.id,),
        impact="Unable to complete system health assessment",
        root_cause={"type": "environment", "description": str(error)},
        resolution=Resolution(steps=failure.suggestions),
    )
    recommendation = Recommendation(
        id=f"rec-{run_id}",
        category=Category.ERROR_HANDLING,
        priority="high",
        title="Fix Health Check System",
        description="Resolve the underlying issues preventing health check execution",
        effort="moderate",
        timeframe="1-2 hours",
        benefits=("Restore system monitoring capability", "Ensure early detection of issues"),
        related_issues=(issue.id,),
    )
    return HealthCheckReport(
        id=run_id,
        timestamp=utcnow(),
        duration_ms=_elapsed_ms(started_at),
        summary=summary,
        results=results,
        issues=(issue,),
        recommendations=(recommendation,),
        system_info=system_info(),
        metadata=_metadata(environment),
    )
