"""Auto-fix analysis: turn a report's failures into actionable, fixable issues.

Each non-passing result is matched against known failure patterns (by error
code, or by response-time metrics). A match yields a FixableIssue with manual
steps and, where the engine can act on its own, a FixAction. Issues seen in
several reports are grouped into recurring issues with prevention advice.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from .cache import ResultCache
from .defaults import HARD_DEFAULT
from .models import (
    MAX_TIMEOUT_MS,
    Category,
    CheckConfig,
    CheckResult,
    HealthCheckReport,
    Severity,
    Status,
    utcnow,
)

if TYPE_CHECKING:
    from oumu_health.storage.repository import ReportRepository

    from .scheduler import HealthCheckScheduler

logger = logging.getLogger(__name__)

SLOW_RESPONSE_MS = 5_000
LOW_SCORE_THRESHOLD = 60
RECURRING_MIN_OCCURRENCES = 3
FIX_TIMEOUT_FLOOR_MS = 60_000

RESPONSE_TIME_METRICS = ("response_time_ms", "average_response_ms")

SEVERITY_ORDER = {
    Severity.CRITICAL: 4,
    Severity.HIGH: 3,
    Severity.MEDIUM: 2,
    Severity.LOW: 1,
}

PREVENTION_STEPS = (
    "Schedule regular health checks",
    "Set up monitoring alerts",
    "Document and review system changes",
)


class FixAction(str, Enum):
    RERUN_CHECK = "rerun_check"
    RERUN_ALL = "rerun_all"
    INCREASE_TIMEOUT = "increase_timeout"
    CLEAR_CACHE = "clear_cache"


FIX_DESCRIPTIONS = {
    FixAction.RERUN_CHECK: "Re-run the affected check",
    FixAction.RERUN_ALL: "Re-run every health check",
    FixAction.INCREASE_TIMEOUT: "Increase the category timeout",
    FixAction.CLEAR_CACHE: "Clear the result cache",
}


@dataclass(frozen=True)
class _Pattern:
    slug: str
    title: str
    description: str
    severity: Severity
    action: FixAction | None
    manual_steps: tuple[str, ...]
    prevention_tips: tuple[str, ...]
    estimated_minutes: int
    required_permissions: tuple[str, ...]
    risk_level: str


# Keyed by CheckError.code.
ERROR_PATTERNS: dict[str, _Pattern] = {
    "NETWORK_ERROR": _Pattern(
        slug="network",
        title="Network Connectivity Issue",
        description="Unable to connect to external API services",
        severity=Severity.HIGH,
        action=FixAction.RERUN_CHECK,
        manual_steps=(
            "Check internet connection",
            "Verify firewall settings",
            "Check DNS configuration",
            "Contact network administrator",
        ),
        prevention_tips=(
            "Monitor network latency",
            "Set up redundant connections",
            "Implement connection pooling",
        ),
        estimated_minutes=5,
        required_permissions=("network",),
        risk_level="low",
    ),
    "AUTH_FAILED": _Pattern(
        slug="auth",
        title="API Authentication Failed",
        description="Invalid or expired API credentials",
        severity=Severity.CRITICAL,
        action=None,
        manual_steps=(
            "Verify API key validity",
            "Check subscription status",
            "Update API credentials",
            "Review usage quotas",
        ),
        prevention_tips=(
            "Set up API key rotation",
            "Monitor usage quotas",
            "Implement token refresh mechanism",
        ),
        estimated_minutes=10,
        required_permissions=("api_keys",),
        risk_level="medium",
    ),
    "CHECK_TIMEOUT": _Pattern(
        slug="timeout",
        title="Request Timeout",
        description="Check requests are timing out",
        severity=Severity.MEDIUM,
        action=FixAction.INCREASE_TIMEOUT,
        manual_steps=(
            "Check API response times",
            "Optimize request payloads",
            "Review network conditions",
        ),
        prevention_tips=(
            "Implement request retries",
            "Add timeout monitoring",
            "Optimize API calls",
        ),
        estimated_minutes=3,
        required_permissions=("config",),
        risk_level="low",
    ),
    "FORMAT_UNSUPPORTED": _Pattern(
        slug="format",
        title="Unsupported File Format",
        description="Audio format is not supported",
        severity=Severity.MEDIUM,
        action=None,
        manual_steps=(
            "Check supported file formats",
            "Convert file manually",
            "Use different audio file",
        ),
        prevention_tips=(
            "Validate file formats before upload",
            "Provide format conversion options",
            "Display supported formats clearly",
        ),
        estimated_minutes=2,
        required_permissions=("file_conversion",),
        risk_level="low",
    ),
    "QUOTA_EXCEEDED": _Pattern(
        slug="quota",
        title="API Quota Exceeded",
        description="API usage quota has been exceeded",
        severity=Severity.HIGH,
        action=None,
        manual_steps=(
            "Check current usage",
            "Upgrade subscription plan",
            "Wait for quota reset",
            "Review usage patterns",
        ),
        prevention_tips=(
            "Monitor usage quotas",
            "Implement usage alerts",
            "Optimize API calls",
            "Set up automatic scaling",
        ),
        estimated_minutes=30,
        required_permissions=("billing",),
        risk_level="medium",
    ),
}

SLOW_RESPONSE = _Pattern(
    slug="performance",
    title="Slow Response Time",
    description="Response time is {value:.0f}ms",
    severity=Severity.MEDIUM,
    action=FixAction.CLEAR_CACHE,
    manual_steps=("Check server load", "Review database performance", "Optimize queries"),
    prevention_tips=(
        "Monitor response times",
        "Implement caching strategies",
        "Regular performance audits",
    ),
    estimated_minutes=5,
    required_permissions=("cache",),
    risk_level="low",
)

LOW_SYSTEM_HEALTH = _Pattern(
    slug="system-health",
    title="Overall System Health Low",
    description="System health score is {value}",
    severity=Severity.HIGH,
    action=FixAction.RERUN_ALL,
    manual_steps=("Review all failed checks", "Check system resources", "Review recent changes"),
    prevention_tips=("Regular system monitoring", "Automated health checks", "Proactive maintenance"),
    estimated_minutes=10,
    required_permissions=("system",),
    risk_level="medium",
)


def has_known_fix(code: str | None) -> bool:
    """True when an error code maps to a fix the engine can apply itself."""
    pattern = ERROR_PATTERNS.get(code or "")
    return pattern is not None and pattern.action is not None


def response_time(result: CheckResult) -> float | None:
    for name in RESPONSE_TIME_METRICS:
        value = (result.metrics or {}).get(name)
        if value is not None:
            return float(value)
    return None


# ── Models ───────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class FixableIssue:
    id: str
    category: Category
    severity: Severity
    title: str
    description: str
    affected_checks: tuple[str, ...]
    action: FixAction | None = None
    error_code: str | None = None
    error_message: str | None = None
    manual_steps: tuple[str, ...] = ()
    prevention_tips: tuple[str, ...] = ()
    estimated_minutes: int = 0
    required_permissions: tuple[str, ...] = ()
    risk_level: str = "low"
    occurrences: int = 1

    @property
    def can_auto_fix(self) -> bool:
        return self.action is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "category": self.category.value,
            "severity": self.severity.value,
            "title": self.title,
            "description": self.description,
            "affected_checks": list(self.affected_checks),
            "can_auto_fix": self.can_auto_fix,
            "action": (
                {"type": self.action.value, "description": FIX_DESCRIPTIONS[self.action]}
                if self.action else None
            ),
            "error_code": self.error_code,
            "error_message": self.error_message,
            "manual_steps": list(self.manual_steps),
            "prevention_tips": list(self.prevention_tips),
            "estimated_minutes": self.estimated_minutes,
            "required_permissions": list(self.required_permissions),
            "risk_level": self.risk_level,
            "occurrences": self.occurrences,
        }


@dataclass(frozen=True)
class FixOutcome:
    issue_id: str
    success: bool
    message: str
    action_taken: str | None = None
    requires_manual_intervention: bool = False
    next_steps: tuple[str, ...] = ()
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "issue_id": self.issue_id,
            "success": self.success,
            "message": self.message,
            "action_taken": self.action_taken,
            "requires_manual_intervention": self.requires_manual_intervention,
            "next_steps": list(self.next_steps),
            "details": dict(self.details),
            "timestamp": self.timestamp.isoformat(),
        }


def _issue(
    pattern: _Pattern,
    issue_id: str,
    category: Category,
    affected: Sequence[str],
    description: str | None = None,
    error_code: str | None = None,
    error_message: str | None = None,
) -> FixableIssue:
    return FixableIssue(
        id=issue_id,
        category=category,
        severity=pattern.severity,
        title=pattern.title,
        description=description or pattern.description,
        affected_checks=tuple(affected),
        action=pattern.action,
        error_code=error_code,
        error_message=error_message,
        manual_steps=pattern.manual_steps,
        prevention_tips=pattern.prevention_tips,
        estimated_minutes=pattern.estimated_minutes,
        required_permissions=pattern.required_permissions,
        risk_level=pattern.risk_level,
    )


# ── Engine ───────────────────────────────────────────────────────────────────


class AutoFixEngine:
    """Finds fixable issues in reports and applies the fixes it knows."""

    def __init__(self, defaults: Mapping[Category, CheckConfig] | None = None) -> None:
        self.defaults = dict(defaults or {})
        self._outcomes: list[FixOutcome] = []

    def analyze_report(self, report: HealthCheckReport) -> list[FixableIssue]:
        """Fixable issues for every non-passing result, most severe first."""
        issues: list[FixableIssue] = []
        for result in report.results:
            if result.status in (Status.PASSED, Status.SKIPPED):
                continue
            issues.extend(self._issues_for_result(result))

        if report.results and report.summary.score < LOW_SCORE_THRESHOLD:
            failing = [r.id for r in report.results if r.status == Status.FAILED]
            issues.append(_issue(
                LOW_SYSTEM_HEALTH,
                f"{LOW_SYSTEM_HEALTH.slug}-{report.id}",
                Category.PERFORMANCE,
                failing,
                description=LOW_SYSTEM_HEALTH.description.format(value=report.summary.score),
            ))

        # stable: equal severities keep result order
        return sorted(issues, key=lambda i: SEVERITY_ORDER[i.severity], reverse=True)

    def _issues_for_result(self, result: CheckResult) -> list[FixableIssue]:
        issues = []
        code = result.error.code if result.error else None
        pattern = ERROR_PATTERNS.get(code or "")
        if pattern is not None:
            issues.append(_issue(
                pattern, f"{pattern.slug}-{result.id}", result.category, [result.id],
                error_code=code, error_message=result.error.message,
            ))

        latency = response_time(result)
        if latency is not None and latency > SLOW_RESPONSE_MS:
            issues.append(_issue(
                SLOW_RESPONSE, f"{SLOW_RESPONSE.slug}-{result.id}", result.category, [result.id],
                description=SLOW_RESPONSE.description.format(value=latency),
            ))
        return issues

    def suggestions(self, issues: Sequence[FixableIssue]) -> list[FixableIssue]:
        """Issues that can be fixed automatically or at least have manual steps."""
        return [i for i in issues if i.can_auto_fix or i.manual_steps]

    def recurring_issues(
        self,
        reports: Sequence[HealthCheckReport],
        min_occurrences: int = RECURRING_MIN_OCCURRENCES,
    ) -> list[FixableIssue]:
        """Issues whose (category, title) shows up at least ``min_occurrences`` times.

        Each group collapses to its first issue, carrying the occurrence count
        and the de-duplicated affected checks of every occurrence.
        """
        groups: dict[tuple[Category, str], list[FixableIssue]] = {}
        for report in reports:
            for issue in self.analyze_report(report):
                groups.setdefault((issue.category, issue.title), []).append(issue)

        recurring = []
        for group in groups.values():
            if len(group) < min_occurrences:
                continue
            affected = dict.fromkeys(c for issue in group for c in issue.affected_checks)
            recurring.append(replace(group[0], occurrences=len(group), affected_checks=tuple(affected)))
        return sorted(recurring, key=lambda i: i.occurrences, reverse=True)

    def prevention_recommendations(
        self,
        reports: Sequence[HealthCheckReport],
        min_occurrences: int = RECURRING_MIN_OCCURRENCES,
    ) -> list[FixableIssue]:
        return [
            replace(
                issue,
                id=f"prevention-{issue.id}",
                title=f"Prevention: {issue.title}",
                description="This issue has occurred multiple times. Consider implementing preventive measures.",
                action=None,
                manual_steps=issue.manual_steps + PREVENTION_STEPS,
            )
            for issue in self.recurring_issues(reports, min_occurrences)
        ]

    # ── Applying fixes ───────────────────────────────────────────────────

    def apply(
        self,
        issue: FixableIssue,
        repository: ReportRepository,
        scheduler: HealthCheckScheduler | None = None,
        cache: ResultCache | None = None,
    ) -> FixOutcome:
        """Apply the issue's fix and record the outcome.

        Rerun actions start a background run, so they need a running loop.
        """
        if issue.action is None:
            return self._record(FixOutcome(
                issue_id=issue.id,
                success=False,
                message="This issue cannot be automatically fixed",
                requires_manual_intervention=True,
                next_steps=issue.manual_steps,
            ))

        try:
            message, details = self._execute(issue, repository, scheduler, cache)
        except Exception as e:
            logger.warning("Auto-fix %s for %s failed: %s", issue.action.value, issue.id, e)
            return self._record(FixOutcome(
                issue_id=issue.id,
                success=False,
                message=f"Auto-fix failed: {e}",
                action_taken=FIX_DESCRIPTIONS[issue.action],
                requires_manual_intervention=True,
                next_steps=issue.manual_steps,
            ))

        logger.info("Auto-fix %s applied for %s", issue.action.value, issue.id)
        return self._record(FixOutcome(
            issue_id=issue.id,
            success=True,
            message=message,
            action_taken=FIX_DESCRIPTIONS[issue.action],
            details=details,
        ))

    def _execute(
        self,
        issue: FixableIssue,
        repository: ReportRepository,
        scheduler: HealthCheckScheduler | None,
        cache: ResultCache | None,
    ) -> tuple[str, dict[str, Any]]:
        if issue.action == FixAction.INCREASE_TIMEOUT:
            current = repository.get_check_config(issue.category) or self.defaults.get(
                issue.category, HARD_DEFAULT,
            )
            if current.timeout_ms >= MAX_TIMEOUT_MS:
                raise ValueError(f"timeout already at the {MAX_TIMEOUT_MS}ms maximum")
            new_timeout = min(MAX_TIMEOUT_MS, max(current.timeout_ms * 2, FIX_TIMEOUT_FLOOR_MS))
            repository.save_check_config(issue.category, current.merged(timeout_ms=new_timeout))
            return (
                f"Timeout for {issue.category.value} raised to {new_timeout}ms",
                {"previous_timeout_ms": current.timeout_ms, "timeout_ms": new_timeout},
            )

        if issue.action == FixAction.CLEAR_CACHE:
            if cache is None:
                raise ValueError("no result cache configured")
            cleared = len(cache)
            cache.clear()
            return "Result cache cleared", {"cleared": cleared}

        if scheduler is None:
            raise ValueError("no scheduler available to re-run checks")
        categories = [issue.category] if issue.action == FixAction.RERUN_CHECK else None
        handle = scheduler.run(categories)
        return f"Health check re-run started ({handle.run_id})", handle.to_dict()

    def _record(self, outcome: FixOutcome) -> FixOutcome:
        self._outcomes.append(outcome)
        return outcome

    def fix_results(self) -> list[FixOutcome]:
        """Outcomes of applied fixes, newest first."""
        return self._outcomes[::-1]
