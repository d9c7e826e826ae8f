"""Derive issues and recommendations from a run's results."""

from __future__ import annotations

from collections.abc import Sequence

from .models import Category, CheckResult, Issue, Recommendation, Resolution, Severity, Status

FALLBACK_IMPACT = "System functionality may be affected"

IMPACTS: dict[Category, dict[Severity, str]] = {
    Category.API_CONNECTIVITY: {
        Severity.CRITICAL: "AI transcription services are unavailable",
        Severity.HIGH: "AI services may be unreliable",
        Severity.MEDIUM: "Some AI features may be degraded",
        Severity.LOW: "Minor AI service issues",
    },
    Category.ERROR_HANDLING: {
        Severity.CRITICAL: "Users may encounter confusing errors",
        Severity.HIGH: "Error recovery may be difficult",
        Severity.MEDIUM: "Some errors lack clear guidance",
        Severity.LOW: "Minor error message improvements needed",
    },
    Category.PERFORMANCE: {
        Severity.CRITICAL: "System performance is severely degraded",
        Severity.HIGH: "Performance issues affect user experience",
        Severity.MEDIUM: "Some performance optimizations needed",
        Severity.LOW: "Minor performance improvements available",
    },
    Category.USER_EXPERIENCE: {
        Severity.CRITICAL: "User interface is difficult to use",
        Severity.HIGH: "UX issues significantly impact usability",
        Severity.MEDIUM: "Some UX improvements needed",
        Severity.LOW: "Minor UX enhancements available",
    },
    Category.SECURITY: {
        Severity.CRITICAL: "Security vulnerabilities present",
        Severity.HIGH: "Security concerns require attention",
        Severity.MEDIUM: "Security improvements recommended",
        Severity.LOW: "Minor security enhancements available",
    },
    Category.OFFLINE_CAPABILITY: {
        Severity.CRITICAL: "Offline functionality is unavailable",
        Severity.HIGH: "Limited offline capability",
        Severity.MEDIUM: "Some offline features work",
        Severity.LOW: "Minor offline improvements available",
    },
}

DEFAULT_BENEFITS = ("Improved system reliability", "Better user experience")


def impact_for(category: Category, severity: Severity | None) -> str:
    return IMPACTS.get(category, {}).get(severity or Severity.MEDIUM, FALLBACK_IMPACT)


def generate_issues(results: Sequence[CheckResult]) -> list[Issue]:
    """One issue per failed or warning result."""
    issues: list[Issue] = []
    for r in results:
        if r.status not in (Status.FAILED, Status.WARNING):
            continue
        severity = r.severity or Severity.MEDIUM
        issues.append(Issue(
            id=f"issue-{r.id}",
            category=r.category,
            severity=severity,
            title=f"{r.name} Issue",
            description=r.message,
            affected_checks=(r.id,),
            impact=impact_for(r.category, severity),
            root_cause={"type": "external", "description": r.error.message} if r.error else None,
            resolution=Resolution(steps=tuple(r.suggestions)) if r.suggestions else None,
        ))
    return issues


def generate_recommendations(
    results: Sequence[CheckResult],
    issues: Sequence[Issue],
) -> list[Recommendation]:
    """Wrap the de-duplicated union of every result's suggestions."""
    seen: dict[str, Category] = {}
    for r in results:
        for suggestion in r.suggestions:
            seen.setdefault(suggestion, r.category)

    issue_ids = tuple(i.id for i in issues)
    return [
        Recommendation(
            id=f"rec-{n}",
            category=category,
            priority="medium",
            title=f"System Improvement {n + 1}",
            description=suggestion,
            benefits=DEFAULT_BENEFITS,
            related_issues=issue_ids,
        )
        for n, (suggestion, category) in enumerate(seen.items())
    ]
