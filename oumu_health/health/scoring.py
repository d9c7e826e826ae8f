"""Report scoring: status-average score and overall status."""

from __future__ import annotations

from collections.abc import Sequence

from .models import CheckResult, Severity, Status, Summary

STATUS_SCORES: dict[Status, int] = {
    Status.PASSED: 100,
    Status.WARNING: 70,
    Status.SKIPPED: 50,
    Status.RUNNING: 50,
    Status.PENDING: 30,
    Status.FAILED: 0,
}


def score_results(results: Sequence[CheckResult]) -> int:
    """Rounded mean of per-result scores; 0 when there is nothing to score."""
    if not results:
        return 0
    total = sum(STATUS_SCORES[r.status] for r in results)
    # half-up, not banker's rounding
    return int(total / len(results) + 0.5)


def overall_status(results: Sequence[CheckResult]) -> Status:
    if not results:
        return Status.PENDING
    statuses = {r.status for r in results}
    if Status.FAILED in statuses:
        return Status.FAILED
    if Status.WARNING in statuses:
        return Status.WARNING
    return Status.PASSED


def summarize(results: Sequence[CheckResult]) -> Summary:
    counts = {s: 0 for s in Status}
    for r in results:
        counts[r.status] += 1
    return Summary(
        total=len(results),
        passed=counts[Status.PASSED],
        failed=counts[Status.FAILED],
        warnings=counts[Status.WARNING],
        skipped=counts[Status.SKIPPED],
        overall_status=overall_status(results),
        score=score_results(results),
    )


# ── Alternate quality score ──────────────────────────────────────────────────
# Penalty-based; kept separate from Summary.score and never stored on a report.

_SEVERITY_PENALTY = {
    Severity.CRITICAL: 40,
    Severity.HIGH: 30,
    Severity.MEDIUM: 20,
    Severity.LOW: 10,
}


def quality_score(results: Sequence[CheckResult]) -> int:
    if not results:
        return 0
    penalty = 0
    for r in results:
        if r.status == Status.FAILED:
            penalty += _SEVERITY_PENALTY[r.severity or Severity.MEDIUM]
        elif r.status == Status.WARNING:
            penalty += 10
        elif r.status == Status.SKIPPED:
            penalty += 5

        if r.duration_ms > 10_000:
            penalty += 15
        elif r.duration_ms > 5_000:
            penalty += 10
    return max(0, 100 - penalty)
