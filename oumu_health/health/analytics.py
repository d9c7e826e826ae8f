"""Historical analytics: trends, reliability and threshold recommendations.

The engine does no I/O: callers fetch reports from the repository (usually
via get_check_reports_by_date_range) and pass them in. Reports are sorted by
timestamp before any computation, so input order does not matter.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any

from .models import Category, CheckResult, HealthCheckReport, Status, utcnow
from .scoring import STATUS_SCORES

logger = logging.getLogger(__name__)

TREND_THRESHOLD = 5.0
SLOW_RUN_MS = 120_000

IMPROVING = "improving"
DECLINING = "declining"
STABLE = "stable"

PRIORITY_ORDER = {"high": 3, "medium": 2, "low": 1}

CATEGORY_LABELS: dict[Category, str] = {
    Category.API_CONNECTIVITY: "API Connectivity",
    Category.ERROR_HANDLING: "Error Handling",
    Category.PERFORMANCE: "Performance",
    Category.USER_EXPERIENCE: "User Experience",
    Category.SECURITY: "Security",
    Category.OFFLINE_CAPABILITY: "Offline Capability",
}


# ── Windows ──────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TimeRange:
    start: datetime
    end: datetime

    def contains(self, ts: datetime) -> bool:
        return self.start <= ts <= self.end

    @property
    def duration_ms(self) -> float:
        return (self.end - self.start).total_seconds() * 1000


def last_days(days: float) -> TimeRange:
    end = utcnow()
    return TimeRange(start=end - timedelta(days=days), end=end)


def last_24_hours() -> TimeRange:
    return last_days(1)


def last_7_days() -> TimeRange:
    return last_days(7)


def last_30_days() -> TimeRange:
    return last_days(30)


# ── Series math ──────────────────────────────────────────────────────────────


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def classify_trend(values: Sequence[float]) -> str:
    """Compare the means of the first and second halves of the series."""
    if len(values) < 2:
        return STABLE
    mid = len(values) // 2
    difference = _mean(values[mid:]) - _mean(values[:mid])
    if difference > TREND_THRESHOLD:
        return IMPROVING
    if difference < -TREND_THRESHOLD:
        return DECLINING
    return STABLE


def trend_percentage(values: Sequence[float]) -> float:
    """Relative change from first to last point, in percent."""
    if len(values) < 2 or values[0] == 0:
        return 0.0
    return (values[-1] - values[0]) / values[0] * 100


def result_metric(result: CheckResult, metric: str | None = None) -> float:
    """Numeric value of a result: a named metric if present, else its status score."""
    if metric and result.metrics and metric in result.metrics:
        return float(result.metrics[metric])
    return float(STATUS_SCORES[result.status])


# ── Output types ─────────────────────────────────────────────────────────────


@dataclass
class TrendPoint:
    timestamp: datetime
    score: float
    status: Status
    duration_ms: float
    total: int
    passed: int
    failed: int
    warnings: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "score": self.score,
            "status": self.status.value,
            "duration_ms": self.duration_ms,
            "total": self.total,
            "passed": self.passed,
            "failed": self.failed,
            "warnings": self.warnings,
        }


@dataclass
class CategoryTrend:
    category: Category
    data: list[TrendPoint]
    average_score: float
    success_rate: float
    trend: str  # improving | declining | stable
    trend_percentage: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category.value,
            "data": [p.to_dict() for p in self.data],
            "average_score": round(self.average_score, 1),
            "success_rate": round(self.success_rate, 1),
            "trend": self.trend,
            "trend_percentage": round(self.trend_percentage, 1),
        }


@dataclass
class AnalyticsMetrics:
    overall_trend: str = STABLE
    overall_trend_percentage: float = 0.0
    average_score: float = 0.0
    average_duration_ms: float = 0.0
    success_rate: float = 0.0
    reliability_score: float = 0.0
    performance_score: float = 0.0
    uptime_percentage: float = 0.0
    most_failing_category: Category | None = None
    most_improving_category: Category | None = None
    category_trends: list[CategoryTrend] = field(default_factory=list)
    report_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "overall_trend": self.overall_trend,
            "overall_trend_percentage": round(self.overall_trend_percentage, 1),
            "average_score": round(self.average_score, 1),
            "average_duration_ms": round(self.average_duration_ms, 1),
            "success_rate": round(self.success_rate, 1),
            "reliability_score": round(self.reliability_score, 1),
            "performance_score": round(self.performance_score, 1),
            "uptime_percentage": round(self.uptime_percentage, 1),
            "most_failing_category": (
                self.most_failing_category.value if self.most_failing_category else None
            ),
            "most_improving_category": (
                self.most_improving_category.value if self.most_improving_category else None
            ),
            "category_trends": [t.to_dict() for t in self.category_trends],
            "report_count": self.report_count,
        }


@dataclass
class CategoryPerformance:
    category: Category
    average_score: float
    success_rate: float
    total_runs: int
    last_run: datetime | None
    status: Status | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category.value,
            "average_score": round(self.average_score, 1),
            "success_rate": round(self.success_rate, 1),
            "total_runs": self.total_runs,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "status": self.status.value if self.status else None,
        }


@dataclass
class ReliabilityStats:
    uptime_ms: float = 0.0
    downtime_ms: float = 0.0
    uptime_percentage: float = 0.0
    average_recovery_time_ms: float = 0.0
    incident_count: int = 0
    mean_time_between_failures_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "uptime_ms": round(self.uptime_ms),
            "downtime_ms": round(self.downtime_ms),
            "uptime_percentage": round(self.uptime_percentage, 1),
            "average_recovery_time_ms": round(self.average_recovery_time_ms),
            "incident_count": self.incident_count,
            "mean_time_between_failures_ms": round(self.mean_time_between_failures_ms),
        }


@dataclass
class TrendRecommendation:
    priority: str  # high | medium | low
    category: Category
    message: str
    actionable: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "priority": self.priority,
            "category": self.category.value,
            "message": self.message,
            "actionable": self.actionable,
        }


# ── Engine ───────────────────────────────────────────────────────────────────


def _prepare(
    reports: Sequence[HealthCheckReport],
    window: TimeRange | None,
) -> list[HealthCheckReport]:
    selected = [r for r in reports if window is None or window.contains(r.timestamp)]
    return sorted(selected, key=lambda r: r.timestamp)


def _point(report: HealthCheckReport) -> TrendPoint:
    s = report.summary
    return TrendPoint(
        timestamp=report.timestamp,
        score=float(s.score),
        status=s.overall_status,
        duration_ms=report.duration_ms,
        total=s.total,
        passed=s.passed,
        failed=s.failed,
        warnings=s.warnings,
    )


def _category_point(report: HealthCheckReport, result: CheckResult, metric: str | None) -> TrendPoint:
    return replace(_point(report), score=result_metric(result, metric), status=result.status)


def _success_rate(reports: Sequence[HealthCheckReport]) -> float:
    total = sum(r.summary.total for r in reports)
    if total == 0:
        return 0.0
    return sum(r.summary.passed for r in reports) / total * 100


class AnalyticsEngine:
    """Stateless trend and reliability computations over report history."""

    def __init__(self, metric: str | None = None) -> None:
        # Optional result.metrics key used as the per-category value.
        self.metric = metric

    def get_analytics(
        self,
        reports: Sequence[HealthCheckReport],
        window: TimeRange | None = None,
    ) -> AnalyticsMetrics:
        ordered = _prepare(reports, window)
        if not ordered:
            return AnalyticsMetrics()

        scores = [float(r.summary.score) for r in ordered]
        average_duration = _mean([r.duration_ms for r in ordered])
        success_rate = _success_rate(ordered)
        passed_reports = sum(1 for r in ordered if r.summary.overall_status == Status.PASSED)
        reliability = passed_reports / len(ordered) * 100
        performance = min(
            100.0,
            success_rate * 0.7 + max(0.0, 100 - average_duration / SLOW_RUN_MS * 100) * 0.3,
        )

        category_trends = self._category_trends(ordered)
        performance_by_category = self.get_category_performance(ordered)

        failing = sorted(
            (p for p in performance_by_category if p.total_runs and p.success_rate < 90),
            key=lambda p: p.success_rate,
        )
        improving = sorted(
            (t for t in category_trends if t.trend == IMPROVING),
            key=lambda t: t.trend_percentage,
            reverse=True,
        )

        return AnalyticsMetrics(
            overall_trend=classify_trend(scores),
            overall_trend_percentage=trend_percentage(scores),
            average_score=_mean(scores),
            average_duration_ms=average_duration,
            success_rate=success_rate,
            reliability_score=reliability,
            performance_score=performance,
            uptime_percentage=reliability,
            most_failing_category=failing[0].category if failing else None,
            most_improving_category=improving[0].category if improving else None,
            category_trends=category_trends,
            report_count=len(ordered),
        )

    def _category_trends(self, ordered: Sequence[HealthCheckReport]) -> list[CategoryTrend]:
        trends: list[CategoryTrend] = []
        for category in Category:
            points = [
                _category_point(report, result, self.metric)
                for report in ordered
                if (result := report.result_for(category)) is not None
            ]
            if not points:
                continue
            values = [p.score for p in points]
            passed = sum(1 for p in points if p.status == Status.PASSED)
            trends.append(CategoryTrend(
                category=category,
                data=points,
                average_score=_mean(values),
                success_rate=passed / len(points) * 100,
                trend=classify_trend(values),
                trend_percentage=trend_percentage(values),
            ))
        return trends

    def get_trend_data(
        self,
        reports: Sequence[HealthCheckReport],
        window: TimeRange | None = None,
        category: Category | None = None,
    ) -> list[TrendPoint]:
        """One point per report; per-category values when ``category`` is given."""
        ordered = _prepare(reports, window)
        if category is None:
            return [_point(r) for r in ordered]
        return [
            _category_point(report, result, self.metric)
            for report in ordered
            if (result := report.result_for(category)) is not None
        ]

    def get_performance_metrics(
        self,
        reports: Sequence[HealthCheckReport],
        window: TimeRange | None = None,
    ) -> dict[str, list[Any]]:
        ordered = _prepare(reports, window)
        return {
            "timestamps": [r.timestamp.isoformat() for r in ordered],
            "response_times": [r.duration_ms for r in ordered],
            "success_rates": [
                round(r.summary.passed / r.summary.total * 100, 1) if r.summary.total else 0.0
                for r in ordered
            ],
            "scores": [r.summary.score for r in ordered],
        }

    def get_category_performance(
        self,
        reports: Sequence[HealthCheckReport],
        window: TimeRange | None = None,
    ) -> list[CategoryPerformance]:
        ordered = _prepare(reports, window)
        out: list[CategoryPerformance] = []
        for category in Category:
            runs = [
                (report, result)
                for report in ordered
                if (result := report.result_for(category)) is not None
            ]
            passed = sum(1 for _, result in runs if result.status == Status.PASSED)
            out.append(CategoryPerformance(
                category=category,
                average_score=_mean([result_metric(res, self.metric) for _, res in runs]),
                success_rate=passed / len(runs) * 100 if runs else 0.0,
                total_runs=len(runs),
                last_run=runs[-1][0].timestamp if runs else None,
                status=runs[-1][1].status if runs else None,
            ))
        return out

    def get_reliability_stats(
        self,
        reports: Sequence[HealthCheckReport],
        window: TimeRange | None = None,
    ) -> ReliabilityStats:
        ordered = _prepare(reports, window)
        if not ordered:
            return ReliabilityStats()

        if window is not None:
            span_ms = window.duration_ms
        else:
            span_ms = (ordered[-1].timestamp - ordered[0].timestamp).total_seconds() * 1000
        per_report = span_ms / len(ordered)

        failed = [r for r in ordered if r.summary.overall_status == Status.FAILED]
        passed = [r for r in ordered if r.summary.overall_status == Status.PASSED]

        gaps_after_failure: list[float] = []
        recoveries: list[float] = []
        for current, nxt in zip(ordered, ordered[1:]):
            if current.summary.overall_status != Status.FAILED:
                continue
            gap = (nxt.timestamp - current.timestamp).total_seconds() * 1000
            gaps_after_failure.append(gap)
            if nxt.summary.overall_status == Status.PASSED:
                recoveries.append(gap)

        return ReliabilityStats(
            uptime_ms=len(passed) * per_report,
            downtime_ms=len(failed) * per_report,
            uptime_percentage=len(passed) / len(ordered) * 100,
            average_recovery_time_ms=_mean(recoveries),
            incident_count=len(failed),
            mean_time_between_failures_ms=_mean(gaps_after_failure),
        )

    def get_recommendations(
        self,
        reports: Sequence[HealthCheckReport],
        window: TimeRange | None = None,
    ) -> list[TrendRecommendation]:
        """Threshold-driven recommendations, highest priority first."""
        analytics = self.get_analytics(reports, window)
        if analytics.report_count == 0:
            return []

        recs: list[TrendRecommendation] = []
        if analytics.overall_trend == DECLINING and abs(analytics.overall_trend_percentage) > 10:
            recs.append(TrendRecommendation(
                "high", Category.API_CONNECTIVITY,
                f"Overall system health is declining by {analytics.overall_trend_percentage:.1f}%. "
                "Immediate investigation required.",
            ))
        if analytics.success_rate < 90:
            recs.append(TrendRecommendation(
                "high", Category.ERROR_HANDLING,
                f"Success rate is {analytics.success_rate:.1f}%, below the 90% threshold.",
            ))
        if analytics.reliability_score < 80:
            recs.append(TrendRecommendation(
                "medium", Category.PERFORMANCE,
                f"Reliability score is {analytics.reliability_score:.1f}%. "
                "Consider implementing redundancy measures.",
            ))
        for trend in analytics.category_trends:
            label = CATEGORY_LABELS.get(trend.category, trend.category.value)
            if trend.trend == DECLINING and abs(trend.trend_percentage) > 15:
                recs.append(TrendRecommendation(
                    "medium", trend.category,
                    f"{label} performance is declining by {trend.trend_percentage:.1f}%.",
                ))
            if trend.success_rate < 85:
                recs.append(TrendRecommendation(
                    "medium", trend.category,
                    f"{label} success rate is {trend.success_rate:.1f}%.",
                ))
        if analytics.average_duration_ms > SLOW_RUN_MS:
            recs.append(TrendRecommendation(
                "low", Category.PERFORMANCE,
                f"Average check duration is {analytics.average_duration_ms / 1000:.1f}s. "
                "Consider optimization.",
            ))

        recs.sort(key=lambda r: PRIORITY_ORDER[r.priority], reverse=True)
        logger.debug("Generated %d trend recommendations", len(recs))
        return recs
