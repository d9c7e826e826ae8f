"""Health check data model: categories, results, configs, reports.

Everything a run produces is a frozen dataclass: once a CheckResult is handed
back to the scheduler, or a report is persisted, nothing mutates it.
Each model round-trips through plain JSON via to_dict() / from_dict().
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .errors import ConfigValidationError

REPORT_VERSION = "1.0"


# ── Enumerations ─────────────────────────────────────────────────────────────


class Category(str, Enum):
    API_CONNECTIVITY = "api_connectivity"
    ERROR_HANDLING = "error_handling"
    PERFORMANCE = "performance"
    USER_EXPERIENCE = "user_experience"
    SECURITY = "security"
    OFFLINE_CAPABILITY = "offline_capability"


class Status(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    WARNING = "warning"
    SKIPPED = "skipped"


TERMINAL_STATUSES = frozenset({Status.PASSED, Status.FAILED, Status.WARNING, Status.SKIPPED})


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


CHECK_NAMES: dict[Category, str] = {
    Category.API_CONNECTIVITY: "API Connectivity Check",
    Category.ERROR_HANDLING: "Error Handling Validation",
    Category.PERFORMANCE: "Performance Benchmark",
    Category.USER_EXPERIENCE: "User Experience Validation",
    Category.SECURITY: "Security Compliance Check",
    Category.OFFLINE_CAPABILITY: "Offline Capability Check",
}


def check_name(category: Category) -> str:
    return CHECK_NAMES.get(category, f"{category.value} Check")


def default_severity(status: Status) -> Severity:
    """Severity implied by a status when the check does not set one."""
    if status == Status.FAILED:
        return Severity.HIGH
    if status == Status.WARNING:
        return Severity.MEDIUM
    return Severity.LOW


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: Any) -> datetime:
    if isinstance(value, datetime):
        ts = value
    else:
        ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


# ── Check results ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class CheckError:
    code: str
    message: str
    stack: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "stack": self.stack}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CheckError:
        return cls(code=data["code"], message=data.get("message", ""), stack=data.get("stack"))


@dataclass(frozen=True)
class CheckResult:
    """Outcome of one category's check within a run."""

    id: str
    category: Category
    name: str
    description: str
    status: Status
    duration_ms: float
    timestamp: datetime
    message: str = ""
    severity: Severity | None = None
    metrics: dict[str, float] | None = None
    details: dict[str, Any] | None = None
    error: CheckError | None = None
    suggestions: tuple[str, ...] = ()
    auto_fix_available: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "category": self.category.value,
            "name": self.name,
            "description": self.description,
            "status": self.status.value,
            "severity": self.severity.value if self.severity else None,
            "duration_ms": self.duration_ms,
            "timestamp": self.timestamp.isoformat(),
            "message": self.message,
            "metrics": dict(self.metrics) if self.metrics is not None else None,
            "details": dict(self.details) if self.details is not None else None,
            "error": self.error.to_dict() if self.error else None,
            "suggestions": list(self.suggestions),
            "auto_fix_available": self.auto_fix_available,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CheckResult:
        return cls(
            id=data["id"],
            category=Category(data["category"]),
            name=data.get("name", ""),
            description=data.get("description", ""),
            status=Status(data["status"]),
            severity=Severity(data["severity"]) if data.get("severity") else None,
            duration_ms=float(data.get("duration_ms", 0)),
            timestamp=_parse_ts(data["timestamp"]),
            message=data.get("message", ""),
            metrics=data.get("metrics"),
            details=data.get("details"),
            error=CheckError.from_dict(data["error"]) if data.get("error") else None,
            suggestions=tuple(data.get("suggestions") or ()),
            auto_fix_available=bool(data.get("auto_fix_available", False)),
        )


def new_result_id(category: Category) -> str:
    return f"{category.value}-{uuid.uuid4().hex[:12]}"


def make_result(
    category: Category,
    status: Status,
    message: str,
    *,
    duration_ms: float = 0.0,
    name: str | None = None,
    description: str | None = None,
    severity: Severity | None = None,
    metrics: dict[str, float] | None = None,
    details: dict[str, Any] | None = None,
    error: CheckError | None = None,
    suggestions: list[str] | tuple[str, ...] = (),
    auto_fix_available: bool = False,
    result_id: str | None = None,
) -> CheckResult:
    """Build a CheckResult, filling id, timestamp and the status-derived severity."""
    return CheckResult(
        id=result_id or new_result_id(category),
        category=category,
        name=name or check_name(category),
        description=description or f"Health check for {category.value}",
        status=status,
        severity=severity or default_severity(status),
        duration_ms=round(duration_ms, 1),
        timestamp=utcnow(),
        message=message,
        metrics=metrics or {},
        details=details or {},
        error=error,
        suggestions=tuple(suggestions),
        auto_fix_available=auto_fix_available,
    )


# ── Configuration ────────────────────────────────────────────────────────────

MIN_TIMEOUT_MS = 1_000
MAX_TIMEOUT_MS = 300_000
MAX_RETRY_COUNT = 10

# Tighter bounds for per-run overrides.
RUN_MIN_TIMEOUT_MS = 5_000
RUN_MAX_RETRY_COUNT = 5


@dataclass(frozen=True)
class CheckConfig:
    """Effective settings for one category's check."""

    enabled: bool = True
    timeout_ms: int = 30_000
    retry_count: int = 1
    severity: Severity = Severity.MEDIUM
    parameters: dict[str, Any] = field(default_factory=dict)
    dependencies: tuple[Category, ...] = ()
    use_cache: bool = False

    def merged(self, **overrides: Any) -> CheckConfig:
        """Return a copy with every non-None override applied."""
        updates = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **updates) if updates else self

    def validate(self) -> list[str]:
        errors: list[str] = []
        if not MIN_TIMEOUT_MS <= self.timeout_ms <= MAX_TIMEOUT_MS:
            errors.append("Timeout must be between 1 second and 5 minutes")
        if not 0 <= self.retry_count <= MAX_RETRY_COUNT:
            errors.append(f"Retry count must be between 0 and {MAX_RETRY_COUNT}")
        return errors

    def ensure_valid(self) -> CheckConfig:
        errors = self.validate()
        if errors:
            raise ConfigValidationError("; ".join(errors))
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "timeout_ms": self.timeout_ms,
            "retry_count": self.retry_count,
            "severity": self.severity.value,
            "parameters": dict(self.parameters),
            "dependencies": [d.value for d in self.dependencies],
            "use_cache": self.use_cache,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CheckConfig:
        return cls(
            enabled=bool(data.get("enabled", True)),
            timeout_ms=int(data.get("timeout_ms", 30_000)),
            retry_count=int(data.get("retry_count", 1)),
            severity=Severity(data.get("severity", Severity.MEDIUM.value)),
            parameters=dict(data.get("parameters") or {}),
            dependencies=tuple(Category(d) for d in data.get("dependencies") or ()),
            use_cache=bool(data.get("use_cache", False)),
        )


@dataclass(frozen=True)
class RunOverrides:
    """Run-level settings that take precedence over stored category configs."""

    timeout_ms: int | None = None
    retry_count: int | None = None
    parallel: bool = False

    def validate(self) -> list[str]:
        errors: list[str] = []
        if self.timeout_ms is not None and not RUN_MIN_TIMEOUT_MS <= self.timeout_ms <= MAX_TIMEOUT_MS:
            errors.append(f"Timeout must be between {RUN_MIN_TIMEOUT_MS} and {MAX_TIMEOUT_MS} ms")
        if self.retry_count is not None and not 0 <= self.retry_count <= RUN_MAX_RETRY_COUNT:
            errors.append(f"Retry count must be between 0 and {RUN_MAX_RETRY_COUNT}")
        return errors


@dataclass(frozen=True)
class GlobalConfig:
    auto_run: bool = False
    interval_ms: int = 86_400_000
    notifications: bool = True
    email_reports: bool = False
    retention_days: int = 30

    def to_dict(self) -> dict[str, Any]:
        return {
            "auto_run": self.auto_run,
            "interval_ms": self.interval_ms,
            "notifications": self.notifications,
            "email_reports": self.email_reports,
            "retention_days": self.retention_days,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GlobalConfig:
        defaults = cls()
        return cls(
            auto_run=bool(data.get("auto_run", defaults.auto_run)),
            interval_ms=int(data.get("interval_ms", defaults.interval_ms)),
            notifications=bool(data.get("notifications", defaults.notifications)),
            email_reports=bool(data.get("email_reports", defaults.email_reports)),
            retention_days=int(data.get("retention_days", defaults.retention_days)),
        )


# ── Issues & recommendations ─────────────────────────────────────────────────


@dataclass(frozen=True)
class Resolution:
    steps: tuple[str, ...]
    difficulty: str = "medium"  # easy | medium | hard


@dataclass(frozen=True)
class Issue:
    id: str
    category: Category
    severity: Severity
    title: str
    description: str
    affected_checks: tuple[str, ...]
    impact: str
    root_cause: dict[str, str] | None = None  # {type, description}
    resolution: Resolution | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "category": self.category.value,
            "severity": self.severity.value,
            "title": self.title,
            "description": self.description,
            "affected_checks": list(self.affected_checks),
            "impact": self.impact,
            "root_cause": dict(self.root_cause) if self.root_cause else None,
            "resolution": (
                {"steps": list(self.resolution.steps), "difficulty": self.resolution.difficulty}
                if self.resolution else None
            ),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Issue:
        res = data.get("resolution")
        return cls(
            id=data["id"],
            category=Category(data["category"]),
            severity=Severity(data["severity"]),
            title=data.get("title", ""),
            description=data.get("description", ""),
            affected_checks=tuple(data.get("affected_checks") or ()),
            impact=data.get("impact", ""),
            root_cause=data.get("root_cause"),
            resolution=Resolution(tuple(res["steps"]), res.get("difficulty", "medium")) if res else None,
        )


@dataclass(frozen=True)
class Recommendation:
    id: str
    category: Category
    priority: str  # low | medium | high
    title: str
    description: str
    effort: str = "minimal"  # minimal | moderate | significant
    timeframe: str = "1-2 hours"
    benefits: tuple[str, ...] = ()
    related_issues: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "category": self.category.value,
            "priority": self.priority,
            "title": self.title,
            "description": self.description,
            "implementation": {"effort": self.effort, "timeframe": self.timeframe},
            "benefits": list(self.benefits),
            "related_issues": list(self.related_issues),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Recommendation:
        impl = data.get("implementation") or {}
        return cls(
            id=data["id"],
            category=Category(data["category"]),
            priority=data.get("priority", "medium"),
            title=data.get("title", ""),
            description=data.get("description", ""),
            effort=impl.get("effort", "minimal"),
            timeframe=impl.get("timeframe", "1-2 hours"),
            benefits=tuple(data.get("benefits") or ()),
            related_issues=tuple(data.get("related_issues") or ()),
        )


# ── Report ───────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Summary:
    total: int
    passed: int
    failed: int
    warnings: int
    skipped: int
    overall_status: Status
    score: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "passed": self.passed,
            "failed": self.failed,
            "warnings": self.warnings,
            "skipped": self.skipped,
            "overall_status": self.overall_status.value,
            "score": self.score,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Summary:
        return cls(
            total=int(data["total"]),
            passed=int(data.get("passed", 0)),
            failed=int(data.get("failed", 0)),
            warnings=int(data.get("warnings", 0)),
            skipped=int(data.get("skipped", 0)),
            overall_status=Status(data["overall_status"]),
            score=int(data.get("score", 0)),
        )


@dataclass(frozen=True)
class SystemInfo:
    platform: str
    python_version: str
    hostname: str
    language: str
    time_zone: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "platform": self.platform,
            "python_version": self.python_version,
            "hostname": self.hostname,
            "language": self.language,
            "time_zone": self.time_zone,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SystemInfo:
        return cls(
            platform=data.get("platform", ""),
            python_version=data.get("python_version", ""),
            hostname=data.get("hostname", ""),
            language=data.get("language", ""),
            time_zone=data.get("time_zone", ""),
        )


@dataclass(frozen=True)
class HealthCheckReport:
    """Immutable aggregate of one run."""

    id: str
    timestamp: datetime
    duration_ms: float
    summary: Summary
    results: tuple[CheckResult, ...]
    issues: tuple[Issue, ...]
    recommendations: tuple[Recommendation, ...]
    system_info: SystemInfo
    metadata: dict[str, str] = field(default_factory=dict)
    version: str = REPORT_VERSION

    def result_for(self, category: Category) -> CheckResult | None:
        for r in self.results:
            if r.category == category:
                return r
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "version": self.version,
            "timestamp": self.timestamp.isoformat(),
            "duration_ms": self.duration_ms,
            "summary": self.summary.to_dict(),
            "results": [r.to_dict() for r in self.results],
            "issues": [i.to_dict() for i in self.issues],
            "recommendations": [r.to_dict() for r in self.recommendations],
            "system_info": self.system_info.to_dict(),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HealthCheckReport:
        return cls(
            id=data["id"],
            version=data.get("version", REPORT_VERSION),
            timestamp=_parse_ts(data["timestamp"]),
            duration_ms=float(data.get("duration_ms", 0)),
            summary=Summary.from_dict(data["summary"]),
            results=tuple(CheckResult.from_dict(r) for r in data.get("results") or ()),
            issues=tuple(Issue.from_dict(i) for i in data.get("issues") or ()),
            recommendations=tuple(Recommendation.from_dict(r) for r in data.get("recommendations") or ()),
            system_info=SystemInfo.from_dict(data.get("system_info") or {}),
            metadata=dict(data.get("metadata") or {}),
        )
