"""API routes for the health check engine.

Endpoints (all under /api/health-check):
  POST   /run                        start a run, returns run id + estimate
  GET    /status/{run_id}            poll a run (falls back to the stored report)
  GET    /stream/{run_id}            SSE stream of progress events
  GET    /reports                    report history (paged, filterable)
  GET    /reports/latest             most recent report
  GET    /reports/{report_id}        one report
  GET    /results                    results by category / status / severity
  GET    /results/{result_id}        one result
  GET    /config                     category + global config
  PUT    /config                     update category and/or global config
  GET    /analytics                  trend analytics over the last N days
  GET    /analytics/recommendations  threshold recommendations
  GET    /analytics/reliability      uptime / MTBF / recovery stats
  GET    /statistics                 aggregate counts
  POST   /cleanup                    prune old history
  GET    /export                     JSON bundle of history + configs
  POST   /import                     load a JSON bundle
  GET    /cache, DELETE /cache       inspect / clear the result cache
  GET    /autofix                    fixable issues in a report
  GET    /autofix/recurring          issues repeated across recent reports
  GET    /autofix/history            outcomes of applied fixes
  POST   /autofix/{issue_id}/apply   apply an issue's fix
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import Response, StreamingResponse
from pydantic import BaseModel, Field

from oumu_health.health.analytics import AnalyticsEngine, TimeRange, last_days
from oumu_health.health.autofix import RECURRING_MIN_OCCURRENCES, AutoFixEngine
from oumu_health.health.cache import ResultCache
from oumu_health.health.defaults import DEFAULT_CHECK_CONFIGS, DEFAULT_GLOBAL_CONFIG, HARD_DEFAULT
from oumu_health.health.models import (
    MAX_TIMEOUT_MS,
    RUN_MAX_RETRY_COUNT,
    RUN_MIN_TIMEOUT_MS,
    Category,
    CheckConfig,
    GlobalConfig,
    HealthCheckReport,
    RunOverrides,
    Severity,
    Status,
    utcnow,
)
from oumu_health.health.scheduler import HealthCheckScheduler
from oumu_health.storage.repository import SQLiteReportRepository

logger = logging.getLogger(__name__)

health_check_router = APIRouter(prefix="/health-check", tags=["health-check"])

SSE_KEEPALIVE_SECONDS = 15


# ── Request models ───────────────────────────────────────────────────────

class RunConfigBody(BaseModel):
    timeout_ms: int | None = Field(default=None, ge=RUN_MIN_TIMEOUT_MS, le=MAX_TIMEOUT_MS)
    retry_count: int | None = Field(default=None, ge=0, le=RUN_MAX_RETRY_COUNT)
    parallel: bool = False


class RunBody(BaseModel):
    categories: list[Category] | None = None
    config: RunConfigBody | None = None


class CategoryConfigBody(BaseModel):
    enabled: bool | None = None
    timeout_ms: int | None = None
    retry_count: int | None = None
    severity: Severity | None = None
    parameters: dict[str, Any] | None = None
    dependencies: list[Category] | None = None
    use_cache: bool | None = None


class GlobalConfigBody(BaseModel):
    auto_run: bool | None = None
    interval_ms: int | None = Field(default=None, ge=60_000)
    notifications: bool | None = None
    email_reports: bool | None = None
    retention_days: int | None = Field(default=None, ge=1, le=365)


class ConfigBody(BaseModel):
    categories: dict[Category, CategoryConfigBody] | None = None
    global_config: GlobalConfigBody | None = Field(default=None, alias="global")


class CleanupBody(BaseModel):
    retention_days: int | None = Field(default=None, ge=1, le=365)


class ApplyFixBody(BaseModel):
    report_id: str | None = None


# ── Helpers ──────────────────────────────────────────────────────────────

def _get_repository(request: Request) -> SQLiteReportRepository:
    return request.app.state.repository  # type: ignore[no-any-return]


def _get_scheduler(request: Request) -> HealthCheckScheduler:
    return request.app.state.scheduler  # type: ignore[no-any-return]


def _get_analytics(request: Request) -> AnalyticsEngine:
    return getattr(request.app.state, "analytics", None) or AnalyticsEngine()


def _get_cache(request: Request) -> ResultCache | None:
    return getattr(request.app.state, "cache", None)


def _get_autofix(request: Request) -> AutoFixEngine:
    engine = getattr(request.app.state, "autofix", None)
    if engine is None:
        engine = AutoFixEngine(getattr(request.app.state, "seeds", None) or DEFAULT_CHECK_CONFIGS)
        request.app.state.autofix = engine
    return engine


def _seed_for(request: Request, category: Category) -> CheckConfig:
    seeds = getattr(request.app.state, "seeds", None) or DEFAULT_CHECK_CONFIGS
    return seeds.get(category, HARD_DEFAULT)


def _window_reports(request: Request, days: int) -> tuple[TimeRange, list[HealthCheckReport]]:
    window = last_days(days)
    reports = _get_repository(request).get_check_reports_by_date_range(window.start, window.end)
    return window, reports


def _as_utc(dt: datetime) -> datetime:
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt


def _sse(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


# ── Runs ─────────────────────────────────────────────────────────────────

@health_check_router.post("/run")
async def start_run(body: RunBody, request: Request) -> dict[str, Any]:
    """Kick off a run in the background."""
    scheduler = _get_scheduler(request)
    cfg = body.config or RunConfigBody()
    overrides = RunOverrides(
        timeout_ms=cfg.timeout_ms,
        retry_count=cfg.retry_count,
        parallel=cfg.parallel,
    )
    handle = scheduler.run(body.categories, overrides)
    return handle.to_dict()


@health_check_router.get("/status/{run_id}")
def run_status(run_id: str, request: Request) -> dict[str, Any]:
    job = _get_scheduler(request).get_job(run_id)
    if job is not None:
        return job.snapshot()

    report = _get_repository(request).get_check_report(run_id)
    if report is None:
        raise HTTPException(status_code=404, detail=f"Run not found: {run_id}")
    return {
        "run_id": run_id,
        "state": "completed",
        "total": report.summary.total,
        "completed": report.summary.total,
        "percentage": 100.0,
        "report_id": report.id,
        "summary": report.summary.to_dict(),
    }


@health_check_router.get("/stream/{run_id}")
async def run_stream(run_id: str, request: Request) -> StreamingResponse:
    """Server-Sent Events stream of a run's progress."""
    job = _get_scheduler(request).get_job(run_id)
    if job is None:
        report = await run_in_threadpool(_get_repository(request).get_check_report, run_id)
        if report is None:
            raise HTTPException(status_code=404, detail=f"Run not found: {run_id}")
        final = {"event": "complete", "run_id": run_id, "state": "completed", "report_id": report.id}

        async def replay():
            yield _sse("complete", final)

        return StreamingResponse(replay(), media_type="text/event-stream")

    queue = job.subscribe()

    async def event_generator():
        try:
            yield _sse("init", job.snapshot())
            if job.done:
                yield _sse("complete", job.snapshot() | {"event": "complete"})
                return
            while True:
                if await request.is_disconnected():
                    break
                try:
                    data = await asyncio.wait_for(queue.get(), timeout=SSE_KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield _sse(data.get("event", "progress"), data)
                if data.get("event") == "complete":
                    break
        finally:
            job.unsubscribe(queue)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


# ── Reports & results ────────────────────────────────────────────────────

@health_check_router.get("/reports")
def list_reports(
    request: Request,
    limit: int = Query(default=10, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    status: Status | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
) -> dict[str, Any]:
    """Report history, newest first."""
    repo = _get_repository(request)
    if date_from or date_to:
        start = _as_utc(date_from) if date_from else datetime(1970, 1, 1, tzinfo=timezone.utc)
        end = _as_utc(date_to) if date_to else utcnow()
        if start > end:
            raise HTTPException(status_code=400, detail="date_from must be before date_to")
        reports = repo.get_check_reports_by_date_range(start, end)
        reports.reverse()
        if status:
            reports = [r for r in reports if r.summary.overall_status == status]
        reports = reports[offset:offset + limit]
    elif status:
        reports = repo.get_check_reports_by_status(status, limit + offset)[offset:]
    else:
        reports = repo.get_check_reports(limit, offset)

    return {
        "reports": [r.to_dict() for r in reports],
        "count": len(reports),
        "limit": limit,
        "offset": offset,
    }


@health_check_router.get("/reports/latest")
def latest_report(request: Request) -> dict[str, Any]:
    report = _get_repository(request).get_latest_check_report()
    if report is None:
        raise HTTPException(status_code=404, detail="No reports yet")
    return report.to_dict()


@health_check_router.get("/reports/{report_id}")
def get_report(report_id: str, request: Request) -> dict[str, Any]:
    report = _get_repository(request).get_check_report(report_id)
    if report is None:
        raise HTTPException(status_code=404, detail=f"Report not found: {report_id}")
    return report.to_dict()


@health_check_router.get("/results")
def list_results(
    request: Request,
    category: Category | None = None,
    status: Status | None = None,
    severity: Severity | None = None,
    limit: int = Query(default=50, ge=1, le=500),
) -> dict[str, Any]:
    """Results filtered by any combination of category, status and severity."""
    repo = _get_repository(request)
    if category:
        results = repo.get_check_results_by_category(category, limit)
    elif status:
        results = repo.get_check_results_by_status(status, limit)
    elif severity:
        results = repo.get_check_results_by_severity(severity, limit)
    else:
        results = repo.get_recent_check_results(limit)

    if status:
        results = [r for r in results if r.status == status]
    if severity:
        results = [r for r in results if r.severity == severity]
    return {"results": [r.to_dict() for r in results], "count": len(results)}


@health_check_router.get("/results/{result_id}")
def get_result(result_id: str, request: Request) -> dict[str, Any]:
    result = _get_repository(request).get_check_result(result_id)
    if result is None:
        raise HTTPException(status_code=404, detail=f"Result not found: {result_id}")
    return result.to_dict()


# ── Configuration ────────────────────────────────────────────────────────

@health_check_router.get("/config")
def get_config(request: Request) -> dict[str, Any]:
    repo = _get_repository(request)
    stored = repo.get_all_check_configs()
    categories = {
        c.value: (stored.get(c) or _seed_for(request, c)).to_dict()
        for c in Category
    }
    global_config = repo.get_global_config() or DEFAULT_GLOBAL_CONFIG
    return {"categories": categories, "global": global_config.to_dict()}


@health_check_router.put("/config")
def update_config(body: ConfigBody, request: Request) -> dict[str, Any]:
    """Partially update category configs and/or the global config."""
    repo = _get_repository(request)

    updated: dict[Category, CheckConfig] = {}
    errors: dict[str, list[str]] = {}
    for category, patch in (body.categories or {}).items():
        current = repo.get_check_config(category) or _seed_for(request, category)
        changes = patch.model_dump(exclude_none=True)
        if "dependencies" in changes:
            changes["dependencies"] = tuple(changes["dependencies"])
        config = current.merged(**changes)
        problems = config.validate()
        if problems:
            errors[category.value] = problems
        updated[category] = config
    if errors:
        raise HTTPException(status_code=400, detail={"errors": errors})

    for category, config in updated.items():
        repo.save_check_config(category, config)

    if body.global_config is not None:
        current_global = repo.get_global_config() or DEFAULT_GLOBAL_CONFIG
        merged = current_global.to_dict() | body.global_config.model_dump(exclude_none=True)
        repo.save_global_config(GlobalConfig.from_dict(merged))

    logger.info(
        "Config updated: %d categories%s",
        len(updated), ", global" if body.global_config is not None else "",
    )
    return get_config(request)


# ── Analytics ────────────────────────────────────────────────────────────

@health_check_router.get("/analytics")
def get_analytics(request: Request, days: int = Query(default=7, ge=1, le=365)) -> dict[str, Any]:
    window, reports = _window_reports(request, days)
    engine = _get_analytics(request)
    return {
        "window": {"start": window.start.isoformat(), "end": window.end.isoformat(), "days": days},
        "metrics": engine.get_analytics(reports, window).to_dict(),
        "trend": [p.to_dict() for p in engine.get_trend_data(reports, window)],
        "performance": engine.get_performance_metrics(reports, window),
        "categories": [p.to_dict() for p in engine.get_category_performance(reports, window)],
    }


@health_check_router.get("/analytics/recommendations")
def get_trend_recommendations(
    request: Request, days: int = Query(default=7, ge=1, le=365),
) -> dict[str, Any]:
    window, reports = _window_reports(request, days)
    recs = _get_analytics(request).get_recommendations(reports, window)
    return {"recommendations": [r.to_dict() for r in recs], "count": len(recs)}


@health_check_router.get("/analytics/reliability")
def get_reliability(request: Request, days: int = Query(default=7, ge=1, le=365)) -> dict[str, Any]:
    window, reports = _window_reports(request, days)
    return _get_analytics(request).get_reliability_stats(reports, window).to_dict()


@health_check_router.get("/statistics")
def get_statistics(request: Request, days: int = Query(default=30, ge=1, le=365)) -> dict[str, Any]:
    return _get_repository(request).get_check_result_statistics(days)


# ── Maintenance ──────────────────────────────────────────────────────────

@health_check_router.post("/cleanup")
def cleanup(request: Request, body: CleanupBody | None = None) -> dict[str, Any]:
    repo = _get_repository(request)
    retention = body.retention_days if body and body.retention_days else None
    if retention is None:
        retention = (repo.get_global_config() or DEFAULT_GLOBAL_CONFIG).retention_days
    return {"retention_days": retention, **repo.cleanup_old_data(retention)}


@health_check_router.get("/export")
def export_data(request: Request) -> Response:
    payload = _get_repository(request).export_data()
    filename = f"health-check-export-{utcnow():%Y%m%d-%H%M%S}.json"
    return Response(
        content=payload,
        media_type="application/json",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@health_check_router.post("/import")
async def import_data(request: Request) -> dict[str, Any]:
    blob = await request.body()
    try:
        counts = await run_in_threadpool(_get_repository(request).import_data, blob)
    except (ValueError, KeyError, TypeError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid import bundle: {e}")
    logger.info("Imported health check data: %s", counts)
    return counts


@health_check_router.get("/cache")
def cache_stats(request: Request) -> dict[str, Any]:
    cache = _get_cache(request)
    if cache is None:
        return {"enabled": False, "size": 0, "entries": []}
    return {"enabled": True, **cache.stats()}


@health_check_router.delete("/cache")
def clear_cache(request: Request) -> dict[str, Any]:
    cache = _get_cache(request)
    if cache is None:
        return {"cleared": 0}
    size = len(cache)
    cache.clear()
    return {"cleared": size}


# ── Auto-fix ─────────────────────────────────────────────────────────────

def _report_or_latest(request: Request, report_id: str | None) -> HealthCheckReport:
    repo = _get_repository(request)
    report = repo.get_check_report(report_id) if report_id else repo.get_latest_check_report()
    if report is None:
        raise HTTPException(status_code=404, detail=f"Report not found: {report_id or 'latest'}")
    return report


@health_check_router.get("/autofix")
def autofix_issues(request: Request, report_id: str | None = None) -> dict[str, Any]:
    """Fixable issues found in a report (the latest by default)."""
    report = _report_or_latest(request, report_id)
    engine = _get_autofix(request)
    issues = engine.suggestions(engine.analyze_report(report))
    return {
        "report_id": report.id,
        "issues": [i.to_dict() for i in issues],
        "count": len(issues),
        "auto_fixable": sum(1 for i in issues if i.can_auto_fix),
    }


@health_check_router.get("/autofix/recurring")
def autofix_recurring(
    request: Request,
    days: int = Query(default=30, ge=1, le=365),
    min_occurrences: int = Query(default=RECURRING_MIN_OCCURRENCES, ge=2, le=100),
) -> dict[str, Any]:
    window, reports = _window_reports(request, days)
    engine = _get_autofix(request)
    return {
        "window": {"start": window.start.isoformat(), "end": window.end.isoformat(), "days": days},
        "recurring": [i.to_dict() for i in engine.recurring_issues(reports, min_occurrences)],
        "prevention": [i.to_dict() for i in engine.prevention_recommendations(reports, min_occurrences)],
    }


@health_check_router.get("/autofix/history")
def autofix_history(request: Request) -> dict[str, Any]:
    outcomes = _get_autofix(request).fix_results()
    return {"results": [o.to_dict() for o in outcomes], "count": len(outcomes)}


@health_check_router.post("/autofix/{issue_id}/apply")
async def apply_autofix(issue_id: str, request: Request, body: ApplyFixBody | None = None) -> dict[str, Any]:
    report = await run_in_threadpool(_report_or_latest, request, body.report_id if body else None)
    engine = _get_autofix(request)
    issue = next((i for i in engine.analyze_report(report) if i.id == issue_id), None)
    if issue is None:
        raise HTTPException(status_code=404, detail=f"Issue not found in report {report.id}: {issue_id}")
    outcome = engine.apply(
        issue,
        _get_repository(request),
        scheduler=_get_scheduler(request),
        cache=_get_cache(request),
    )
    return outcome.to_dict()
