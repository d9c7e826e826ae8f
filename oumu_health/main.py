"""Entry point for the Oumu health check engine."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

import uvicorn
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from oumu_health.config import settings
from oumu_health.health.analytics import AnalyticsEngine, last_days
from oumu_health.health.checks import build_default_registry
from oumu_health.health.defaults import HARD_DEFAULT, load_category_seeds
from oumu_health.health.models import Category, HealthCheckReport, RunOverrides, Status
from oumu_health.health.scheduler import HealthCheckScheduler, new_run_id
from oumu_health.storage.repository import SQLiteReportRepository

console = Console()
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)

STATUS_STYLES = {
    Status.PASSED: "green",
    Status.WARNING: "yellow",
    Status.FAILED: "red",
    Status.SKIPPED: "dim",
    Status.PENDING: "dim",
    Status.RUNNING: "cyan",
}


def _repository() -> SQLiteReportRepository:
    repo = SQLiteReportRepository(settings.db_path)
    repo.seed_check_configs(load_category_seeds(Path(settings.checks_file)))
    return repo


def run_server() -> None:
    """Start the FastAPI server."""
    console.print(Panel("Starting Oumu Health Check API", style="bold green"))
    uvicorn.run(
        "oumu_health.api.server:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )


def _print_report(report: HealthCheckReport) -> None:
    s = report.summary
    style = STATUS_STYLES.get(s.overall_status, "white")
    console.print(Panel(
        f"[{style}]{s.overall_status.value.upper()}[/{style}]  score {s.score}/100  "
        f"({s.passed} passed, {s.warnings} warnings, {s.failed} failed, {s.skipped} skipped)",
        title=f"Report {report.id}",
    ))

    table = Table(show_header=True, header_style="bold")
    table.add_column("Check")
    table.add_column("Status")
    table.add_column("Duration", justify="right")
    table.add_column("Message")
    for r in report.results:
        rs = STATUS_STYLES.get(r.status, "white")
        table.add_row(r.name, f"[{rs}]{r.status.value}[/{rs}]", f"{r.duration_ms:.0f}ms", r.message)
    console.print(table)

    for rec in report.recommendations:
        console.print(f"[dim]- {rec.description}[/dim]")


def run_checks(categories: list[str], overrides: RunOverrides) -> int:
    """Run checks in the foreground and print the report."""
    repo = _repository()
    registry = build_default_registry(
        settings.app_base_url,
        groq_api_url=settings.groq_api_url,
        groq_api_key=settings.groq_api_key or None,
    )
    scheduler = HealthCheckScheduler(
        repo,
        registry,
        retry_base_delay=settings.retry_base_delay_ms / 1000,
        environment=settings.environment,
        default_config=HARD_DEFAULT.merged(
            timeout_ms=settings.default_timeout_ms,
            retry_count=settings.default_retry_count,
        ),
    )
    selected = [Category(c) for c in categories] if categories else list(Category)

    with console.status("[bold green]Running health checks..."):
        report = asyncio.run(scheduler.execute(new_run_id(), selected, overrides))

    _print_report(report)
    return 1 if report.summary.overall_status == Status.FAILED else 0


def show_analytics(days: int) -> None:
    repo = _repository()
    window = last_days(days)
    reports = repo.get_check_reports_by_date_range(window.start, window.end)
    engine = AnalyticsEngine()
    metrics = engine.get_analytics(reports, window)
    reliability = engine.get_reliability_stats(reports, window)

    console.print(Panel(
        f"{metrics.report_count} reports over {days}d\n"
        f"Trend: {metrics.overall_trend} ({metrics.overall_trend_percentage:+.1f}%)\n"
        f"Average score: {metrics.average_score:.1f}  success rate: {metrics.success_rate:.1f}%\n"
        f"Uptime: {reliability.uptime_percentage:.1f}%  incidents: {reliability.incident_count}",
        title="Health Analytics",
        style="bold blue",
    ))

    table = Table(show_header=True, header_style="bold")
    table.add_column("Category")
    table.add_column("Trend")
    table.add_column("Success", justify="right")
    for t in metrics.category_trends:
        table.add_row(t.category.value, t.trend, f"{t.success_rate:.0f}%")
    console.print(table)

    for rec in engine.get_recommendations(reports, window):
        console.print(f"[bold]{rec.priority}[/bold] {rec.message}")


def run_cleanup(retention_days: int) -> None:
    counts = _repository().cleanup_old_data(retention_days)
    console.print(
        f"Removed {counts['deleted_reports']} reports and {counts['deleted_results']} results "
        f"older than {retention_days} days"
    )


def main() -> None:
    parser = argparse.ArgumentParser(description="Oumu Health Check Engine")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("serve", help="Start the API server")

    run_parser = sub.add_parser("run", help="Run health checks now")
    run_parser.add_argument(
        "categories", nargs="*", metavar="CATEGORY",
        help=f"Categories to check (default: all): {', '.join(c.value for c in Category)}",
    )
    run_parser.add_argument("--parallel", action="store_true", help="Run categories concurrently")
    run_parser.add_argument("--timeout-ms", type=int, default=None)
    run_parser.add_argument("--retries", type=int, default=None)

    analytics_parser = sub.add_parser("analytics", help="Show trend analytics")
    analytics_parser.add_argument("--days", type=int, default=7)

    cleanup_parser = sub.add_parser("cleanup", help="Delete old reports and results")
    cleanup_parser.add_argument("--retention-days", type=int, default=settings.retention_days)

    args = parser.parse_args()

    if args.command == "serve":
        run_server()
    elif args.command == "run":
        unknown = [c for c in args.categories if c not in {cat.value for cat in Category}]
        if unknown:
            parser.error(f"unknown categories: {', '.join(unknown)}")
        overrides = RunOverrides(timeout_ms=args.timeout_ms, retry_count=args.retries, parallel=args.parallel)
        errors = overrides.validate()
        if errors:
            parser.error("; ".join(errors))
        sys.exit(run_checks(args.categories, overrides))
    elif args.command == "analytics":
        show_analytics(args.days)
    elif args.command == "cleanup":
        run_cleanup(args.retention_days)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
