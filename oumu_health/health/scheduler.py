"""Health check scheduler: runs categorized checks and persists the report.

``run()`` returns a RunHandle immediately and executes the checks as an
asyncio task; progress goes to the run's Job (poll or subscribe) and to the
optional ``on_progress`` callback. Every category is bounded by a timeout and
a retry budget, and a failing category never aborts the run.

Known gap: a timed-out attempt is abandoned, not killed. Its task is
cancelled but never awaited, so a check that ignores cancellation (or work it
pushed into a thread that does not poll its CancelToken) keeps running in the
background after the category has been recorded as failed.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import math
import time
import traceback
import uuid
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

from .autofix import has_known_fix
from .cache import ResultCache, cache_key
from .defaults import HARD_DEFAULT, resolve_config
from .errors import CacheError, CheckExecutionError, CheckTimeoutError, OrchestrationError
from .jobs import Job, JobTracker, ProgressEvent
from .models import (
    TERMINAL_STATUSES,
    Category,
    CheckConfig,
    CheckError,
    CheckResult,
    HealthCheckReport,
    RunOverrides,
    Severity,
    Status,
    make_result,
    new_result_id,
    utcnow,
)
from .registry import CancelToken, CheckFunction, CheckRegistry
from .report import build_failed_report, build_report

if TYPE_CHECKING:
    from oumu_health.storage.repository import ReportRepository

logger = logging.getLogger(__name__)

ESTIMATED_SECONDS_PER_CHECK = 30
PARALLEL_SPEEDUP = 3

FAILURE_SUGGESTIONS = (
    "Check system configuration",
    "Verify dependencies are available",
    "Review error logs for details",
)


@dataclass(frozen=True)
class RunHandle:
    run_id: str
    estimated_duration_seconds: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": "started",
            "estimated_duration_seconds": self.estimated_duration_seconds,
        }


def new_run_id() -> str:
    return f"check-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


def estimate_duration(count: int, overrides: RunOverrides | None = None) -> int:
    """Rough wall-clock estimate in whole seconds."""
    seconds: float = count * ESTIMATED_SECONDS_PER_CHECK
    if overrides and overrides.parallel:
        seconds /= PARALLEL_SPEEDUP
    if overrides and overrides.timeout_ms:
        seconds = min(seconds, overrides.timeout_ms / 1000)
    return math.ceil(seconds)


class HealthCheckScheduler:
    """Executes check runs against a registry and persists their reports."""

    def __init__(
        self,
        repository: ReportRepository,
        registry: CheckRegistry,
        cache: ResultCache | None = None,
        on_progress: Callable[[ProgressEvent], Any] | None = None,
        retry_base_delay: float = 1.0,
        cache_ttl: float | None = None,
        environment: str = "production",
        jobs: JobTracker | None = None,
        default_config: CheckConfig = HARD_DEFAULT,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.cache = cache
        self.on_progress = on_progress
        self.retry_base_delay = retry_base_delay
        self.cache_ttl = cache_ttl
        self.environment = environment
        self.jobs = jobs or JobTracker()
        self.default_config = default_config
        self._tasks: set[asyncio.Task[HealthCheckReport]] = set()

    # ── Triggering ───────────────────────────────────────────────────────

    def run(
        self,
        categories: Sequence[Category] | None = None,
        overrides: RunOverrides | None = None,
    ) -> RunHandle:
        """Start a run in the background and return its handle.

        Must be called with a running event loop.
        """
        selected = list(dict.fromkeys(categories if categories is not None else Category))
        overrides = overrides or RunOverrides()
        run_id = new_run_id()
        self.jobs.create(run_id, selected)

        task = asyncio.get_running_loop().create_task(
            self.execute(run_id, selected, overrides),
            name=f"health-run-{run_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(functools.partial(self._on_task_done, run_id))

        logger.info("Health check run %s started: %d categories", run_id, len(selected))
        return RunHandle(run_id, estimate_duration(len(selected), overrides))

    def _on_task_done(self, run_id: str, task: asyncio.Task[HealthCheckReport]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            job = self.jobs.get(run_id)
            if job and not job.done:
                job.fail("Run cancelled")
            logger.warning("Health check run %s cancelled", run_id)
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "Health check run %s could not be persisted: %s", run_id, error,
                exc_info=(type(error), error, error.__traceback__),
            )

    def get_job(self, run_id: str) -> Job | None:
        return self.jobs.get(run_id)

    async def wait(self) -> None:
        """Wait for every in-flight run to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def stop(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.wait()
        logger.info("Health check scheduler stopped")

    # ── Execution ────────────────────────────────────────────────────────

    async def execute(
        self,
        run_id: str,
        categories: Sequence[Category],
        overrides: RunOverrides | None = None,
    ) -> HealthCheckReport:
        """Run the checks, build the report and persist it.

        Orchestration failures still produce and persist a best-effort
        report. Only a failure to persist that report escapes.
        """
        overrides = overrides or RunOverrides()
        job = self.jobs.get(run_id) or self.jobs.create(run_id, list(categories))
        job.start()
        started_at = utcnow()
        collected: dict[int, CheckResult] = {}

        try:
            configs = await self._resolve_configs(categories, overrides)
            if overrides.parallel:
                await self._run_parallel(job, categories, configs, collected)
            else:
                await self._run_sequential(job, categories, configs, collected)
            results = [collected[i] for i in range(len(categories))]
            report = build_report(run_id, results, started_at, self.environment)
            await self._persist(report)
        except Exception as e:
            logger.exception("Health check run %s failed", run_id)
            partial = [collected[i] for i in sorted(collected)]
            report = build_failed_report(run_id, e, started_at, partial, self.environment)
            try:
                await self._persist(report)
            except Exception as persist_error:
                job.fail(str(persist_error))
                raise
            job.fail(str(e), report_id=report.id)
            return report

        job.complete(report.id)
        logger.info(
            "Health check run %s finished: %s (score %d, %.0fms)",
            run_id, report.summary.overall_status.value, report.summary.score, report.duration_ms,
        )
        return report

    async def _resolve_configs(
        self,
        categories: Sequence[Category],
        overrides: RunOverrides,
    ) -> dict[Category, CheckConfig]:
        loop = asyncio.get_running_loop()

        def load() -> dict[Category, CheckConfig]:
            return {
                c: resolve_config(self.repository.get_check_config(c), overrides, self.default_config)
                for c in categories
            }

        try:
            return await loop.run_in_executor(None, load)
        except Exception as e:
            raise OrchestrationError(f"Config resolution failed: {e}") from e

    async def _persist(self, report: HealthCheckReport) -> None:
        loop = asyncio.get_running_loop()

        def save() -> None:
            self.repository.save_check_report(report)
            for result in report.results:
                self.repository.save_check_result(result, report.id)

        await loop.run_in_executor(None, save)

    async def _run_parallel(
        self,
        job: Job,
        categories: Sequence[Category],
        configs: dict[Category, CheckConfig],
        collected: dict[int, CheckResult],
    ) -> None:
        async def one(index: int, category: Category) -> None:
            result = await self._run_category(category, configs[category])
            collected[index] = result
            self._publish(job, result, len(collected), None)

        await asyncio.gather(*(one(i, c) for i, c in enumerate(categories)))

    async def _run_sequential(
        self,
        job: Job,
        categories: Sequence[Category],
        configs: dict[Category, CheckConfig],
        collected: dict[int, CheckResult],
    ) -> None:
        statuses: dict[Category, Status] = {}
        started = time.monotonic()

        for index, category in enumerate(categories):
            config = configs[category]
            blocked_by = next(
                (d for d in config.dependencies if statuses.get(d) == Status.FAILED), None,
            )
            if blocked_by is not None:
                result = make_result(
                    category, Status.SKIPPED,
                    f"Skipped: dependency {blocked_by.value} failed",
                    details={"blocked_by": blocked_by.value},
                )
            else:
                result = await self._run_category(category, config)

            collected[index] = result
            statuses[category] = result.status

            done = index + 1
            avg_ms = (time.monotonic() - started) * 1000 / done
            self._publish(job, result, done, avg_ms * (len(categories) - done))

    def _publish(
        self,
        job: Job,
        result: CheckResult,
        completed: int,
        eta_ms: float | None,
    ) -> None:
        event = ProgressEvent(
            run_id=job.run_id,
            category=result.category,
            name=result.name,
            status=result.status,
            percentage=completed / job.total * 100 if job.total else 100.0,
            completed=completed,
            total=job.total,
            estimated_time_remaining_ms=round(eta_ms) if eta_ms is not None else None,
        )
        job.publish(event)
        logger.debug(
            "Run %s: %s %s (%d/%d)",
            job.run_id, result.category.value, result.status.value, completed, job.total,
        )
        if self.on_progress:
            try:
                self.on_progress(event)
            except Exception:
                logger.exception("Progress callback error")

    # ── Single category ──────────────────────────────────────────────────

    async def _run_category(self, category: Category, config: CheckConfig) -> CheckResult:
        if not config.enabled:
            return make_result(category, Status.SKIPPED, "Check disabled in configuration")

        fn = self.registry.get(category)
        if fn is None:
            return make_result(
                category, Status.FAILED,
                f"No check registered for {category.value}",
                error=CheckError(
                    code="CHECK_NOT_IMPLEMENTED",
                    message=f"No check registered for {category.value}",
                ),
            )

        key = cache_key(category, config) if self.cache is not None and config.use_cache else None
        if key is not None:
            hit = self._cache_get(key)
            if hit is not None:
                logger.debug("Cache hit for %s", category.value)
                return replace(hit, id=new_result_id(category), timestamp=utcnow())

        result, from_check = await self._execute_single(category, fn, config)
        if key is not None and from_check:
            self._cache_set(key, result)
        return result

    async def _execute_single(
        self,
        category: Category,
        fn: CheckFunction,
        config: CheckConfig,
    ) -> tuple[CheckResult, bool]:
        """Run one category under timeout and retry.

        Returns the outcome and whether it came from the check function
        itself (as opposed to a synthesized failure).
        """
        attempts = config.retry_count + 1
        timeout = config.timeout_ms / 1000
        started = time.monotonic()
        last_result: CheckResult | None = None
        last_error: BaseException | None = None

        for attempt in range(attempts):
            token = CancelToken()
            try:
                result = await self._race(category, fn(config, token), token, timeout, config.timeout_ms)
                if result.status not in TERMINAL_STATUSES:
                    raise CheckExecutionError(
                        f"Check returned non-terminal status {result.status.value}",
                        code="INVALID_STATUS",
                    )
            except CheckTimeoutError as e:
                last_result, last_error = None, e
            except Exception as e:
                token.cancel("error")
                last_result, last_error = None, e
            else:
                if result.status != Status.FAILED:
                    return result, True
                last_result, last_error = result, None

            reason = last_error if last_error is not None else last_result.message
            logger.warning(
                "Check %s attempt %d/%d failed: %s", category.value, attempt + 1, attempts, reason,
            )
            if attempt < attempts - 1:
                await asyncio.sleep(self.retry_base_delay * (attempt + 1))

        if last_result is not None:
            return last_result, True
        duration_ms = (time.monotonic() - started) * 1000
        return _failure_result(category, last_error, duration_ms), False

    async def _race(
        self,
        category: Category,
        attempt: Awaitable[CheckResult],
        token: CancelToken,
        timeout: float,
        timeout_ms: int,
    ) -> CheckResult:
        """Wait for one attempt until it settles or ``timeout`` elapses.

        On timeout the attempt is cancelled but not awaited, so a check that
        swallows cancellation cannot hold up the run. The abandoned task
        finishes on its own and its outcome is only logged.
        """
        task = asyncio.ensure_future(attempt)
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout)
        except asyncio.CancelledError:
            token.cancel("run stopped")
            task.cancel()
            raise
        if task in done:
            return task.result()
        token.cancel("timeout")
        task.cancel()
        task.add_done_callback(functools.partial(_log_abandoned, category))
        raise CheckTimeoutError(timeout_ms)

    def _cache_get(self, key: str) -> CheckResult | None:
        try:
            return self.cache.get(key)
        except Exception as e:
            logger.warning("Cache read failed for %s, treating as miss: %s", key, CacheError(str(e)))
            return None

    def _cache_set(self, key: str, result: CheckResult) -> None:
        try:
            self.cache.set(key, result, self.cache_ttl)
        except Exception as e:
            logger.warning("Cache write failed for %s: %s", key, CacheError(str(e)))


def _log_abandoned(category: Category, task: asyncio.Future) -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.debug("Abandoned %s attempt ended with %r", category.value, error)
    else:
        logger.debug("Abandoned %s attempt finished after its timeout", category.value)


def _failure_result(category: Category, error: BaseException | None, duration_ms: float) -> CheckResult:
    message = str(error) if error is not None else "unknown error"
    code = error.code if isinstance(error, CheckExecutionError) else "CHECK_EXECUTION_FAILED"
    stack = (
        "".join(traceback.format_exception(type(error), error, error.__traceback__))
        if error is not None else None
    )
    return make_result(
        category, Status.FAILED,
        f"Check failed: {message}",
        duration_ms=duration_ms,
        severity=Severity.HIGH,
        error=CheckError(code=code, message=message, stack=stack),
        suggestions=FAILURE_SUGGESTIONS,
        auto_fix_available=has_known_fix(code),
    )
