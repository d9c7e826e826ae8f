"""Tests for the health check scheduler: retries, timeouts, ordering, persistence."""

from __future__ import annotations

import asyncio
import time

import pytest

from oumu_health.health.cache import ResultCache
from oumu_health.health.errors import CheckExecutionError, RepositoryError
from oumu_health.health.jobs import JobState
from oumu_health.health.models import Category, CheckConfig, RunOverrides, Status, make_result
from oumu_health.health.scheduler import HealthCheckScheduler, estimate_duration, new_run_id
from oumu_health.storage.repository import SQLiteReportRepository

API = Category.API_CONNECTIVITY
PERF = Category.PERFORMANCE
SEC = Category.SECURITY


class BrokenConfigRepository(SQLiteReportRepository):
    def get_check_config(self, category):
        raise RuntimeError("config store unavailable")


class ReadOnlyRepository(SQLiteReportRepository):
    def save_check_report(self, report):
        raise RepositoryError("disk full")


class StubbornCheck:
    """Check that keeps running through cancellation until released."""

    def __init__(self) -> None:
        self.calls = 0
        self.finished = 0
        self.released = False

    async def __call__(self, config, token):
        self.calls += 1
        while not self.released:
            try:
                await asyncio.sleep(0.01)
            except asyncio.CancelledError:
                pass
        self.finished += 1
        return make_result(PERF, Status.PASSED, "late")


# ── Retry & timeout ──────────────────────────────────────────────────────────


class TestRetries:
    @pytest.mark.asyncio
    async def test_failing_category_does_not_abort_run(self, scheduler, registry, fake_check) -> None:
        a = fake_check(API)
        b = fake_check(PERF, error=RuntimeError("boom"))
        registry.register(API, a)
        registry.register(PERF, b)

        report = await scheduler.execute(new_run_id(), [API, PERF], RunOverrides(retry_count=2))

        assert a.calls == 1
        assert b.calls == 3
        s = report.summary
        assert (s.total, s.passed, s.failed) == (2, 1, 1)
        assert s.overall_status == Status.FAILED
        failed = report.result_for(PERF)
        assert failed.message == "Check failed: boom"
        assert failed.error.code == "CHECK_EXECUTION_FAILED"
        assert failed.suggestions

    @pytest.mark.asyncio
    @pytest.mark.parametrize("retries", [0, 1, 4])
    async def test_attempts_are_retry_count_plus_one(self, scheduler, registry, fake_check, retries) -> None:
        check = fake_check(PERF, error=RuntimeError("nope"))
        registry.register(PERF, check)
        await scheduler.execute(new_run_id(), [PERF], RunOverrides(retry_count=retries))
        assert check.calls == retries + 1

    @pytest.mark.asyncio
    async def test_failed_result_is_retried_then_kept(self, scheduler, registry, fake_check) -> None:
        check = fake_check(PERF, status=Status.FAILED)
        registry.register(PERF, check)
        report = await scheduler.execute(new_run_id(), [PERF], RunOverrides(retry_count=1))
        assert check.calls == 2
        assert report.result_for(PERF).message == "performance failed"

    @pytest.mark.asyncio
    async def test_warning_is_not_retried(self, scheduler, registry, fake_check) -> None:
        check = fake_check(PERF, status=Status.WARNING)
        registry.register(PERF, check)
        await scheduler.execute(new_run_id(), [PERF], RunOverrides(retry_count=3))
        assert check.calls == 1

    @pytest.mark.asyncio
    async def test_error_code_is_kept(self, scheduler, registry, fake_check) -> None:
        registry.register(PERF, fake_check(PERF, error=CheckExecutionError("bad key", code="AUTH_FAILED")))
        report = await scheduler.execute(new_run_id(), [PERF], RunOverrides(retry_count=0))
        assert report.result_for(PERF).error.code == "AUTH_FAILED"

    @pytest.mark.asyncio
    async def test_non_terminal_status_is_a_failure(self, scheduler, registry, fake_check) -> None:
        check = fake_check(PERF, status=Status.RUNNING)
        registry.register(PERF, check)
        report = await scheduler.execute(new_run_id(), [PERF], RunOverrides(retry_count=1))
        assert check.calls == 2
        assert report.result_for(PERF).error.code == "INVALID_STATUS"

    @pytest.mark.asyncio
    async def test_timeout_fails_category_and_cancels_token(self, scheduler, registry, fake_check) -> None:
        check = fake_check(PERF, delay=10)
        registry.register(PERF, check)

        started = time.monotonic()
        report = await scheduler.execute(new_run_id(), [PERF], RunOverrides(timeout_ms=50, retry_count=0))

        assert time.monotonic() - started < 2
        result = report.result_for(PERF)
        assert result.status == Status.FAILED
        assert result.error.code == "CHECK_TIMEOUT"
        assert result.auto_fix_available
        assert check.tokens[0].cancelled
        assert check.tokens[0].reason == "timeout"

    @pytest.mark.asyncio
    async def test_timeout_abandons_check_that_ignores_cancellation(self, scheduler, registry) -> None:
        check = StubbornCheck()
        registry.register(PERF, check)

        started = time.monotonic()
        report = await scheduler.execute(new_run_id(), [PERF], RunOverrides(timeout_ms=100, retry_count=1))
        elapsed = time.monotonic() - started

        assert elapsed < 2
        assert check.calls == 2
        assert report.result_for(PERF).error.code == "CHECK_TIMEOUT"

        check.released = True
        await asyncio.sleep(0.1)
        assert check.finished == 2

    @pytest.mark.asyncio
    async def test_backoff_grows_linearly(self, repository, registry, fake_check, monkeypatch) -> None:
        delays = []
        real_sleep = asyncio.sleep

        async def record(delay, *args, **kwargs):
            delays.append(delay)
            await real_sleep(0)

        monkeypatch.setattr(asyncio, "sleep", record)
        scheduler = HealthCheckScheduler(repository, registry, retry_base_delay=0.5)
        registry.register(PERF, fake_check(PERF, error=RuntimeError("down")))

        await scheduler.execute(new_run_id(), [PERF], RunOverrides(retry_count=2))

        assert delays == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_no_backoff_after_last_attempt(self, repository, registry, fake_check, monkeypatch) -> None:
        delays = []
        real_sleep = asyncio.sleep

        async def record(delay, *args, **kwargs):
            delays.append(delay)
            await real_sleep(0)

        monkeypatch.setattr(asyncio, "sleep", record)
        scheduler = HealthCheckScheduler(repository, registry, retry_base_delay=0.5)
        registry.register(PERF, fake_check(PERF, error=RuntimeError("down")))

        await scheduler.execute(new_run_id(), [PERF], RunOverrides(retry_count=0))

        assert delays == []

    @pytest.mark.asyncio
    async def test_each_attempt_gets_fresh_token(self, scheduler, registry, fake_check) -> None:
        check = fake_check(PERF, error=RuntimeError("x"))
        registry.register(PERF, check)
        await scheduler.execute(new_run_id(), [PERF], RunOverrides(retry_count=2))
        assert len({id(t) for t in check.tokens}) == 3


# ── Ordering & modes ─────────────────────────────────────────────────────────


class TestExecutionModes:
    @pytest.mark.asyncio
    async def test_parallel_runs_concurrently_and_keeps_order(self, scheduler, registry, fake_check) -> None:
        order = [SEC, API, PERF]
        for c in order:
            registry.register(c, fake_check(c, delay=0.1))

        started = time.monotonic()
        report = await scheduler.execute(new_run_id(), order, RunOverrides(parallel=True))

        # sequential would take at least 0.3s
        assert time.monotonic() - started < 0.29
        assert [r.category for r in report.results] == order

    @pytest.mark.asyncio
    async def test_sequential_keeps_order(self, scheduler, registry, fake_check) -> None:
        order = [PERF, SEC, API]
        for c in order:
            registry.register(c, fake_check(c))
        report = await scheduler.execute(new_run_id(), order)
        assert [r.category for r in report.results] == order

    @pytest.mark.asyncio
    async def test_disabled_category_is_skipped(self, scheduler, registry, repository, fake_check) -> None:
        check = fake_check(SEC)
        registry.register(SEC, check)
        repository.save_check_config(SEC, CheckConfig(enabled=False))

        report = await scheduler.execute(new_run_id(), [SEC])

        assert check.calls == 0
        assert report.result_for(SEC).status == Status.SKIPPED
        assert report.result_for(SEC).message == "Check disabled in configuration"

    @pytest.mark.asyncio
    async def test_unregistered_category_fails(self, scheduler) -> None:
        report = await scheduler.execute(new_run_id(), [Category.OFFLINE_CAPABILITY])
        result = report.result_for(Category.OFFLINE_CAPABILITY)
        assert result.status == Status.FAILED
        assert result.error.code == "CHECK_NOT_IMPLEMENTED"

    @pytest.mark.asyncio
    async def test_failed_dependency_skips_dependent(self, scheduler, registry, repository, fake_check) -> None:
        registry.register(API, fake_check(API, status=Status.FAILED))
        sec = fake_check(SEC)
        registry.register(SEC, sec)
        repository.save_check_config(SEC, CheckConfig(dependencies=(API,)))

        report = await scheduler.execute(new_run_id(), [API, SEC], RunOverrides(retry_count=0))

        assert sec.calls == 0
        skipped = report.result_for(SEC)
        assert skipped.status == Status.SKIPPED
        assert skipped.details == {"blocked_by": "api_connectivity"}

    @pytest.mark.asyncio
    async def test_passing_dependency_runs_dependent(self, scheduler, registry, repository, fake_check) -> None:
        registry.register(API, fake_check(API))
        sec = fake_check(SEC)
        registry.register(SEC, sec)
        repository.save_check_config(SEC, CheckConfig(dependencies=(API,)))

        await scheduler.execute(new_run_id(), [API, SEC])
        assert sec.calls == 1

    @pytest.mark.asyncio
    async def test_empty_run_is_pending(self, scheduler) -> None:
        report = await scheduler.execute(new_run_id(), [])
        assert report.summary.total == 0
        assert report.summary.score == 0
        assert report.summary.overall_status == Status.PENDING

    @pytest.mark.asyncio
    async def test_stored_config_reaches_check(self, scheduler, registry, repository, fake_check) -> None:
        check = fake_check(PERF)
        registry.register(PERF, check)
        repository.save_check_config(PERF, CheckConfig(timeout_ms=12_000, parameters={"samples": 5}))

        await scheduler.execute(new_run_id(), [PERF], RunOverrides(retry_count=0))

        cfg = check.configs[0]
        assert cfg.timeout_ms == 12_000
        assert cfg.retry_count == 0
        assert cfg.parameters == {"samples": 5}


# ── Cache ────────────────────────────────────────────────────────────────────


class TestCaching:
    @pytest.mark.asyncio
    async def test_cache_hit_skips_check(self, repository, registry, fake_check) -> None:
        scheduler = HealthCheckScheduler(repository, registry, cache=ResultCache(), retry_base_delay=0.0)
        check = fake_check(PERF)
        registry.register(PERF, check)
        repository.save_check_config(PERF, CheckConfig(use_cache=True))

        first = await scheduler.execute(new_run_id(), [PERF])
        second = await scheduler.execute(new_run_id(), [PERF])

        assert check.calls == 1
        assert second.result_for(PERF).status == Status.PASSED
        assert second.result_for(PERF).id != first.result_for(PERF).id
        assert second.result_for(PERF).timestamp > first.result_for(PERF).timestamp

    @pytest.mark.asyncio
    async def test_cache_is_opt_in(self, repository, registry, fake_check) -> None:
        scheduler = HealthCheckScheduler(repository, registry, cache=ResultCache(), retry_base_delay=0.0)
        check = fake_check(PERF)
        registry.register(PERF, check)

        await scheduler.execute(new_run_id(), [PERF])
        await scheduler.execute(new_run_id(), [PERF])
        assert check.calls == 2

    @pytest.mark.asyncio
    async def test_synthesized_failures_are_not_cached(self, repository, registry, fake_check) -> None:
        cache = ResultCache()
        scheduler = HealthCheckScheduler(repository, registry, cache=cache, retry_base_delay=0.0)
        registry.register(PERF, fake_check(PERF, error=RuntimeError("down")))
        repository.save_check_config(PERF, CheckConfig(use_cache=True, retry_count=0))

        await scheduler.execute(new_run_id(), [PERF])
        assert len(cache) == 0


# ── Persistence & orchestration failure ──────────────────────────────────────


class TestPersistence:
    @pytest.mark.asyncio
    async def test_report_and_results_are_stored(self, scheduler, registry, repository, fake_check) -> None:
        registry.register(API, fake_check(API))
        registry.register(SEC, fake_check(SEC, status=Status.WARNING))
        run_id = new_run_id()

        report = await scheduler.execute(run_id, [API, SEC])

        stored = repository.get_check_report(run_id)
        assert stored is not None
        assert stored.summary == report.summary
        for result in report.results:
            assert repository.get_check_result(result.id) is not None
        job = scheduler.get_job(run_id)
        assert job.state == JobState.COMPLETED
        assert job.report_id == run_id

    @pytest.mark.asyncio
    async def test_orchestration_failure_persists_failed_report(self, tmp_path, registry, fake_check) -> None:
        repo = BrokenConfigRepository(tmp_path / "broken.db")
        scheduler = HealthCheckScheduler(repo, registry, retry_base_delay=0.0)
        registry.register(API, fake_check(API))
        run_id = new_run_id()

        report = await scheduler.execute(run_id, [API])

        assert report.summary.overall_status == Status.FAILED
        assert report.summary.score == 0
        assert report.results[-1].error.code == "ORCHESTRATION_FAILED"
        assert repo.get_check_report(run_id) is not None
        job = scheduler.get_job(run_id)
        assert job.state == JobState.FAILED
        assert job.report_id == run_id
        assert "config store unavailable" in job.error

    @pytest.mark.asyncio
    async def test_persist_failure_escapes(self, tmp_path, registry, fake_check) -> None:
        scheduler = HealthCheckScheduler(ReadOnlyRepository(tmp_path / "ro.db"), registry, retry_base_delay=0.0)
        registry.register(API, fake_check(API))
        run_id = new_run_id()

        with pytest.raises(RepositoryError):
            await scheduler.execute(run_id, [API])
        job = scheduler.get_job(run_id)
        assert job.state == JobState.FAILED
        assert job.report_id is None


# ── Background runs & progress ───────────────────────────────────────────────


class TestBackgroundRuns:
    @pytest.mark.asyncio
    async def test_run_returns_handle_then_persists(self, scheduler, registry, repository, fake_check) -> None:
        registry.register(API, fake_check(API, delay=0.05))

        handle = scheduler.run([API, API])

        assert handle.run_id.startswith("check-")
        assert handle.estimated_duration_seconds == 30
        assert scheduler.get_job(handle.run_id).total == 1
        await scheduler.wait()
        assert repository.get_check_report(handle.run_id) is not None
        assert scheduler.get_job(handle.run_id).state == JobState.COMPLETED

    @pytest.mark.asyncio
    async def test_progress_events_reach_job_and_callback(self, repository, registry, fake_check) -> None:
        seen = []
        scheduler = HealthCheckScheduler(repository, registry, on_progress=seen.append, retry_base_delay=0.0)
        for c in (API, SEC):
            registry.register(c, fake_check(c))

        run_id = new_run_id()
        job = scheduler.jobs.create(run_id, [API, SEC])
        queue = job.subscribe()
        await scheduler.execute(run_id, [API, SEC])

        assert [e.completed for e in seen] == [1, 2]
        assert [e.percentage for e in seen] == [50.0, 100.0]
        assert seen[-1].estimated_time_remaining_ms == 0
        events = [queue.get_nowait() for _ in range(queue.qsize())]
        assert [e["event"] for e in events] == ["progress", "progress", "complete"]
        assert events[-1]["state"] == "completed"

    @pytest.mark.asyncio
    async def test_callback_errors_do_not_break_run(self, repository, registry, fake_check) -> None:
        def explode(event):
            raise RuntimeError("listener bug")

        scheduler = HealthCheckScheduler(repository, registry, on_progress=explode, retry_base_delay=0.0)
        registry.register(API, fake_check(API))
        report = await scheduler.execute(new_run_id(), [API])
        assert report.summary.overall_status == Status.PASSED

    @pytest.mark.asyncio
    async def test_stop_cancels_in_flight_runs(self, scheduler, registry, fake_check) -> None:
        registry.register(API, fake_check(API, delay=10))
        handle = scheduler.run([API])
        await scheduler.stop()
        job = scheduler.get_job(handle.run_id)
        assert job.state == JobState.FAILED
        assert job.error == "Run cancelled"


class TestEstimate:
    def test_sequential(self) -> None:
        assert estimate_duration(6) == 180

    def test_parallel(self) -> None:
        assert estimate_duration(6, RunOverrides(parallel=True)) == 60

    def test_capped_by_timeout(self) -> None:
        assert estimate_duration(6, RunOverrides(timeout_ms=12_500)) == 13
