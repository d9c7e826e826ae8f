"""Tests for the periodic auto-run loop."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from oumu_health.health.autorun import AutoRunner
from oumu_health.health.models import Category, GlobalConfig, Status


@pytest.fixture
def runner(scheduler, repository, registry, fake_check):
    for category in Category:
        registry.register(category, fake_check(category))
    return AutoRunner(scheduler, repository, idle_poll_seconds=0.01)


class TestTick:
    @pytest.mark.asyncio
    async def test_idle_when_auto_run_off(self, runner, repository):
        report, delay = await runner.tick()
        assert report is None
        assert delay == 0.01
        assert repository.count_check_reports() == 0

    @pytest.mark.asyncio
    async def test_runs_all_categories_when_enabled(self, runner, repository):
        repository.save_global_config(GlobalConfig(auto_run=True, interval_ms=3_600_000))

        report, delay = await runner.tick()

        assert delay == 3600
        assert report.summary.total == len(Category)
        assert report.summary.overall_status == Status.PASSED
        assert repository.get_check_report(report.id) is not None

    @pytest.mark.asyncio
    async def test_prunes_history_after_run(self, runner, repository, report_factory):
        old = datetime.now(timezone.utc) - timedelta(days=10)
        repository.save_check_report(report_factory([(Category.SECURITY, Status.PASSED)], timestamp=old, report_id="old"))
        repository.save_global_config(GlobalConfig(auto_run=True, retention_days=7))

        await runner.tick()

        assert repository.get_check_report("old") is None
        assert repository.count_check_reports() == 1


class TestLoop:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, runner):
        await runner.start()
        assert runner.running
        await asyncio.sleep(0.05)
        await runner.stop()
        assert not runner.running

    @pytest.mark.asyncio
    async def test_loop_survives_failing_cycle(self, runner, monkeypatch):
        calls = []

        async def broken_tick():
            calls.append(1)
            raise RuntimeError("db offline")

        monkeypatch.setattr(runner, "tick", broken_tick)
        await runner.start()
        await asyncio.sleep(0.05)
        await runner.stop()
        assert len(calls) >= 2
