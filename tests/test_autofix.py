"""Tests for auto-fix analysis, recurring issue detection and fix application."""

from __future__ import annotations

import pytest

from oumu_health.health.autofix import AutoFixEngine, FixAction
from oumu_health.health.cache import ResultCache
from oumu_health.health.defaults import DEFAULT_CHECK_CONFIGS
from oumu_health.health.models import Category, CheckConfig, CheckError, Severity, Status, make_result, utcnow
from oumu_health.health.report import build_report

API = Category.API_CONNECTIVITY
PERF = Category.PERFORMANCE
SEC = Category.SECURITY


def _failed(category: Category, code: str, **kwargs):
    return make_result(
        category, Status.FAILED, f"{category.value} failed",
        error=CheckError(code=code, message=f"{code.lower()} happened"), **kwargs,
    )


def _report(results, run_id="check-1"):
    return build_report(run_id, results, utcnow(), "test")


@pytest.fixture
def engine() -> AutoFixEngine:
    return AutoFixEngine(DEFAULT_CHECK_CONFIGS)


class TestAnalyzeReport:
    def test_passing_report_has_no_issues(self, engine) -> None:
        report = _report([make_result(API, Status.PASSED, "ok"), make_result(PERF, Status.SKIPPED, "off")])
        assert engine.analyze_report(report) == []

    def test_error_codes_map_to_issues(self, engine) -> None:
        network = _failed(API, "NETWORK_ERROR")
        timeout = _failed(SEC, "CHECK_TIMEOUT")
        report = _report([network, timeout, make_result(PERF, Status.PASSED, "ok")])

        issues = {i.title: i for i in engine.analyze_report(report)}

        net = issues["Network Connectivity Issue"]
        assert net.id == f"network-{network.id}"
        assert net.affected_checks == (network.id,)
        assert net.error_code == "NETWORK_ERROR"
        assert net.error_message == "network_error happened"
        assert net.action == FixAction.RERUN_CHECK

        slow = issues["Request Timeout"]
        assert slow.category == SEC
        assert slow.action == FixAction.INCREASE_TIMEOUT

    def test_manual_only_patterns(self, engine) -> None:
        report = _report([_failed(API, "AUTH_FAILED"), _failed(SEC, "QUOTA_EXCEEDED")])
        issues = engine.analyze_report(report)
        assert [i.title for i in issues if i.category != PERF] == ["API Authentication Failed", "API Quota Exceeded"]
        assert not any(i.can_auto_fix for i in issues if i.category != PERF)

    def test_slow_response_metric(self, engine) -> None:
        slow = make_result(PERF, Status.WARNING, "slow", metrics={"average_response_ms": 6200.0})
        fine = make_result(API, Status.WARNING, "meh", metrics={"response_time_ms": 2500.0})
        issues = engine.analyze_report(_report([slow, fine]))

        assert [i.title for i in issues] == ["Slow Response Time"]
        assert issues[0].description == "Response time is 6200ms"
        assert issues[0].action == FixAction.CLEAR_CACHE

    def test_low_score_adds_system_issue(self, engine) -> None:
        failed = [_failed(API, "SOMETHING_ELSE"), _failed(SEC, "SOMETHING_ELSE")]
        report = _report(failed + [make_result(PERF, Status.PASSED, "ok")], run_id="check-9")

        issues = engine.analyze_report(report)

        assert report.summary.score == 33
        assert [i.id for i in issues] == ["system-health-check-9"]
        assert issues[0].description == "System health score is 33"
        assert issues[0].affected_checks == tuple(r.id for r in failed)
        assert issues[0].action == FixAction.RERUN_ALL

    def test_sorted_by_severity(self, engine) -> None:
        report = _report([
            make_result(PERF, Status.PASSED, "ok"),
            make_result(PERF, Status.PASSED, "ok"),
            make_result(PERF, Status.PASSED, "ok"),
            _failed(SEC, "CHECK_TIMEOUT"),
            _failed(API, "AUTH_FAILED"),
        ])
        severities = [i.severity for i in engine.analyze_report(report)]
        assert severities == [Severity.CRITICAL, Severity.MEDIUM]

    def test_suggestions_keep_fixable_or_documented(self, engine) -> None:
        issues = engine.analyze_report(_report([_failed(API, "AUTH_FAILED")]))
        assert engine.suggestions(issues) == issues


class TestRecurringIssues:
    def test_three_occurrences_make_a_recurring_issue(self, engine) -> None:
        results = [_failed(SEC, "CHECK_TIMEOUT") for _ in range(3)]
        reports = [
            _report([r, make_result(API, Status.PASSED, "ok"), make_result(PERF, Status.PASSED, "ok")], f"check-{i}")
            for i, r in enumerate(results)
        ]

        recurring = engine.recurring_issues(reports)

        assert len(recurring) == 1
        issue = recurring[0]
        assert issue.title == "Request Timeout"
        assert issue.occurrences == 3
        assert issue.affected_checks == tuple(r.id for r in results)

    def test_two_occurrences_are_not_recurring(self, engine) -> None:
        reports = [_report([_failed(SEC, "CHECK_TIMEOUT")] + [make_result(API, Status.PASSED, "ok")] * 2)] * 2
        assert engine.recurring_issues(reports) == []
        assert len(engine.recurring_issues(reports, min_occurrences=2)) == 1

    def test_same_result_is_not_counted_twice_in_affected_checks(self, engine) -> None:
        report = _report([_failed(SEC, "CHECK_TIMEOUT")] + [make_result(API, Status.PASSED, "ok")] * 2)
        recurring = engine.recurring_issues([report, report, report])
        assert recurring[0].occurrences == 3
        assert len(recurring[0].affected_checks) == 1

    def test_prevention_recommendations(self, engine) -> None:
        report = _report([_failed(SEC, "CHECK_TIMEOUT")] + [make_result(API, Status.PASSED, "ok")] * 2)
        prevention = engine.prevention_recommendations([report] * 3)

        assert len(prevention) == 1
        rec = prevention[0]
        assert rec.title == "Prevention: Request Timeout"
        assert not rec.can_auto_fix
        assert rec.manual_steps[-3:] == (
            "Schedule regular health checks",
            "Set up monitoring alerts",
            "Document and review system changes",
        )


class TestApply:
    def _issue(self, engine, code, category=SEC):
        report = _report([_failed(category, code)] + [make_result(API, Status.PASSED, "ok")] * 2)
        return next(i for i in engine.analyze_report(report) if i.error_code == code)

    def test_manual_issue_is_not_applied(self, engine, repository) -> None:
        issue = self._issue(engine, "AUTH_FAILED", API)
        outcome = engine.apply(issue, repository)
        assert not outcome.success
        assert outcome.requires_manual_intervention
        assert outcome.next_steps == issue.manual_steps

    def test_increase_timeout_from_default(self, engine, repository) -> None:
        outcome = engine.apply(self._issue(engine, "CHECK_TIMEOUT"), repository)

        assert outcome.success
        assert outcome.details == {"previous_timeout_ms": 10_000, "timeout_ms": 60_000}
        stored = repository.get_check_config(SEC)
        assert stored.timeout_ms == 60_000
        assert stored.severity == Severity.HIGH

    def test_increase_timeout_doubles_and_caps(self, engine, repository) -> None:
        repository.save_check_config(SEC, CheckConfig(timeout_ms=200_000))
        engine.apply(self._issue(engine, "CHECK_TIMEOUT"), repository)
        assert repository.get_check_config(SEC).timeout_ms == 300_000

        outcome = engine.apply(self._issue(engine, "CHECK_TIMEOUT"), repository)
        assert not outcome.success
        assert "maximum" in outcome.message

    def test_clear_cache(self, engine, repository) -> None:
        cache = ResultCache()
        cache.set("performance:x", make_result(PERF, Status.PASSED, "ok"))
        slow = make_result(PERF, Status.WARNING, "slow", metrics={"average_response_ms": 9000.0})
        issue = engine.analyze_report(_report([slow]))[0]

        outcome = engine.apply(issue, repository, cache=cache)

        assert outcome.success
        assert outcome.details == {"cleared": 1}
        assert len(cache) == 0

    def test_missing_collaborator_fails_cleanly(self, engine, repository) -> None:
        outcome = engine.apply(self._issue(engine, "NETWORK_ERROR", API), repository)
        assert not outcome.success
        assert outcome.message.startswith("Auto-fix failed:")
        assert outcome.requires_manual_intervention

    @pytest.mark.asyncio
    async def test_rerun_starts_background_run(self, engine, repository, scheduler, registry, fake_check) -> None:
        registry.register(API, fake_check(API))
        outcome = engine.apply(self._issue(engine, "NETWORK_ERROR", API), repository, scheduler=scheduler)
        await scheduler.wait()

        assert outcome.success
        run_id = outcome.details["run_id"]
        report = repository.get_check_report(run_id)
        assert [r.category for r in report.results] == [API]

    def test_history_is_newest_first(self, engine, repository) -> None:
        first = engine.apply(self._issue(engine, "AUTH_FAILED", API), repository)
        second = engine.apply(self._issue(engine, "CHECK_TIMEOUT"), repository)
        assert engine.fix_results() == [second, first]
