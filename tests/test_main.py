"""Tests for CLI argument handling."""

from __future__ import annotations

import sys

import pytest

from oumu_health import main as cli
from oumu_health.health.models import RunOverrides


@pytest.fixture
def calls(monkeypatch):
    seen = []

    def fake_run_checks(categories, overrides):
        seen.append((categories, overrides))
        return 0

    monkeypatch.setattr(cli, "run_checks", fake_run_checks)
    return seen


def _main(monkeypatch, *argv: str) -> int:
    monkeypatch.setattr(sys, "argv", ["oumu-health", *argv])
    with pytest.raises(SystemExit) as exc:
        cli.main()
    return exc.value.code


class TestRunCommand:
    def test_passes_overrides_through(self, monkeypatch, calls) -> None:
        code = _main(monkeypatch, "run", "security", "--parallel", "--timeout-ms", "8000", "--retries", "2")
        assert code == 0
        assert calls == [(["security"], RunOverrides(timeout_ms=8000, retry_count=2, parallel=True))]

    @pytest.mark.parametrize("flags", [
        ("--retries", "-1"),
        ("--retries", "6"),
        ("--timeout-ms", "0"),
        ("--timeout-ms", "400000"),
    ])
    def test_rejects_out_of_range_overrides(self, monkeypatch, calls, flags) -> None:
        assert _main(monkeypatch, "run", *flags) == 2
        assert calls == []

    def test_rejects_unknown_category(self, monkeypatch, calls) -> None:
        assert _main(monkeypatch, "run", "telepathy") == 2
        assert calls == []


class TestRunOverrides:
    def test_unset_fields_are_valid(self) -> None:
        assert RunOverrides().validate() == []
