"""Report repository: SQLite-backed history of reports, results and configs.

The engine only depends on the ReportRepository protocol; SQLiteReportRepository
is the default implementation. Connections are opened per call (WAL mode) so
the repository can be used from executor threads.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Protocol

from oumu_health.health.errors import ConfigValidationError, RepositoryError
from oumu_health.health.models import (
    Category,
    CheckConfig,
    CheckResult,
    GlobalConfig,
    HealthCheckReport,
    Severity,
    Status,
    utcnow,
)

logger = logging.getLogger(__name__)

DB_PATH = Path(__file__).parent.parent.parent / "data" / "health_check.db"

EXPORT_VERSION = "1.0"


class ReportRepository(Protocol):
    """Persistence boundary consumed by the scheduler, API and analytics."""

    def save_check_report(self, report: HealthCheckReport) -> None: ...
    def get_check_report(self, report_id: str) -> HealthCheckReport | None: ...
    def get_latest_check_report(self) -> HealthCheckReport | None: ...
    def get_check_reports(self, limit: int = 10, offset: int = 0) -> list[HealthCheckReport]: ...
    def get_check_reports_by_date_range(self, start: datetime, end: datetime) -> list[HealthCheckReport]: ...
    def save_check_result(self, result: CheckResult, report_id: str | None = None) -> None: ...
    def get_check_config(self, category: Category) -> CheckConfig | None: ...
    def save_check_config(self, category: Category, config: CheckConfig) -> None: ...
    def get_global_config(self) -> GlobalConfig | None: ...
    def save_global_config(self, config: GlobalConfig) -> None: ...
    def cleanup_old_data(self, retention_days: int = 30) -> dict[str, int]: ...


def _ts(dt: datetime) -> str:
    """Sortable UTC timestamp key."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


class SQLiteReportRepository:
    """SQLite storage for health check reports, results and configuration."""

    def __init__(self, db_path: Path | str | None = None) -> None:
        self._db_path = Path(db_path or DB_PATH)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(str(self._db_path))
        except sqlite3.Error as e:
            raise RepositoryError(f"Cannot open {self._db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise RepositoryError(str(e)) from e
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._conn() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS check_reports (
                    id             TEXT PRIMARY KEY,
                    timestamp      TEXT NOT NULL,
                    overall_status TEXT NOT NULL,
                    score          INTEGER NOT NULL,
                    duration_ms    REAL NOT NULL,
                    data           TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_reports_timestamp
                    ON check_reports (timestamp DESC);

                CREATE TABLE IF NOT EXISTS check_results (
                    id          TEXT PRIMARY KEY,
                    report_id   TEXT,
                    category    TEXT NOT NULL,
                    status      TEXT NOT NULL,
                    severity    TEXT,
                    duration_ms REAL NOT NULL,
                    timestamp   TEXT NOT NULL,
                    data        TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_results_category
                    ON check_results (category, timestamp DESC);
                CREATE INDEX IF NOT EXISTS idx_results_status
                    ON check_results (status, timestamp DESC);

                CREATE TABLE IF NOT EXISTS check_configs (
                    category     TEXT PRIMARY KEY,
                    data         TEXT NOT NULL,
                    last_updated TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS global_config (
                    id           TEXT PRIMARY KEY,
                    data         TEXT NOT NULL,
                    last_updated TEXT NOT NULL
                );
            """)

    # ── Reports ──────────────────────────────────────────────────────────

    def save_check_report(self, report: HealthCheckReport) -> None:
        with self._conn() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO check_reports "
                "(id, timestamp, overall_status, score, duration_ms, data) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    report.id, _ts(report.timestamp), report.summary.overall_status.value,
                    report.summary.score, report.duration_ms, json.dumps(report.to_dict()),
                ),
            )

    def get_check_report(self, report_id: str) -> HealthCheckReport | None:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT data FROM check_reports WHERE id = ?", (report_id,),
            ).fetchone()
        return HealthCheckReport.from_dict(json.loads(row["data"])) if row else None

    def get_latest_check_report(self) -> HealthCheckReport | None:
        reports = self.get_check_reports(limit=1)
        return reports[0] if reports else None

    def get_check_reports(self, limit: int = 10, offset: int = 0) -> list[HealthCheckReport]:
        """Most recent first."""
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT data FROM check_reports ORDER BY timestamp DESC LIMIT ? OFFSET ?",
                (limit, offset),
            ).fetchall()
        return [HealthCheckReport.from_dict(json.loads(r["data"])) for r in rows]

    def count_check_reports(self) -> int:
        with self._conn() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM check_reports").fetchone()
        return int(row["n"])

    def get_check_reports_by_date_range(
        self, start: datetime, end: datetime,
    ) -> list[HealthCheckReport]:
        """Reports with start <= timestamp <= end, oldest first."""
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT data FROM check_reports WHERE timestamp BETWEEN ? AND ? "
                "ORDER BY timestamp ASC",
                (_ts(start), _ts(end)),
            ).fetchall()
        return [HealthCheckReport.from_dict(json.loads(r["data"])) for r in rows]

    def get_check_reports_by_status(self, status: Status, limit: int = 20) -> list[HealthCheckReport]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT data FROM check_reports WHERE overall_status = ? "
                "ORDER BY timestamp DESC LIMIT ?",
                (status.value, limit),
            ).fetchall()
        return [HealthCheckReport.from_dict(json.loads(r["data"])) for r in rows]

    def delete_check_report(self, report_id: str) -> bool:
        with self._conn() as conn:
            cursor = conn.execute("DELETE FROM check_reports WHERE id = ?", (report_id,))
        return cursor.rowcount > 0

    def delete_check_reports_before(self, cutoff: datetime) -> int:
        with self._conn() as conn:
            cursor = conn.execute(
                "DELETE FROM check_reports WHERE timestamp < ?", (_ts(cutoff),),
            )
        return cursor.rowcount

    # ── Results ──────────────────────────────────────────────────────────

    def save_check_result(self, result: CheckResult, report_id: str | None = None) -> None:
        with self._conn() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO check_results "
                "(id, report_id, category, status, severity, duration_ms, timestamp, data) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    result.id, report_id, result.category.value, result.status.value,
                    result.severity.value if result.severity else None,
                    result.duration_ms, _ts(result.timestamp), json.dumps(result.to_dict()),
                ),
            )

    def get_check_result(self, result_id: str) -> CheckResult | None:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT data FROM check_results WHERE id = ?", (result_id,),
            ).fetchone()
        return CheckResult.from_dict(json.loads(row["data"])) if row else None

    def _results_where(self, column: str, value: str, limit: int) -> list[CheckResult]:
        with self._conn() as conn:
            rows = conn.execute(
                f"SELECT data FROM check_results WHERE {column} = ? "
                "ORDER BY timestamp DESC LIMIT ?",
                (value, limit),
            ).fetchall()
        return [CheckResult.from_dict(json.loads(r["data"])) for r in rows]

    def get_check_results_by_category(self, category: Category, limit: int = 50) -> list[CheckResult]:
        return self._results_where("category", category.value, limit)

    def get_check_results_by_status(self, status: Status, limit: int = 50) -> list[CheckResult]:
        return self._results_where("status", status.value, limit)

    def get_check_results_by_severity(self, severity: Severity, limit: int = 50) -> list[CheckResult]:
        return self._results_where("severity", severity.value, limit)

    def get_recent_check_results(self, limit: int = 20) -> list[CheckResult]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT data FROM check_results ORDER BY timestamp DESC LIMIT ?", (limit,),
            ).fetchall()
        return [CheckResult.from_dict(json.loads(r["data"])) for r in rows]

    def get_report_check_results(self, report_id: str) -> list[CheckResult]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT data FROM check_results WHERE report_id = ? ORDER BY timestamp",
                (report_id,),
            ).fetchall()
        return [CheckResult.from_dict(json.loads(r["data"])) for r in rows]

    def _export_results(self, limit: int) -> list[dict[str, Any]]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT report_id, data FROM check_results ORDER BY timestamp DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [{**json.loads(r["data"]), "report_id": r["report_id"]} for r in rows]

    def delete_check_results_before(self, cutoff: datetime) -> int:
        with self._conn() as conn:
            cursor = conn.execute(
                "DELETE FROM check_results WHERE timestamp < ?", (_ts(cutoff),),
            )
        return cursor.rowcount

    # ── Configuration ────────────────────────────────────────────────────

    def get_check_config(self, category: Category) -> CheckConfig | None:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT data FROM check_configs WHERE category = ?", (category.value,),
            ).fetchone()
        return CheckConfig.from_dict(json.loads(row["data"])) if row else None

    def save_check_config(self, category: Category, config: CheckConfig) -> None:
        with self._conn() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO check_configs (category, data, last_updated) "
                "VALUES (?, ?, ?)",
                (category.value, json.dumps(config.to_dict()), _ts(utcnow())),
            )

    def get_all_check_configs(self) -> dict[Category, CheckConfig]:
        with self._conn() as conn:
            rows = conn.execute("SELECT category, data FROM check_configs").fetchall()
        configs: dict[Category, CheckConfig] = {}
        for r in rows:
            try:
                configs[Category(r["category"])] = CheckConfig.from_dict(json.loads(r["data"]))
            except ValueError:
                logger.warning("Skipping stored config for unknown category: %s", r["category"])
        return configs

    def delete_check_config(self, category: Category) -> bool:
        with self._conn() as conn:
            cursor = conn.execute(
                "DELETE FROM check_configs WHERE category = ?", (category.value,),
            )
        return cursor.rowcount > 0

    def seed_check_configs(self, seeds: dict[Category, CheckConfig]) -> int:
        """Store seeds for categories that have no config yet."""
        existing = self.get_all_check_configs()
        added = 0
        for category, config in seeds.items():
            if category not in existing:
                self.save_check_config(category, config)
                added += 1
        return added

    def get_global_config(self) -> GlobalConfig | None:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT data FROM global_config WHERE id = 'global'",
            ).fetchone()
        return GlobalConfig.from_dict(json.loads(row["data"])) if row else None

    def save_global_config(self, config: GlobalConfig) -> None:
        with self._conn() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO global_config (id, data, last_updated) "
                "VALUES ('global', ?, ?)",
                (json.dumps(config.to_dict()), _ts(utcnow())),
            )

    # ── Statistics & maintenance ─────────────────────────────────────────

    def get_check_result_statistics(self, days: int = 30) -> dict[str, Any]:
        """Aggregate counts over reports from the last ``days`` days."""
        end = utcnow()
        reports = self.get_check_reports_by_date_range(end - timedelta(days=days), end)

        by_status = {s.value: 0 for s in Status}
        by_category = {c.value: 0 for c in Category}
        by_severity = {s.value: 0 for s in Severity}
        for report in reports:
            by_status[report.summary.overall_status.value] += 1
            for result in report.results:
                by_category[result.category.value] += 1
                if result.severity:
                    by_severity[result.severity.value] += 1

        n = len(reports)
        return {
            "total": n,
            "by_status": by_status,
            "by_category": by_category,
            "by_severity": by_severity,
            "average_score": round(sum(r.summary.score for r in reports) / n) if n else 0,
            "average_duration": round(sum(r.duration_ms for r in reports) / n) if n else 0,
        }

    def cleanup_old_data(self, retention_days: int = 30) -> dict[str, int]:
        cutoff = utcnow() - timedelta(days=retention_days)
        deleted_results = self.delete_check_results_before(cutoff)
        deleted_reports = self.delete_check_reports_before(cutoff)
        logger.info(
            "Cleanup (retention=%dd): %d results, %d reports removed",
            retention_days, deleted_results, deleted_reports,
        )
        return {"deleted_results": deleted_results, "deleted_reports": deleted_reports}

    def export_data(self) -> str:
        """Versioned JSON bundle of recent results, reports and all configs."""
        bundle = {
            "version": EXPORT_VERSION,
            "export_date": utcnow().isoformat(),
            "data": {
                "results": self._export_results(1000),
                "reports": [r.to_dict() for r in self.get_check_reports(100)],
                "configs": [
                    {"category": c.value, **cfg.to_dict()}
                    for c, cfg in self.get_all_check_configs().items()
                ],
            },
        }
        return json.dumps(bundle, indent=2)

    def import_data(self, blob: str | bytes) -> dict[str, int]:
        bundle = json.loads(blob)
        version = str(bundle.get("version", ""))
        if version.split(".")[0] != EXPORT_VERSION.split(".")[0]:
            raise ValueError(f"Unsupported export version: {version!r}")

        # Parse and validate everything before the first write.
        data = bundle.get("data") or {}
        results = [
            (CheckResult.from_dict(r), r.get("report_id"))
            for r in data.get("results") or ()
        ]
        reports = [HealthCheckReport.from_dict(r) for r in data.get("reports") or ()]
        configs = []
        for c in data.get("configs") or ():
            category = Category(c["category"])
            try:
                configs.append((category, CheckConfig.from_dict(c).ensure_valid()))
            except ConfigValidationError as e:
                raise ConfigValidationError(f"Invalid config for {category.value}: {e}") from e

        for result, report_id in results:
            self.save_check_result(result, report_id=report_id)
        for report in reports:
            self.save_check_report(report)
        for category, config in configs:
            self.save_check_config(category, config)

        return {
            "imported_results": len(results),
            "imported_reports": len(reports),
            "imported_configs": len(configs),
        }

    def close(self) -> None:
        """No-op, connections are created per-call."""
        pass
