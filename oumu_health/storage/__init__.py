"""Persistence for health check history and configuration."""

from .repository import ReportRepository, SQLiteReportRepository

__all__ = ["ReportRepository", "SQLiteReportRepository"]
