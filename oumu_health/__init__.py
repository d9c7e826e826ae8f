"""Oumu health check engine."""

__version__ = "0.1.0"
