"""Default category configs, checks.yaml seeding and per-run config resolution."""

from __future__ import annotations

import logging
from pathlib import Path

import yaml

from .models import Category, CheckConfig, GlobalConfig, RunOverrides, Severity

logger = logging.getLogger(__name__)

# Applied when nothing is stored for a category.
HARD_DEFAULT = CheckConfig(enabled=True, timeout_ms=30_000, retry_count=1, severity=Severity.MEDIUM)

DEFAULT_CHECK_CONFIGS: dict[Category, CheckConfig] = {
    Category.API_CONNECTIVITY: CheckConfig(
        timeout_ms=10_000, retry_count=3, severity=Severity.HIGH,
        parameters={"endpoints": []},
    ),
    Category.ERROR_HANDLING: CheckConfig(timeout_ms=5_000, retry_count=1, severity=Severity.MEDIUM),
    Category.PERFORMANCE: CheckConfig(
        timeout_ms=30_000, retry_count=1, severity=Severity.MEDIUM,
        parameters={"samples": 3},
    ),
    Category.USER_EXPERIENCE: CheckConfig(timeout_ms=15_000, retry_count=1, severity=Severity.MEDIUM),
    Category.SECURITY: CheckConfig(timeout_ms=10_000, retry_count=1, severity=Severity.HIGH),
    Category.OFFLINE_CAPABILITY: CheckConfig(timeout_ms=5_000, retry_count=1, severity=Severity.LOW),
}

DEFAULT_GLOBAL_CONFIG = GlobalConfig()


def load_category_seeds(path: Path | None) -> dict[Category, CheckConfig]:
    """Merge checks.yaml over the built-in defaults.

    The file maps category names to partial config dicts, e.g.::

        categories:
          api_connectivity:
            timeout_ms: 8000
            parameters:
              endpoints: ["https://api.groq.com/openai/v1/models"]
    """
    seeds = dict(DEFAULT_CHECK_CONFIGS)
    if path is None or not path.exists():
        if path is not None:
            logger.info("Checks file not found: %s, using built-in defaults", path)
        return seeds

    with open(path, encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}

    for name, data in (raw.get("categories") or {}).items():
        data = data or {}
        try:
            category = Category(name)
        except ValueError:
            logger.warning("Ignoring unknown category in %s: %s", path, name)
            continue
        base = seeds[category].to_dict()
        params = {**base["parameters"], **(data.get("parameters") or {})}
        base.update({k: v for k, v in data.items() if k != "parameters"})
        base["parameters"] = params
        seeds[category] = CheckConfig.from_dict(base).ensure_valid()

    logger.info("Loaded category config seeds from %s", path)
    return seeds


def resolve_config(
    stored: CheckConfig | None,
    overrides: RunOverrides | None = None,
    fallback: CheckConfig = HARD_DEFAULT,
) -> CheckConfig:
    """Run override > stored category config > hard default."""
    config = stored or fallback
    if overrides is None:
        return config
    return config.merged(timeout_ms=overrides.timeout_ms, retry_count=overrides.retry_count)

