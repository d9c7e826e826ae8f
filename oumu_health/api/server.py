"""FastAPI server for the health check engine."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from oumu_health.api.routes import health_check_router
from oumu_health.config import settings
from oumu_health.health.analytics import AnalyticsEngine
from oumu_health.health.autofix import AutoFixEngine
from oumu_health.health.autorun import AutoRunner
from oumu_health.health.cache import ResultCache
from oumu_health.health.checks import build_default_registry
from oumu_health.health.defaults import DEFAULT_CHECK_CONFIGS, HARD_DEFAULT, load_category_seeds
from oumu_health.health.errors import RepositoryError
from oumu_health.health.scheduler import HealthCheckScheduler
from oumu_health.storage.repository import SQLiteReportRepository

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build whatever services were not injected onto app.state beforehand."""
    state = app.state

    repository = getattr(state, "repository", None)
    if repository is None:
        repository = SQLiteReportRepository(settings.db_path)
        state.repository = repository

    if getattr(state, "seeds", None) is None:
        try:
            state.seeds = load_category_seeds(Path(settings.checks_file))
            added = repository.seed_check_configs(state.seeds)
            if added:
                logger.info("Seeded %d category configs", added)
        except Exception:
            logger.exception("Failed to load category seeds from %s", settings.checks_file)

    if getattr(state, "cache", None) is None:
        state.cache = ResultCache(default_ttl=float(settings.cache_ttl_seconds))

    if getattr(state, "analytics", None) is None:
        state.analytics = AnalyticsEngine()

    if getattr(state, "autofix", None) is None:
        state.autofix = AutoFixEngine(getattr(state, "seeds", None) or DEFAULT_CHECK_CONFIGS)

    scheduler = getattr(state, "scheduler", None)
    if scheduler is None:
        registry = build_default_registry(
            settings.app_base_url,
            groq_api_url=settings.groq_api_url,
            groq_api_key=settings.groq_api_key or None,
        )
        scheduler = HealthCheckScheduler(
            repository,
            registry,
            cache=state.cache,
            retry_base_delay=settings.retry_base_delay_ms / 1000,
            cache_ttl=float(settings.cache_ttl_seconds),
            environment=settings.environment,
            default_config=HARD_DEFAULT.merged(
                timeout_ms=settings.default_timeout_ms,
                retry_count=settings.default_retry_count,
            ),
        )
        state.scheduler = scheduler
    logger.info("Health check scheduler ready: %d checks registered", len(scheduler.registry))

    autorunner = getattr(state, "autorunner", None)
    if autorunner is None:
        autorunner = AutoRunner(scheduler, repository)
        state.autorunner = autorunner
    try:
        await autorunner.start()
    except Exception:
        logger.exception("Auto-run loop failed to start")

    yield

    # Shutdown
    await autorunner.stop()
    await scheduler.stop()
    repository.close()


async def repository_error_handler(request: Request, exc: RepositoryError) -> JSONResponse:
    logger.error("Repository failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": f"Storage unavailable: {exc}"})


def create_app() -> FastAPI:
    app = FastAPI(
        title="Oumu - Health Check Engine",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(RepositoryError, repository_error_handler)
    app.include_router(health_check_router, prefix="/api")

    @app.get("/api/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return app


app = create_app()
