"""Default check functions: lightweight httpx requests against the app.

Each check is ``async (config, token) -> CheckResult`` once bound with
functools.partial to the app's base URL. Deployments can register their own
functions per category instead.
Transport-level errors other than in api_connectivity propagate so the
scheduler's retry loop sees them.
"""

from __future__ import annotations

import functools
import logging
import re
import time
from typing import Any
from urllib.parse import urljoin, urlparse

import httpx

from .autofix import SLOW_RESPONSE_MS, has_known_fix
from .models import Category, CheckConfig, CheckError, CheckResult, Severity, Status, make_result
from .registry import CancelToken, CheckRegistry

logger = logging.getLogger(__name__)

LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})

SECURITY_HEADERS = (
    "content-security-policy",
    "x-content-type-options",
    "x-frame-options",
    "referrer-policy",
)

_LANG_RE = re.compile(r"<html[^>]*\blang\s*=\s*[\"']?([\w-]+)", re.IGNORECASE)


def _client(config: CheckConfig, transport: httpx.AsyncBaseTransport | None) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=config.timeout_ms / 1000,
        follow_redirects=True,
        transport=transport,
    )


def _url(base_url: str, path: str) -> str:
    return urljoin(base_url.rstrip("/") + "/", path.lstrip("/"))


async def _timed_get(
    client: httpx.AsyncClient,
    url: str,
    headers: dict[str, str] | None = None,
) -> tuple[httpx.Response, float]:
    t0 = time.perf_counter()
    resp = await client.get(url, headers=headers)
    return resp, (time.perf_counter() - t0) * 1000


# ── API connectivity ─────────────────────────────────────────────────────────


def _connectivity_error_code(statuses: set[int], unreachable: bool) -> str:
    if statuses & {401, 403}:
        return "AUTH_FAILED"
    if 429 in statuses:
        return "QUOTA_EXCEEDED"
    if unreachable:
        return "NETWORK_ERROR"
    return "API_UNAVAILABLE"


async def check_api_connectivity(
    config: CheckConfig,
    token: CancelToken,
    *,
    base_url: str,
    groq_api_url: str | None = None,
    groq_api_key: str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> CheckResult:
    """Request every configured endpoint; unreachable everywhere is critical."""
    t0 = time.perf_counter()
    targets: list[tuple[str, dict[str, str] | None]] = [
        (url, None) for url in config.parameters.get("endpoints") or []
    ]
    if not targets:
        targets.append((_url(base_url, config.parameters.get("health_path", "/api/health")), None))
    if groq_api_url and groq_api_key:
        targets.append((groq_api_url, {"Authorization": f"Bearer {groq_api_key}"}))

    latencies: list[float] = []
    failures: dict[str, str] = {}
    failed_statuses: set[int] = set()
    async with _client(config, transport) as client:
        for url, headers in targets:
            if token.cancelled:
                break
            try:
                resp, latency = await _timed_get(client, url, headers)
            except httpx.HTTPError as e:
                failures[url] = f"{type(e).__name__}: {e}"
                continue
            latencies.append(latency)
            if resp.status_code >= 400:
                failures[url] = f"HTTP {resp.status_code}"
                failed_statuses.add(resp.status_code)

    total = len(targets)
    error_rate = len(failures) / total if total else 0.0
    avg_latency = sum(latencies) / len(latencies) if latencies else 0.0
    metrics = {
        "response_time_ms": round(avg_latency, 1),
        "error_rate": round(error_rate, 3),
        "endpoints": float(total),
    }
    details: dict[str, Any] = {"endpoints": [u for u, _ in targets], "failures": failures}
    duration = (time.perf_counter() - t0) * 1000

    if total and len(failures) == total:
        code = _connectivity_error_code(failed_statuses, unreachable=len(latencies) < len(failures))
        return make_result(
            Category.API_CONNECTIVITY, Status.FAILED,
            f"All {total} API endpoints are unreachable",
            duration_ms=duration, severity=Severity.CRITICAL,
            metrics=metrics, details=details,
            error=CheckError(code=code, message="; ".join(f"{u}: {m}" for u, m in failures.items())),
            auto_fix_available=has_known_fix(code),
            suggestions=[
                "Check network connection and API service status",
                "Verify API key configuration",
            ],
        )
    if error_rate > 0.1 or avg_latency > 2000:
        return make_result(
            Category.API_CONNECTIVITY, Status.WARNING,
            f"API degraded: {error_rate:.0%} errors, {avg_latency:.0f}ms average latency",
            duration_ms=duration, metrics=metrics, details=details,
            suggestions=[
                "Monitor API performance and consider rate limiting",
                "Check API quota and usage limits",
            ],
        )
    return make_result(
        Category.API_CONNECTIVITY, Status.PASSED,
        f"{total} API endpoints healthy ({avg_latency:.0f}ms average)",
        duration_ms=duration, metrics=metrics, details=details,
    )


# ── Error handling ───────────────────────────────────────────────────────────


async def check_error_handling(
    config: CheckConfig,
    token: CancelToken,
    *,
    base_url: str,
    transport: httpx.AsyncBaseTransport | None = None,
) -> CheckResult:
    """Request a missing resource and expect a structured 4xx error body."""
    path = config.parameters.get("missing_path", "/api/health-check/results/__missing__")
    async with _client(config, transport) as client:
        resp, latency = await _timed_get(client, _url(base_url, path))

    metrics = {"response_time_ms": round(latency, 1), "status_code": float(resp.status_code)}
    if not 400 <= resp.status_code < 500:
        return make_result(
            Category.ERROR_HANDLING, Status.FAILED,
            f"Missing resource returned HTTP {resp.status_code}, expected a 4xx error",
            duration_ms=latency, metrics=metrics,
            suggestions=["Return 4xx status codes for client errors"],
        )

    try:
        body = resp.json()
    except ValueError:
        body = None
    structured = isinstance(body, dict) and (
        ("code" in body and "message" in body) or "detail" in body
    )
    if not structured:
        return make_result(
            Category.ERROR_HANDLING, Status.WARNING,
            "Error response has no structured JSON body",
            duration_ms=latency, metrics=metrics,
            suggestions=["Return JSON error bodies with a code and a user-facing message"],
        )
    return make_result(
        Category.ERROR_HANDLING, Status.PASSED,
        f"Structured {resp.status_code} error returned",
        duration_ms=latency, metrics=metrics,
    )


# ── Performance ──────────────────────────────────────────────────────────────


async def check_performance(
    config: CheckConfig,
    token: CancelToken,
    *,
    base_url: str,
    transport: httpx.AsyncBaseTransport | None = None,
) -> CheckResult:
    """Average latency over N samples of the health endpoint."""
    samples = max(1, int(config.parameters.get("samples", 3)))
    url = _url(base_url, config.parameters.get("path", "/api/health"))

    latencies: list[float] = []
    errors = 0
    async with _client(config, transport) as client:
        for _ in range(samples):
            if token.cancelled:
                break
            resp, latency = await _timed_get(client, url)
            latencies.append(latency)
            if resp.status_code >= 400:
                errors += 1

    avg = sum(latencies) / len(latencies) if latencies else 0.0
    metrics = {
        "average_response_ms": round(avg, 1),
        "max_response_ms": round(max(latencies, default=0.0), 1),
        "samples": float(len(latencies)),
        "errors": float(errors),
    }
    if avg > 3000 or (latencies and errors == len(latencies)):
        return make_result(
            Category.PERFORMANCE, Status.FAILED,
            f"Average response time {avg:.0f}ms ({errors} errors)",
            duration_ms=sum(latencies), metrics=metrics,
            suggestions=["Profile slow endpoints", "Consider caching expensive responses"],
            auto_fix_available=avg > SLOW_RESPONSE_MS,
        )
    if avg > 1000 or errors:
        return make_result(
            Category.PERFORMANCE, Status.WARNING,
            f"Average response time {avg:.0f}ms ({errors} errors)",
            duration_ms=sum(latencies), metrics=metrics,
            suggestions=["Consider optimizing API calls"],
        )
    return make_result(
        Category.PERFORMANCE, Status.PASSED,
        f"Average response time {avg:.0f}ms over {len(latencies)} samples",
        duration_ms=sum(latencies), metrics=metrics,
    )


# ── User experience ──────────────────────────────────────────────────────────


async def check_user_experience(
    config: CheckConfig,
    token: CancelToken,
    *,
    base_url: str,
    transport: httpx.AsyncBaseTransport | None = None,
) -> CheckResult:
    """Load the app root; check load time and document language."""
    max_load_ms = float(config.parameters.get("max_load_ms", 3000))
    async with _client(config, transport) as client:
        resp, latency = await _timed_get(client, _url(base_url, "/"))

    metrics = {"load_time_ms": round(latency, 1)}
    if resp.status_code >= 400:
        return make_result(
            Category.USER_EXPERIENCE, Status.FAILED,
            f"App root returned HTTP {resp.status_code}",
            duration_ms=latency, metrics=metrics,
            suggestions=["Verify the app is deployed and serving its index page"],
        )

    problems: list[str] = []
    suggestions: list[str] = []
    match = _LANG_RE.search(resp.text)
    if not match:
        problems.append("document has no lang attribute")
        suggestions.append("Set the lang attribute on the <html> element")
    if latency > max_load_ms:
        problems.append(f"load time {latency:.0f}ms exceeds {max_load_ms:.0f}ms")
        suggestions.append("Reduce initial bundle size and defer non-critical assets")

    details = {"lang": match.group(1) if match else None}
    if problems:
        return make_result(
            Category.USER_EXPERIENCE, Status.WARNING,
            "UX issues: " + "; ".join(problems),
            duration_ms=latency, metrics=metrics, details=details, suggestions=suggestions,
        )
    return make_result(
        Category.USER_EXPERIENCE, Status.PASSED,
        f"App loaded in {latency:.0f}ms",
        duration_ms=latency, metrics=metrics, details=details,
    )


# ── Security ─────────────────────────────────────────────────────────────────


async def check_security(
    config: CheckConfig,
    token: CancelToken,
    *,
    base_url: str,
    transport: httpx.AsyncBaseTransport | None = None,
) -> CheckResult:
    """HTTPS outside localhost plus the usual response security headers."""
    parsed = urlparse(base_url)
    local = (parsed.hostname or "") in LOCAL_HOSTS
    insecure = parsed.scheme != "https" and not local

    async with _client(config, transport) as client:
        resp, latency = await _timed_get(client, base_url)

    expected = list(SECURITY_HEADERS)
    if parsed.scheme == "https":
        expected.append("strict-transport-security")
    missing = [h for h in expected if h not in resp.headers]

    metrics = {
        "missing_headers": float(len(missing)),
        "https": 1.0 if parsed.scheme == "https" else 0.0,
    }
    details = {"missing_headers": missing, "localhost": local}
    suggestions = [f"Add the {h} header to responses" for h in missing]

    if insecure:
        return make_result(
            Category.SECURITY, Status.FAILED,
            f"{base_url} is served over plain HTTP",
            duration_ms=latency, severity=Severity.CRITICAL,
            metrics=metrics, details=details,
            suggestions=["Serve the app over HTTPS", *suggestions],
        )
    if missing:
        return make_result(
            Category.SECURITY, Status.WARNING,
            f"Missing security headers: {', '.join(missing)}",
            duration_ms=latency, metrics=metrics, details=details, suggestions=suggestions,
        )
    return make_result(
        Category.SECURITY, Status.PASSED,
        "Transport and security headers look good",
        duration_ms=latency, metrics=metrics, details=details,
    )


# ── Offline capability ───────────────────────────────────────────────────────


async def check_offline_capability(config: CheckConfig, token: CancelToken) -> CheckResult:
    return make_result(
        Category.OFFLINE_CAPABILITY, Status.SKIPPED,
        "Offline capability checks are not implemented",
    )


def build_default_registry(
    app_base_url: str,
    groq_api_url: str | None = None,
    groq_api_key: str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> CheckRegistry:
    """Registry with the default check for every category."""
    registry = CheckRegistry()
    bind = functools.partial
    registry.register(Category.API_CONNECTIVITY, bind(
        check_api_connectivity, base_url=app_base_url,
        groq_api_url=groq_api_url, groq_api_key=groq_api_key, transport=transport,
    ))
    registry.register(Category.ERROR_HANDLING, bind(
        check_error_handling, base_url=app_base_url, transport=transport,
    ))
    registry.register(Category.PERFORMANCE, bind(
        check_performance, base_url=app_base_url, transport=transport,
    ))
    registry.register(Category.USER_EXPERIENCE, bind(
        check_user_experience, base_url=app_base_url, transport=transport,
    ))
    registry.register(Category.SECURITY, bind(
        check_security, base_url=app_base_url, transport=transport,
    ))
    registry.register(Category.OFFLINE_CAPABILITY, check_offline_capability)
    logger.debug("Default check registry built for %s", app_base_url)
    return registry
