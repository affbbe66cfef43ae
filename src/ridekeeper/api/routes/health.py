"""Health, readiness, and metrics endpoints."""

from __future__ import annotations

import time
from typing import Any

from fastapi import APIRouter, Request, Response
from starlette.responses import JSONResponse

from ridekeeper.healthchecks import check_postgres, check_redis, check_ride_provider

router = APIRouter()

__all__ = ["router", "record_request"]

# ──────────── In-process request counters ────────────
_metrics: dict[str, Any] = {
    "requests_total": 0,
    "requests_by_status": {},
    "start_time": time.time(),
}


def record_request(status: int) -> None:
    """Call from middleware to track request counts."""
    _metrics["requests_total"] += 1
    key = str(status)
    _metrics["requests_by_status"][key] = _metrics["requests_by_status"].get(key, 0) + 1


# ──────────── Endpoints ────────────


@router.get("/health", summary="Liveness probe", operation_id="health")
async def health() -> dict[str, str]:
    """Liveness: app process is running."""
    return {"status": "ok"}


@router.get("/ready", summary="Readiness probe", operation_id="ready")
async def ready(request: Request) -> JSONResponse:
    """Readiness: every *configured* dependency is reachable.

    Unconfigured dependencies are reported as ``null`` and do not fail the
    probe. Returns 200 when all configured checks pass, 503 otherwise.
    """
    settings = request.app.state.settings
    checks: dict[str, bool | None] = {
        "postgres": await check_postgres(settings.pg_dsn) if settings.pg_dsn else None,
        "redis": await check_redis(settings.redis_url) if settings.redis_url else None,
        "ride_provider": (
            await check_ride_provider(settings.ride_provider_url)
            if settings.ride_provider_url
            else None
        ),
    }
    all_ok = all(v is not False for v in checks.values())
    return JSONResponse(
        status_code=200 if all_ok else 503,
        content={"ready": all_ok, "checks": checks},
    )


@router.get("/metrics", summary="Prometheus metrics", operation_id="metrics")
async def metrics(request: Request) -> Response:
    """Prometheus text exposition format."""
    services = request.app.state.services
    uptime = time.time() - _metrics["start_time"]

    lines = [
        "# HELP ridekeeper_up Service is up",
        "# TYPE ridekeeper_up gauge",
        "ridekeeper_up 1",
        "",
        "# HELP ridekeeper_uptime_seconds Seconds since process start",
        "# TYPE ridekeeper_uptime_seconds gauge",
        f"ridekeeper_uptime_seconds {uptime:.1f}",
        "",
        "# HELP ridekeeper_requests_total Total HTTP requests",
        "# TYPE ridekeeper_requests_total counter",
        f"ridekeeper_requests_total {_metrics['requests_total']}",
    ]
    for status, count in sorted(_metrics["requests_by_status"].items()):
        lines.append(f'ridekeeper_requests_total{{status="{status}"}} {count}')

    orchestrator = services.orchestrator
    lines += [
        "",
        "# HELP ridekeeper_sweeps_total Completed sweep runs",
        "# TYPE ridekeeper_sweeps_total counter",
    ]
    lines += [
        f'ridekeeper_sweeps_total{{sweep="{name}"}} {count}'
        for name, count in orchestrator.sweep_runs.items()
    ]
    lines += [
        "",
        "# HELP ridekeeper_sweep_item_failures_total Items that failed inside a sweep",
        "# TYPE ridekeeper_sweep_item_failures_total counter",
    ]
    lines += [
        f'ridekeeper_sweep_item_failures_total{{sweep="{name}"}} {count}'
        for name, count in orchestrator.sweep_item_failures.items()
    ]
    lines += [
        "",
        "# HELP ridekeeper_inference_fallbacks_total Inference calls that fell back to rules",
        "# TYPE ridekeeper_inference_fallbacks_total counter",
        f'ridekeeper_inference_fallbacks_total{{kind="risk"}} {services.assessor.fallback_count}',
        f'ridekeeper_inference_fallbacks_total{{kind="intent"}} {services.resolver.fallback_count}',
        "",
    ]

    return Response(content="\n".join(lines), media_type="text/plain; charset=utf-8")
