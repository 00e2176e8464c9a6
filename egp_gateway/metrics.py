"""Prometheus metrics for the effort gate.

Metrics goals:
- low-cardinality labels (never subject keys or session ids)
- visibility into sample quality, state flips, publish outcomes and storage
  lockdown
"""
from __future__ import annotations

import os
import time
from typing import Callable, Optional

from fastapi import Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest


def _env_bool(name: str, default: bool = True) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


# ---------------------------
# Core metric objects
# ---------------------------
HTTP_REQUESTS_TOTAL = Counter(
    "egp_http_requests_total",
    "Total HTTP requests received",
    ["method", "route", "status"],
)
HTTP_REQUEST_LATENCY_SECONDS = Histogram(
    "egp_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["method", "route"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)
SAMPLES_TOTAL = Counter(
    "egp_samples_total",
    "Telemetry samples ingested",
    ["policy", "outcome"],
)
STATE_TRANSITIONS_TOTAL = Counter(
    "egp_state_transitions_total",
    "Stabilizer state transitions",
    ["from_state", "to_state", "reason"],
)
PUBLISH_TOTAL = Counter(
    "egp_publish_total",
    "Publish attempts by outcome (claim_lost, published, superseded, failed, signer_unavailable, storage_unavailable)",
    ["outcome"],
)
LOCKDOWN_ACTIVE = Gauge(
    "egp_lockdown_active",
    "1 if the claim store is in lockdown / fail-closed mode",
)


def record_sample(policy: str, outcome: str) -> None:
    SAMPLES_TOTAL.labels(policy=str(policy), outcome=str(outcome)).inc()


def record_transition(from_state: str, to_state: str, reason: str) -> None:
    STATE_TRANSITIONS_TOTAL.labels(from_state=str(from_state), to_state=str(to_state), reason=str(reason)).inc()


def record_publish(outcome: str) -> None:
    PUBLISH_TOTAL.labels(outcome=str(outcome)).inc()


def set_lockdown_active(active: bool) -> None:
    LOCKDOWN_ACTIVE.set(1.0 if active else 0.0)


def instrument_fastapi(app, authorize: Optional[Callable] = None) -> None:
    """Attach /metrics endpoint and request middleware to a FastAPI app.

    authorize: callable(request) -> bool. If provided and returns False, /metrics returns 403.
    """
    if not _env_bool("EGP_METRICS_ENABLED", True):
        return

    @app.middleware("http")
    async def _metrics_middleware(request: Request, call_next):
        start = time.time()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            route = request.scope.get("route")
            route_path = getattr(route, "path", None) or request.url.path
            HTTP_REQUESTS_TOTAL.labels(method=request.method, route=route_path, status=str(status)).inc()
            HTTP_REQUEST_LATENCY_SECONDS.labels(method=request.method, route=route_path).observe(time.time() - start)

    @app.get("/metrics", include_in_schema=False)
    async def metrics_endpoint(request: Request):
        if authorize is not None and not authorize(request):
            return Response(status_code=403, content="FORBIDDEN")
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
