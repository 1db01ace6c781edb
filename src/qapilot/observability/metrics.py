"""Prometheus metrics for the QA Pilot workflow API.

HTTP request latency per method/path/status, plus counters for engine
transitions and classified transport failures.
"""

from __future__ import annotations

import time
from typing import Awaitable, Callable

from prometheus_client import Counter, Histogram
from starlette.requests import Request
from starlette.responses import Response

# Histogram buckets chosen for web latencies (seconds)
REQUEST_LATENCY = Histogram(
    "qapilot_request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path", "status"),
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
)

TRANSITIONS = Counter(
    "qapilot_workflow_transitions_total",
    "Engine events applied, by workflow kind, event type and outcome",
    labelnames=("kind", "event", "outcome"),
)

TRANSPORT_FAILURES = Counter(
    "qapilot_transport_failures_total",
    "Completion transport failures by classified code",
    labelnames=("code",),
)


def sanitize_path(path: str) -> str:
    """Collapse ids out of /workflows/... paths to keep label cardinality low."""
    if not path:
        return "/"
    segs = [s for s in path.split("?")[0].split("/") if s]
    if segs and segs[0] == "api":
        segs = segs[1:]
    if not segs:
        return "/"
    if segs[0] == "workflows" and len(segs) > 1:
        # /workflows/sessions/abc123/events -> /workflows/sessions/{id}/events
        kept = [segs[0], segs[1]] + (["{id}"] if len(segs) > 2 else []) + segs[3:4]
        return "/" + "/".join(kept)
    return "/" + segs[0]


def record_transition(kind: str, event: str, changed: bool) -> None:
    TRANSITIONS.labels(kind=kind, event=event, outcome="applied" if changed else "noop").inc()


def record_transport_failure(code: str) -> None:
    TRANSPORT_FAILURES.labels(code=code).inc()


def metrics_middleware_factory() -> Callable[[Request, Callable[[Request], Awaitable[Response]]], Awaitable[Response]]:
    async def middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        if request.url.path.startswith("/metrics"):
            return await call_next(request)
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        REQUEST_LATENCY.labels(
            method=request.method,
            path=sanitize_path(request.url.path),
            status=str(response.status_code),
        ).observe(elapsed)
        return response

    return middleware
