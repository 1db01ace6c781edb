from fastapi.testclient import TestClient

from src.qapilot.api.main import app
from src.qapilot.observability.metrics import record_transport_failure, sanitize_path


client = TestClient(app)


def test_metrics_endpoint_exposes_histogram():
    r = client.get("/health")
    assert r.status_code == 200

    body = client.get("/metrics").text
    assert "# HELP qapilot_request_latency_seconds" in body
    assert 'qapilot_request_latency_seconds_count{method="GET",path="/health",status="200"}' in body


def test_transport_failures_are_counted_by_code():
    record_transport_failure("rate_limited")
    body = client.get("/metrics").text
    assert 'qapilot_transport_failures_total{code="rate_limited"}' in body


def test_sanitize_path_collapses_ids():
    assert sanitize_path("") == "/"
    assert sanitize_path("/") == "/"
    assert sanitize_path("/health") == "/health"
    assert sanitize_path("/workflows/sessions") == "/workflows/sessions"
    assert sanitize_path("/workflows/sessions/abc123/events") == "/workflows/sessions/{id}/events"
    assert sanitize_path("/api/workflows/sessions/abc123/events/stream") == "/workflows/sessions/{id}/events"
    assert sanitize_path("/workflows/history/e-1?kind=xpath") == "/workflows/history/{id}"
