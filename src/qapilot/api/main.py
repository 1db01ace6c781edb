from __future__ import annotations

from datetime import UTC, datetime

from dotenv import load_dotenv
from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from .routers.workflows import router as workflows_router
from ..observability.metrics import metrics_middleware_factory

load_dotenv()  # QAPILOT_AI_API_KEY, JWT_SECRET, store selection, etc.

app = FastAPI(title="QA Pilot Workflow API", version="0.1.0")

# Observability: request latency histogram
app.middleware("http")(metrics_middleware_factory())

app.include_router(workflows_router)
app.include_router(workflows_router, prefix="/api")


@app.get("/")
def root():
    return {"name": "QA Pilot Workflow API", "version": "0.1.0"}


@app.get("/health")
def health():
    return {
        "status": "ok",
        "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        "components": {"api": "ok"},
    }


@app.get("/metrics")
def metrics() -> Response:
    data = generate_latest(REGISTRY)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
