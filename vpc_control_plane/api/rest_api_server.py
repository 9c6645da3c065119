# File: vpc_control_plane/api/rest_api_server.py
#!/usr/bin/env python3
"""
Operator REST API

Small FastAPI surface for operating the control plane:
- /health  liveness check
- /metrics Prometheus exposition
- /tasks   per-item status of the long-lived background tasks
"""

import time
from typing import List, Optional

from fastapi import FastAPI, Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from pydantic import BaseModel

from ..reconciler.scheduler import LongLivedTaskScheduler

API_REQUESTS = Counter(
    "vpc_control_plane_api_requests_total",
    "Operator API requests",
    ["method", "endpoint"],
)
API_LATENCY = Histogram(
    "vpc_control_plane_api_latency_seconds",
    "Operator API latency",
    ["endpoint"],
)


class TaskStatus(BaseModel):
    task: str
    key: str
    runs: int
    last_outcome: Optional[str] = None
    last_error: Optional[str] = None
    last_run_at: Optional[str] = None
    stopped: bool = False


def create_app(scheduler: Optional[LongLivedTaskScheduler] = None) -> FastAPI:
    app = FastAPI(
        title="VPC Control Plane",
        description="Branch ENI reclaimer and assignment GC",
        version="1.0.0",
        redoc_url=None,
    )

    @app.middleware("http")
    async def prometheus_middleware(request: Request, call_next):
        API_REQUESTS.labels(method=request.method, endpoint=request.url.path).inc()
        start = time.time()
        response = await call_next(request)
        API_LATENCY.labels(endpoint=request.url.path).observe(time.time() - start)
        return response

    @app.get("/health")
    def health():
        return {"status": "healthy"}

    @app.get("/metrics")
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.get("/tasks", response_model=List[TaskStatus])
    def tasks():
        if scheduler is None:
            return []
        return [s.to_dict() for s in scheduler.statuses()]

    return app
