"""
MODULE OVERVIEW:
FastAPI middleware to track request timings.
Where it fits: Middleware runs on *every* HTTP request, wrapping the webhook routes.

WHAT IS HAPPENING HERE:
We add an `X-Process-Time-Ms` header so the backend's delivery logs show how long
each injection took on our side. Health probes are not logged, to keep the logs clean.
"""

import time
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from loguru import logger


class TimingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start_time = time.perf_counter()

        response = await call_next(request)

        process_time_ms = (time.perf_counter() - start_time) * 1000
        response.headers["X-Process-Time-Ms"] = f"{process_time_ms:.2f}"

        if not request.url.path.endswith("health") and request.url.path != "/healthz":
            logger.debug(
                f"{request.method} {request.url.path} status={response.status_code} "
                f"completed in {process_time_ms:.2f}ms"
            )

        return response
