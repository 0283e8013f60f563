"""FastAPI glue shared by both services: request metrics and shared-secret gates."""

import hmac
from time import perf_counter

from fastapi import FastAPI, HTTPException, Request

from eitcrm.common.metrics import http_request_duration_seconds, http_requests_total


def add_metrics_middleware(app: FastAPI, service_name: str) -> None:
    """Record request count and latency for every HTTP call."""

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(service=service_name, route=route, method=method).observe(elapsed)
            http_requests_total.labels(
                service=service_name,
                route=route,
                method=method,
                status_code=str(status_code),
            ).inc()


def secret_matches(expected: str, presented: str | None) -> bool:
    """Constant-time comparison; an unset expected secret never matches."""

    if not expected or presented is None:
        return False
    return hmac.compare_digest(presented.encode(), expected.encode())


def enforce_secret(expected: str, presented: str | None, detail: str = "unauthorized") -> None:
    """Reject the request with 401 unless the shared secret matches."""

    if not secret_matches(expected, presented):
        raise HTTPException(status_code=401, detail=detail)
