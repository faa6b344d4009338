import time

from starlette.middleware.base import BaseHTTPMiddleware

from streakline.core.metrics import http_request_duration_seconds, http_requests_total, normalize_path


def route_label(request) -> str:
    """Matched route template (/v1/tasks/today), or a normalized raw path for 404s."""
    route = request.scope.get("route")
    template = getattr(route, "path", None)
    return template or normalize_path(request.url.path)


class MetricsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        start = time.perf_counter()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            elapsed = time.perf_counter() - start
            method = request.method.upper()
            path = route_label(request)
            http_requests_total.inc(labels={"method": method, "path": path, "status": str(status)})
            http_request_duration_seconds.observe(elapsed, labels={"method": method, "path": path})
