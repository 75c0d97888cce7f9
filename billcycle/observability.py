import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from billcycle.metrics import REQUEST_COUNT, REQUEST_LATENCY


class ObservabilityMiddleware(BaseHTTPMiddleware):
    """Tag each request with an id and record count and latency."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        request.state.request_id = request_id
        start = time.monotonic()
        status = "500"
        try:
            response = await call_next(request)
            status = str(response.status_code)
            response.headers["x-request-id"] = request_id
            return response
        finally:
            route = request.scope.get("route")
            path = getattr(route, "path", request.url.path)
            elapsed = time.monotonic() - start
            REQUEST_COUNT.labels(method=request.method, path=path, status=status).inc()
            REQUEST_LATENCY.labels(method=request.method, path=path, status=status).observe(
                elapsed
            )
