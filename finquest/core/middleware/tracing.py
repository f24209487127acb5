from starlette.middleware.base import BaseHTTPMiddleware

from finquest.core.logging import get_request_id
from finquest.core.metrics import normalize_path
from finquest.core.tracing import start_span


class TracingMiddleware(BaseHTTPMiddleware):
    """Wrap each request in an http.request span when tracing is enabled."""

    async def dispatch(self, request, call_next):
        request_id = getattr(request.state, "request_id", None) or get_request_id()
        attributes = {
            "http.method": request.method,
            "http.route": normalize_path(request.url.path),
            "request_id": request_id,
            "user_id": request.headers.get("x-user-id"),
        }
        with start_span("http.request", attributes) as span:
            response = await call_next(request)
            if span is not None:
                span.set_attribute("http.status_code", response.status_code)
            return response
