import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from mentor.core.logging import bind_request_id, latency_bucket_ms, log_event


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Bind a request_id for the duration of a request and log completion.

    Ledger and sync logs emitted while serving the request pick the id up
    through the context var, so a failed completion can be traced end to end.
    """

    def __init__(self, app, header_name: str = "x-request-id"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request, call_next):
        rid = request.headers.get(self.header_name) or str(uuid4())
        request.state.request_id = rid

        with bind_request_id(rid):
            start = time.perf_counter()
            response = await call_next(request)
            latency = latency_bucket_ms((time.perf_counter() - start) * 1000)

            response.headers[self.header_name] = rid
            log_event(
                "info",
                "request.complete",
                user_id=request.query_params.get("user_id"),
                event_type="http",
                extra={
                    "path": request.url.path,
                    "method": request.method,
                    "status": response.status_code,
                    "latency_bucket": latency,
                },
            )
        return response
