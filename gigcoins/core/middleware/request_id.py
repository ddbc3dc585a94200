import logging
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from gigcoins.core.logging import bind_request_id, latency_bucket_ms

logger = logging.getLogger("gigcoins.http")


class RequestIdMiddleware(BaseHTTPMiddleware):
    """
    Correlate every request with an id.

    A caller-supplied x-request-id is kept so ids survive across services;
    otherwise a fresh one is generated. The id is echoed on the response.
    """

    def __init__(self, app, header_name: str = "x-request-id"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request, call_next):
        rid = request.headers.get(self.header_name) or str(uuid4())
        request.state.request_id = rid

        started = time.perf_counter()
        with bind_request_id(rid):
            response = await call_next(request)
        response.headers[self.header_name] = rid

        logger.info(
            "request.complete",
            extra={
                "request_id": rid,
                "user_id": getattr(request.state, "user_id", None) or request.headers.get("x-user-id"),
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_bucket": latency_bucket_ms((time.perf_counter() - started) * 1000),
            },
        )
        return response
