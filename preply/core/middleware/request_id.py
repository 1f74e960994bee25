"""
Request correlation.

Every request gets an id: the caller's `x-request-id` when it looks sane,
otherwise a fresh uuid4. The id is bound to the logging context for the
duration of the request, echoed on the response, and carried by the
`request.complete` access log line.
"""
import logging
import re
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from preply.core.logging import latency_bucket_ms, request_id_ctx_var

logger = logging.getLogger("preply")

# Echoed into headers and log lines, so keep it short and printable
_SAFE_REQUEST_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def resolve_request_id(incoming):
    if incoming and _SAFE_REQUEST_ID.match(incoming):
        return incoming
    return str(uuid4())


class RequestIdMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, header_name: str = "x-request-id"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request, call_next):
        rid = resolve_request_id(request.headers.get(self.header_name))
        request.state.request_id = rid
        token = request_id_ctx_var.set(rid)

        start = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            request_id_ctx_var.reset(token)
        latency_ms = (time.perf_counter() - start) * 1000

        response.headers[self.header_name] = rid
        logger.info(
            "request.complete",
            extra={
                "request_id": rid,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "user_id": request.headers.get("x-user-id"),
                "latency_ms": round(latency_ms, 1),
                "latency_bucket": latency_bucket_ms(latency_ms),
            },
        )
        return response
