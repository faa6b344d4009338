import logging
import re
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from streakline.core.logging import latency_bucket_ms, request_id_ctx_var

logger = logging.getLogger("streakline.access")

# Client-supplied ids are echoed into logs and headers; anything else is replaced
_ACCEPTABLE_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Bind a request id for the request's lifetime and write one access line."""

    def __init__(self, app, header_name: str = "x-request-id"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request, call_next):
        incoming = request.headers.get(self.header_name, "")
        rid = incoming if _ACCEPTABLE_ID.match(incoming) else uuid4().hex
        request.state.request_id = rid
        token = request_id_ctx_var.set(rid)

        start = time.perf_counter()
        try:
            response = await call_next(request)
            response.headers[self.header_name] = rid
            status = response.status_code
            logger.log(
                logging.WARNING if status >= 500 else logging.INFO,
                "request.complete",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status": status,
                    "latency_bucket": latency_bucket_ms((time.perf_counter() - start) * 1000),
                },
            )
            return response
        finally:
            request_id_ctx_var.reset(token)
