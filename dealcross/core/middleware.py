import logging
import re
import time
import uuid
from contextvars import ContextVar
from typing import Callable, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("dealcross.access")

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# client-supplied ids end up in audit rows and logs
_SAFE_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


class RequestIdLogFilter(logging.Filter):
    """Stamps the active request id on every record that doesn't carry one."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = request_id_var.get()
        return True


class RequestIdMiddleware(BaseHTTPMiddleware):
    """
    Gives every request an id: the caller's `X-Request-Id` when it is sane,
    a fresh uuid otherwise. The id is echoed in the response, stored on
    request.state for audit rows, and visible to logging for the duration
    of the request. One access line is logged per request.
    """

    def __init__(self, app, header_name: str = "X-Request-Id"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        supplied = request.headers.get(self.header_name)
        rid = supplied if supplied and _SAFE_ID.match(supplied) else str(uuid.uuid4())
        request.state.request_id = rid
        token = request_id_var.set(rid)
        started = time.perf_counter()
        try:
            response = await call_next(request)
            logger.info(
                "request finished",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status": response.status_code,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 1),
                },
            )
        finally:
            request_id_var.reset(token)

        response.headers[self.header_name] = rid
        return response
