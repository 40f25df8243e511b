import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from dealcross.api.v1.router import v1_router
from dealcross.core.config import get_settings
from dealcross.core.errors import DealcrossError
from dealcross.core.logging import configure_logging
from dealcross.core.middleware import RequestIdMiddleware
from dealcross.core.rate_limit import build_limiters

logger = logging.getLogger(__name__)

_HTTP_KINDS = {
    400: "bad_request",
    401: "unauthenticated",
    403: "permission_denied",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
    429: "rate_limited",
}


async def dealcross_error_handler(request: Request, exc: DealcrossError) -> JSONResponse:
    headers = {"Retry-After": str(exc.retry_after)} if exc.retryable else None
    if exc.status_code >= 500:
        logger.error("request failed", extra={"error": exc.kind, "path": request.url.path})
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": _HTTP_KINDS.get(exc.status_code, "error"),
            "message": str(exc.detail),
        },
        headers=getattr(exc, "headers", None),
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")}
        for e in exc.errors()
    ]
    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "error": "validation_error",
            "message": "Request validation failed.",
            "details": {"errors": errors},
        },
    )


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings)

    app = FastAPI(
        title=settings.app_name,
        version="0.1.0",
    )

    # Middleware: Request ID
    app.add_middleware(RequestIdMiddleware, header_name=settings.request_id_header)

    # per-app token buckets for escrow creation / dispute submission
    app.state.rate_limiters = build_limiters(settings)

    app.add_exception_handler(DealcrossError, dealcross_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    # API v1
    app.include_router(v1_router, prefix=settings.api_prefix)

    return app


app = create_app()
