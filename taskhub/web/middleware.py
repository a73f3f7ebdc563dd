"""Middleware and exception handlers for the FastAPI application."""

import time
import uuid
from typing import Awaitable, Callable

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from taskhub.common.logging_config import bind_context, clear_context
from taskhub.core.exceptions import (
    DuplicateJobError,
    InvalidPayloadError,
    StoreError,
    UnknownJobTypeError,
)

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def register_exception_handlers(app: FastAPI) -> None:
    """
    Register exception handlers for the FastAPI application.

    Maps queue exceptions to appropriate HTTP status codes:
    - UnknownJobTypeError -> 400
    - InvalidPayloadError -> 422
    - DuplicateJobError -> 409
    - StoreError -> 503

    Args:
        app: FastAPI application instance
    """

    @app.exception_handler(UnknownJobTypeError)
    async def unknown_job_type_handler(request: Request, exc: UnknownJobTypeError) -> JSONResponse:
        logger.warning("unknown_job_type", job_type=exc.job_type, path=str(request.url.path))
        return JSONResponse(
            status_code=400,
            content={
                "detail": str(exc),
                "error_type": "unknown_job_type",
                "job_type": exc.job_type,
            },
        )

    @app.exception_handler(InvalidPayloadError)
    async def invalid_payload_handler(request: Request, exc: InvalidPayloadError) -> JSONResponse:
        logger.warning("invalid_payload", job_type=exc.job_type, path=str(request.url.path))
        return JSONResponse(
            status_code=422,
            content={
                "detail": str(exc),
                "error_type": "invalid_payload",
                "job_type": exc.job_type,
            },
        )

    @app.exception_handler(DuplicateJobError)
    async def duplicate_job_handler(request: Request, exc: DuplicateJobError) -> JSONResponse:
        logger.warning("duplicate_job", external_id=exc.external_id, path=str(request.url.path))
        return JSONResponse(
            status_code=409,
            content={
                "detail": str(exc),
                "error_type": "duplicate_job",
                "external_id": exc.external_id,
            },
        )

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
        logger.error("job_store_error", error=str(exc), path=str(request.url.path))
        return JSONResponse(
            status_code=503,
            content={
                "detail": "Job store unavailable",
                "error_type": "store_unavailable",
            },
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        logger.warning(
            "validation_error",
            errors=exc.errors(),
            path=str(request.url.path),
        )
        return JSONResponse(
            status_code=422,
            content={
                "detail": "Validation error",
                "error_type": "validation_error",
                "errors": [
                    {
                        "loc": list(err["loc"]),
                        "msg": err["msg"],
                        "type": err["type"],
                    }
                    for err in exc.errors()
                ],
            },
        )


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log each request with a request id bound into the structlog context.

    Log lines emitted while the request is handled (submission, duplicate
    rejections, store errors) carry the same ``request_id``, which is also
    returned to the caller in the ``X-Request-ID`` header. Health checks are
    not logged.
    """

    quiet_paths = frozenset({"/health"})

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        path = request.url.path
        if path in self.quiet_paths:
            return await call_next(request)

        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:12]
        bind_context(request_id=request_id)
        start_time = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "request_failed",
                method=request.method,
                path=path,
                error=str(exc),
                duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
            )
            raise
        finally:
            clear_context("request_id")

        logger.info(
            "request_completed",
            request_id=request_id,
            method=request.method,
            path=path,
            status_code=response.status_code,
            duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
        )
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
