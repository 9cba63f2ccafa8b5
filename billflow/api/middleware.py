"""Middleware and exception handlers for the FastAPI application."""

import time
import traceback
import uuid
from typing import Union

from fastapi import Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from billflow.core.config import settings
from billflow.core.exceptions import (
    BillflowException,
    ConcurrentUpdateError,
    ExternalServiceError,
    ImmutableRecordError,
    InvalidPlanError,
    InvalidStateError,
    NotFoundException,
    PermissionException,
    SubscriptionConflictError,
    unpack_validation_error,
)
from billflow.core.logging import logger


async def add_request_id(request: Request, call_next: callable) -> Response:
    """Middleware to generate a request ID for tracing and echo it in the response.

    Args:
    ----
        request (Request): The incoming request.
        call_next (callable): The next middleware in the chain.

    Returns:
    -------
        Response: The response to the incoming request.

    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


async def log_requests(request: Request, call_next: callable) -> Response:
    """Middleware to log handled requests with their duration and status code."""
    start_time = time.time()
    response = await call_next(request)
    duration = time.time() - start_time
    logger.with_context(request_id=getattr(request.state, "request_id", None)).info(
        f"Handled request {request.method} {request.url.path} in {duration:.2f} seconds. "
        f"Response code: {response.status_code}"
    )
    return response


async def exception_logging_middleware(request: Request, call_next: callable) -> Response:
    """Middleware to log unhandled exceptions and answer with a 500.

    Args:
    ----
        request (Request): The incoming request.
        call_next (callable): The next middleware in the chain.

    Returns:
    -------
        Response: The response to the incoming request.

    """
    try:
        return await call_next(request)
    except Exception as exc:
        logger.error(f"Unhandled exception: {exc}\n{traceback.format_exc()}")

        response_content = {
            "detail": f"Internal Server Error: {exc.__class__.__name__}: {str(exc)}"
        }
        # Include stack trace only in development mode
        if settings.LOCAL_DEVELOPMENT or settings.DEBUG:
            response_content["trace"] = traceback.format_exc()

        return JSONResponse(status_code=500, content=response_content)


# Exception handlers
async def validation_exception_handler(
    request: Request, exc: Union[RequestValidationError, ValidationError]
) -> JSONResponse:
    """Exception handler for request and schema validation errors.

    Returns:
    -------
        JSONResponse: A 422 response listing each invalid field, e.g.
            ``{"errors": [{"body.priceId": "Field required"}]}``.

    """
    error_messages = unpack_validation_error(exc)
    logger.warning(f"Validation error on {request.method} {request.url.path}: {error_messages}")
    return JSONResponse(status_code=422, content=error_messages)


async def not_found_exception_handler(request: Request, exc: NotFoundException) -> JSONResponse:
    """Exception handler for NotFoundException (404)."""
    return JSONResponse(status_code=404, content={"detail": exc.message})


async def permission_exception_handler(request: Request, exc: PermissionException) -> JSONResponse:
    """Exception handler for PermissionException (403)."""
    return JSONResponse(status_code=403, content={"detail": exc.message})


async def conflict_exception_handler(
    request: Request, exc: Union[SubscriptionConflictError, InvalidStateError]
) -> JSONResponse:
    """Exception handler for requests that conflict with the subscription's state (409)."""
    return JSONResponse(status_code=409, content={"detail": exc.message})


async def invalid_plan_exception_handler(request: Request, exc: InvalidPlanError) -> JSONResponse:
    """Exception handler for InvalidPlanError (400)."""
    return JSONResponse(status_code=400, content={"detail": exc.message})


async def external_service_exception_handler(
    request: Request, exc: ExternalServiceError
) -> JSONResponse:
    """Exception handler for failures of Stripe or Resend during a direct API call (502)."""
    logger.error(f"External service error on {request.url.path}: {exc}")
    return JSONResponse(status_code=502, content={"detail": str(exc)})


async def billflow_exception_handler(request: Request, exc: BillflowException) -> JSONResponse:
    """Generic exception handler for all remaining BillflowException types."""
    status_code_map = {
        ImmutableRecordError: 400,
        # Retrying the request is safe once the other writer is done
        ConcurrentUpdateError: 503,
    }
    status_code = status_code_map.get(type(exc), 500)
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})
