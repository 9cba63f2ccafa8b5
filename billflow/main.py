"""Main module of the FastAPI application.

This module sets up the FastAPI application, the middleware that logs incoming
requests and unhandled exceptions, and the reconciliation scheduler.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError

from billflow.api.middleware import (
    add_request_id,
    billflow_exception_handler,
    conflict_exception_handler,
    exception_logging_middleware,
    external_service_exception_handler,
    invalid_plan_exception_handler,
    log_requests,
    not_found_exception_handler,
    permission_exception_handler,
    validation_exception_handler,
)
from billflow.api.router import TrailingSlashRouter
from billflow.api.v1.api import api_router
from billflow.billing.reconciliation import reconciliation_scheduler
from billflow.core.config import settings
from billflow.core.exceptions import (
    BillflowException,
    ExternalServiceError,
    InvalidPlanError,
    InvalidStateError,
    NotFoundException,
    PermissionException,
    SubscriptionConflictError,
)
from billflow.core.logging import logger
from billflow.db.init_db import init_db
from billflow.db.session import async_engine


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events.

    Creates missing tables and runs the reconciliation scheduler while the app is up.
    """
    await init_db(async_engine)
    if settings.RECONCILIATION_ENABLED:
        await reconciliation_scheduler.start()

    yield

    if settings.RECONCILIATION_ENABLED:
        await reconciliation_scheduler.stop()
    await async_engine.dispose()
    logger.info("Shutdown complete")


# Create FastAPI app with our custom router and disable FastAPI's built-in redirects
app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url="/openapi.json",
    lifespan=lifespan,
    router=TrailingSlashRouter(),
    redirect_slashes=False,
)

app.include_router(api_router)

# Register middleware directly
app.middleware("http")(add_request_id)
app.middleware("http")(log_requests)
app.middleware("http")(exception_logging_middleware)

# Register exception handlers
app.exception_handler(RequestValidationError)(validation_exception_handler)
app.exception_handler(ValidationError)(validation_exception_handler)
app.exception_handler(NotFoundException)(not_found_exception_handler)
app.exception_handler(PermissionException)(permission_exception_handler)
app.exception_handler(SubscriptionConflictError)(conflict_exception_handler)
app.exception_handler(InvalidStateError)(conflict_exception_handler)
app.exception_handler(InvalidPlanError)(invalid_plan_exception_handler)
app.exception_handler(ExternalServiceError)(external_service_exception_handler)
app.exception_handler(BillflowException)(billflow_exception_handler)
