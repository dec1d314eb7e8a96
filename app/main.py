"""Main application module.

This module initializes the FastAPI application, includes routes,
and configures middleware, exception handlers and the background
match-count flush.
"""

import os
import time
import traceback

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api import api_router
from app.api.dependencies import match_counter
from app.core.config import settings
from app.core.logging import setup_logging
from app.core.redis import redis_manager
from app.db.base import create_tables
from app.scheduler.scheduler import scheduler_service
from app.services.exceptions import (
    RoutingRuleLimitExceededError,
    RoutingRuleNotFoundError,
    RoutingTemplateNotFoundError,
    RoutingValidationError,
    ServiceError,
    TransientStoreError,
    URLExpiredError,
    URLNotFoundError,
)

# Ensure logs directory exists
if settings.LOG_TO_FILE:
    os.makedirs(settings.LOG_DIR, exist_ok=True)

# Setup logging
logger = setup_logging()

# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    description=settings.APP_DESCRIPTION,
    version=settings.APP_VERSION,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API router
app.include_router(api_router)

# Most specific class first; lookup walks this list in order.
SERVICE_ERROR_STATUS = [
    (URLNotFoundError, status.HTTP_404_NOT_FOUND),
    (RoutingRuleNotFoundError, status.HTTP_404_NOT_FOUND),
    (URLExpiredError, status.HTTP_410_GONE),
    (RoutingTemplateNotFoundError, status.HTTP_400_BAD_REQUEST),
    (RoutingRuleLimitExceededError, status.HTTP_400_BAD_REQUEST),
    (RoutingValidationError, status.HTTP_400_BAD_REQUEST),
    (TransientStoreError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def status_for_service_error(exc: ServiceError) -> int:
    for error_class, status_code in SERVICE_ERROR_STATUS:
        if isinstance(exc, error_class):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


# Add exception handlers
@app.exception_handler(ServiceError)
async def service_exception_handler(request: Request, exc: ServiceError):
    """Translate service-layer errors into JSON responses with a stable error code."""
    status_code = status_for_service_error(exc)
    if status_code >= 500:
        logger.error(f"Service error in {request.method} {request.url.path}: {exc}")
    else:
        logger.info(f"{exc.error_code} for {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error_code": exc.error_code}
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail}
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle validation errors with detailed information."""
    logger.warning(f"Request validation error: {exc}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "detail": "Validation error",
            "error_code": RoutingValidationError.error_code,
            "errors": jsonable_errors(exc),
        }
    )


def jsonable_errors(exc: RequestValidationError):
    # pydantic puts the raised exception object in ctx for custom validators
    errors = []
    for error in exc.errors():
        error = dict(error)
        if "ctx" in error:
            error["ctx"] = {key: str(value) for key, value in error["ctx"].items()}
        errors.append(error)
    return errors


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler to catch and log all unhandled exceptions."""
    error_id = f"error-{time.time()}"
    error_location = f"{request.method} {request.url.path}"

    logger.bind(
        error_id=error_id,
        url=str(request.url),
        method=request.method,
        path_params=request.path_params,
        query_params=dict(request.query_params),
        client_host=request.client.host if request.client else None
    ).opt(exception=exc).error(f"Unhandled exception in {error_location}")

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "detail": "Internal server error occurred",
            "error_id": error_id,
            "message": str(exc) if settings.DEBUG else "Internal server error"
        }
    )


# Add startup and shutdown event handlers
@app.on_event("startup")
async def startup_event():
    """Run startup tasks."""
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Debug mode: {settings.DEBUG}")

    if settings.DB_CREATE_TABLES:
        await create_tables()

    # Initialize and start the scheduler, then register the match-count flush
    try:
        logger.info("Initializing scheduler")
        scheduler = scheduler_service.start()
        match_counter.start(scheduler)
        logger.info("Scheduler started successfully")
    except Exception as e:
        logger.error(f"Error starting scheduler: {e}")
        logger.error(f"Exception traceback: {traceback.format_exc()}")
        logger.critical("Scheduler could not be started, match counts will only flush at shutdown")


@app.on_event("shutdown")
async def shutdown_event():
    """Run cleanup tasks."""
    logger.info(f"Shutting down {settings.APP_NAME}")

    # Final flush of buffered match counts; never raises
    await match_counter.shutdown()

    try:
        logger.info("Shutting down scheduler")
        scheduler_service.shutdown()
        logger.info("Scheduler shut down successfully")
    except Exception as e:
        logger.error(f"Error shutting down scheduler: {e}")

    await redis_manager.close()
