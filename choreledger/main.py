"""choreledger - family chore lifecycle and reward settlement engine."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from choreledger import __version__
from choreledger.core.config import settings
from choreledger.core.db_client import DatabaseError, RecordNotFoundError, close_connection, init_db
from choreledger.core.errors import (
    EngineError,
    ErrorCategory,
    ErrorSeverity,
    classify_error_with_response,
    http_status_for,
)
from choreledger.core.logging import configure_logfire, instrument_fastapi
from choreledger.core.scheduler import start_scheduler, stop_scheduler
from choreledger.interface.api_router import router as api_router


logger = logging.getLogger(__name__)


def validate_startup_configuration() -> None:
    """Refuse to start in production with development credentials.

    Raises:
        ValueError: If a required production setting is missing
    """
    if not settings.is_production:
        return
    if settings.secret_key == "change-me":
        raise ValueError("SECRET_KEY must be set in production")
    settings.require_credential("ledger_api_key", "Ledger API key")


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan context manager."""
    # Configure logging first so validation logs are captured
    configure_logfire()
    validate_startup_configuration()

    await init_db()
    logger.info("Database initialized")

    start_scheduler()
    yield
    stop_scheduler()
    await close_connection()


app = FastAPI(
    title="choreledger",
    description="Family chore lifecycle and reward settlement engine",
    version=__version__,
    lifespan=lifespan,
)

# Instrument FastAPI with Logfire
instrument_fastapi(app)

app.include_router(api_router)


async def handle_engine_error(request: Request, exc: Exception) -> JSONResponse:
    """Render engine, store and validation errors as ErrorResponse bodies."""
    response = classify_error_with_response(exc, debug=settings.debug)
    if response.category == ErrorCategory.INVARIANT_VIOLATION or response.severity == ErrorSeverity.CRITICAL:
        logger.error("Invariant violation on %s %s: %s", request.method, request.url.path, exc)
    elif response.category == ErrorCategory.UNKNOWN:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=http_status_for(response), content=response.model_dump(mode="json"))


_HANDLED_ERRORS = (EngineError, RecordNotFoundError, DatabaseError, PermissionError, ValueError, RequestValidationError)
for error_type in _HANDLED_ERRORS:
    app.add_exception_handler(error_type, handle_engine_error)


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(content={"status": "healthy"}, status_code=200)
