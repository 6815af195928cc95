"""FastAPI server for the Toolsight scan pipeline"""

from __future__ import annotations

import sqlite3
from typing import Any

from dotenv import load_dotenv
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from toolsight.api.routes.health import router as health_router
from toolsight.api.routes.scan import router as scan_router
from toolsight.config import APP_VERSION, DEBUG
from toolsight.infrastructure.database import init_database
from toolsight.observability.logging import get_logger
from toolsight.observability.telemetry import counter, log_event
from toolsight.utils.redaction import redact

# Load environment variables from .env file
load_dotenv()

app = FastAPI(title="Toolsight API", version=APP_VERSION, debug=DEBUG)

logger = get_logger(__name__)


# Custom validation error handler to prevent information leakage
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    logger.warning("Validation error on %s: %s", redact(str(request.url)), exc.errors())
    counter("api.validation_errors")

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "detail": "Invalid request format. Please check your request and try again.",
            "error_count": len(exc.errors()),
            "invalid_fields": [str(err["loc"][-1]) for err in exc.errors()],
        },
    )


# Initialize database schema
try:
    logger.info("Initializing database schema...")
    init_database()
    logger.info("Database initialization complete")
except sqlite3.OperationalError as e:
    logger.critical("Database schema error: %s", e)
    raise RuntimeError(f"Database initialization failed: {e}") from e

app.include_router(health_router)
app.include_router(scan_router)

log_event("api.startup", service="toolsight", version=APP_VERSION)


@app.get("/")
def root() -> dict[str, Any]:
    return {
        "service": "Toolsight API",
        "version": APP_VERSION,
        "status": "running",
        "endpoints": {
            "health": "/health",
            "scan": "/api/scan",
        },
    }
