"""Health check endpoint.

Liveness plus a schema check; LLM readiness only checks credential presence.
"""

from __future__ import annotations

import os
import sqlite3
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter

from toolsight.config import APP_VERSION
from toolsight.infrastructure.database import get_db_connection, get_pool_stats
from toolsight.infrastructure.database_schema import validate_schema
from toolsight.observability.logging import get_logger

router = APIRouter(tags=["health"])
logger = get_logger(__name__)


@router.get("/health")
def health_check() -> dict[str, Any]:
    """Return service status, version, database state and LLM credential readiness."""
    has_api_key = bool(os.getenv("GOOGLE_API_KEY"))
    has_project = bool(os.getenv("GOOGLE_CLOUD_PROJECT"))

    database = "ok"
    pool: dict[str, Any] | None = None
    try:
        with get_db_connection() as conn:
            validate_schema(conn)
        pool = get_pool_stats()
    except (FileNotFoundError, ValueError, sqlite3.Error) as e:
        logger.warning("Health check database problem: %s", e)
        database = "unavailable"

    return {
        "status": "healthy" if database == "ok" else "degraded",
        "service": "Toolsight API",
        "version": APP_VERSION,
        "timestamp": datetime.now(UTC).isoformat(),
        "database": database,
        "pool": pool,
        "llm": {
            "ready": has_api_key or has_project,
            "google_api_key": has_api_key,
            "google_cloud_project": has_project,
        },
    }
