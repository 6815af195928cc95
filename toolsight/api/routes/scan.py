"""Scan trigger endpoint.

Runs synchronously in FastAPI's threadpool; the response carries one result
per scanned connection.
"""

from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from toolsight.observability.logging import get_logger
from toolsight.observability.telemetry import counter
from toolsight.scanning.models import ScanType
from toolsight.scanning.orchestrator import ConnectionNotFoundError, ScanOrchestrator

router = APIRouter(prefix="/api", tags=["scan"])
logger = get_logger(__name__)


# ============================================================================
# Request/Response Models
# ============================================================================


class ScanRequest(BaseModel):
    connection_id: str | None = Field(default=None, max_length=128)
    scan_type: ScanType = ScanType.DAILY


class ScanResultItem(BaseModel):
    connection_id: str
    status: str
    scan_log_id: str | None = None
    emails_scanned: int = 0
    tools_detected: int = 0
    tools_updated: int = 0
    interruptions_created: int = 0
    quota_limited: bool = False
    stop_reason: str | None = None
    error_message: str | None = None


class ScanResponse(BaseModel):
    results: list[ScanResultItem]


def get_orchestrator() -> ScanOrchestrator:
    return ScanOrchestrator()


@router.post("/scan", response_model=ScanResponse)
def run_scan(
    request: ScanRequest, orchestrator: ScanOrchestrator = Depends(get_orchestrator)
) -> ScanResponse:
    """Scan one connection, or all active connections when connection_id is omitted."""
    counter("api.scan.requests")
    try:
        results = orchestrator.run_scan(request.connection_id, request.scan_type)
    except ConnectionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e

    logger.info(
        "Scan request (%s) finished: %d connection(s)", request.scan_type.value, len(results)
    )
    return ScanResponse(results=[ScanResultItem(**asdict(r)) for r in results])
