"""HTTP surface for triggering scans."""

from __future__ import annotations


def main() -> None:
    """Run the API with uvicorn (console script ``toolsight-api``)."""
    import uvicorn

    from toolsight.config import API_HOST, API_PORT, LOG_LEVEL

    uvicorn.run("toolsight.api.app:app", host=API_HOST, port=API_PORT, log_level=LOG_LEVEL.lower())
