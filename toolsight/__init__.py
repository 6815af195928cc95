"""Toolsight - SaaS subscription detection from billing email"""

from __future__ import annotations

__version__ = "0.1.0"


def __getattr__(name: str):
    """
    Lazy imports to avoid loading the LLM and mailbox stacks when only importing
    lightweight modules.
    """
    if name == "ScanOrchestrator":
        from toolsight.scanning.orchestrator import ScanOrchestrator

        return ScanOrchestrator
    if name == "ToolUpsertService":
        from toolsight.tools.service import ToolUpsertService

        return ToolUpsertService
    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)


__all__ = ["ScanOrchestrator", "ToolUpsertService"]
