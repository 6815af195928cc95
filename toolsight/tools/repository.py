"""
Detected Tool Repository - CRUD operations for the detected_tools table.

Write helpers take an open connection so the upsert engine can run lookup and
write inside one BEGIN IMMEDIATE transaction.
"""

from __future__ import annotations

import sqlite3
from typing import Any

from toolsight.infrastructure.database import db_transaction, get_db_connection, retry_on_db_lock
from toolsight.observability.logging import get_logger
from toolsight.tools.models import DetectedTool, ToolStatus

logger = get_logger(__name__)

_COLUMNS = (
    "id",
    "organization_id",
    "vendor_name",
    "normalized_vendor",
    "last_charge_amount",
    "currency",
    "last_charge_date",
    "billing_frequency",
    "estimated_renewal_date",
    "first_seen_date",
    "status",
    "renewal_count",
    "confidence_score",
    "inferred_owner_id",
    "owner_confirmation_status",
    "last_interaction_date",
    "tool_category",
    "marketing_relevance_score",
    "detection_reason",
    "source_connection_id",
    "source_email_id",
    "source_email_subject",
    "source_email_sender",
    "created_at",
    "updated_at",
)
_UPDATABLE = frozenset(_COLUMNS) - {"id", "organization_id", "normalized_vendor", "created_at"}


class DetectedToolRepository:
    """Repository for DetectedTool rows."""

    @staticmethod
    def find_by_vendor(
        conn: sqlite3.Connection, organization_id: str, normalized_vendor: str
    ) -> DetectedTool | None:
        row = conn.execute(
            """
            SELECT * FROM detected_tools
            WHERE organization_id = ? AND normalized_vendor = ?
            """,
            (organization_id, normalized_vendor),
        ).fetchone()
        return DetectedTool.from_db_row(dict(row)) if row else None

    @staticmethod
    def insert(conn: sqlite3.Connection, tool: DetectedTool) -> None:
        """
        Insert a tool row.

        Raises:
            sqlite3.IntegrityError: If the (organization, vendor) key already exists
        """
        columns = ", ".join(_COLUMNS)
        placeholders = ", ".join(f":{col}" for col in _COLUMNS)
        conn.execute(
            f"INSERT INTO detected_tools ({columns}) VALUES ({placeholders})",
            tool.to_db_dict(),
        )

    @staticmethod
    def apply_updates(conn: sqlite3.Connection, tool_id: str, updates: dict[str, Any]) -> None:
        """Write the given column values to one tool row."""
        unknown = set(updates) - _UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update columns: {sorted(unknown)}")
        if not updates:
            return

        assignments = ", ".join(f"{col} = :{col}" for col in updates)
        conn.execute(
            f"UPDATE detected_tools SET {assignments} WHERE id = :tool_id",
            {**updates, "tool_id": tool_id},
        )

    @staticmethod
    @retry_on_db_lock()
    def create(tool: DetectedTool) -> DetectedTool:
        """Insert a tool in its own transaction."""
        with db_transaction() as conn:
            DetectedToolRepository.insert(conn, tool)
        logger.info("Created detected tool %s (%s)", tool.id, tool.normalized_vendor)
        return tool

    @staticmethod
    def get_by_id(tool_id: str) -> DetectedTool | None:
        with get_db_connection() as conn:
            row = conn.execute("SELECT * FROM detected_tools WHERE id = ?", (tool_id,)).fetchone()
        return DetectedTool.from_db_row(dict(row)) if row else None

    @staticmethod
    def get_by_vendor(organization_id: str, normalized_vendor: str) -> DetectedTool | None:
        with get_db_connection() as conn:
            return DetectedToolRepository.find_by_vendor(conn, organization_id, normalized_vendor)

    @staticmethod
    def list_by_organization(
        organization_id: str, status: ToolStatus | None = None
    ) -> list[DetectedTool]:
        query = "SELECT * FROM detected_tools WHERE organization_id = ?"
        params: list[Any] = [organization_id]
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        query += " ORDER BY vendor_name"

        with get_db_connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [DetectedTool.from_db_row(dict(row)) for row in rows]

    @staticmethod
    def count_by_vendor(organization_id: str, normalized_vendor: str) -> int:
        with get_db_connection() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) FROM detected_tools
                WHERE organization_id = ? AND normalized_vendor = ?
                """,
                (organization_id, normalized_vendor),
            ).fetchone()
        return row[0]
