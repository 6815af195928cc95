"""
Interruption Repository - reads and writes for the interruptions table.
"""

from __future__ import annotations

from datetime import datetime

from toolsight.infrastructure.database import db_transaction, get_db_connection, retry_on_db_lock
from toolsight.interruptions.models import Interruption
from toolsight.mailbox.models import utc_now
from toolsight.observability.logging import get_logger

logger = get_logger(__name__)


class InterruptionRepository:
    @staticmethod
    def open_tool_ids(organization_id: str) -> set[str]:
        """Tool ids in an organization that already have an unresolved interruption."""
        with get_db_connection() as conn:
            rows = conn.execute(
                """
                SELECT tool_id FROM interruptions
                WHERE organization_id = ? AND resolved_at IS NULL
                """,
                (organization_id,),
            ).fetchall()
        return {row["tool_id"] for row in rows}

    @staticmethod
    def has_open(tool_id: str) -> bool:
        with get_db_connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM interruptions WHERE tool_id = ? AND resolved_at IS NULL LIMIT 1",
                (tool_id,),
            ).fetchone()
        return row is not None

    @staticmethod
    @retry_on_db_lock()
    def create(interruption: Interruption) -> Interruption:
        """
        Insert an interruption.

        Raises:
            sqlite3.IntegrityError: If the tool already has an open interruption
        """
        with db_transaction() as conn:
            conn.execute(
                """
                INSERT INTO interruptions (
                    id, organization_id, tool_id, type, priority, message,
                    possible_actions, triggered_at, resolved_at
                ) VALUES (
                    :id, :organization_id, :tool_id, :type, :priority, :message,
                    :possible_actions, :triggered_at, :resolved_at
                )
                """,
                interruption.to_db_dict(),
            )
        return interruption

    @staticmethod
    @retry_on_db_lock()
    def resolve(interruption_id: str, resolved_at: datetime | None = None) -> bool:
        with db_transaction() as conn:
            cursor = conn.execute(
                "UPDATE interruptions SET resolved_at = ? WHERE id = ? AND resolved_at IS NULL",
                ((resolved_at or utc_now()).isoformat(), interruption_id),
            )
        return cursor.rowcount > 0

    @staticmethod
    def list_open(organization_id: str) -> list[Interruption]:
        with get_db_connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM interruptions
                WHERE organization_id = ? AND resolved_at IS NULL
                ORDER BY triggered_at
                """,
                (organization_id,),
            ).fetchall()
        return [Interruption.from_db_row(dict(row)) for row in rows]
