"""
Database schema initialization for Toolsight.

Contains the SQL schema and initialization logic, kept apart from database.py.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

from toolsight.observability.logging import get_logger

logger = get_logger(__name__)

EXPECTED_TABLES = (
    "email_connections",
    "detected_tools",
    "interruptions",
    "email_scan_logs",
    "scan_quota_usage",
    "extraction_logs",
)


def init_database(db_path: Path) -> None:
    """
    Initialize database with schema (idempotent)

    Safe to run multiple times - uses CREATE TABLE IF NOT EXISTS.

    Args:
        db_path: Path to the database file

    Side Effects:
    - Creates tables and indexes if they don't exist
    - Creates the parent directory if needed
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS email_connections (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                organization_id TEXT NOT NULL,
                provider TEXT NOT NULL,
                email_address TEXT NOT NULL DEFAULT '',
                owner_role TEXT,
                access_token TEXT,
                refresh_token TEXT,
                token_expires_at TEXT,
                is_active INTEGER NOT NULL DEFAULT 1,
                backfill_months INTEGER NOT NULL DEFAULT 12,
                last_scan_at TEXT,
                last_scanned_email_date TEXT,
                last_backfill_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS detected_tools (
                id TEXT PRIMARY KEY,
                organization_id TEXT NOT NULL,
                vendor_name TEXT NOT NULL,
                normalized_vendor TEXT NOT NULL,
                last_charge_amount REAL,
                currency TEXT,
                last_charge_date TEXT,
                billing_frequency TEXT NOT NULL DEFAULT 'unknown',
                estimated_renewal_date TEXT,
                first_seen_date TEXT NOT NULL,
                status TEXT NOT NULL,
                renewal_count INTEGER NOT NULL DEFAULT 0 CHECK (renewal_count >= 0),
                confidence_score INTEGER NOT NULL DEFAULT 0,
                inferred_owner_id TEXT,
                owner_confirmation_status TEXT NOT NULL DEFAULT 'unconfirmed',
                last_interaction_date TEXT,
                tool_category TEXT NOT NULL DEFAULT 'other',
                marketing_relevance_score INTEGER NOT NULL DEFAULT 0,
                detection_reason TEXT,
                source_connection_id TEXT,
                source_email_id TEXT,
                source_email_subject TEXT,
                source_email_sender TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE(organization_id, normalized_vendor)
            );

            CREATE INDEX IF NOT EXISTS idx_detected_tools_org_status
                ON detected_tools(organization_id, status);

            CREATE TABLE IF NOT EXISTS interruptions (
                id TEXT PRIMARY KEY,
                organization_id TEXT NOT NULL,
                tool_id TEXT NOT NULL REFERENCES detected_tools(id),
                type TEXT NOT NULL,
                priority TEXT NOT NULL,
                message TEXT NOT NULL,
                possible_actions TEXT NOT NULL,
                triggered_at TEXT NOT NULL,
                resolved_at TEXT
            );

            -- At most one unresolved interruption per tool
            CREATE UNIQUE INDEX IF NOT EXISTS idx_interruptions_open_tool
                ON interruptions(tool_id) WHERE resolved_at IS NULL;

            CREATE TABLE IF NOT EXISTS email_scan_logs (
                id TEXT PRIMARY KEY,
                connection_id TEXT NOT NULL REFERENCES email_connections(id),
                scan_type TEXT NOT NULL,
                status TEXT NOT NULL,
                emails_scanned INTEGER NOT NULL DEFAULT 0,
                tools_detected INTEGER NOT NULL DEFAULT 0,
                tools_updated INTEGER NOT NULL DEFAULT 0,
                quota_limited INTEGER NOT NULL DEFAULT 0,
                stop_reason TEXT,
                error_message TEXT,
                started_at TEXT NOT NULL,
                completed_at TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_scan_logs_connection
                ON email_scan_logs(connection_id, started_at);

            CREATE TABLE IF NOT EXISTS scan_quota_usage (
                user_id TEXT NOT NULL,
                usage_date TEXT NOT NULL,
                emails_scanned INTEGER NOT NULL DEFAULT 0,
                classifications INTEGER NOT NULL DEFAULT 0,
                extractions INTEGER NOT NULL DEFAULT 0,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (user_id, usage_date)
            );

            CREATE TABLE IF NOT EXISTS extraction_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                connection_id TEXT,
                email_id TEXT NOT NULL,
                email_subject TEXT,
                classification_confidence INTEGER NOT NULL DEFAULT 0,
                extraction_attempted INTEGER NOT NULL DEFAULT 0,
                extraction_success INTEGER NOT NULL DEFAULT 0,
                validation_passed INTEGER NOT NULL DEFAULT 0,
                failure_reason TEXT,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_extraction_logs_user
                ON extraction_logs(user_id, created_at);
        """)
        conn.commit()
    finally:
        conn.close()

    logger.info("Database initialized at %s", db_path)


def validate_schema(conn: sqlite3.Connection) -> bool:
    """
    Check that all expected tables exist.

    Raises:
        ValueError: If tables are missing
    """
    rows = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
    present = {row[0] for row in rows}
    missing = [table for table in EXPECTED_TABLES if table not in present]
    if missing:
        raise ValueError(f"Missing tables: {', '.join(missing)}")
    return True
