"""Centralized configuration for the Toolsight scan pipeline.

Re-exports everything from toolsight.infrastructure.settings, then adds typed
constants for database, quotas, mailbox access, detection thresholds, LLM and
interruption rules.  Environment variable overrides use safe defaults so the
pipeline runs without extra env configuration.
"""

from __future__ import annotations

import os

from toolsight.infrastructure.settings import *  # noqa: F401, F403
from toolsight.infrastructure.settings import PROJECT_ROOT

# --- App ---
APP_VERSION: str = "0.1.0"

# --- Database ---
DB_POOL_SIZE: int = int(os.getenv("TOOLSIGHT_DB_POOL_SIZE", "5"))
DB_POOL_TIMEOUT: float = float(os.getenv("TOOLSIGHT_DB_POOL_TIMEOUT", "5.0"))
DB_CONNECT_TIMEOUT: float = float(os.getenv("TOOLSIGHT_DB_CONNECT_TIMEOUT", "30.0"))
DB_TEMP_CONN_MAX: int = int(os.getenv("TOOLSIGHT_DB_TEMP_CONN_MAX", "10"))
DB_RETRY_MAX: int = int(os.getenv("TOOLSIGHT_DB_RETRY_MAX", "5"))
DB_RETRY_BASE_DELAY: float = float(os.getenv("TOOLSIGHT_DB_RETRY_BASE_DELAY", "0.1"))
DB_RETRY_MAX_DELAY: float = float(os.getenv("TOOLSIGHT_DB_RETRY_MAX_DELAY", "2.0"))
DB_RETRY_JITTER: float = float(os.getenv("TOOLSIGHT_DB_RETRY_JITTER", "0.1"))

# --- Daily quotas (per user, per UTC day) ---
QUOTA_DAILY_EMAILS: int = int(os.getenv("TOOLSIGHT_QUOTA_EMAILS", "300"))
QUOTA_DAILY_CLASSIFICATIONS: int = int(os.getenv("TOOLSIGHT_QUOTA_CLASSIFICATIONS", "300"))
QUOTA_DAILY_EXTRACTIONS: int = int(os.getenv("TOOLSIGHT_QUOTA_EXTRACTIONS", "30"))

# --- Mailbox ---
MAILBOX_MAX_RESULTS: int = 300
MAILBOX_BODY_TRUNCATION: int = 3000
MAILBOX_HTTP_TIMEOUT_SECONDS: int = int(os.getenv("TOOLSIGHT_MAILBOX_TIMEOUT", "30"))
MAILBOX_SEARCH_KEYWORDS: tuple[str, ...] = (
    "invoice",
    "receipt",
    "subscription",
    "payment",
    "renewal",
    "trial",
    "bill",
    "charge",
)
TOKEN_REFRESH_MARGIN_SECONDS: int = 5 * 60

# --- Detection ---
CLASSIFICATION_MIN_CONFIDENCE: int = 40
EXTRACTION_MIN_CONFIDENCE: int = 40
EXTRACTION_AMOUNT_MAX: float = 100_000.0
RENEWAL_WINDOW_DAYS: int = 365
LEXICON_PATH: str = os.getenv(
    "TOOLSIGHT_LEXICON_PATH", str(PROJECT_ROOT / "config" / "detection_lexicon.yaml")
)

# --- Scan orchestration ---
SCAN_PACING_SECONDS: float = float(os.getenv("TOOLSIGHT_SCAN_PACING", "0.1"))
SCAN_DEFAULT_BACKFILL_MONTHS: int = 12
SCAN_DAILY_FALLBACK_DAYS: int = 1
SCAN_MAX_WORKERS: int = int(os.getenv("TOOLSIGHT_SCAN_MAX_WORKERS", "1"))

# --- LLM ---
LLM_TIMEOUT_SECONDS: int = int(os.getenv("TOOLSIGHT_LLM_TIMEOUT", "30"))
LLM_MAX_RETRIES: int = int(os.getenv("TOOLSIGHT_LLM_MAX_RETRIES", "3"))

# --- Interruptions ---
INTERRUPTION_SILENT_RENEWAL_MIN_RENEWALS: int = 6
INTERRUPTION_TRIAL_WINDOW_DAYS: int = 7
INTERRUPTION_NO_OWNER_MIN_RENEWALS: int = 3
