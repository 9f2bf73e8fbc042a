"""
Schema definitions for analysis.db.

This module defines the DDL for the analytical database that stores
ingested dating-platform exports, their merged time series, and the
synthetic cohort profiles built from them.

Design Decisions:
    1. profile_id is "{platform}:{external_id}" so ids never collide across platforms
    2. Uniqueness constraints are the de-duplication points for merges:
       (profile_id, date) for usage, (profile_id, platform_match_id) for
       matches, (match_id, dedup_key) for messages
    3. Dates are ISO-8601 TEXT (YYYY-MM-DD for days, full timestamps otherwise)
    4. Unmodeled export fields are kept as JSON in dim_profile.extra_json,
       per-message ones in fact_message.extra_json
    5. etl_state tracks schema version and run timestamps
"""

import sqlite3
from pathlib import Path
from typing import List
import logging

logger = logging.getLogger(__name__)

# Schema version for migration tracking
SCHEMA_VERSION = "1.1.0"

SCHEMA_DDL = """
-- =============================================================================
-- dim_user: Caller identities (authentication happens elsewhere)
-- =============================================================================
-- Location columns come from the optional geolocation hint at upload time.
--
CREATE TABLE IF NOT EXISTS dim_user (
    user_id TEXT PRIMARY KEY,
    is_anonymous INTEGER NOT NULL DEFAULT 0 CHECK (is_anonymous IN (0, 1)),
    email TEXT,
    country TEXT,
    region TEXT,
    city TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- =============================================================================
-- dim_profile: One per (platform, external id); computed=1 for cohort profiles
-- =============================================================================
CREATE TABLE IF NOT EXISTS dim_profile (
    profile_id TEXT PRIMARY KEY,
    platform TEXT NOT NULL CHECK (platform IN ('TINDER', 'HINGE', 'BUMBLE')),
    external_id TEXT NOT NULL,
    user_id TEXT REFERENCES dim_user(user_id) ON DELETE SET NULL,
    computed INTEGER NOT NULL DEFAULT 0 CHECK (computed IN (0, 1)),
    birth_date TEXT,
    age_at_upload INTEGER,
    age_at_last_usage INTEGER,
    create_date TEXT,
    gender TEXT NOT NULL DEFAULT 'UNKNOWN',
    gender_str TEXT,
    interested_in TEXT,
    gender_filter TEXT,
    age_filter_min INTEGER,
    age_filter_max INTEGER,
    bio TEXT,
    city TEXT,
    region TEXT,
    country TEXT,
    education TEXT NOT NULL DEFAULT '',
    pos_lat REAL NOT NULL DEFAULT 0,
    pos_lon REAL NOT NULL DEFAULT 0,
    photo_count INTEGER NOT NULL DEFAULT 0,
    interests_json TEXT,
    first_day_on_app TEXT,
    last_day_on_app TEXT,
    days_in_profile_period INTEGER,
    extra_json TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (platform, external_id)
);

CREATE INDEX IF NOT EXISTS idx_profile_user
    ON dim_profile(user_id);

CREATE INDEX IF NOT EXISTS idx_profile_cohort_filter
    ON dim_profile(computed, gender, age_at_last_usage);

-- =============================================================================
-- fact_daily_usage: One row per (profile, calendar date)
-- =============================================================================
-- Rates are NULL when their denominator is zero on that day.
--
CREATE TABLE IF NOT EXISTS fact_daily_usage (
    profile_id TEXT NOT NULL REFERENCES dim_profile(profile_id) ON DELETE CASCADE,
    date TEXT NOT NULL,
    app_opens INTEGER NOT NULL DEFAULT 0,
    swipe_likes INTEGER NOT NULL DEFAULT 0,
    swipe_passes INTEGER NOT NULL DEFAULT 0,
    super_likes INTEGER NOT NULL DEFAULT 0,
    swipes_combined INTEGER NOT NULL DEFAULT 0,
    matches INTEGER NOT NULL DEFAULT 0,
    messages_sent INTEGER NOT NULL DEFAULT 0,
    messages_received INTEGER NOT NULL DEFAULT 0,
    like_rate REAL,
    match_rate REAL,
    response_rate REAL,
    engagement_rate REAL,
    messages_sent_rate REAL,
    user_age_this_day INTEGER,
    PRIMARY KEY (profile_id, date)
);

-- =============================================================================
-- fact_match: Deduplicated by platform match id within a profile
-- =============================================================================
-- Conversation stats are recomputed from the message rows after every merge.
--
CREATE TABLE IF NOT EXISTS fact_match (
    match_id TEXT PRIMARY KEY,
    profile_id TEXT NOT NULL REFERENCES dim_profile(profile_id) ON DELETE CASCADE,
    platform_match_id TEXT NOT NULL,
    matched_at TEXT,
    liked_at TEXT,
    we_met TEXT,
    blocked INTEGER NOT NULL DEFAULT 0,
    total_message_count INTEGER NOT NULL DEFAULT 0,
    text_count INTEGER NOT NULL DEFAULT 0,
    gif_count INTEGER NOT NULL DEFAULT 0,
    gesture_count INTEGER NOT NULL DEFAULT 0,
    voice_note_count INTEGER NOT NULL DEFAULT 0,
    other_count INTEGER NOT NULL DEFAULT 0,
    initial_message_at TEXT,
    last_message_at TEXT,
    response_time_median_seconds INTEGER,
    conversation_duration_days INTEGER,
    longest_gap_hours INTEGER,
    created_at TEXT NOT NULL,
    UNIQUE (profile_id, platform_match_id)
);

-- =============================================================================
-- fact_message: Unioned per match by dedup_key (timestamp|direction|content hash)
-- =============================================================================
CREATE TABLE IF NOT EXISTS fact_message (
    message_id INTEGER PRIMARY KEY AUTOINCREMENT,
    match_id TEXT NOT NULL REFERENCES fact_match(match_id) ON DELETE CASCADE,
    profile_id TEXT NOT NULL REFERENCES dim_profile(profile_id) ON DELETE CASCADE,
    dedup_key TEXT NOT NULL,
    direction TEXT NOT NULL CHECK (direction IN ('sent', 'received')),
    message_type TEXT NOT NULL CHECK (
        message_type IN ('TEXT', 'GIF', 'GESTURE', 'VOICE_NOTE', 'ACTIVITY', 'OTHER')
    ),
    type_raw TEXT,
    sent_at TEXT NOT NULL,
    content TEXT NOT NULL DEFAULT '',
    content_raw TEXT NOT NULL DEFAULT '',
    char_count INTEGER NOT NULL DEFAULT 0,
    recipient TEXT,
    media_url TEXT,
    extra_json TEXT,
    UNIQUE (match_id, dedup_key)
);

CREATE INDEX IF NOT EXISTS idx_message_match_sent
    ON fact_message(match_id, sent_at);

-- =============================================================================
-- profile_meta: Denormalized rollup, always fully regenerated
-- =============================================================================
CREATE TABLE IF NOT EXISTS profile_meta (
    profile_id TEXT PRIMARY KEY REFERENCES dim_profile(profile_id) ON DELETE CASCADE,
    from_date TEXT,
    to_date TEXT,
    days_in_period INTEGER NOT NULL DEFAULT 0,
    days_active INTEGER NOT NULL DEFAULT 0,
    app_opens_total INTEGER NOT NULL DEFAULT 0,
    swipe_likes_total INTEGER NOT NULL DEFAULT 0,
    swipe_passes_total INTEGER NOT NULL DEFAULT 0,
    super_likes_total INTEGER NOT NULL DEFAULT 0,
    matches_total INTEGER NOT NULL DEFAULT 0,
    messages_sent_total INTEGER NOT NULL DEFAULT 0,
    messages_received_total INTEGER NOT NULL DEFAULT 0,
    like_rate REAL,
    match_rate REAL,
    swipes_per_day REAL,
    conversation_count INTEGER NOT NULL DEFAULT 0,
    conversations_with_messages INTEGER NOT NULL DEFAULT 0,
    ghosted_count INTEGER NOT NULL DEFAULT 0,
    one_message_conversations INTEGER NOT NULL DEFAULT 0,
    median_response_time_seconds REAL,
    mean_response_time_seconds REAL,
    median_conversation_duration_days REAL,
    longest_conversation_days INTEGER,
    average_messages_per_conversation REAL,
    median_messages_per_conversation REAL,
    computed_at TEXT NOT NULL
);

-- =============================================================================
-- cohort_definition: Named filters; 1:1 with a synthetic profile
-- =============================================================================
CREATE TABLE IF NOT EXISTS cohort_definition (
    cohort_id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT,
    platform TEXT NOT NULL DEFAULT 'TINDER',
    gender TEXT,
    age_min INTEGER,
    age_max INTEGER,
    country TEXT,
    region TEXT,
    cohort_type TEXT NOT NULL DEFAULT 'SYSTEM' CHECK (cohort_type IN ('SYSTEM', 'USER_CUSTOM')),
    created_by_user_id TEXT REFERENCES dim_user(user_id) ON DELETE CASCADE,
    profile_count INTEGER NOT NULL DEFAULT 0,
    last_computed_at TEXT,
    created_at TEXT NOT NULL
);

-- =============================================================================
-- original_file: Archive of every raw export received
-- =============================================================================
CREATE TABLE IF NOT EXISTS original_file (
    file_id TEXT PRIMARY KEY,
    platform TEXT NOT NULL,
    external_id TEXT NOT NULL,
    user_id TEXT REFERENCES dim_user(user_id) ON DELETE CASCADE,
    blob_url TEXT,
    document_json TEXT NOT NULL,
    created_at TEXT NOT NULL
);

-- =============================================================================
-- etl_state: Key-value run metadata
-- =============================================================================
-- Common keys:
--   - 'schema_version': Current schema version
--   - 'last_ingest': Timestamp of last successful upload
--   - 'last_cohort_run': Timestamp of last cohort batch
--
CREATE TABLE IF NOT EXISTS etl_state (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

INSERT OR REPLACE INTO etl_state (key, value, updated_at)
VALUES ('schema_version', '{schema_version}', strftime('%Y-%m-%dT%H:%M:%SZ', 'now'));
""".replace(
    "{schema_version}", SCHEMA_VERSION
)

REQUIRED_TABLES = {
    "dim_user",
    "dim_profile",
    "fact_daily_usage",
    "fact_match",
    "fact_message",
    "profile_meta",
    "cohort_definition",
    "original_file",
    "etl_state",
}


def create_schema(db_path: Path) -> None:
    """
    Create the analysis.db schema if it doesn't exist.

    This function is idempotent - safe to call multiple times.

    Args:
        db_path: Path to the analysis.db file. Parent directory will be created
                 if it doesn't exist.

    Raises:
        sqlite3.Error: If schema creation fails.
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)

    logger.info(f"Creating/verifying schema at: {db_path}")

    conn = sqlite3.connect(str(db_path))
    try:
        conn.executescript(SCHEMA_DDL)
        conn.commit()
        logger.info(f"Schema created/verified successfully (version {SCHEMA_VERSION})")
    except sqlite3.Error as e:
        logger.error(f"Schema creation failed: {e}")
        raise
    finally:
        conn.close()


def connect(db_path: Path) -> sqlite3.Connection:
    """
    Open analysis.db for read-write with foreign keys enforced.

    Rows come back as sqlite3.Row so callers can index by column name.
    """
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def get_table_names(db_path: Path) -> List[str]:
    """
    Get all table names in the analysis database.

    Args:
        db_path: Path to the analysis.db file.

    Returns:
        List of table names.
    """
    conn = sqlite3.connect(str(db_path))
    try:
        cursor = conn.execute("SELECT name FROM sqlite_master WHERE type='table' ORDER BY name;")
        return [row[0] for row in cursor.fetchall()]
    finally:
        conn.close()


def verify_schema(db_path: Path) -> bool:
    """
    Verify that the schema exists and has all required tables.

    Args:
        db_path: Path to the analysis.db file.

    Returns:
        True if schema is valid, False otherwise.
    """
    if not db_path.exists():
        return False

    existing_tables = set(get_table_names(db_path))
    return REQUIRED_TABLES.issubset(existing_tables)
