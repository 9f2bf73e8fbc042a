"""
Post-ingest validation for analysis.db.

These checks verify the storage invariants ingestion and cohort generation
rely on. Run them after a batch of uploads or a cohort run.

Validation Checks:
    1. No duplicate usage dates per profile
    2. No duplicate matches per profile, no duplicate messages per match
    3. No orphaned messages (every message's match exists and agrees on profile)
    4. Every profile with data has a ProfileMeta row
    5. Computed (synthetic) profiles have no owner
    6. Rates are within [0, 1] where they are ratios of parts to a whole
    7. Dates are well formed
    8. ETL state is valid
"""

import re
import sqlite3
from contextlib import closing
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional
import logging

from swipe_analysis.etl.schema import SCHEMA_VERSION

logger = logging.getLogger(__name__)

# ISO-8601 UTC timestamp (basic)
ISO8601_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z?$")


@dataclass
class ValidationCheck:
    """Result of a single validation check."""

    name: str
    passed: bool
    message: str
    details: Optional[str] = None


@dataclass
class ValidationResult:
    """Result of all validation checks."""

    passed: bool
    checks: List[ValidationCheck] = field(default_factory=list)
    summary: str = ""

    def __str__(self) -> str:
        lines = []
        for check in self.checks:
            icon = "✓" if check.passed else "✗"
            lines.append(f"{icon} {check.name}: {check.message}")
            if check.details and not check.passed:
                lines.append(f"  → {check.details}")

        status = "All checks passed" if self.passed else "Some checks failed"
        lines.append(f"\n{status}.")
        return "\n".join(lines)


def _open_analysis_db(path: Path) -> sqlite3.Connection:
    """Open analysis.db in read-only mode for validation."""
    uri = f"file:{path}?mode=ro"
    return sqlite3.connect(uri, uri=True)


def _count(conn: sqlite3.Connection, query: str) -> int:
    with closing(conn.cursor()) as cursor:
        cursor.execute(query)
        return cursor.fetchone()[0]


def check_no_duplicate_dates(conn: sqlite3.Connection) -> ValidationCheck:
    """At most one usage row per (profile, date)."""
    duplicates = _count(
        conn,
        """
        SELECT COUNT(*) FROM (
            SELECT profile_id, date FROM fact_daily_usage
            GROUP BY profile_id, date HAVING COUNT(*) > 1
        );
        """,
    )
    passed = duplicates == 0
    return ValidationCheck(
        name="No duplicate dates",
        passed=passed,
        message="Usage dates unique" if passed else f"{duplicates} duplicated dates",
    )


def check_no_duplicate_matches(conn: sqlite3.Connection) -> ValidationCheck:
    """At most one match per platform id per profile, one message per dedup key."""
    dup_matches = _count(
        conn,
        """
        SELECT COUNT(*) FROM (
            SELECT profile_id, platform_match_id FROM fact_match
            GROUP BY profile_id, platform_match_id HAVING COUNT(*) > 1
        );
        """,
    )
    dup_messages = _count(
        conn,
        """
        SELECT COUNT(*) FROM (
            SELECT match_id, dedup_key FROM fact_message
            GROUP BY match_id, dedup_key HAVING COUNT(*) > 1
        );
        """,
    )
    passed = dup_matches == 0 and dup_messages == 0
    return ValidationCheck(
        name="No duplicate matches",
        passed=passed,
        message=(
            "Matches and messages unique"
            if passed
            else f"{dup_matches} duplicated matches, {dup_messages} duplicated messages"
        ),
    )


def check_no_orphan_messages(conn: sqlite3.Connection) -> ValidationCheck:
    """
    Verify every message belongs to an existing match of the same profile.

    Args:
        conn: Connection to analysis.db.

    Returns:
        ValidationCheck result.
    """
    orphan_count = _count(
        conn,
        """
        SELECT COUNT(*) FROM fact_message msg
        LEFT JOIN fact_match m ON msg.match_id = m.match_id
        WHERE m.match_id IS NULL OR m.profile_id != msg.profile_id;
        """,
    )
    passed = orphan_count == 0
    message = "No orphaned messages" if passed else f"{orphan_count} orphaned messages"

    return ValidationCheck(
        name="No orphan messages",
        passed=passed,
        message=message,
        details="Messages reference missing matches or another profile" if not passed else None,
    )


def check_meta_coverage(conn: sqlite3.Connection) -> ValidationCheck:
    """Every profile that has usage or matches has a meta rollup."""
    missing = _count(
        conn,
        """
        SELECT COUNT(*) FROM dim_profile p
        LEFT JOIN profile_meta pm ON p.profile_id = pm.profile_id
        WHERE pm.profile_id IS NULL
        AND (
            EXISTS (SELECT 1 FROM fact_daily_usage u WHERE u.profile_id = p.profile_id)
            OR EXISTS (SELECT 1 FROM fact_match m WHERE m.profile_id = p.profile_id)
        );
        """,
    )
    passed = missing == 0
    return ValidationCheck(
        name="Meta coverage",
        passed=passed,
        message="All profiles rolled up" if passed else f"{missing} profiles missing meta",
    )


def check_computed_profiles_unowned(conn: sqlite3.Connection) -> ValidationCheck:
    owned = _count(
        conn, "SELECT COUNT(*) FROM dim_profile WHERE computed = 1 AND user_id IS NOT NULL;"
    )
    passed = owned == 0
    return ValidationCheck(
        name="Synthetic profiles unowned",
        passed=passed,
        message="OK" if passed else f"{owned} synthetic profiles have an owner",
    )


def check_rate_bounds(conn: sqlite3.Connection) -> ValidationCheck:
    """like_rate and messages_sent_rate are shares of a whole, so in [0, 1]."""
    out_of_range = _count(
        conn,
        """
        SELECT COUNT(*) FROM fact_daily_usage
        WHERE (like_rate IS NOT NULL AND (like_rate < 0 OR like_rate > 1))
        OR (messages_sent_rate IS NOT NULL AND (messages_sent_rate < 0 OR messages_sent_rate > 1));
        """,
    )
    passed = out_of_range == 0
    return ValidationCheck(
        name="Rate bounds",
        passed=passed,
        message="All rates in range" if passed else f"{out_of_range} rows with rates out of range",
    )


def check_date_formats(conn: sqlite3.Connection) -> ValidationCheck:
    """
    Verify usage dates are YYYY-MM-DD and message timestamps are ISO-8601.

    Args:
        conn: Connection to analysis.db.

    Returns:
        ValidationCheck result.
    """
    bad_dates = _count(
        conn,
        """
        SELECT COUNT(*) FROM fact_daily_usage
        WHERE date NOT GLOB '[0-9][0-9][0-9][0-9]-[0-9][0-9]-[0-9][0-9]';
        """,
    )
    bad_timestamps = _count(
        conn,
        """
        SELECT COUNT(*) FROM fact_message
        WHERE sent_at NOT GLOB '[0-9][0-9][0-9][0-9]-[0-9][0-9]-[0-9][0-9]T*';
        """,
    )
    invalid_count = bad_dates + bad_timestamps
    passed = invalid_count == 0
    message = "All dates valid" if passed else f"{invalid_count} invalid dates"

    return ValidationCheck(
        name="Date formats",
        passed=passed,
        message=message,
    )


def check_etl_state(conn: sqlite3.Connection) -> ValidationCheck:
    """
    Verify ETL state has the current schema version and a sane last ingest.

    Args:
        conn: Connection to analysis.db.

    Returns:
        ValidationCheck result.
    """
    with closing(conn.cursor()) as cursor:
        cursor.execute("SELECT key, value FROM etl_state;")
        state = dict(cursor.fetchall())

    version = state.get("schema_version")
    if version != SCHEMA_VERSION:
        return ValidationCheck(
            name="ETL state",
            passed=False,
            message=f"Schema version {version!r}, expected {SCHEMA_VERSION!r}",
        )

    last_ingest = state.get("last_ingest")
    if last_ingest is None:
        return ValidationCheck(
            name="ETL state",
            passed=True,
            message="Valid (nothing ingested yet)",
        )
    if not ISO8601_PATTERN.match(last_ingest):
        return ValidationCheck(
            name="ETL state",
            passed=False,
            message=f"Invalid last_ingest format: {last_ingest}",
        )

    return ValidationCheck(
        name="ETL state",
        passed=True,
        message=f"Valid (last ingest: {last_ingest})",
    )


def validate_analysis_db(analysis_db_path: Path) -> ValidationResult:
    """
    Run all validation checks against analysis.db.

    Args:
        analysis_db_path: Path to analysis.db.

    Returns:
        ValidationResult with all check results.
    """
    checks: List[ValidationCheck] = []

    try:
        conn = _open_analysis_db(analysis_db_path)
        try:
            checks.append(check_no_duplicate_dates(conn))
            checks.append(check_no_duplicate_matches(conn))
            checks.append(check_no_orphan_messages(conn))
            checks.append(check_meta_coverage(conn))
            checks.append(check_computed_profiles_unowned(conn))
            checks.append(check_rate_bounds(conn))
            checks.append(check_date_formats(conn))
            checks.append(check_etl_state(conn))
        finally:
            conn.close()

    except sqlite3.Error as e:
        checks.append(
            ValidationCheck(
                name="Connection",
                passed=False,
                message=f"Failed to connect: {e}",
            )
        )

    all_passed = all(check.passed for check in checks)
    passed_count = sum(1 for c in checks if c.passed)

    result = ValidationResult(
        passed=all_passed,
        checks=checks,
        summary=f"{passed_count}/{len(checks)} checks passed",
    )

    logger.info(f"Validation complete: {result.summary}")
    return result
