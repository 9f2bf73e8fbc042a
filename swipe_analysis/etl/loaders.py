"""
ETL Loaders for analysis.db.

This module writes extracted records into the analysis database with
additive-merge semantics: re-running the same upload changes nothing, and
a later export that covers more days only adds or refreshes rows.

Design Decisions:
    1. Per-date usage rows are write-if-absent, else overwrite-if-different.
       Two exports' counts for one date are never summed
    2. Matches are insert-if-absent by platform match id; their message
       sets are unioned by dedup key (INSERT OR IGNORE)
    3. Match conversation stats are recomputed from stored messages after
       every union, so they always reflect the full set
    4. Loaders never commit; the pipeline owns the transaction

See etl/pipeline.py for the order of operations.
"""

import json
import sqlite3
import uuid
from contextlib import closing
from dataclasses import dataclass, fields
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
import logging

from swipe_analysis.etl.extractors import (
    DailyUsageRecord,
    Demographics,
    MatchRecord,
    compute_match_stats,
    years_between,
)
from swipe_analysis.etl.normalizers import Platform

logger = logging.getLogger(__name__)

USAGE_COLUMNS = [f.name for f in fields(DailyUsageRecord) if f.name != "date"]


def _now_iso() -> str:
    """Get current UTC timestamp in ISO-8601 format."""
    return datetime.now(tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def make_profile_id(platform: Platform, external_id: str) -> str:
    """Build the storage id for a (platform, external id) pair."""
    return f"{Platform(platform).value}:{external_id}"


@dataclass
class UsageLoadResult:
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0


@dataclass
class MatchLoadResult:
    matches_inserted: int = 0
    matches_existing: int = 0
    messages_inserted: int = 0


# =============================================================================
# Users
# =============================================================================


def upsert_user(
    conn: sqlite3.Connection,
    user_id: str,
    is_anonymous: bool,
    country: Optional[str] = None,
    region: Optional[str] = None,
    city: Optional[str] = None,
) -> None:
    """
    Create the caller's user row if needed and refresh its location hint.

    Location fields are only overwritten when a new value is supplied.
    """
    now = _now_iso()
    query = """
        INSERT INTO dim_user (user_id, is_anonymous, country, region, city, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(user_id) DO UPDATE SET
            is_anonymous = excluded.is_anonymous,
            country = COALESCE(excluded.country, dim_user.country),
            region = COALESCE(excluded.region, dim_user.region),
            city = COALESCE(excluded.city, dim_user.city),
            updated_at = excluded.updated_at;
    """
    with closing(conn.cursor()) as cursor:
        cursor.execute(query, (user_id, int(is_anonymous), country, region, city, now, now))


def get_user(conn: sqlite3.Connection, user_id: str) -> Optional[sqlite3.Row]:
    with closing(conn.cursor()) as cursor:
        cursor.execute("SELECT * FROM dim_user WHERE user_id = ?;", (user_id,))
        return cursor.fetchone()


def delete_user(conn: sqlite3.Connection, user_id: str) -> None:
    with closing(conn.cursor()) as cursor:
        cursor.execute("DELETE FROM dim_user WHERE user_id = ?;", (user_id,))


# =============================================================================
# Profiles
# =============================================================================


def get_profile(conn: sqlite3.Connection, profile_id: str) -> Optional[sqlite3.Row]:
    """Fetch a profile row joined with its owner's anonymity flag."""
    query = """
        SELECT p.*, u.is_anonymous AS owner_is_anonymous
        FROM dim_profile p
        LEFT JOIN dim_user u ON p.user_id = u.user_id
        WHERE p.profile_id = ?;
    """
    with closing(conn.cursor()) as cursor:
        cursor.execute(query, (profile_id,))
        return cursor.fetchone()


def get_profiles_for_user(conn: sqlite3.Connection, user_id: str) -> List[sqlite3.Row]:
    with closing(conn.cursor()) as cursor:
        cursor.execute(
            "SELECT * FROM dim_profile WHERE user_id = ? ORDER BY created_at;", (user_id,)
        )
        return cursor.fetchall()


def _profile_values(demographics: Demographics) -> Dict[str, Any]:
    return {
        "birth_date": demographics.birth_date,
        "age_at_upload": demographics.age_at_upload,
        "age_at_last_usage": demographics.age_at_last_usage,
        "create_date": demographics.create_date,
        "gender": demographics.gender.value,
        "gender_str": demographics.gender_str,
        "interested_in": demographics.interested_in.value,
        "gender_filter": demographics.gender_filter.value,
        "age_filter_min": demographics.age_filter_min,
        "age_filter_max": demographics.age_filter_max,
        "bio": demographics.bio,
        "city": demographics.city,
        "region": demographics.region,
        "country": demographics.country,
        "education": demographics.education,
        "pos_lat": demographics.pos_lat,
        "pos_lon": demographics.pos_lon,
        "photo_count": demographics.photo_count,
        "interests_json": json.dumps(demographics.interests),
        "first_day_on_app": demographics.first_day_on_app,
        "last_day_on_app": demographics.last_day_on_app,
        "days_in_profile_period": demographics.days_in_profile_period,
        "extra_json": json.dumps(demographics.extra, sort_keys=True),
    }


def insert_profile(
    conn: sqlite3.Connection,
    platform: Platform,
    external_id: str,
    user_id: Optional[str],
    demographics: Demographics,
    computed: bool = False,
) -> str:
    """
    Insert a new profile row.

    Synthetic cohort profiles pass ``computed=True`` and no owner.

    Returns:
        The new profile_id.

    Raises:
        sqlite3.IntegrityError: If the profile already exists.
    """
    profile_id = make_profile_id(platform, external_id)
    now = _now_iso()
    values = _profile_values(demographics)
    columns = ["profile_id", "platform", "external_id", "user_id", "computed"] + list(values)
    params = [profile_id, Platform(platform).value, external_id, user_id, int(computed)]
    params += list(values.values())
    columns += ["created_at", "updated_at"]
    params += [now, now]

    placeholders = ", ".join("?" for _ in columns)
    with closing(conn.cursor()) as cursor:
        cursor.execute(
            f"INSERT INTO dim_profile ({', '.join(columns)}) VALUES ({placeholders});", params
        )

    logger.debug(f"Inserted profile {profile_id} (owner {user_id})")
    return profile_id


def update_profile_snapshot(
    conn: sqlite3.Connection, profile_id: str, demographics: Demographics
) -> None:
    """
    Refresh a profile's demographic snapshot from a newer export.

    The active-day range is widened to cover both the stored range and the
    export's range, so a partial export never shrinks the profile's history.
    """
    existing = get_profile(conn, profile_id)
    if existing is None:
        raise ValueError(f"Unknown profile: {profile_id}")

    values = _profile_values(demographics)
    firsts = [d for d in (existing["first_day_on_app"], demographics.first_day_on_app) if d]
    lasts = [d for d in (existing["last_day_on_app"], demographics.last_day_on_app) if d]
    values["first_day_on_app"] = min(firsts) if firsts else None
    values["last_day_on_app"] = max(lasts) if lasts else None
    if values["first_day_on_app"] and values["last_day_on_app"]:
        first = datetime.fromisoformat(values["first_day_on_app"]).date()
        last = datetime.fromisoformat(values["last_day_on_app"]).date()
        values["days_in_profile_period"] = (last - first).days + 1
        birth = datetime.fromisoformat(demographics.birth_date).date()
        values["age_at_last_usage"] = years_between(birth, last)

    assignments = ", ".join(f"{col} = ?" for col in values)
    with closing(conn.cursor()) as cursor:
        cursor.execute(
            f"UPDATE dim_profile SET {assignments}, updated_at = ? WHERE profile_id = ?;",
            list(values.values()) + [_now_iso(), profile_id],
        )


def set_profile_owner(conn: sqlite3.Connection, profile_id: str, user_id: Optional[str]) -> None:
    with closing(conn.cursor()) as cursor:
        cursor.execute(
            "UPDATE dim_profile SET user_id = ?, updated_at = ? WHERE profile_id = ?;",
            (user_id, _now_iso(), profile_id),
        )


def delete_profile_rows(conn: sqlite3.Connection, profile_id: str) -> None:
    """Delete a profile; usage, matches, messages and meta cascade."""
    with closing(conn.cursor()) as cursor:
        cursor.execute("DELETE FROM dim_profile WHERE profile_id = ?;", (profile_id,))


# =============================================================================
# Daily usage
# =============================================================================


def _usage_params(record: DailyUsageRecord) -> List[Any]:
    return [getattr(record, col) for col in USAGE_COLUMNS]


def get_usage_rows(conn: sqlite3.Connection, profile_id: str) -> List[sqlite3.Row]:
    with closing(conn.cursor()) as cursor:
        cursor.execute(
            "SELECT * FROM fact_daily_usage WHERE profile_id = ? ORDER BY date;", (profile_id,)
        )
        return cursor.fetchall()


def upsert_daily_usage(
    conn: sqlite3.Connection, profile_id: str, records: List[DailyUsageRecord]
) -> UsageLoadResult:
    """
    Write per-date usage rows for a profile.

    A date not yet stored is inserted; a stored date whose values differ is
    overwritten with the incoming values (latest export wins); identical
    rows are left alone.

    Args:
        conn: SQLite connection to analysis.db.
        profile_id: Target profile.
        records: Extracted daily usage.

    Returns:
        UsageLoadResult with inserted/updated/unchanged counts.
    """
    result = UsageLoadResult()
    if not records:
        return result

    existing = {row["date"]: row for row in get_usage_rows(conn, profile_id)}

    insert_query = f"""
        INSERT INTO fact_daily_usage (profile_id, date, {', '.join(USAGE_COLUMNS)})
        VALUES (?, ?, {', '.join('?' for _ in USAGE_COLUMNS)});
    """
    update_query = f"""
        UPDATE fact_daily_usage
        SET {', '.join(f'{col} = ?' for col in USAGE_COLUMNS)}
        WHERE profile_id = ? AND date = ?;
    """

    with closing(conn.cursor()) as cursor:
        for record in records:
            params = _usage_params(record)
            row = existing.get(record.date)
            if row is None:
                cursor.execute(insert_query, [profile_id, record.date] + params)
                result.inserted += 1
            elif [row[col] for col in USAGE_COLUMNS] != params:
                cursor.execute(update_query, params + [profile_id, record.date])
                result.updated += 1
            else:
                result.unchanged += 1

    logger.info(
        f"Usage for {profile_id}: {result.inserted} inserted, {result.updated} overwritten, "
        f"{result.unchanged} unchanged"
    )
    return result


def replace_daily_usage(
    conn: sqlite3.Connection, profile_id: str, records: List[DailyUsageRecord]
) -> int:
    """Delete all usage rows for a profile and insert the given ones."""
    with closing(conn.cursor()) as cursor:
        cursor.execute("DELETE FROM fact_daily_usage WHERE profile_id = ?;", (profile_id,))
    return upsert_daily_usage(conn, profile_id, records).inserted


# =============================================================================
# Matches and messages
# =============================================================================


def _find_match_id(
    conn: sqlite3.Connection, profile_id: str, platform_match_id: str
) -> Optional[str]:
    with closing(conn.cursor()) as cursor:
        cursor.execute(
            "SELECT match_id FROM fact_match WHERE profile_id = ? AND platform_match_id = ?;",
            (profile_id, platform_match_id),
        )
        row = cursor.fetchone()
        return row[0] if row else None


def refresh_match_stats(conn: sqlite3.Connection, match_id: str) -> None:
    """Recompute a match's conversation stats from its stored messages."""
    with closing(conn.cursor()) as cursor:
        cursor.execute(
            "SELECT sent_at, message_type FROM fact_message WHERE match_id = ?;", (match_id,)
        )
        stats = compute_match_stats([(row[0], row[1]) for row in cursor.fetchall()])
        cursor.execute(
            """
            UPDATE fact_match SET
                total_message_count = ?, text_count = ?, gif_count = ?, gesture_count = ?,
                voice_note_count = ?, other_count = ?, initial_message_at = ?,
                last_message_at = ?, response_time_median_seconds = ?,
                conversation_duration_days = ?, longest_gap_hours = ?
            WHERE match_id = ?;
            """,
            (
                stats.total_message_count,
                stats.text_count,
                stats.gif_count,
                stats.gesture_count,
                stats.voice_note_count,
                stats.other_count,
                stats.initial_message_at,
                stats.last_message_at,
                stats.response_time_median_seconds,
                stats.conversation_duration_days,
                stats.longest_gap_hours,
                match_id,
            ),
        )


def merge_matches(
    conn: sqlite3.Connection, profile_id: str, matches: List[MatchRecord]
) -> MatchLoadResult:
    """
    Insert new matches and union message sets of known ones.

    Args:
        conn: SQLite connection to analysis.db.
        profile_id: Target profile.
        matches: Extracted matches.

    Returns:
        MatchLoadResult with counts of new matches and new messages.
    """
    result = MatchLoadResult()
    now = _now_iso()

    message_query = """
        INSERT OR IGNORE INTO fact_message
            (match_id, profile_id, dedup_key, direction, message_type, type_raw, sent_at,
             content, content_raw, char_count, recipient, media_url, extra_json)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
    """

    with closing(conn.cursor()) as cursor:
        for match in matches:
            match_id = _find_match_id(conn, profile_id, match.platform_match_id)
            if match_id is None:
                match_id = str(uuid.uuid4())
                cursor.execute(
                    """
                    INSERT INTO fact_match
                        (match_id, profile_id, platform_match_id, matched_at, liked_at,
                         we_met, blocked, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?);
                    """,
                    (
                        match_id,
                        profile_id,
                        match.platform_match_id,
                        match.matched_at,
                        match.liked_at,
                        match.we_met,
                        int(match.blocked),
                        now,
                    ),
                )
                result.matches_inserted += 1
            else:
                # Fill in event details an older export didn't have
                cursor.execute(
                    """
                    UPDATE fact_match SET
                        matched_at = COALESCE(matched_at, ?),
                        liked_at = COALESCE(liked_at, ?),
                        we_met = COALESCE(?, we_met),
                        blocked = MAX(blocked, ?)
                    WHERE match_id = ?;
                    """,
                    (match.matched_at, match.liked_at, match.we_met, int(match.blocked), match_id),
                )
                result.matches_existing += 1

            new_messages = 0
            for msg in match.messages:
                cursor.execute(
                    message_query,
                    (
                        match_id,
                        profile_id,
                        msg.dedup_key,
                        msg.direction,
                        msg.message_type.value,
                        msg.type_raw,
                        msg.sent_at,
                        msg.content,
                        msg.content_raw,
                        msg.char_count,
                        msg.recipient,
                        msg.media_url,
                        json.dumps(msg.extra, sort_keys=True, default=str) if msg.extra else None,
                    ),
                )
                new_messages += cursor.rowcount

            result.messages_inserted += new_messages
            if new_messages or match.messages:
                refresh_match_stats(conn, match_id)

    logger.info(
        f"Matches for {profile_id}: {result.matches_inserted} new, "
        f"{result.matches_existing} existing, {result.messages_inserted} new messages"
    )
    return result


def reparent_profile_data(
    conn: sqlite3.Connection,
    old_profile_id: str,
    new_profile_id: str,
    match_namespace: Optional[str] = None,
) -> Tuple[int, int]:
    """
    Move usage rows, matches and messages from one profile to another.

    Dates or match ids already present on the target are left on the
    target; the old profile's duplicates are dropped with it.

    Args:
        conn: SQLite connection to analysis.db.
        old_profile_id: Profile whose rows move.
        new_profile_id: Profile receiving them.
        match_namespace: If given, moved matches are renamed to
            "{match_namespace}/{platform_match_id}". Match ids are only
            unique within one platform account, so a cross-account move
            must namespace them to keep them apart from the target's own.

    Returns:
        (usage_rows_moved, matches_moved)
    """
    match_prefix = f"{match_namespace}/" if match_namespace else ""
    with closing(conn.cursor()) as cursor:
        cursor.execute(
            """
            UPDATE OR IGNORE fact_daily_usage SET profile_id = ?
            WHERE profile_id = ?;
            """,
            (new_profile_id, old_profile_id),
        )
        usage_moved = cursor.rowcount

        cursor.execute(
            """
            UPDATE OR IGNORE fact_match
            SET profile_id = ?, platform_match_id = ? || platform_match_id
            WHERE profile_id = ?;
            """,
            (new_profile_id, match_prefix, old_profile_id),
        )
        matches_moved = cursor.rowcount

        cursor.execute(
            """
            UPDATE fact_message SET profile_id = ?
            WHERE match_id IN (SELECT match_id FROM fact_match WHERE profile_id = ?);
            """,
            (new_profile_id, new_profile_id),
        )

    logger.info(
        f"Re-parented {usage_moved} usage rows and {matches_moved} matches "
        f"from {old_profile_id} to {new_profile_id}"
    )
    return usage_moved, matches_moved


# =============================================================================
# Raw export archive
# =============================================================================


def archive_original_file(
    conn: sqlite3.Connection,
    platform: Platform,
    external_id: str,
    user_id: Optional[str],
    document: Dict[str, Any],
    blob_url: Optional[str] = None,
) -> str:
    """Store the raw (anonymized) export exactly as received."""
    file_id = str(uuid.uuid4())
    with closing(conn.cursor()) as cursor:
        cursor.execute(
            """
            INSERT INTO original_file
                (file_id, platform, external_id, user_id, blob_url, document_json, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?);
            """,
            (
                file_id,
                Platform(platform).value,
                external_id,
                user_id,
                blob_url,
                json.dumps(document),
                _now_iso(),
            ),
        )
    return file_id


def transfer_original_files(conn: sqlite3.Connection, from_user_id: str, to_user_id: str) -> int:
    with closing(conn.cursor()) as cursor:
        cursor.execute(
            "UPDATE original_file SET user_id = ? WHERE user_id = ?;", (to_user_id, from_user_id)
        )
        return cursor.rowcount


# =============================================================================
# ETL state
# =============================================================================


def update_etl_state(conn: sqlite3.Connection, key: str, value: str) -> None:
    """
    Update or insert an ETL state value.

    Args:
        conn: SQLite connection to analysis.db.
        key: State key.
        value: State value.
    """
    with closing(conn.cursor()) as cursor:
        cursor.execute(
            """
            INSERT OR REPLACE INTO etl_state (key, value, updated_at)
            VALUES (?, ?, ?);
            """,
            (key, value, _now_iso()),
        )


def get_etl_state(conn: sqlite3.Connection, key: str) -> Optional[str]:
    """
    Get an ETL state value.

    Args:
        conn: SQLite connection to analysis.db.
        key: State key.

    Returns:
        State value, or None if not found.
    """
    with closing(conn.cursor()) as cursor:
        cursor.execute("SELECT value FROM etl_state WHERE key = ?;", (key,))
        result = cursor.fetchone()
        return result[0] if result else None


def get_table_count(conn: sqlite3.Connection, table: str, profile_id: Optional[str] = None) -> int:
    """Row count for one of our tables, optionally scoped to a profile."""
    allowed = {"dim_user", "dim_profile", "fact_daily_usage", "fact_match", "fact_message"}
    if table not in allowed:
        raise ValueError(f"Unknown table name: {table!r}")
    query = f"SELECT COUNT(*) FROM {table}"
    params: Tuple[Any, ...] = ()
    if profile_id is not None and table != "dim_user":
        query += " WHERE profile_id = ?"
        params = (profile_id,)
    with closing(conn.cursor()) as cursor:
        cursor.execute(query + ";", params)
        result = cursor.fetchone()
        return result[0] if result else 0
