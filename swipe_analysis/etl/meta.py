"""
ProfileMeta rollup.

profile_meta is derived state: one row per profile holding totals, rates
and conversation statistics. It is always rebuilt from the current usage,
match and message rows (delete + insert), never patched, so it cannot
drift from its sources.
"""

import sqlite3
import statistics
from contextlib import closing
from dataclasses import asdict, dataclass
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Sequence
import logging

logger = logging.getLogger(__name__)


@dataclass
class ConversationSummary:
    """The per-match numbers the rollup needs."""

    message_count: int = 0
    response_time_median_seconds: Optional[int] = None
    conversation_duration_days: Optional[int] = None


@dataclass
class ProfileMeta:
    from_date: Optional[str] = None
    to_date: Optional[str] = None
    days_in_period: int = 0
    days_active: int = 0
    app_opens_total: int = 0
    swipe_likes_total: int = 0
    swipe_passes_total: int = 0
    super_likes_total: int = 0
    matches_total: int = 0
    messages_sent_total: int = 0
    messages_received_total: int = 0
    like_rate: Optional[float] = None
    match_rate: Optional[float] = None
    swipes_per_day: Optional[float] = None
    conversation_count: int = 0
    conversations_with_messages: int = 0
    ghosted_count: int = 0
    one_message_conversations: int = 0
    median_response_time_seconds: Optional[float] = None
    mean_response_time_seconds: Optional[float] = None
    median_conversation_duration_days: Optional[float] = None
    longest_conversation_days: Optional[int] = None
    average_messages_per_conversation: Optional[float] = None
    median_messages_per_conversation: Optional[float] = None


def _median(values: List[float]) -> Optional[float]:
    return statistics.median(values) if values else None


def build_profile_meta(
    usage_rows: Sequence[Dict[str, Any]], conversations: Sequence[ConversationSummary]
) -> ProfileMeta:
    """
    Roll up usage rows and conversations into a ProfileMeta.

    Args:
        usage_rows: Mappings with a ``date`` key and the daily counters.
        conversations: One summary per match.

    Returns:
        ProfileMeta. Rates are None when their denominator is zero.
    """
    meta = ProfileMeta()

    if usage_rows:
        dates = sorted(row["date"] for row in usage_rows)
        meta.from_date, meta.to_date = dates[0], dates[-1]
        meta.days_in_period = (
            date.fromisoformat(meta.to_date) - date.fromisoformat(meta.from_date)
        ).days + 1
        meta.days_active = sum(1 for row in usage_rows if (row["app_opens"] or 0) > 0)

        def total(col: str) -> int:
            return int(sum(row[col] or 0 for row in usage_rows))

        meta.app_opens_total = total("app_opens")
        meta.swipe_likes_total = total("swipe_likes")
        meta.swipe_passes_total = total("swipe_passes")
        meta.super_likes_total = total("super_likes")
        meta.matches_total = total("matches")
        meta.messages_sent_total = total("messages_sent")
        meta.messages_received_total = total("messages_received")

        swipes = meta.swipe_likes_total + meta.swipe_passes_total
        meta.like_rate = meta.swipe_likes_total / swipes if swipes > 0 else None
        meta.match_rate = (
            meta.matches_total / meta.swipe_likes_total if meta.swipe_likes_total > 0 else None
        )
        # Per calendar day in the period, not per stored row
        meta.swipes_per_day = swipes / meta.days_in_period

    meta.conversation_count = len(conversations)
    talked = [c for c in conversations if c.message_count > 0]
    meta.conversations_with_messages = len(talked)
    # Matches that never got a single message
    meta.ghosted_count = meta.conversation_count - meta.conversations_with_messages
    meta.one_message_conversations = sum(1 for c in talked if c.message_count == 1)

    response_times = [
        c.response_time_median_seconds
        for c in talked
        if c.response_time_median_seconds is not None
    ]
    meta.median_response_time_seconds = _median(response_times)
    if response_times:
        meta.mean_response_time_seconds = statistics.mean(response_times)

    durations = [
        c.conversation_duration_days for c in talked if c.conversation_duration_days is not None
    ]
    meta.median_conversation_duration_days = _median(durations)
    meta.longest_conversation_days = max(durations) if durations else None

    counts = [c.message_count for c in talked]
    if counts:
        meta.average_messages_per_conversation = statistics.mean(counts)
        meta.median_messages_per_conversation = statistics.median(counts)

    return meta


def _load_conversations(conn: sqlite3.Connection, profile_id: str) -> List[ConversationSummary]:
    query = """
        SELECT
            m.total_message_count,
            m.response_time_median_seconds,
            m.conversation_duration_days
        FROM fact_match m
        WHERE m.profile_id = ?;
    """
    with closing(conn.cursor()) as cursor:
        cursor.execute(query, (profile_id,))
        return [
            ConversationSummary(
                message_count=row[0] or 0,
                response_time_median_seconds=row[1],
                conversation_duration_days=row[2],
            )
            for row in cursor.fetchall()
        ]


def write_profile_meta(conn: sqlite3.Connection, profile_id: str, meta: ProfileMeta) -> None:
    """Replace a profile's meta row."""
    values = asdict(meta)
    columns = ["profile_id"] + list(values) + ["computed_at"]
    params = [profile_id] + list(values.values())
    params.append(datetime.now(tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"))

    with closing(conn.cursor()) as cursor:
        cursor.execute("DELETE FROM profile_meta WHERE profile_id = ?;", (profile_id,))
        cursor.execute(
            f"INSERT INTO profile_meta ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)});",
            params,
        )


def recompute_profile_meta(conn: sqlite3.Connection, profile_id: str) -> ProfileMeta:
    """
    Rebuild profile_meta for one profile from its stored rows.

    Args:
        conn: SQLite connection to analysis.db.
        profile_id: Profile to roll up.

    Returns:
        The ProfileMeta that was written.
    """
    with closing(conn.cursor()) as cursor:
        cursor.execute(
            """
            SELECT date, app_opens, swipe_likes, swipe_passes, super_likes, matches,
                   messages_sent, messages_received
            FROM fact_daily_usage WHERE profile_id = ?;
            """,
            (profile_id,),
        )
        columns = [d[0] for d in cursor.description]
        usage_rows = [dict(zip(columns, row)) for row in cursor.fetchall()]

    meta = build_profile_meta(usage_rows, _load_conversations(conn, profile_id))
    write_profile_meta(conn, profile_id, meta)
    logger.debug(
        f"Recomputed meta for {profile_id}: {len(usage_rows)} days, "
        f"{meta.conversation_count} conversations"
    )
    return meta


def get_profile_meta(conn: sqlite3.Connection, profile_id: str) -> Optional[Dict[str, Any]]:
    with closing(conn.cursor()) as cursor:
        cursor.execute("SELECT * FROM profile_meta WHERE profile_id = ?;", (profile_id,))
        row = cursor.fetchone()
        if row is None:
            return None
        return dict(zip([d[0] for d in cursor.description], row))
