"""
Metric extraction for ETL.

This module turns a ``CanonicalExport`` into the records we store:
daily usage rows, matches with their messages, and a demographic
snapshot for the profile row.

Design Decisions:
    1. Daily usage is the union of dates across all counter maps; a date
       absent from one map counts as zero for that metric
    2. Rates are computed from the day's own counts and are None when the
       denominator is zero (never 0, never borrowed from another day)
    3. Message types collapse into a closed enum; unknown types become OTHER
    4. Messages get a content-derived dedup key because platforms don't
       issue message ids
    5. Pure functions only - no database access here
"""

import hashlib
import html
import json
import logging
import statistics
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from swipe_analysis.etl.normalizers import (
    CanonicalExport,
    CanonicalMatch,
    CanonicalUsage,
    Gender,
)

logger = logging.getLogger(__name__)


class MessageType(str, Enum):
    TEXT = "TEXT"
    GIF = "GIF"
    GESTURE = "GESTURE"
    VOICE_NOTE = "VOICE_NOTE"
    ACTIVITY = "ACTIVITY"
    OTHER = "OTHER"


MESSAGE_TYPE_MAP: Dict[str, MessageType] = {
    "1": MessageType.TEXT,
    "text": MessageType.TEXT,
    "gif": MessageType.GIF,
    "gesture": MessageType.GESTURE,
    "voice_note": MessageType.VOICE_NOTE,
    "activity": MessageType.ACTIVITY,
}


@dataclass
class DailyUsageRecord:
    """One day of usage for one profile."""

    date: str
    app_opens: int = 0
    swipe_likes: int = 0
    swipe_passes: int = 0
    super_likes: int = 0
    matches: int = 0
    messages_sent: int = 0
    messages_received: int = 0
    swipes_combined: int = 0
    like_rate: Optional[float] = None
    match_rate: Optional[float] = None
    response_rate: Optional[float] = None
    engagement_rate: Optional[float] = None
    messages_sent_rate: Optional[float] = None
    user_age_this_day: Optional[int] = None


@dataclass
class MessageRecord:
    dedup_key: str
    direction: str
    message_type: MessageType
    sent_at: str
    content: str = ""
    content_raw: str = ""
    char_count: int = 0
    type_raw: Optional[str] = None
    recipient: Optional[str] = None
    media_url: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class MatchRecord:
    platform_match_id: str
    messages: List[MessageRecord] = field(default_factory=list)
    matched_at: Optional[str] = None
    liked_at: Optional[str] = None
    we_met: Optional[str] = None
    blocked: bool = False


@dataclass
class MatchStats:
    """Conversation statistics for one match, derived from its messages."""

    total_message_count: int = 0
    text_count: int = 0
    gif_count: int = 0
    gesture_count: int = 0
    voice_note_count: int = 0
    other_count: int = 0
    initial_message_at: Optional[str] = None
    last_message_at: Optional[str] = None
    response_time_median_seconds: Optional[int] = None
    conversation_duration_days: Optional[int] = None
    longest_gap_hours: Optional[int] = None


@dataclass
class Demographics:
    birth_date: str
    gender: Gender
    gender_str: str
    interested_in: Gender
    gender_filter: Gender
    age_filter_min: int
    age_filter_max: int
    age_at_upload: int
    age_at_last_usage: Optional[int] = None
    create_date: Optional[str] = None
    bio: Optional[str] = None
    city: Optional[str] = None
    region: Optional[str] = None
    country: Optional[str] = None
    education: str = ""
    pos_lat: float = 0.0
    pos_lon: float = 0.0
    photo_count: int = 0
    interests: List[str] = field(default_factory=list)
    first_day_on_app: Optional[str] = None
    last_day_on_app: Optional[str] = None
    days_in_profile_period: Optional[int] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ExtractedMetrics:
    daily_usage: List[DailyUsageRecord]
    matches: List[MatchRecord]
    demographics: Demographics

    @property
    def message_count(self) -> int:
        return sum(len(m.messages) for m in self.matches)


def _iso_utc(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _ratio(numerator: int, denominator: int) -> Optional[float]:
    return numerator / denominator if denominator > 0 else None


def years_between(start: date, end: date) -> int:
    """Whole years from start to end (like counting birthdays)."""
    years = end.year - start.year
    if (end.month, end.day) < (start.month, start.day):
        years -= 1
    return years


# =============================================================================
# Daily usage
# =============================================================================


def compute_daily_usage(
    day: str,
    app_opens: int = 0,
    swipe_likes: int = 0,
    swipe_passes: int = 0,
    super_likes: int = 0,
    matches: int = 0,
    messages_sent: int = 0,
    messages_received: int = 0,
    birth_date: Optional[date] = None,
) -> DailyUsageRecord:
    """
    Build one day's usage record with its derived rates.

    Rates:
        like_rate = likes / (likes + passes)
        match_rate = matches / likes
        response_rate = sent / received
        engagement_rate = (likes + passes + sent) / app_opens
        messages_sent_rate = sent / (sent + received)
    Each is None when its denominator is zero.
    """
    age = years_between(birth_date, date.fromisoformat(day)) if birth_date else None
    return DailyUsageRecord(
        date=day,
        app_opens=app_opens,
        swipe_likes=swipe_likes,
        swipe_passes=swipe_passes,
        super_likes=super_likes,
        matches=matches,
        messages_sent=messages_sent,
        messages_received=messages_received,
        swipes_combined=swipe_likes + swipe_passes,
        like_rate=_ratio(swipe_likes, swipe_likes + swipe_passes),
        match_rate=_ratio(matches, swipe_likes),
        response_rate=_ratio(messages_sent, messages_received),
        engagement_rate=_ratio(swipe_likes + swipe_passes + messages_sent, app_opens),
        messages_sent_rate=_ratio(messages_sent, messages_sent + messages_received),
        user_age_this_day=age,
    )


def extract_daily_usage(
    usage: CanonicalUsage, birth_date: Optional[date] = None
) -> List[DailyUsageRecord]:
    """
    Build one record per date present in any counter map, sorted by date.

    Args:
        usage: Canonical parallel per-day counter maps.
        birth_date: Used for user_age_this_day.

    Returns:
        List of DailyUsageRecord, one per distinct date.
    """
    records = [
        compute_daily_usage(
            day,
            app_opens=usage.app_opens.get(day, 0),
            swipe_likes=usage.swipe_likes.get(day, 0),
            swipe_passes=usage.swipe_passes.get(day, 0),
            super_likes=usage.super_likes.get(day, 0),
            matches=usage.matches.get(day, 0),
            messages_sent=usage.messages_sent.get(day, 0),
            messages_received=usage.messages_received.get(day, 0),
            birth_date=birth_date,
        )
        for day in usage.all_dates()
    ]
    logger.debug(f"Extracted {len(records)} daily usage records")
    return records


def get_first_and_last_day(usage: CanonicalUsage) -> Tuple[Optional[str], Optional[str]]:
    """
    First and last active day, taken from the app-open map.

    Exports without app-open counters (Hinge) fall back to every dated
    counter so the profile still has an active range.
    """
    days = sorted(usage.app_opens.keys()) or usage.all_dates()
    if not days:
        return None, None
    return days[0], days[-1]


# =============================================================================
# Matches and messages
# =============================================================================


def map_message_type(type_raw: Optional[Any]) -> MessageType:
    """Map a raw platform message type onto MessageType (missing means TEXT)."""
    if type_raw is None or type_raw == "":
        return MessageType.TEXT
    return MESSAGE_TYPE_MAP.get(str(type_raw).strip().lower(), MessageType.OTHER)


def message_dedup_key(sent_at: str, direction: str, content: str) -> str:
    """
    Stable per-message key: sha256 over timestamp, direction and content hash.

    Two distinct messages with identical content, direction and recorded
    timestamp share a key and collapse into one row.
    """
    content_hash = hashlib.sha256(content.encode("utf-8")).hexdigest()
    return hashlib.sha256(f"{sent_at}|{direction}|{content_hash}".encode("utf-8")).hexdigest()


def extract_matches(matches: List[CanonicalMatch]) -> List[MatchRecord]:
    """
    Convert canonical matches into MatchRecords with typed, keyed messages.

    Duplicate match ids within one export are folded together, and
    duplicate messages within a match are dropped by dedup key.
    """
    by_id: Dict[str, MatchRecord] = {}
    seen_keys: Dict[str, set] = {}

    for match in matches:
        record = by_id.get(match.platform_match_id)
        if record is None:
            record = MatchRecord(
                platform_match_id=match.platform_match_id,
                matched_at=_iso_utc(match.matched_at) if match.matched_at else None,
                liked_at=_iso_utc(match.liked_at) if match.liked_at else None,
                we_met=match.we_met,
                blocked=match.blocked,
            )
            by_id[match.platform_match_id] = record
            seen_keys[match.platform_match_id] = set()

        for msg in sorted(match.messages, key=lambda m: m.sent_at):
            sent_at = _iso_utc(msg.sent_at)
            content = html.unescape(msg.content_raw) if msg.content_raw else ""
            key = message_dedup_key(sent_at, msg.direction, content or (msg.media_url or ""))
            if key in seen_keys[match.platform_match_id]:
                continue
            seen_keys[match.platform_match_id].add(key)
            record.messages.append(
                MessageRecord(
                    dedup_key=key,
                    direction=msg.direction,
                    message_type=map_message_type(msg.type_raw),
                    sent_at=sent_at,
                    content=content,
                    content_raw=msg.content_raw,
                    char_count=len(content),
                    type_raw=msg.type_raw,
                    recipient=msg.recipient,
                    media_url=msg.media_url,
                    extra=dict(msg.extra),
                )
            )

    records = list(by_id.values())
    logger.debug(
        f"Extracted {len(records)} matches with {sum(len(r.messages) for r in records)} messages"
    )
    return records


def compute_match_stats(messages: List[Tuple[str, str]]) -> MatchStats:
    """
    Conversation statistics from (sent_at, message_type) pairs.

    Args:
        messages: ISO-8601 UTC timestamps with MessageType values, any order.

    Returns:
        MatchStats; timing fields are None when there are too few messages.
    """
    stats = MatchStats()
    if not messages:
        return stats

    ordered = sorted(messages)
    counts = {t.value: 0 for t in MessageType}
    for _, message_type in ordered:
        counts[MessageType(message_type).value] += 1

    stats.total_message_count = len(ordered)
    stats.text_count = counts[MessageType.TEXT.value]
    stats.gif_count = counts[MessageType.GIF.value]
    stats.gesture_count = counts[MessageType.GESTURE.value]
    stats.voice_note_count = counts[MessageType.VOICE_NOTE.value]
    stats.other_count = counts[MessageType.ACTIVITY.value] + counts[MessageType.OTHER.value]
    stats.initial_message_at = ordered[0][0]
    stats.last_message_at = ordered[-1][0]

    times = [datetime.fromisoformat(ts.replace("Z", "+00:00")) for ts, _ in ordered]
    gaps = [int((b - a).total_seconds()) for a, b in zip(times, times[1:])]
    stats.conversation_duration_days = (times[-1] - times[0]).days
    if gaps:
        stats.response_time_median_seconds = int(statistics.median(gaps))
        stats.longest_gap_hours = max(gaps) // 3600
    return stats


# =============================================================================
# Demographics
# =============================================================================


def extract_demographics(export: CanonicalExport, today: Optional[date] = None) -> Demographics:
    """
    Build the profile's demographic snapshot.

    Args:
        export: Canonical export.
        today: Reference date for age_at_upload (defaults to today, UTC).
    """
    if today is None:
        today = datetime.now(tz=timezone.utc).date()
    user = export.user
    first_day, last_day = get_first_and_last_day(export.usage)

    days_in_period = None
    age_at_last_usage = None
    if first_day and last_day:
        days_in_period = (date.fromisoformat(last_day) - date.fromisoformat(first_day)).days + 1
        age_at_last_usage = years_between(user.birth_date, date.fromisoformat(last_day))

    extra: Dict[str, Any] = {}
    if user.extra:
        extra["User"] = user.extra
    if export.usage.extra:
        extra["Usage"] = export.usage.extra
    match_extras = {m.platform_match_id: m.extra for m in export.matches if m.extra}
    if match_extras:
        extra["Matches"] = match_extras
    photo_extras = {
        p.photo_id or p.url or str(i): p.extra for i, p in enumerate(export.photos) if p.extra
    }
    if photo_extras:
        extra["Photos"] = photo_extras
    # Unknown top-level sections are namespaced; one may be called "Matches"
    if export.extra_sections:
        extra["Sections"] = export.extra_sections

    return Demographics(
        birth_date=user.birth_date.isoformat(),
        gender=user.gender,
        gender_str=user.gender_str,
        interested_in=user.interested_in,
        gender_filter=user.gender_filter,
        age_filter_min=user.age_filter_min,
        age_filter_max=user.age_filter_max,
        age_at_upload=years_between(user.birth_date, today),
        age_at_last_usage=age_at_last_usage,
        create_date=_iso_utc(user.create_date) if user.create_date else None,
        bio=html.unescape(user.bio) if user.bio else None,
        city=user.city,
        region=user.region,
        country=user.country,
        education=user.education,
        pos_lat=user.pos[0],
        pos_lon=user.pos[1],
        photo_count=len(export.photos),
        interests=list(user.interests),
        first_day_on_app=first_day,
        last_day_on_app=last_day,
        days_in_profile_period=days_in_period,
        extra=json.loads(json.dumps(extra, default=str)),
    )


def extract_metrics(export: CanonicalExport, today: Optional[date] = None) -> ExtractedMetrics:
    """
    Produce {daily_usage, matches, demographics} from a canonical export.
    """
    metrics = ExtractedMetrics(
        daily_usage=extract_daily_usage(export.usage, export.user.birth_date),
        matches=extract_matches(export.matches),
        demographics=extract_demographics(export, today=today),
    )
    logger.info(
        f"Extracted {len(metrics.daily_usage)} usage days, {len(metrics.matches)} matches, "
        f"{metrics.message_count} messages"
    )
    return metrics
