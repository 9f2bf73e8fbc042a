"""
Tests for ETL extractors module.

Tests daily usage rates, message typing and de-duplication, per-match
conversation stats and the demographic snapshot.
"""

from datetime import date, datetime, timezone

import pytest

from swipe_analysis.etl.extractors import (
    MessageType,
    compute_daily_usage,
    compute_match_stats,
    extract_daily_usage,
    extract_demographics,
    extract_matches,
    extract_metrics,
    get_first_and_last_day,
    map_message_type,
    message_dedup_key,
    years_between,
)
from swipe_analysis.etl.normalizers import (
    CanonicalMatch,
    CanonicalMessage,
    CanonicalUsage,
    Gender,
    Platform,
    normalize_export,
)


def _ts(text: str) -> datetime:
    return datetime.fromisoformat(text).replace(tzinfo=timezone.utc)


class TestYearsBetween:
    """Tests for whole-year age computation."""

    def test_before_birthday(self):
        assert years_between(date(1995, 6, 15), date(2024, 6, 14)) == 28

    def test_on_birthday(self):
        assert years_between(date(1995, 6, 15), date(2024, 6, 15)) == 29


class TestComputeDailyUsage:
    """Tests for per-day rates."""

    def test_rates(self):
        record = compute_daily_usage(
            "2024-01-01",
            app_opens=10,
            swipe_likes=20,
            swipe_passes=80,
            matches=5,
            messages_sent=6,
            messages_received=3,
        )
        assert record.swipes_combined == 100
        assert record.like_rate == pytest.approx(0.2)
        assert record.match_rate == pytest.approx(0.25)
        assert record.response_rate == pytest.approx(2.0)
        assert record.engagement_rate == pytest.approx(10.6)
        assert record.messages_sent_rate == pytest.approx(6 / 9)

    def test_zero_denominators_are_none(self):
        """A day with no activity has undefined rates, not zero rates."""
        record = compute_daily_usage("2024-01-01")
        assert record.like_rate is None
        assert record.match_rate is None
        assert record.response_rate is None
        assert record.engagement_rate is None
        assert record.messages_sent_rate is None

    def test_passes_only_gives_zero_like_rate(self):
        record = compute_daily_usage("2024-01-01", swipe_passes=10)
        assert record.like_rate == 0.0
        assert record.match_rate is None

    def test_user_age_this_day(self):
        record = compute_daily_usage("2024-06-15", birth_date=date(1995, 6, 15))
        assert record.user_age_this_day == 29

    def test_age_unknown_without_birth_date(self):
        assert compute_daily_usage("2024-06-15").user_age_this_day is None


class TestExtractDailyUsage:
    """Tests for the union of dated counter maps."""

    def test_union_of_dates(self):
        usage = CanonicalUsage(
            app_opens={"2024-01-02": 3},
            swipe_likes={"2024-01-01": 4},
            messages_received={"2024-01-03": 1},
        )
        records = extract_daily_usage(usage)
        assert [r.date for r in records] == ["2024-01-01", "2024-01-02", "2024-01-03"]
        assert records[0].app_opens == 0
        assert records[0].swipe_likes == 4
        assert records[1].app_opens == 3

    def test_empty(self):
        assert extract_daily_usage(CanonicalUsage()) == []


class TestFirstAndLastDay:
    """Tests for get_first_and_last_day."""

    def test_uses_app_opens(self):
        usage = CanonicalUsage(
            app_opens={"2024-01-02": 1, "2024-01-04": 1},
            swipe_likes={"2024-01-01": 1, "2024-01-09": 1},
        )
        assert get_first_and_last_day(usage) == ("2024-01-02", "2024-01-04")

    def test_falls_back_to_all_dates(self):
        usage = CanonicalUsage(swipe_likes={"2024-01-01": 1, "2024-01-09": 1})
        assert get_first_and_last_day(usage) == ("2024-01-01", "2024-01-09")

    def test_no_usage(self):
        assert get_first_and_last_day(CanonicalUsage()) == (None, None)


class TestMessageTypes:
    """Tests for map_message_type."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            (None, MessageType.TEXT),
            ("", MessageType.TEXT),
            ("1", MessageType.TEXT),
            ("gif", MessageType.GIF),
            ("GIF", MessageType.GIF),
            ("gesture", MessageType.GESTURE),
            ("voice_note", MessageType.VOICE_NOTE),
            ("activity", MessageType.ACTIVITY),
            ("swipe_note", MessageType.OTHER),
        ],
    )
    def test_mapping(self, raw, expected):
        assert map_message_type(raw) == expected


class TestDedupKey:
    """Tests for message_dedup_key."""

    def test_stable(self):
        a = message_dedup_key("2024-01-01T10:00:00Z", "sent", "hi")
        b = message_dedup_key("2024-01-01T10:00:00Z", "sent", "hi")
        assert a == b

    def test_each_part_matters(self):
        base = message_dedup_key("2024-01-01T10:00:00Z", "sent", "hi")
        assert message_dedup_key("2024-01-01T10:00:01Z", "sent", "hi") != base
        assert message_dedup_key("2024-01-01T10:00:00Z", "received", "hi") != base
        assert message_dedup_key("2024-01-01T10:00:00Z", "sent", "hey") != base


class TestExtractMatches:
    """Tests for extract_matches."""

    def test_html_unescaped_and_counted(self):
        match = CanonicalMatch(
            platform_match_id="m1",
            messages=[
                CanonicalMessage(
                    sent_at=_ts("2024-01-01T10:00:00"),
                    direction="sent",
                    content_raw="Tom &amp; Jerry",
                )
            ],
        )
        message = extract_matches([match])[0].messages[0]
        assert message.content == "Tom & Jerry"
        assert message.content_raw == "Tom &amp; Jerry"
        assert message.char_count == len("Tom & Jerry")
        assert message.sent_at == "2024-01-01T10:00:00Z"
        assert message.message_type == MessageType.TEXT

    def test_duplicate_messages_dropped(self):
        msg = CanonicalMessage(sent_at=_ts("2024-01-01T10:00:00"), direction="sent", content_raw="hi")
        match = CanonicalMatch(platform_match_id="m1", messages=[msg, msg])
        assert len(extract_matches([match])[0].messages) == 1

    def test_duplicate_match_ids_folded(self):
        first = CanonicalMatch(
            platform_match_id="m1",
            messages=[CanonicalMessage(sent_at=_ts("2024-01-01T10:00:00"), direction="sent", content_raw="a")],
        )
        second = CanonicalMatch(
            platform_match_id="m1",
            messages=[CanonicalMessage(sent_at=_ts("2024-01-02T10:00:00"), direction="sent", content_raw="b")],
        )
        records = extract_matches([first, second])
        assert len(records) == 1
        assert [m.content for m in records[0].messages] == ["a", "b"]

    def test_media_messages_keyed_by_url(self):
        """Two contentless GIFs at the same second with different URLs both survive."""
        ts = _ts("2024-01-01T10:00:00")
        match = CanonicalMatch(
            platform_match_id="m1",
            messages=[
                CanonicalMessage(sent_at=ts, direction="sent", type_raw="gif", media_url="https://g/1"),
                CanonicalMessage(sent_at=ts, direction="sent", type_raw="gif", media_url="https://g/2"),
            ],
        )
        messages = extract_matches([match])[0].messages
        assert len(messages) == 2
        assert all(m.message_type == MessageType.GIF for m in messages)

    def test_message_extras_carried(self):
        match = CanonicalMatch(
            platform_match_id="m1",
            messages=[
                CanonicalMessage(
                    sent_at=_ts("2024-01-01T10:00:00"),
                    direction="sent",
                    content_raw="hi",
                    extra={"reactions": ["laugh"]},
                )
            ],
        )
        assert extract_matches([match])[0].messages[0].extra == {"reactions": ["laugh"]}


class TestComputeMatchStats:
    """Tests for per-match conversation stats."""

    def test_empty(self):
        stats = compute_match_stats([])
        assert stats.total_message_count == 0
        assert stats.initial_message_at is None

    def test_single_message(self):
        stats = compute_match_stats([("2024-01-01T10:00:00Z", "TEXT")])
        assert stats.total_message_count == 1
        assert stats.conversation_duration_days == 0
        assert stats.response_time_median_seconds is None
        assert stats.longest_gap_hours is None

    def test_counts_and_timing(self):
        stats = compute_match_stats(
            [
                ("2024-01-03T10:00:00Z", "GIF"),
                ("2024-01-01T10:00:00Z", "TEXT"),
                ("2024-01-01T10:01:00Z", "TEXT"),
                ("2024-01-01T10:03:00Z", "ACTIVITY"),
            ]
        )
        assert stats.total_message_count == 4
        assert stats.text_count == 2
        assert stats.gif_count == 1
        assert stats.other_count == 1
        assert stats.initial_message_at == "2024-01-01T10:00:00Z"
        assert stats.last_message_at == "2024-01-03T10:00:00Z"
        # gaps: 60s, 120s, ~2 days
        assert stats.response_time_median_seconds == 120
        assert stats.conversation_duration_days == 2
        assert stats.longest_gap_hours == 47


class TestExtractDemographics:
    """Tests for the demographic snapshot."""

    def test_tinder_snapshot(self, tinder_export):
        export = normalize_export(tinder_export, Platform.TINDER)
        demo = extract_demographics(export, today=date(2024, 7, 1))

        assert demo.birth_date == "1995-06-15"
        assert demo.gender == Gender.MALE
        assert demo.age_at_upload == 29
        assert demo.age_at_last_usage == 28
        assert demo.first_day_on_app == "2024-01-01"
        assert demo.last_day_on_app == "2024-01-05"
        assert demo.days_in_profile_period == 5
        assert demo.bio == "Coffee & climbing"
        assert demo.photo_count == 2
        assert demo.create_date == "2023-12-01T10:00:00Z"

    def test_extra_collects_unknown_fields(self, tinder_export):
        tinder_export["User"]["jobs"] = ["x"]
        tinder_export["Spotify"] = {"a": 1}
        export = normalize_export(tinder_export, Platform.TINDER)
        demo = extract_demographics(export, today=date(2024, 7, 1))
        assert demo.extra == {"User": {"jobs": ["x"]}, "Sections": {"Spotify": {"a": 1}}}

    def test_unknown_matches_section_does_not_clobber(self, tinder_export):
        """A top-level section called "Matches" lands under Sections."""
        tinder_export["Messages"][0]["matched_via"] = "explore"
        tinder_export["Matches"] = [{"legacy": True}]
        export = normalize_export(tinder_export, Platform.TINDER)
        demo = extract_demographics(export, today=date(2024, 7, 1))
        assert demo.extra["Matches"] == {"m1": {"matched_via": "explore"}}
        assert demo.extra["Sections"] == {"Matches": [{"legacy": True}]}

    def test_photo_extras_kept(self, hinge_export):
        export = normalize_export(hinge_export, Platform.HINGE)
        demo = extract_demographics(export, today=date(2024, 7, 1))
        assert demo.extra["Photos"] == {"https://cdn.example/p1.jpg": {"type": "photo"}}

    def test_no_usage(self, tinder_export):
        del tinder_export["Usage"]
        export = normalize_export(tinder_export, Platform.TINDER)
        demo = extract_demographics(export, today=date(2024, 7, 1))
        assert demo.first_day_on_app is None
        assert demo.days_in_profile_period is None
        assert demo.age_at_last_usage is None


class TestExtractMetrics:
    """Tests for the combined extraction."""

    def test_tinder(self, tinder_export):
        export = normalize_export(tinder_export, Platform.TINDER)
        metrics = extract_metrics(export, today=date(2024, 7, 1))
        assert len(metrics.daily_usage) == 5
        assert len(metrics.matches) == 3
        assert metrics.message_count == 6
        assert metrics.daily_usage[0].user_age_this_day == 28

    def test_hinge(self, hinge_export):
        export = normalize_export(hinge_export, Platform.HINGE)
        metrics = extract_metrics(export, today=date(2024, 7, 1))
        assert [r.date for r in metrics.daily_usage] == ["2023-04-01", "2023-04-02", "2023-04-03"]
        assert metrics.demographics.first_day_on_app == "2023-04-01"
        assert metrics.demographics.last_day_on_app == "2023-04-03"
        talked = metrics.matches[0]
        assert talked.messages[1].content == "How's your week?"
        assert talked.messages[2].message_type == MessageType.VOICE_NOTE
