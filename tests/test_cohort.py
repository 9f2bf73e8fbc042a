"""
Tests for cohort aggregation.

Tests population guards, per-date sample thresholds, mean/median
aggregation, synthetic profile regeneration and batch isolation.
"""

from datetime import date, timedelta
from typing import Any, Dict, List
from unittest.mock import patch

import pytest

from swipe_analysis.errors import NotFoundError
from swipe_analysis.etl.cohort import (
    SYSTEM_COHORTS,
    CohortDefinition,
    aggregate_usage_by_date,
    create_custom_cohort,
    delete_custom_cohort,
    fetch_usage_rows,
    generate_cohort_profile,
    get_cohort,
    list_cohorts,
    mean_count,
    median_rate,
    query_profiles_for_cohort,
    relevant_cohorts_for_profile,
    round_half_up,
    run_cohort_batch,
    seed_system_cohorts,
)
from swipe_analysis.etl.identity import Caller, GeoHint
from swipe_analysis.etl.loaders import get_etl_state, get_profile, get_usage_rows, make_profile_id
from swipe_analysis.etl.meta import get_profile_meta
from swipe_analysis.etl.normalizers import Platform
from swipe_analysis.etl.pipeline import delete_profile, upload_profile

TODAY = date(2024, 7, 1)
SYNTHETIC_ALL = make_profile_id(Platform.TINDER, "cohort_tinder_all")


def date_range(start: str, days: int) -> List[str]:
    first = date.fromisoformat(start)
    return [(first + timedelta(days=i)).isoformat() for i in range(days)]


DAYS = date_range("2024-01-01", 3)


def _populate(conn, factory, overrides: List[Dict[str, Any]], geo: GeoHint = None) -> List[str]:
    """Upload one profile per overrides dict, each owned by its own user."""
    profile_ids = []
    for i, kwargs in enumerate(overrides):
        kwargs = dict(kwargs)
        dates = kwargs.pop("dates", DAYS)
        result = upload_profile(
            conn,
            Platform.TINDER,
            f"p{i}",
            factory(dates, **kwargs),
            Caller(user_id=f"user_{i}"),
            geo=geo,
            today=TODAY,
        )
        profile_ids.append(result.profile_id)
    return profile_ids


@pytest.fixture
def seeded(conn):
    seed_system_cohorts(conn)
    return conn


@pytest.fixture
def three_men(seeded, tinder_export_factory):
    """Three 28-year-old men with different activity levels."""
    _populate(
        seeded,
        tinder_export_factory,
        [
            {"app_opens": 10, "likes": 1, "passes": 9},
            {"app_opens": 20, "likes": 5, "passes": 5},
            {"app_opens": 30, "likes": 9, "passes": 1},
        ],
    )
    return seeded


# =============================================================================
# Aggregation primitives
# =============================================================================


class TestAggregationPrimitives:
    """Tests for rounding, mean and median helpers."""

    @pytest.mark.parametrize("value,expected", [(0.5, 1), (1.5, 2), (2.5, 3), (2.49, 2), (20.0, 20)])
    def test_round_half_up(self, value, expected):
        assert round_half_up(value) == expected

    def test_mean_count(self):
        assert mean_count([10, 20, 30]) == 20
        assert mean_count([1, 2, 2]) == 2

    def test_mean_count_treats_missing_as_zero(self):
        assert mean_count([None, 3, 3]) == 2

    def test_median_rate(self):
        assert median_rate([0.1, 0.5, 0.9]) == 0.5
        assert median_rate([0.9, 0.1, 0.5, None]) == 0.5

    def test_median_rate_all_missing(self):
        assert median_rate([None, None]) is None


class TestAggregateUsageByDate:
    """Tests for aggregate_usage_by_date."""

    @staticmethod
    def _row(profile_id: str, day: str, app_opens: int, like_rate=None) -> Dict[str, Any]:
        row = {
            "profile_id": profile_id,
            "date": day,
            "app_opens": app_opens,
            "swipe_likes": 0,
            "swipe_passes": 0,
            "super_likes": 0,
            "swipes_combined": 0,
            "matches": 0,
            "messages_sent": 0,
            "messages_received": 0,
            "like_rate": like_rate,
            "match_rate": None,
            "response_rate": None,
            "engagement_rate": None,
            "messages_sent_rate": None,
        }
        return row

    def test_mean_and_median(self):
        rows = [
            self._row("a", "2024-01-01", 10, 0.1),
            self._row("b", "2024-01-01", 20, 0.5),
            self._row("c", "2024-01-01", 30, 0.9),
        ]
        records = aggregate_usage_by_date(rows, min_samples=3)
        assert len(records) == 1
        assert records[0].app_opens == 20
        assert records[0].like_rate == 0.5
        assert records[0].match_rate is None

    def test_sparse_dates_dropped(self):
        """Dates with fewer than min_samples profiles are not synthesized."""
        rows = [
            self._row("a", "2024-01-01", 1),
            self._row("b", "2024-01-01", 1),
            self._row("b", "2024-01-02", 1),
            self._row("c", "2024-01-02", 1),
            self._row("c", "2024-01-03", 1),
            self._row("a", "2024-01-03", 1),
        ]
        assert aggregate_usage_by_date(rows, min_samples=3) == []

    def test_sorted_by_date(self):
        rows = [
            self._row(p, day, 1)
            for day in ("2024-01-02", "2024-01-01")
            for p in ("a", "b", "c")
        ]
        records = aggregate_usage_by_date(rows, min_samples=3)
        assert [r.date for r in records] == ["2024-01-01", "2024-01-02"]


# =============================================================================
# Definitions
# =============================================================================


class TestCohortDefinitions:
    """Tests for seeding and custom cohorts."""

    def test_seed_system_cohorts(self, conn):
        assert seed_system_cohorts(conn) == len(SYSTEM_COHORTS) == 11
        assert seed_system_cohorts(conn) == 0
        assert len(list_cohorts(conn, cohort_type="SYSTEM")) == 11

    def test_system_cohort_ids(self):
        ids = {c.cohort_id for c in SYSTEM_COHORTS}
        assert {"tinder_all", "tinder_male", "tinder_female"} <= ids
        assert "tinder_male_18-24" in ids
        assert "tinder_female_45-54" in ids

    def test_get_cohort(self, seeded):
        cohort = get_cohort(seeded, "tinder_male_25-34")
        assert isinstance(cohort, CohortDefinition)
        assert cohort.name == "Men 25-34"
        assert (cohort.age_min, cohort.age_max) == (25, 34)
        assert get_cohort(seeded, "nope") is None

    def test_custom_cohort_lifecycle(self, three_men):
        cohort = create_custom_cohort(three_men, "user_0", "My friends", age_min=20, age_max=30)
        assert cohort.cohort_type == "USER_CUSTOM"
        assert [c.cohort_id for c in list_cohorts(three_men, user_id="user_0")] == [cohort.cohort_id]

        generate_cohort_profile(three_men, cohort.cohort_id, today=TODAY)
        synthetic_id = make_profile_id(Platform.TINDER, cohort.synthetic_external_id)
        assert get_profile(three_men, synthetic_id) is not None

        assert delete_custom_cohort(three_men, cohort.cohort_id, "user_1") is False
        assert delete_custom_cohort(three_men, cohort.cohort_id, "user_0") is True
        assert get_cohort(three_men, cohort.cohort_id) is None
        assert get_profile(three_men, synthetic_id) is None

    def test_system_cohort_not_deletable(self, seeded):
        assert delete_custom_cohort(seeded, "tinder_all", "user_0") is False

    def test_relevant_cohorts(self, three_men):
        relevant = relevant_cohorts_for_profile(three_men, "TINDER:p0")
        assert [c.cohort_id for c in relevant] == ["tinder_male", "tinder_male_25-34"]

    def test_relevant_cohorts_unknown_profile(self, seeded):
        with pytest.raises(NotFoundError):
            relevant_cohorts_for_profile(seeded, "TINDER:ghost")


# =============================================================================
# Population
# =============================================================================


class TestPopulation:
    """Tests for cohort membership."""

    def test_gender_and_age_filters(self, seeded, tinder_export_factory):
        _populate(
            seeded,
            tinder_export_factory,
            [
                {},
                {},
                {"gender": "F"},
                {"birth_date": "1970-01-01"},
            ],
        )
        assert len(query_profiles_for_cohort(seeded, get_cohort(seeded, "tinder_all"))) == 4
        assert len(query_profiles_for_cohort(seeded, get_cohort(seeded, "tinder_male"))) == 3
        assert query_profiles_for_cohort(seeded, get_cohort(seeded, "tinder_male_25-34")) == [
            "TINDER:p0",
            "TINDER:p1",
        ]
        assert query_profiles_for_cohort(seeded, get_cohort(seeded, "tinder_female")) == [
            "TINDER:p2"
        ]

    def test_location_filter_uses_owner(self, seeded, tinder_export_factory):
        _populate(seeded, tinder_export_factory, [{}, {}], geo=GeoHint(country="NL"))
        upload_profile(
            seeded,
            Platform.TINDER,
            "be",
            tinder_export_factory(DAYS),
            Caller(user_id="user_be"),
            geo=GeoHint(country="BE"),
        )
        cohort = CohortDefinition("nl", "Dutch", country="NL")
        assert query_profiles_for_cohort(seeded, cohort) == ["TINDER:p0", "TINDER:p1"]

    def test_unowned_profiles_excluded(self, seeded, tinder_export_factory):
        _populate(seeded, tinder_export_factory, [{}, {}])
        seeded.execute("UPDATE dim_profile SET user_id = NULL WHERE profile_id = 'TINDER:p1';")
        assert query_profiles_for_cohort(seeded, get_cohort(seeded, "tinder_all")) == ["TINDER:p0"]

    def test_fetch_usage_rows_batches(self, three_men):
        ids = ["TINDER:p0", "TINDER:p1", "TINDER:p2"]
        assert len(fetch_usage_rows(three_men, ids, batch_size=1)) == 9
        assert len(fetch_usage_rows(three_men, ids, batch_size=100)) == 9


# =============================================================================
# Generation
# =============================================================================


class TestGenerateCohortProfile:
    """Tests for generate_cohort_profile."""

    def test_synthetic_profile(self, three_men):
        result = generate_cohort_profile(three_men, "tinder_all", today=TODAY)

        assert result.success is True
        assert result.profile_count == 3
        assert result.usage_days_written == 3

        profile = get_profile(three_men, SYNTHETIC_ALL)
        assert profile["computed"] == 1
        assert profile["user_id"] is None
        assert profile["age_at_upload"] == 25
        assert profile["bio"] == "Synthetic profile representing Everyone"

        rows = get_usage_rows(three_men, SYNTHETIC_ALL)
        assert [r["date"] for r in rows] == DAYS
        assert rows[0]["app_opens"] == 20
        assert rows[0]["swipe_likes"] == 5
        assert rows[0]["swipes_combined"] == 10
        assert rows[0]["like_rate"] == pytest.approx(0.5)
        assert rows[0]["match_rate"] == pytest.approx(0.2)

        meta = get_profile_meta(three_men, SYNTHETIC_ALL)
        assert meta["app_opens_total"] == 60
        assert meta["conversation_count"] == 0

        cohort = get_cohort(three_men, "tinder_all")
        assert cohort.profile_count == 3
        assert cohort.last_computed_at is not None

    def test_age_bracket_synthetic_age(self, three_men):
        generate_cohort_profile(three_men, "tinder_male_25-34", today=TODAY)
        profile = get_profile(
            three_men, make_profile_id(Platform.TINDER, "cohort_tinder_male_25-34")
        )
        assert profile["age_at_upload"] == 29
        assert profile["gender"] == "MALE"

    def test_two_profiles_not_enough(self, seeded, tinder_export_factory):
        _populate(seeded, tinder_export_factory, [{}, {}])

        result = generate_cohort_profile(seeded, "tinder_all", today=TODAY)

        assert result.success is False
        assert result.skipped is True
        assert result.profile_count == 2
        assert get_profile(seeded, SYNTHETIC_ALL) is None

    def test_no_date_with_enough_samples(self, seeded, tinder_export_factory):
        """Three profiles, but every date is shared by only two of them."""
        _populate(
            seeded,
            tinder_export_factory,
            [
                {"dates": ["2024-01-01", "2024-01-02"]},
                {"dates": ["2024-01-02", "2024-01-03"]},
                {"dates": ["2024-01-03", "2024-01-01"]},
            ],
        )

        result = generate_cohort_profile(seeded, "tinder_all", today=TODAY)

        assert result.skipped is True
        assert get_profile(seeded, SYNTHETIC_ALL) is None
        assert get_usage_rows(seeded, SYNTHETIC_ALL) == []

    def test_sparse_dates_only_dropped(self, seeded, tinder_export_factory):
        _populate(
            seeded,
            tinder_export_factory,
            [
                {"dates": ["2024-01-01", "2024-01-02"]},
                {"dates": ["2024-01-01", "2024-01-02"]},
                {"dates": ["2024-01-01"]},
            ],
        )
        result = generate_cohort_profile(seeded, "tinder_all", today=TODAY)
        assert result.usage_days_written == 1
        assert [r["date"] for r in get_usage_rows(seeded, SYNTHETIC_ALL)] == ["2024-01-01"]

    def test_regeneration_replaces(self, three_men):
        generate_cohort_profile(three_men, "tinder_all", today=TODAY)
        first = [dict(r) for r in get_usage_rows(three_men, SYNTHETIC_ALL)]

        generate_cohort_profile(three_men, "tinder_all", today=TODAY)

        assert [dict(r) for r in get_usage_rows(three_men, SYNTHETIC_ALL)] == first
        count = three_men.execute(
            "SELECT COUNT(*) FROM dim_profile WHERE computed = 1;"
        ).fetchone()[0]
        assert count == 1

    def test_computed_profiles_never_members(self, three_men):
        generate_cohort_profile(three_men, "tinder_all", today=TODAY)
        result = generate_cohort_profile(three_men, "tinder_male", today=TODAY)
        assert result.profile_count == 3
        assert SYNTHETIC_ALL not in query_profiles_for_cohort(
            three_men, get_cohort(three_men, "tinder_all")
        )

    def test_stale_synthetic_removed_when_population_drops(self, three_men):
        generate_cohort_profile(three_men, "tinder_all", today=TODAY)
        delete_profile(three_men, Platform.TINDER, "p0", Caller(user_id="user_0"))

        result = generate_cohort_profile(three_men, "tinder_all", today=TODAY)

        assert result.skipped is True
        assert get_profile(three_men, SYNTHETIC_ALL) is None

    def test_unknown_cohort(self, seeded):
        with pytest.raises(NotFoundError):
            generate_cohort_profile(seeded, "nope")


class TestRunCohortBatch:
    """Tests for run_cohort_batch."""

    def test_failures_isolated(self, three_men):
        summary = run_cohort_batch(
            three_men, cohort_ids=["tinder_all", "nope", "tinder_female"], today=TODAY
        )

        assert (summary.succeeded, summary.skipped, summary.failed) == (1, 1, 1)
        by_id = {r.cohort_id: r for r in summary.results}
        assert by_id["tinder_all"].success is True
        assert "not found" in by_id["nope"].reason
        assert by_id["tinder_female"].skipped is True
        assert get_etl_state(three_men, "last_cohort_run") is not None

    def test_unexpected_error_does_not_stop_batch(self, three_men):
        real = generate_cohort_profile

        def flaky(conn, cohort_id, **kwargs):
            if cohort_id == "tinder_male":
                raise RuntimeError("disk on fire")
            return real(conn, cohort_id, **kwargs)

        with patch("swipe_analysis.etl.cohort.generate_cohort_profile", side_effect=flaky):
            summary = run_cohort_batch(
                three_men, cohort_ids=["tinder_male", "tinder_all"], today=TODAY
            )

        assert summary.failed == 1
        assert summary.succeeded == 1
        assert get_profile(three_men, SYNTHETIC_ALL) is not None

    def test_all_cohorts_by_default(self, three_men):
        summary = run_cohort_batch(three_men, today=TODAY)
        assert len(summary.results) == 11
        assert summary.failed == 0
        # all, male, male_25-34 have three members; the rest are empty
        assert summary.succeeded == 3
        assert summary.skipped == 8

    def test_summary_str(self, three_men):
        summary = run_cohort_batch(three_men, cohort_ids=["tinder_all", "tinder_female"], today=TODAY)
        text = str(summary)
        assert "1 generated, 1 skipped, 0 failed" in text
        assert "tinder_female: skipped" in text
