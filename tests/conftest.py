"""
Pytest fixtures for Swipe Analysis tests.

This module provides shared fixtures for testing ingestion, merging and
cohort generation, including export builders and a fresh analysis.db.

Fixture Categories:
    1. Database fixtures (empty analysis.db, open connection)
    2. Export fixtures (Tinder and Hinge documents, builders)
    3. Caller fixtures

Design Notes:
    - Fixtures use tmp_path for isolation between tests
    - Export builders produce the same JSON shape the platforms ship,
      so tests go through the real normalizers
"""

import sqlite3
from datetime import date, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional

import pytest

from swipe_analysis.etl.identity import Caller
from swipe_analysis.etl.schema import connect, create_schema


def pytest_configure(config):
    config.addinivalue_line("markers", "property: hypothesis property-based tests")
    config.addinivalue_line("markers", "integration: end-to-end tests across modules")


def date_range(start: str, days: int) -> List[str]:
    first = date.fromisoformat(start)
    return [(first + timedelta(days=i)).isoformat() for i in range(days)]


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def analysis_db_path(tmp_path: Path) -> Path:
    """Create an empty analysis.db with the full schema."""
    db_path = tmp_path / "analysis.db"
    create_schema(db_path)
    return db_path


@pytest.fixture
def conn(analysis_db_path: Path) -> Iterator[sqlite3.Connection]:
    """Open read-write connection to the fixture analysis.db."""
    connection = connect(analysis_db_path)
    try:
        yield connection
    finally:
        connection.close()


# =============================================================================
# Callers
# =============================================================================


@pytest.fixture
def alice() -> Caller:
    return Caller(user_id="user_alice", email="alice@example.com")


@pytest.fixture
def bob() -> Caller:
    return Caller(user_id="user_bob", email="bob@example.com")


@pytest.fixture
def anon() -> Caller:
    return Caller(user_id="anon_1", is_anonymous=True)


# =============================================================================
# Export builders
# =============================================================================


def build_tinder_export(
    dates: List[str],
    match_ids: Optional[List[str]] = None,
    app_opens: int = 5,
    likes: int = 10,
    passes: int = 30,
    matches_per_day: int = 1,
    birth_date: str = "1995-06-15",
    gender: str = "M",
    messages_per_match: int = 2,
    message_start: str = "2024-01-01",
) -> Dict[str, Any]:
    """A Tinder export with constant daily counts on the given dates."""
    match_ids = match_ids or []
    return {
        "User": {
            "birth_date": birth_date,
            "gender": gender,
            "gender_filter": "F",
            "interested_in": "F",
            "age_filter_min": 22,
            "age_filter_max": 35,
            "create_date": "2023-12-01T10:00:00.000Z",
            "bio": "Coffee &amp; climbing",
            "city": {"name": "Amsterdam", "region": "North Holland"},
            "pos": {"lat": 52.37, "lon": 4.89},
            "user_interests": ["Climbing", "Coffee"],
        },
        "Usage": {
            "app_opens": {d: app_opens for d in dates},
            "swipes_likes": {d: likes for d in dates},
            "swipes_passes": {d: passes for d in dates},
            "superlikes": {d: 0 for d in dates},
            "matches": {d: matches_per_day for d in dates},
            "messages_sent": {d: 2 for d in dates},
            "messages_received": {d: 1 for d in dates},
        },
        "Messages": [
            {
                "match_id": match_id,
                "messages": [
                    {
                        "to": i,
                        "from": "You",
                        "message": f"hey {match_id} #{k}",
                        "sent_date": f"{message_start}T{10 + k:02d}:00:00.000Z",
                    }
                    for k in range(messages_per_match)
                ],
            }
            for i, match_id in enumerate(match_ids)
        ],
        "Photos": ["photo_1.jpg", "photo_2.jpg"],
    }


@pytest.fixture
def tinder_export_factory() -> Callable[..., Dict[str, Any]]:
    return build_tinder_export


@pytest.fixture
def tinder_export() -> Dict[str, Any]:
    """Five days of usage, three matches."""
    return build_tinder_export(
        date_range("2024-01-01", 5), match_ids=["m1", "m2", "m3"]
    )


@pytest.fixture
def hinge_export() -> Dict[str, Any]:
    """A Hinge export with one matched conversation and one rejected like."""
    return {
        "User": {
            "profile": {"age": 29, "gender": "Woman", "height_centimeters": 170},
            "account": {"signup_time": "2023-03-10 18:22:01"},
            "preferences": {"gender_preference": "Man", "age_min": 27, "age_max": 38},
            "location": {"city": "Utrecht", "country": "NL", "lat": 52.09, "lon": 5.12},
        },
        "Matches": [
            {
                "like": [{"timestamp": "2023-04-01 09:00:00"}],
                "match": [{"timestamp": "2023-04-01 12:00:00"}],
                "chats": [
                    {"body": "Hi there", "timestamp": "2023-04-01 13:00:00"},
                    {"body": "How&#39;s your week?", "timestamp": "2023-04-02 08:30:00"},
                ],
                "voice_notes": [{"url": "https://cdn.example/v1.m4a", "timestamp": "2023-04-02 09:00:00"}],
                "we_met": [{"did_meet_subject": "Yes", "timestamp": "2023-04-10 20:00:00"}],
            },
            {
                "block": [{"timestamp": "2023-04-03 19:00:00", "block_type": "remove"}],
            },
        ],
        "Media": [{"url": "https://cdn.example/p1.jpg", "type": "photo"}],
        "Prompts": [{"prompt": "Two truths", "text": "..."}],
    }
