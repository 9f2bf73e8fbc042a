"""
Tests for ETL schema module.

Tests schema creation, table existence, constraints and cascades.
"""

import sqlite3
from pathlib import Path

import pytest

from swipe_analysis.etl.schema import (
    REQUIRED_TABLES,
    SCHEMA_VERSION,
    connect,
    create_schema,
    get_table_names,
    verify_schema,
)

NOW = "2024-01-01T00:00:00Z"


def _insert_user(conn: sqlite3.Connection, user_id: str = "u1") -> None:
    conn.execute(
        "INSERT INTO dim_user (user_id, created_at, updated_at) VALUES (?, ?, ?);",
        (user_id, NOW, NOW),
    )


def _insert_profile(conn: sqlite3.Connection, profile_id: str = "TINDER:p1", user_id="u1") -> None:
    platform, external_id = profile_id.split(":", 1)
    conn.execute(
        """
        INSERT INTO dim_profile (profile_id, platform, external_id, user_id, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?);
        """,
        (profile_id, platform, external_id, user_id, NOW, NOW),
    )


class TestCreateSchema:
    """Tests for schema creation."""

    def test_creates_database_file(self, tmp_path: Path):
        db_path = tmp_path / "analysis.db"
        assert not db_path.exists()
        create_schema(db_path)
        assert db_path.exists()

    def test_creates_parent_directory(self, tmp_path: Path):
        db_path = tmp_path / "subdir" / "nested" / "analysis.db"
        create_schema(db_path)
        assert db_path.exists()

    def test_idempotent(self, tmp_path: Path):
        """Schema creation should be safe to run multiple times."""
        db_path = tmp_path / "analysis.db"
        create_schema(db_path)
        create_schema(db_path)
        assert verify_schema(db_path)

    def test_creates_all_required_tables(self, analysis_db_path: Path):
        tables = set(get_table_names(analysis_db_path))
        assert REQUIRED_TABLES.issubset(tables)

    def test_records_schema_version(self, conn: sqlite3.Connection):
        row = conn.execute("SELECT value FROM etl_state WHERE key = 'schema_version';").fetchone()
        assert row["value"] == SCHEMA_VERSION


class TestVerifySchema:
    """Tests for verify_schema."""

    def test_missing_file(self, tmp_path: Path):
        assert verify_schema(tmp_path / "nope.db") is False

    def test_missing_table(self, tmp_path: Path):
        db_path = tmp_path / "partial.db"
        sqlite3.connect(str(db_path)).close()
        assert verify_schema(db_path) is False


class TestConstraints:
    """Uniqueness and foreign-key behavior the merge engine relies on."""

    def test_connect_enables_foreign_keys(self, conn: sqlite3.Connection):
        assert conn.execute("PRAGMA foreign_keys;").fetchone()[0] == 1

    def test_usage_date_unique_per_profile(self, conn: sqlite3.Connection):
        _insert_user(conn)
        _insert_profile(conn)
        conn.execute("INSERT INTO fact_daily_usage (profile_id, date) VALUES ('TINDER:p1', '2024-01-01');")
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute(
                "INSERT INTO fact_daily_usage (profile_id, date) VALUES ('TINDER:p1', '2024-01-01');"
            )

    def test_platform_external_id_unique(self, conn: sqlite3.Connection):
        _insert_user(conn)
        _insert_profile(conn)
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute(
                """
                INSERT INTO dim_profile (profile_id, platform, external_id, created_at, updated_at)
                VALUES ('other', 'TINDER', 'p1', ?, ?);
                """,
                (NOW, NOW),
            )

    def test_unknown_platform_rejected(self, conn: sqlite3.Connection):
        with pytest.raises(sqlite3.IntegrityError):
            _insert_profile(conn, "MYSPACE:p1", user_id=None)

    def test_deleting_profile_cascades_usage(self, conn: sqlite3.Connection):
        _insert_user(conn)
        _insert_profile(conn)
        conn.execute("INSERT INTO fact_daily_usage (profile_id, date) VALUES ('TINDER:p1', '2024-01-01');")
        conn.execute("DELETE FROM dim_profile WHERE profile_id = 'TINDER:p1';")
        assert conn.execute("SELECT COUNT(*) FROM fact_daily_usage;").fetchone()[0] == 0

    def test_deleting_user_orphans_profile(self, conn: sqlite3.Connection):
        _insert_user(conn)
        _insert_profile(conn)
        conn.execute("DELETE FROM dim_user WHERE user_id = 'u1';")
        row = conn.execute("SELECT user_id FROM dim_profile WHERE profile_id = 'TINDER:p1';").fetchone()
        assert row["user_id"] is None
