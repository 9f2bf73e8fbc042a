"""
Read-only access to analysis.db.

Provides a connection manager plus the row lookups the API and CLI need.
Writes go through swipe_analysis.etl, never through this module.
"""

import json
import sqlite3
from contextlib import closing
from typing import Any, Dict, List, Tuple, Optional
import logging

from swipe_analysis.config import Config

logger = logging.getLogger(__name__)

PROFILE_COLUMNS = [
    "profile_id",
    "platform",
    "external_id",
    "user_id",
    "computed",
    "birth_date",
    "age_at_upload",
    "age_at_last_usage",
    "gender",
    "interested_in",
    "gender_filter",
    "age_filter_min",
    "age_filter_max",
    "bio",
    "city",
    "region",
    "country",
    "education",
    "photo_count",
    "interests_json",
    "first_day_on_app",
    "last_day_on_app",
    "days_in_profile_period",
]


def _row_to_dict(cursor: sqlite3.Cursor, row: Tuple[Any, ...]) -> Dict[str, Any]:
    return {d[0]: value for d, value in zip(cursor.description, row)}


def _profile_dict(record: Dict[str, Any]) -> Dict[str, Any]:
    record["computed"] = bool(record["computed"])
    record["interests"] = json.loads(record.pop("interests_json") or "[]")
    return record


class DatabaseConnection:
    """
    Read-only connection manager for analysis.db.

    Usage:
        with DatabaseConnection(config) as db:
            db.list_profiles()
    """

    def __init__(self, config: Config):
        """
        Initialize database connection.

        Args:
            config: Configuration object with the analysis.db path.

        Raises:
            ValueError: If analysis.db does not exist or is unreadable.
        """
        if not config.validate():
            raise ValueError(
                f"Database file not found or not readable: {config.analysis_db_path_str}"
            )

        self.config = config
        self._connection: Optional[sqlite3.Connection] = None

    def __enter__(self):
        """Context manager entry."""
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()

    def connect(self) -> sqlite3.Connection:
        """
        Establish read-only connection to analysis.db.

        Raises:
            sqlite3.Error: If connection fails.
        """
        if self._connection is not None:
            return self._connection

        db_path = self.config.analysis_db_path_str
        try:
            # FastAPI may open the connection and read from it on different worker threads
            self._connection = sqlite3.connect(
                f"file:{db_path}?mode=ro", uri=True, check_same_thread=False
            )
            logger.debug(f"Connected to database: {db_path}")
            return self._connection
        except sqlite3.Error as e:
            logger.error(f"Failed to connect to database: {e}")
            raise

    def close(self) -> None:
        """Close database connection."""
        if self._connection:
            self._connection.close()
            self._connection = None
            logger.debug("Database connection closed")

    @property
    def connection(self) -> sqlite3.Connection:
        """
        Get database connection.

        Raises:
            RuntimeError: If connection not established.
        """
        if self._connection is None:
            raise RuntimeError("Database connection not established. Call connect() first.")
        return self._connection

    def _fetch_all(self, query: str, parameters: Tuple[Any, ...] = ()) -> List[Dict[str, Any]]:
        with closing(self.connection.cursor()) as cursor:
            cursor.execute(query, parameters)
            return [_row_to_dict(cursor, row) for row in cursor.fetchall()]

    def _fetch_one(self, query: str, parameters: Tuple[Any, ...] = ()) -> Optional[Dict[str, Any]]:
        rows = self._fetch_all(query, parameters)
        return rows[0] if rows else None

    def get_table_names(self) -> List[str]:
        query = "SELECT `name` FROM `sqlite_master` WHERE `type`='table' ORDER BY `name`;"
        with closing(self.connection.cursor()) as cursor:
            cursor.execute(query)
            return [row[0] for row in cursor.fetchall()]

    def get_row_count(self, table_name: str) -> int:
        """
        Get row count for a table.

        Raises:
            ValueError: If the table does not exist.
        """
        if table_name not in self.get_table_names():
            raise ValueError(f"Unknown table name: {table_name!r}")
        with closing(self.connection.cursor()) as cursor:
            cursor.execute(f"SELECT COUNT(*) FROM `{table_name}`;")
            result = cursor.fetchone()
            return result[0] if result else 0

    def get_row_counts_by_table(self) -> List[Tuple[str, int]]:
        """Row counts for every table, by name."""
        return [(name, self.get_row_count(name)) for name in self.get_table_names()]

    # -------------------------------------------------------------------------
    # Profiles
    # -------------------------------------------------------------------------

    def list_profiles(
        self,
        platform: Optional[str] = None,
        computed: Optional[bool] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """
        List profiles, newest first.

        Args:
            platform: Only this platform (TINDER, HINGE, BUMBLE).
            computed: True for synthetic cohort profiles only, False for real only.
            limit: Maximum rows.
        """
        query = f"SELECT {', '.join(PROFILE_COLUMNS)} FROM dim_profile WHERE 1 = 1"
        params: List[Any] = []
        if platform:
            query += " AND platform = ?"
            params.append(platform.upper())
        if computed is not None:
            query += " AND computed = ?"
            params.append(int(computed))
        query += " ORDER BY created_at DESC, profile_id LIMIT ?;"
        params.append(limit)
        return [_profile_dict(r) for r in self._fetch_all(query, tuple(params))]

    def get_profile(self, profile_id: str) -> Optional[Dict[str, Any]]:
        record = self._fetch_one(
            f"SELECT {', '.join(PROFILE_COLUMNS)} FROM dim_profile WHERE profile_id = ?;",
            (profile_id,),
        )
        return _profile_dict(record) if record else None

    def get_usage(
        self,
        profile_id: str,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Daily usage rows for a profile, oldest first, optionally date-bounded."""
        query = "SELECT * FROM fact_daily_usage WHERE profile_id = ?"
        params: List[Any] = [profile_id]
        if start_date:
            query += " AND date >= ?"
            params.append(start_date)
        if end_date:
            query += " AND date <= ?"
            params.append(end_date)
        return self._fetch_all(query + " ORDER BY date;", tuple(params))

    def get_meta(self, profile_id: str) -> Optional[Dict[str, Any]]:
        return self._fetch_one("SELECT * FROM profile_meta WHERE profile_id = ?;", (profile_id,))

    # -------------------------------------------------------------------------
    # Cohorts
    # -------------------------------------------------------------------------

    def list_cohorts(self, cohort_type: Optional[str] = None) -> List[Dict[str, Any]]:
        query = "SELECT * FROM cohort_definition"
        params: Tuple[Any, ...] = ()
        if cohort_type:
            query += " WHERE cohort_type = ?"
            params = (cohort_type,)
        return self._fetch_all(query + " ORDER BY name;", params)

    def get_cohort(self, cohort_id: str) -> Optional[Dict[str, Any]]:
        return self._fetch_one(
            "SELECT * FROM cohort_definition WHERE cohort_id = ?;", (cohort_id,)
        )
