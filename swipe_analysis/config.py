"""
Configuration module for Swipe Analysis.

Handles configuration settings including the analysis database path and
the tunable thresholds used by ingestion and cohort aggregation.

Database Paths:
    - analysis.db: Our analytical database (read-write target)

Environment Variables:
    SWIPE_ANALYSIS_DB_PATH: Override the analysis.db location.
"""

import os
from pathlib import Path
from typing import Optional


class Config:
    """Configuration class for Swipe Analysis."""

    # Default path for analysis.db (our database)
    DEFAULT_ANALYSIS_PATH = Path.home() / ".swipe_analysis"
    DEFAULT_ANALYSIS_DB_NAME = "analysis.db"

    # Environment override for analysis.db
    ANALYSIS_DB_ENV_VAR = "SWIPE_ANALYSIS_DB_PATH"

    # Seconds before a blob download is abandoned
    DEFAULT_BLOB_TIMEOUT_SECONDS = 30.0

    # Cohort aggregation thresholds
    MIN_COHORT_POPULATION = 3
    MIN_SAMPLES_PER_DATE = 3
    COHORT_FETCH_BATCH_SIZE = 100

    # Cross-account merges warn when birth dates differ by more than this
    BIRTH_DATE_DRIFT_DAYS = 365

    def __init__(
        self,
        analysis_db_path: Optional[str] = None,
        blob_timeout_seconds: Optional[float] = None,
    ):
        """
        Initialize configuration.

        Args:
            analysis_db_path: Optional path to analysis.db file. If not provided,
                    uses $SWIPE_ANALYSIS_DB_PATH, then ~/.swipe_analysis/analysis.db
            blob_timeout_seconds: Optional timeout for blob downloads.
        """
        self._analysis_db_path: Path
        if analysis_db_path:
            self._analysis_db_path = Path(analysis_db_path)
        elif os.getenv(self.ANALYSIS_DB_ENV_VAR):
            self._analysis_db_path = Path(os.environ[self.ANALYSIS_DB_ENV_VAR])
        else:
            self._analysis_db_path = self.DEFAULT_ANALYSIS_PATH / self.DEFAULT_ANALYSIS_DB_NAME

        self._blob_timeout_seconds = (
            blob_timeout_seconds
            if blob_timeout_seconds is not None
            else self.DEFAULT_BLOB_TIMEOUT_SECONDS
        )

    @property
    def analysis_db_path(self) -> Path:
        """Get the analysis.db file path (our database)."""
        return self._analysis_db_path

    @property
    def analysis_db_path_str(self) -> str:
        """Get the analysis.db file path as a string."""
        return str(self._analysis_db_path)

    @property
    def blob_timeout_seconds(self) -> float:
        """Get the blob download timeout in seconds."""
        return self._blob_timeout_seconds

    def validate(self) -> bool:
        """
        Validate that analysis.db exists and is readable.

        Returns:
            True if analysis.db exists and is readable, False otherwise.
        """
        return self._analysis_db_path.exists() and os.access(self._analysis_db_path, os.R_OK)

    def ensure_analysis_dir(self) -> None:
        """
        Ensure the analysis.db parent directory exists.

        Creates the directory if it doesn't exist.
        """
        self._analysis_db_path.parent.mkdir(parents=True, exist_ok=True)


# Global configuration instance
_config: Optional[Config] = None


def get_config(analysis_db_path: Optional[str] = None) -> Config:
    """
    Get or create the global configuration instance.

    Args:
        analysis_db_path: Optional path to analysis.db file.

    Returns:
        Config instance.
    """
    global _config
    if _config is None or analysis_db_path is not None:
        _config = Config(analysis_db_path)
    return _config


def set_config(config: Config) -> None:
    """
    Set the global configuration instance.

    Args:
        config: Config instance to use.
    """
    global _config
    _config = config
