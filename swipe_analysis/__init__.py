"""
Swipe Analysis - longitudinal profiles from dating-app data exports.

This package provides functionality to:
- Validate and normalize Tinder and Hinge exports across schema versions
- Merge repeated and partial uploads into one profile per account
- Resolve profile ownership, including cross-account merges
- Aggregate cohorts into synthetic "average" profiles
"""

__version__ = "0.1.0"

from swipe_analysis.config import get_config, Config
from swipe_analysis.database import DatabaseConnection

__all__ = [
    "get_config",
    "Config",
    "DatabaseConnection",
]
