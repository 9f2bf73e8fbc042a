"""
ETL (Extract, Transform, Load) module for Swipe Analysis.

Turns raw dating-app exports into the analytical database (analysis.db).

Architecture Overview:
    Export JSON (blob)        analysis.db (read-write)
    ├── Tinder           →    ├── dim_user, dim_profile
    └── Hinge            →    ├── fact_daily_usage
                              ├── fact_match, fact_message
                              ├── profile_meta
                              ├── cohort_definition
                              └── original_file, etl_state

Key Design Decisions:
    1. Export schemas drift; shapes are detected structurally, unknown
       fields are preserved opaquely
    2. Uploads are idempotent: dedup by date, platform match id and
       per-message key
    3. Ownership resolution returns an outcome; only FORBIDDEN is an error
    4. ProfileMeta and cohort profiles are always rebuilt, never patched
"""

from swipe_analysis.etl.schema import create_schema, connect, SCHEMA_VERSION
from swipe_analysis.etl.normalizers import (
    CanonicalExport,
    Gender,
    Platform,
    normalize_export,
)
from swipe_analysis.etl.extractors import (
    DailyUsageRecord,
    ExtractedMetrics,
    MessageType,
    extract_metrics,
)
from swipe_analysis.etl.loaders import (
    make_profile_id,
    update_etl_state,
    get_etl_state,
)
from swipe_analysis.etl.meta import ProfileMeta, recompute_profile_meta
from swipe_analysis.etl.identity import (
    Caller,
    GeoHint,
    UploadOutcome,
    resolve_upload_outcome,
    transfer_ownership,
)
from swipe_analysis.etl.pipeline import (
    IngestResult,
    create_profile,
    delete_profile,
    get_etl_status,
    merge_accounts,
    update_profile,
    upload_profile,
)
from swipe_analysis.etl.cohort import (
    CohortDefinition,
    CohortResult,
    CohortRunSummary,
    generate_cohort_profile,
    run_cohort_batch,
    seed_system_cohorts,
)
from swipe_analysis.etl.validation import validate_analysis_db, ValidationResult

__all__ = [
    # Schema
    "create_schema",
    "connect",
    "SCHEMA_VERSION",
    # Normalizers
    "CanonicalExport",
    "Gender",
    "Platform",
    "normalize_export",
    # Extractors
    "DailyUsageRecord",
    "ExtractedMetrics",
    "MessageType",
    "extract_metrics",
    # Loaders
    "make_profile_id",
    "update_etl_state",
    "get_etl_state",
    # Meta
    "ProfileMeta",
    "recompute_profile_meta",
    # Identity
    "Caller",
    "GeoHint",
    "UploadOutcome",
    "resolve_upload_outcome",
    "transfer_ownership",
    # Pipeline
    "IngestResult",
    "create_profile",
    "update_profile",
    "upload_profile",
    "merge_accounts",
    "delete_profile",
    "get_etl_status",
    # Cohorts
    "CohortDefinition",
    "CohortResult",
    "CohortRunSummary",
    "generate_cohort_profile",
    "run_cohort_batch",
    "seed_system_cohorts",
    # Validation
    "validate_analysis_db",
    "ValidationResult",
]
