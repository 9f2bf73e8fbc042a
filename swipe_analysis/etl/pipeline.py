"""
Ingestion pipeline orchestration.

This module runs one upload end to end: fetch the raw export, normalize it,
extract metrics, resolve ownership, merge into analysis.db and rebuild the
profile rollup.

Pipeline Steps:
    1. Fetch the raw export (blob URL, file path, or an already-decoded dict)
    2. Normalize into a CanonicalExport (schema validation happens here)
    3. Extract daily usage, matches/messages and demographics
    4. Resolve the upload against the stored owner
    5. In ONE transaction:
        a. Upsert the caller's user row (with geolocation hint)
        b. Transfer ownership if this upload claims an anonymous profile
        c. Insert or refresh the profile row
        d. Merge usage rows, matches and messages
        e. Archive the raw export
        f. Recompute ProfileMeta (always last)

Errors from any step abort the upload and propagate to the caller as a
SwipeAnalysisError subclass; the transaction rolls back so nothing is
half-applied.
"""

import sqlite3
import time
from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union
import logging

from swipe_analysis.blob import fetch_blob_json
from swipe_analysis.errors import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
)
from swipe_analysis.etl.extractors import ExtractedMetrics, extract_metrics
from swipe_analysis.etl.identity import (
    Caller,
    GeoHint,
    UploadOutcome,
    check_chronology,
    check_identity_drift,
    get_profile_owner,
    require_caller,
    resolve_for_profile,
    transfer_ownership,
)
from swipe_analysis.etl.loaders import (
    archive_original_file,
    delete_profile_rows,
    get_etl_state,
    get_profile,
    get_table_count,
    insert_profile,
    make_profile_id,
    merge_matches,
    reparent_profile_data,
    update_etl_state,
    update_profile_snapshot,
    upsert_daily_usage,
    upsert_user,
)
from swipe_analysis.etl.meta import recompute_profile_meta
from swipe_analysis.etl.normalizers import Platform, normalize_export
from swipe_analysis.etl.schema import connect, verify_schema

logger = logging.getLogger(__name__)

ExportRef = Union[str, Mapping[str, Any]]
BlobFetcher = Callable[[str], Dict[str, Any]]


@dataclass
class IngestResult:
    """Result of one upload or merge."""

    profile_id: str
    outcome: UploadOutcome
    usage_inserted: int = 0
    usage_updated: int = 0
    usage_unchanged: int = 0
    matches_inserted: int = 0
    messages_inserted: int = 0
    usage_reparented: int = 0
    matches_reparented: int = 0
    first_day_on_app: Optional[str] = None
    last_day_on_app: Optional[str] = None
    duration_seconds: float = 0.0

    def __str__(self) -> str:
        reparent_info = ""
        if self.usage_reparented or self.matches_reparented:
            reparent_info = (
                f"\n  Re-parented: {self.usage_reparented} usage rows, "
                f"{self.matches_reparented} matches"
            )
        return (
            f"Ingest {self.outcome.value} for {self.profile_id}"
            f" ({self.first_day_on_app} to {self.last_day_on_app})\n"
            f"  Usage: {self.usage_inserted} inserted, {self.usage_updated} updated, "
            f"{self.usage_unchanged} unchanged\n"
            f"  Matches: {self.matches_inserted} new, {self.messages_inserted} new messages"
            f"{reparent_info}\n"
            f"  Duration: {self.duration_seconds:.2f}s"
        )


def _now_iso() -> str:
    return datetime.now(tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _load_document(
    export_ref: ExportRef, fetch: Optional[BlobFetcher]
) -> Tuple[Dict[str, Any], Optional[str]]:
    """Resolve an export reference to (document, blob_url)."""
    if isinstance(export_ref, Mapping):
        return dict(export_ref), None
    fetcher = fetch or fetch_blob_json
    return fetcher(export_ref), export_ref


def _prepare(
    platform: Platform,
    export_ref: ExportRef,
    fetch: Optional[BlobFetcher],
    today: Optional[date],
) -> Tuple[Dict[str, Any], Optional[str], ExtractedMetrics]:
    document, blob_url = _load_document(export_ref, fetch)
    export = normalize_export(document, platform)
    return document, blob_url, extract_metrics(export, today=today)


def _apply(
    conn: sqlite3.Connection,
    platform: Platform,
    external_id: str,
    caller: Caller,
    outcome: UploadOutcome,
    metrics: ExtractedMetrics,
    document: Dict[str, Any],
    blob_url: Optional[str],
    geo: Optional[GeoHint],
    start_time: float,
) -> IngestResult:
    """Write one resolved upload. Caller owns the transaction."""
    profile_id = make_profile_id(platform, external_id)
    geo = geo or GeoHint()
    upsert_user(conn, caller.user_id, caller.is_anonymous, geo.country, geo.region, geo.city)

    if outcome is UploadOutcome.CLAIM_THEN_UPDATE:
        owner = get_profile_owner(conn, profile_id)
        transfer_ownership(conn, profile_id, owner.user_id if owner else None, caller.user_id)

    if outcome is UploadOutcome.CREATE:
        insert_profile(conn, platform, external_id, caller.user_id, metrics.demographics)
    else:
        update_profile_snapshot(conn, profile_id, metrics.demographics)

    usage = upsert_daily_usage(conn, profile_id, metrics.daily_usage)
    matches = merge_matches(conn, profile_id, metrics.matches)
    archive_original_file(conn, platform, external_id, caller.user_id, document, blob_url)
    update_etl_state(conn, "last_ingest", _now_iso())

    recompute_profile_meta(conn, profile_id)

    row = get_profile(conn, profile_id)
    return IngestResult(
        profile_id=profile_id,
        outcome=outcome,
        usage_inserted=usage.inserted,
        usage_updated=usage.updated,
        usage_unchanged=usage.unchanged,
        matches_inserted=matches.matches_inserted,
        messages_inserted=matches.messages_inserted,
        first_day_on_app=row["first_day_on_app"] if row else None,
        last_day_on_app=row["last_day_on_app"] if row else None,
        duration_seconds=time.monotonic() - start_time,
    )


def _run(
    conn: sqlite3.Connection,
    platform: Platform,
    external_id: str,
    export_ref: ExportRef,
    caller: Caller,
    outcome: UploadOutcome,
    geo: Optional[GeoHint],
    fetch: Optional[BlobFetcher],
    today: Optional[date],
) -> IngestResult:
    start_time = time.monotonic()
    platform = Platform(platform)
    document, blob_url, metrics = _prepare(platform, export_ref, fetch, today)

    try:
        with conn:
            result = _apply(
                conn,
                platform,
                external_id,
                caller,
                outcome,
                metrics,
                document,
                blob_url,
                geo,
                start_time,
            )
    except Exception as e:
        logger.error(f"Ingest of {platform.value}:{external_id} failed and was rolled back: {e}")
        raise

    logger.info(str(result))
    return result


def create_profile(
    conn: sqlite3.Connection,
    platform: Platform,
    external_id: str,
    export_ref: ExportRef,
    caller: Optional[Caller],
    geo: Optional[GeoHint] = None,
    fetch: Optional[BlobFetcher] = None,
    today: Optional[date] = None,
) -> IngestResult:
    """
    Ingest an export as a brand-new profile owned by the caller.

    Raises:
        UnauthorizedError: No caller.
        ConflictError: The profile already exists.
    """
    caller = require_caller(caller)
    profile_id = make_profile_id(Platform(platform), external_id)
    if get_profile(conn, profile_id) is not None:
        raise ConflictError("Profile already exists. Use update instead.", {"profile_id": profile_id})
    return _run(
        conn, platform, external_id, export_ref, caller, UploadOutcome.CREATE, geo, fetch, today
    )


def update_profile(
    conn: sqlite3.Connection,
    platform: Platform,
    external_id: str,
    export_ref: ExportRef,
    caller: Optional[Caller],
    geo: Optional[GeoHint] = None,
    fetch: Optional[BlobFetcher] = None,
    today: Optional[date] = None,
) -> IngestResult:
    """
    Additively merge a fresh export into an existing profile.

    An anonymous owner's profile is claimed by the caller first.

    Raises:
        UnauthorizedError: No caller.
        NotFoundError: The profile does not exist.
        ForbiddenError: The profile belongs to another claimed user.
    """
    caller = require_caller(caller)
    profile_id = make_profile_id(Platform(platform), external_id)
    if get_profile(conn, profile_id) is None:
        raise NotFoundError("Profile not found. Use create instead.", {"profile_id": profile_id})
    outcome = resolve_for_profile(conn, profile_id, caller)
    return _run(conn, platform, external_id, export_ref, caller, outcome, geo, fetch, today)


def upload_profile(
    conn: sqlite3.Connection,
    platform: Platform,
    external_id: str,
    export_ref: ExportRef,
    caller: Optional[Caller],
    geo: Optional[GeoHint] = None,
    fetch: Optional[BlobFetcher] = None,
    today: Optional[date] = None,
) -> IngestResult:
    """
    Create or update, whichever the stored state calls for.

    Raises:
        UnauthorizedError: No caller.
        ForbiddenError: The profile belongs to another claimed user.
    """
    caller = require_caller(caller)
    profile_id = make_profile_id(Platform(platform), external_id)
    outcome = resolve_for_profile(conn, profile_id, caller)
    return _run(conn, platform, external_id, export_ref, caller, outcome, geo, fetch, today)


def merge_accounts(
    conn: sqlite3.Connection,
    old_external_id: str,
    new_external_id: str,
    export_ref: ExportRef,
    caller: Optional[Caller],
    platform: Platform = Platform.TINDER,
    confirm: bool = False,
    fetch: Optional[BlobFetcher] = None,
    today: Optional[date] = None,
) -> IngestResult:
    """
    Merge the caller's current profile into a newer account's export.

    The old profile's history is re-parented onto the new profile id and
    the old profile row is removed. The incoming export then wins for every
    date it covers. Old matches keep their messages under
    "{old_external_id}/{platform_match_id}", so a match id the new account
    reuses is a separate match, never a union of two conversations.

    Args:
        conn: SQLite connection to analysis.db.
        old_external_id: External id of the caller's current profile.
        new_external_id: External id of the incoming (newer) account.
        export_ref: Export for the new account.
        caller: Caller identity; must own the old profile.
        platform: Platform of both accounts.
        confirm: Proceed despite a birth-date mismatch warning.

    Raises:
        UnauthorizedError: No caller.
        BadRequestError: No existing profile for the caller, or self-merge.
        ChronologyViolationError: Incoming export ends before the existing profile.
        IdentityMismatchWarning: Birth dates drift too far and confirm is False.
        ConflictError: The new account already has a profile.
    """
    start_time = time.monotonic()
    caller = require_caller(caller)
    platform = Platform(platform)

    if old_external_id == new_external_id:
        raise BadRequestError("Cannot merge profile with itself")

    old_profile_id = make_profile_id(platform, old_external_id)
    new_profile_id = make_profile_id(platform, new_external_id)
    existing = get_profile(conn, old_profile_id)
    if existing is None or existing["user_id"] != caller.user_id:
        raise BadRequestError(
            "No existing profile to merge into. Upload your current account first.",
            {"profile_id": old_profile_id},
        )
    if get_profile(conn, new_profile_id) is not None:
        raise ConflictError(
            "The account you're merging already has a profile.", {"profile_id": new_profile_id}
        )

    document, blob_url, metrics = _prepare(platform, export_ref, fetch, today)
    demographics = metrics.demographics

    check_chronology(existing["last_day_on_app"], demographics.last_day_on_app)
    check_identity_drift(existing["birth_date"], demographics.birth_date, confirm=confirm)

    # Combined active range spans both accounts
    firsts = [d for d in (existing["first_day_on_app"], demographics.first_day_on_app) if d]
    if firsts:
        demographics.first_day_on_app = min(firsts)
        if demographics.last_day_on_app:
            demographics.days_in_profile_period = (
                date.fromisoformat(demographics.last_day_on_app)
                - date.fromisoformat(demographics.first_day_on_app)
            ).days + 1

    try:
        with conn:
            upsert_user(conn, caller.user_id, caller.is_anonymous)
            insert_profile(conn, platform, new_external_id, caller.user_id, demographics)
            usage_moved, matches_moved = reparent_profile_data(
                conn, old_profile_id, new_profile_id, match_namespace=old_external_id
            )
            delete_profile_rows(conn, old_profile_id)

            usage = upsert_daily_usage(conn, new_profile_id, metrics.daily_usage)
            matches = merge_matches(conn, new_profile_id, metrics.matches)
            archive_original_file(
                conn, platform, new_external_id, caller.user_id, document, blob_url
            )
            update_etl_state(conn, "last_ingest", _now_iso())
            recompute_profile_meta(conn, new_profile_id)
    except Exception as e:
        logger.error(f"Merge {old_profile_id} -> {new_profile_id} failed and was rolled back: {e}")
        raise

    result = IngestResult(
        profile_id=new_profile_id,
        outcome=UploadOutcome.ADDITIVE_UPDATE,
        usage_inserted=usage.inserted,
        usage_updated=usage.updated,
        usage_unchanged=usage.unchanged,
        matches_inserted=matches.matches_inserted,
        messages_inserted=matches.messages_inserted,
        usage_reparented=usage_moved,
        matches_reparented=matches_moved,
        first_day_on_app=demographics.first_day_on_app,
        last_day_on_app=demographics.last_day_on_app,
        duration_seconds=time.monotonic() - start_time,
    )
    logger.info(f"Merged {old_profile_id} into {new_profile_id}\n{result}")
    return result


def delete_profile(
    conn: sqlite3.Connection, platform: Platform, external_id: str, caller: Optional[Caller]
) -> None:
    """
    Remove a profile and all of its usage, matches, messages and meta.

    Raises:
        UnauthorizedError: No caller.
        NotFoundError: Unknown profile.
        ForbiddenError: The caller does not own the profile.
    """
    caller = require_caller(caller)
    profile_id = make_profile_id(Platform(platform), external_id)
    row = get_profile(conn, profile_id)
    if row is None:
        raise NotFoundError("Profile not found.", {"profile_id": profile_id})
    if row["user_id"] != caller.user_id or row["computed"]:
        raise ForbiddenError("You can only delete your own profile.", {"profile_id": profile_id})

    with conn:
        delete_profile_rows(conn, profile_id)
    logger.info(f"Deleted profile {profile_id}")


def get_etl_status(analysis_db_path: Path) -> dict:
    """
    Get current ingestion status from analysis.db.

    Args:
        analysis_db_path: Path to analysis.db.

    Returns:
        Dictionary with status information.
    """
    if not analysis_db_path.exists():
        return {"exists": False}

    conn = connect(analysis_db_path)
    try:
        return {
            "exists": True,
            "schema_valid": verify_schema(analysis_db_path),
            "user_count": get_table_count(conn, "dim_user"),
            "profile_count": get_table_count(conn, "dim_profile"),
            "usage_row_count": get_table_count(conn, "fact_daily_usage"),
            "match_count": get_table_count(conn, "fact_match"),
            "message_count": get_table_count(conn, "fact_message"),
            "last_ingest": get_etl_state(conn, "last_ingest"),
            "last_cohort_run": get_etl_state(conn, "last_cohort_run"),
            "schema_version": get_etl_state(conn, "schema_version"),
        }
    finally:
        conn.close()
