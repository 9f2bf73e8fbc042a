"""
Ownership and identity resolution for uploads.

A profile is owned by at most one user at a time. This module decides what
an upload is allowed to do with an existing profile and performs ownership
transfer as its own operation.

Design Decisions:
    1. Resolution is a pure function of (existing owner, caller) returning
       an UploadOutcome; CREATE / ADDITIVE_UPDATE / CLAIM_THEN_UPDATE are
       return values, not exceptions
    2. FORBIDDEN happens if and only if the profile is owned by a
       non-anonymous user other than the caller
    3. transfer_ownership is called explicitly by the pipeline, never as a
       side effect of merging data
    4. Cross-account merges are guarded by a chronology check (hard error)
       and a birth-date drift check (warning that needs confirmation)
"""

import sqlite3
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Optional
import logging

from swipe_analysis.config import Config
from swipe_analysis.errors import (
    ChronologyViolationError,
    ForbiddenError,
    IdentityMismatchWarning,
    NotFoundError,
    UnauthorizedError,
)
from swipe_analysis.etl.loaders import (
    delete_user,
    get_profile,
    get_profiles_for_user,
    get_user,
    set_profile_owner,
    transfer_original_files,
)

logger = logging.getLogger(__name__)

FORBIDDEN_MESSAGE = (
    "This profile belongs to another user. Please sign in with a different "
    "account or use a different email address."
)


class UploadOutcome(str, Enum):
    CREATE = "CREATE"
    ADDITIVE_UPDATE = "ADDITIVE_UPDATE"
    CLAIM_THEN_UPDATE = "CLAIM_THEN_UPDATE"
    FORBIDDEN = "FORBIDDEN"


@dataclass
class Caller:
    """An already-authenticated caller identity."""

    user_id: str
    is_anonymous: bool = False
    email: Optional[str] = None


@dataclass
class GeoHint:
    """Approximate caller location, used to enrich the user row only."""

    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None


@dataclass
class ProfileOwner:
    user_id: str
    is_anonymous: bool


def require_caller(caller: Optional[Caller]) -> Caller:
    if caller is None or not caller.user_id:
        raise UnauthorizedError()
    return caller


def resolve_upload_outcome(
    existing_owner: Optional[ProfileOwner], caller: Caller, profile_exists: bool = True
) -> UploadOutcome:
    """
    Decide what an upload may do with a (possibly existing) profile.

    Args:
        existing_owner: Current owner of the profile, None if unowned.
        caller: The uploading user.
        profile_exists: False when no profile row exists yet.

    Returns:
        The UploadOutcome.
    """
    if not profile_exists:
        return UploadOutcome.CREATE
    if existing_owner is None:
        # Orphaned by a deleted user; treat like an anonymous owner
        return UploadOutcome.CLAIM_THEN_UPDATE
    if existing_owner.user_id == caller.user_id:
        return UploadOutcome.ADDITIVE_UPDATE
    if existing_owner.is_anonymous:
        return UploadOutcome.CLAIM_THEN_UPDATE
    return UploadOutcome.FORBIDDEN


def get_profile_owner(conn: sqlite3.Connection, profile_id: str) -> Optional[ProfileOwner]:
    """Look up a profile's owner; None if the profile has no owner."""
    row = get_profile(conn, profile_id)
    if row is None or row["user_id"] is None:
        return None
    return ProfileOwner(user_id=row["user_id"], is_anonymous=bool(row["owner_is_anonymous"]))


def resolve_for_profile(
    conn: sqlite3.Connection, profile_id: str, caller: Optional[Caller]
) -> UploadOutcome:
    """
    Resolve an upload against stored state.

    Raises:
        UnauthorizedError: No caller.
        ForbiddenError: Profile belongs to another claimed user.
    """
    caller = require_caller(caller)
    exists = get_profile(conn, profile_id) is not None
    outcome = resolve_upload_outcome(get_profile_owner(conn, profile_id), caller, exists)
    logger.info(f"Upload of {profile_id} by {caller.user_id}: {outcome.value}")
    if outcome is UploadOutcome.FORBIDDEN:
        raise ForbiddenError(FORBIDDEN_MESSAGE, {"profile_id": profile_id})
    return outcome


def transfer_ownership(
    conn: sqlite3.Connection, profile_id: str, from_user_id: Optional[str], to_user_id: str
) -> None:
    """
    Move a profile from an anonymous (or missing) owner to another user.

    The anonymous user's archived export files move with it, and the
    anonymous user is deleted once it owns nothing else.

    Raises:
        NotFoundError: Unknown profile.
        ForbiddenError: The current owner is not anonymous, or is not from_user_id.
    """
    row = get_profile(conn, profile_id)
    if row is None:
        raise NotFoundError(f"Profile not found: {profile_id}")
    if row["user_id"] != from_user_id:
        raise ForbiddenError(FORBIDDEN_MESSAGE, {"profile_id": profile_id})

    if from_user_id is not None:
        old_user = get_user(conn, from_user_id)
        if old_user is not None and not old_user["is_anonymous"]:
            raise ForbiddenError(FORBIDDEN_MESSAGE, {"profile_id": profile_id})

    set_profile_owner(conn, profile_id, to_user_id)

    if from_user_id is not None:
        moved = transfer_original_files(conn, from_user_id, to_user_id)
        if not get_profiles_for_user(conn, from_user_id):
            delete_user(conn, from_user_id)
            logger.info(f"Removed anonymous user {from_user_id} after transfer")
        logger.info(
            f"Transferred {profile_id} from {from_user_id} to {to_user_id} "
            f"({moved} archived files moved)"
        )
    else:
        logger.info(f"Assigned unowned profile {profile_id} to {to_user_id}")


def check_chronology(existing_last_day: Optional[str], incoming_last_day: Optional[str]) -> None:
    """
    Merges must go from older to newer accounts.

    Raises:
        ChronologyViolationError: If the incoming export ends before the existing profile.
    """
    if existing_last_day and incoming_last_day and incoming_last_day < existing_last_day:
        raise ChronologyViolationError(existing_last_day, incoming_last_day)


def birth_date_drift_days(existing_birth_date: str, incoming_birth_date: str) -> int:
    return abs(
        (date.fromisoformat(incoming_birth_date) - date.fromisoformat(existing_birth_date)).days
    )


def check_identity_drift(
    existing_birth_date: Optional[str],
    incoming_birth_date: Optional[str],
    confirm: bool = False,
    threshold_days: int = Config.BIRTH_DATE_DRIFT_DAYS,
) -> Optional[int]:
    """
    Flag merges whose birth dates are too far apart to be the same person.

    Returns:
        The drift in days (None if either date is missing).

    Raises:
        IdentityMismatchWarning: Drift above threshold and not confirmed.
    """
    if not existing_birth_date or not incoming_birth_date:
        return None
    drift = birth_date_drift_days(existing_birth_date, incoming_birth_date)
    if drift > threshold_days:
        if not confirm:
            raise IdentityMismatchWarning(existing_birth_date, incoming_birth_date, drift)
        logger.warning(
            f"Merging despite birth date drift of {drift} days "
            f"({existing_birth_date} vs {incoming_birth_date})"
        )
    return drift
