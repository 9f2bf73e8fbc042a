"""
Exception classes for ingestion, merge and cohort generation.

Every error carries a transport-style ``code`` (CONFLICT, FORBIDDEN, ...)
plus an optional ``details`` dict, so a caller can map failures to its own
response format without parsing messages. Messages for ownership and
chronology failures are written for end users.

Resolver outcomes (create, additive update, claim) are NOT errors; see
``swipe_analysis.etl.identity.UploadOutcome``.
"""

from typing import Any, Dict, Optional


class SwipeAnalysisError(Exception):
    """Base exception for Swipe Analysis."""

    code = "INTERNAL_SERVER_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class SchemaValidationError(SwipeAnalysisError):
    """Raised when an export is missing a required field or has the wrong shape."""

    code = "BAD_REQUEST"

    def __init__(self, field_path: str, message: str):
        self.field_path = field_path
        super().__init__(f"{field_path}: {message}", {"field_path": field_path})


class UnsupportedPlatformError(SwipeAnalysisError):
    """Raised for a known platform that has no export normalizer."""

    code = "BAD_REQUEST"

    def __init__(self, platform: str):
        self.platform = platform
        super().__init__(
            f"Uploads for platform {platform} are not supported yet",
            {"platform": platform},
        )


class UnauthorizedError(SwipeAnalysisError):
    """Raised when an operation is attempted without a caller identity."""

    code = "UNAUTHORIZED"

    def __init__(self, message: str = "Session required. Please sign in to upload your profile."):
        super().__init__(message)


class NotFoundError(SwipeAnalysisError):
    code = "NOT_FOUND"


class ForbiddenError(SwipeAnalysisError):
    code = "FORBIDDEN"


class ConflictError(SwipeAnalysisError):
    code = "CONFLICT"


class BadRequestError(SwipeAnalysisError):
    code = "BAD_REQUEST"


class ChronologyViolationError(BadRequestError):
    """Raised when a cross-account merge would move the timeline backwards."""

    def __init__(self, existing_last_day: str, incoming_last_day: str):
        self.existing_last_day = existing_last_day
        self.incoming_last_day = incoming_last_day
        super().__init__(
            "The data you're uploading ends on "
            f"{incoming_last_day}, before your current profile's last active day "
            f"({existing_last_day}). Cross-account merges must go from older → newer "
            "accounts. To fix this, delete your current profile first and re-upload "
            "in chronological order (oldest first).",
            {
                "existing_last_day": existing_last_day,
                "incoming_last_day": incoming_last_day,
            },
        )


class IdentityMismatchWarning(BadRequestError):
    """
    Raised when a merge looks like it combines two different people.

    Not terminal: repeating the merge with ``confirm=True`` proceeds.
    """

    code = "PRECONDITION_REQUIRED"

    def __init__(self, existing_birth_date: str, incoming_birth_date: str, drift_days: int):
        self.existing_birth_date = existing_birth_date
        self.incoming_birth_date = incoming_birth_date
        self.drift_days = drift_days
        super().__init__(
            f"The birth date in this export ({incoming_birth_date}) differs from your "
            f"current profile ({existing_birth_date}) by {drift_days} days. This may "
            "be a different person's data. Confirm the merge to continue anyway.",
            {
                "existing_birth_date": existing_birth_date,
                "incoming_birth_date": incoming_birth_date,
                "drift_days": drift_days,
            },
        )


class InsufficientSampleError(SwipeAnalysisError):
    """Raised when a cohort has too few profiles (or dates) to aggregate safely."""

    code = "INSUFFICIENT_SAMPLE"


class BlobFetchError(SwipeAnalysisError):
    """Raised when a raw export cannot be downloaded or decoded."""

    code = "BAD_GATEWAY"

    def __init__(self, url: str, reason: str):
        self.url = url
        super().__init__(f"Failed to fetch export from {url}: {reason}", {"url": url})
