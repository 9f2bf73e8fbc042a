"""
FastAPI backend for Swipe Analysis.

IMPORTANT: This API ONLY reads from analysis.db. Ingestion, merges and
cohort generation run through the CLI (or another caller of
swipe_analysis.etl), never over HTTP.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from swipe_analysis.config import Config
from swipe_analysis.database import DatabaseConnection
from swipe_analysis.errors import NotFoundError, SwipeAnalysisError
from swipe_analysis.etl.cohort import synthetic_external_id
from swipe_analysis.etl.loaders import make_profile_id
from swipe_analysis.etl.normalizers import Platform

# SwipeAnalysisError.code -> HTTP status
ERROR_STATUS = {
    "BAD_REQUEST": 400,
    "UNAUTHORIZED": 401,
    "FORBIDDEN": 403,
    "NOT_FOUND": 404,
    "CONFLICT": 409,
    "PRECONDITION_REQUIRED": 428,
    "INSUFFICIENT_SAMPLE": 422,
    "BAD_GATEWAY": 502,
}


def _get_analysis_db_path() -> Path:
    """Get the path to analysis.db."""
    return Path(os.getenv(
        Config.ANALYSIS_DB_ENV_VAR,
        str(Config.DEFAULT_ANALYSIS_PATH / Config.DEFAULT_ANALYSIS_DB_NAME),
    ))


def get_db() -> Iterator[DatabaseConnection]:
    """
    Open analysis.db for reading.

    Raises HTTPException if analysis.db doesn't exist.
    """
    path = _get_analysis_db_path()
    if not path.exists():
        raise HTTPException(
            status_code=503,
            detail={
                "error": "analysis.db not found",
                "message": "Run `swipe-analysis ingest` first to populate the analysis database",
                "path": str(path),
            },
        )
    with DatabaseConnection(Config(analysis_db_path=str(path))) as db:
        yield db


app = FastAPI(
    title="Swipe Analysis API",
    version="0.1.0",
    description="Read-only API over analysis.db: profiles, daily usage, rollups and cohorts.",
)

# Local dev CORS defaults
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        os.getenv("SWIPE_ANALYSIS_ALLOWED_ORIGIN", "http://127.0.0.1:5173"),
        "http://localhost:5173",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(SwipeAnalysisError)
def swipe_analysis_error_handler(request: Request, exc: SwipeAnalysisError) -> JSONResponse:
    return JSONResponse(
        status_code=ERROR_STATUS.get(exc.code, 500),
        content={"error": exc.code, "message": exc.message, "details": exc.details},
    )


@app.get("/health")
def health() -> Dict[str, Any]:
    """Health check - also verifies analysis.db is accessible."""
    path = _get_analysis_db_path()
    return {
        "status": "ok" if path.exists() else "degraded",
        "analysis_db_exists": path.exists(),
        "analysis_db_path": str(path),
    }


@app.get("/profiles")
def profiles(
    platform: Optional[str] = Query(default=None),
    computed: Optional[bool] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    db: DatabaseConnection = Depends(get_db),
) -> List[Dict[str, Any]]:
    """List profiles, optionally only one platform or only (non-)synthetic ones."""
    if platform is not None and platform.upper() not in {p.value for p in Platform}:
        raise HTTPException(status_code=400, detail=f"Unknown platform: {platform}")
    return db.list_profiles(platform=platform, computed=computed, limit=limit)


def _require_profile(db: DatabaseConnection, profile_id: str) -> Dict[str, Any]:
    profile = db.get_profile(profile_id)
    if profile is None:
        raise NotFoundError(f"Profile not found: {profile_id}", {"profile_id": profile_id})
    return profile


@app.get("/profiles/{profile_id}")
def profile_detail(profile_id: str, db: DatabaseConnection = Depends(get_db)) -> Dict[str, Any]:
    return _require_profile(db, profile_id)


@app.get("/profiles/{profile_id}/usage")
def profile_usage(
    profile_id: str,
    start: Optional[str] = Query(default=None, description="YYYY-MM-DD, inclusive"),
    end: Optional[str] = Query(default=None, description="YYYY-MM-DD, inclusive"),
    db: DatabaseConnection = Depends(get_db),
) -> List[Dict[str, Any]]:
    """Daily usage rows, oldest first."""
    _require_profile(db, profile_id)
    return db.get_usage(profile_id, start_date=start, end_date=end)


@app.get("/profiles/{profile_id}/meta")
def profile_meta(profile_id: str, db: DatabaseConnection = Depends(get_db)) -> Dict[str, Any]:
    _require_profile(db, profile_id)
    meta = db.get_meta(profile_id)
    if meta is None:
        raise NotFoundError(f"No rollup for profile: {profile_id}", {"profile_id": profile_id})
    return meta


@app.get("/cohorts")
def cohorts(
    cohort_type: Optional[str] = Query(default=None, pattern="^(SYSTEM|USER_CUSTOM)$"),
    db: DatabaseConnection = Depends(get_db),
) -> List[Dict[str, Any]]:
    return db.list_cohorts(cohort_type=cohort_type)


@app.get("/cohorts/{cohort_id}/profile")
def cohort_profile(cohort_id: str, db: DatabaseConnection = Depends(get_db)) -> Dict[str, Any]:
    """The cohort's synthetic profile with its rollup."""
    cohort = db.get_cohort(cohort_id)
    if cohort is None:
        raise NotFoundError(f"Cohort not found: {cohort_id}", {"cohort_id": cohort_id})

    profile_id = make_profile_id(Platform(cohort["platform"]), synthetic_external_id(cohort_id))
    profile = db.get_profile(profile_id)
    if profile is None:
        raise NotFoundError(
            f"Cohort {cohort_id} has not been generated yet", {"cohort_id": cohort_id}
        )
    return {"cohort": cohort, "profile": profile, "meta": db.get_meta(profile_id)}
