"""
Cohort aggregation.

A cohort is a named demographic filter over real profiles. For each cohort
we generate one synthetic ("computed") profile whose daily usage is the
statistical average of the cohort's members.

Design Decisions:
    1. Fewer than MIN_COHORT_POPULATION matching profiles: skip the cohort.
       An average of one or two people identifies them
    2. A date contributes only if MIN_SAMPLES_PER_DATE distinct profiles
       have a row for it; sparse dates are dropped, never synthesized
    3. Count metrics use the mean (rounded half up), rates use the median
    4. Regeneration deletes the old synthetic profile and recreates it;
       it is never patched
    5. Computed profiles never enter a cohort population
    6. A batch run isolates failures per cohort and reports a summary

The synthetic profile's external id is ``cohort_{cohort_id}``, so each
cohort owns exactly one synthetic profile id.
"""

import math
import sqlite3
import statistics
import uuid
from collections import defaultdict
from contextlib import closing
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
import logging

from swipe_analysis.config import Config, get_config
from swipe_analysis.errors import InsufficientSampleError, NotFoundError
from swipe_analysis.etl.extractors import DailyUsageRecord, Demographics
from swipe_analysis.etl.loaders import (
    delete_profile_rows,
    get_profile,
    insert_profile,
    make_profile_id,
    upsert_daily_usage,
    update_etl_state,
)
from swipe_analysis.etl.meta import build_profile_meta, write_profile_meta
from swipe_analysis.etl.normalizers import Gender, Platform

logger = logging.getLogger(__name__)

COUNT_METRICS = [
    "app_opens",
    "swipe_likes",
    "swipe_passes",
    "super_likes",
    "swipes_combined",
    "matches",
    "messages_sent",
    "messages_received",
]

RATE_METRICS = [
    "like_rate",
    "match_rate",
    "response_rate",
    "engagement_rate",
    "messages_sent_rate",
]

DEFAULT_SYNTHETIC_AGE = 25

AGE_BRACKETS = [(18, 24), (25, 34), (35, 44), (45, 54)]


def _now_iso() -> str:
    return datetime.now(tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class CohortDefinition:
    cohort_id: str
    name: str
    description: Optional[str] = None
    platform: Platform = Platform.TINDER
    gender: Optional[Gender] = None
    age_min: Optional[int] = None
    age_max: Optional[int] = None
    country: Optional[str] = None
    region: Optional[str] = None
    cohort_type: str = "SYSTEM"
    created_by_user_id: Optional[str] = None
    profile_count: int = 0
    last_computed_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "CohortDefinition":
        return cls(
            cohort_id=row["cohort_id"],
            name=row["name"],
            description=row["description"],
            platform=Platform(row["platform"]),
            gender=Gender(row["gender"]) if row["gender"] else None,
            age_min=row["age_min"],
            age_max=row["age_max"],
            country=row["country"],
            region=row["region"],
            cohort_type=row["cohort_type"],
            created_by_user_id=row["created_by_user_id"],
            profile_count=row["profile_count"],
            last_computed_at=row["last_computed_at"],
        )

    @property
    def synthetic_external_id(self) -> str:
        return synthetic_external_id(self.cohort_id)


@dataclass
class CohortResult:
    """Outcome of generating one cohort's synthetic profile."""

    cohort_id: str
    success: bool
    usage_days_written: int = 0
    profile_count: int = 0
    skipped: bool = False
    reason: Optional[str] = None


@dataclass
class CohortRunSummary:
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    results: List[CohortResult] = field(default_factory=list)

    def __str__(self) -> str:
        lines = [
            f"Cohorts: {self.succeeded} generated, {self.skipped} skipped, {self.failed} failed"
        ]
        for r in self.results:
            if r.success:
                lines.append(
                    f"  {r.cohort_id}: {r.usage_days_written} days from {r.profile_count} profiles"
                )
            else:
                status = "skipped" if r.skipped else "FAILED"
                lines.append(f"  {r.cohort_id}: {status} ({r.reason})")
        return "\n".join(lines)


def synthetic_external_id(cohort_id: str) -> str:
    return f"cohort_{cohort_id}"


# =============================================================================
# Definitions
# =============================================================================


def _system_cohorts() -> List[CohortDefinition]:
    cohorts = [
        CohortDefinition("tinder_all", "Everyone", "All Tinder profiles"),
        CohortDefinition("tinder_male", "Men", "All male Tinder profiles", gender=Gender.MALE),
        CohortDefinition(
            "tinder_female", "Women", "All female Tinder profiles", gender=Gender.FEMALE
        ),
    ]
    for gender, label in ((Gender.MALE, "Men"), (Gender.FEMALE, "Women")):
        for age_min, age_max in AGE_BRACKETS:
            cohorts.append(
                CohortDefinition(
                    cohort_id=f"tinder_{gender.value.lower()}_{age_min}-{age_max}",
                    name=f"{label} {age_min}-{age_max}",
                    description=f"{label} aged {age_min} to {age_max} on Tinder",
                    gender=gender,
                    age_min=age_min,
                    age_max=age_max,
                )
            )
    return cohorts


SYSTEM_COHORTS = _system_cohorts()


def _insert_cohort(conn: sqlite3.Connection, cohort: CohortDefinition, or_ignore: bool) -> int:
    verb = "INSERT OR IGNORE" if or_ignore else "INSERT"
    with closing(conn.cursor()) as cursor:
        cursor.execute(
            f"""
            {verb} INTO cohort_definition
                (cohort_id, name, description, platform, gender, age_min, age_max,
                 country, region, cohort_type, created_by_user_id, profile_count, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?);
            """,
            (
                cohort.cohort_id,
                cohort.name,
                cohort.description,
                Platform(cohort.platform).value,
                cohort.gender.value if cohort.gender else None,
                cohort.age_min,
                cohort.age_max,
                cohort.country,
                cohort.region,
                cohort.cohort_type,
                cohort.created_by_user_id,
                _now_iso(),
            ),
        )
        return cursor.rowcount


def seed_system_cohorts(conn: sqlite3.Connection) -> int:
    """
    Insert the built-in cohorts that don't exist yet.

    Returns:
        Number of cohorts added.
    """
    with conn:
        added = sum(_insert_cohort(conn, cohort, or_ignore=True) for cohort in SYSTEM_COHORTS)
    logger.info(f"Seeded {added} system cohorts ({len(SYSTEM_COHORTS)} defined)")
    return added


def create_custom_cohort(
    conn: sqlite3.Connection,
    user_id: str,
    name: str,
    platform: Platform = Platform.TINDER,
    gender: Optional[Gender] = None,
    age_min: Optional[int] = None,
    age_max: Optional[int] = None,
    country: Optional[str] = None,
    region: Optional[str] = None,
    description: Optional[str] = None,
) -> CohortDefinition:
    """Create a user-defined cohort owned by user_id."""
    cohort = CohortDefinition(
        cohort_id=f"cohort_{uuid.uuid4().hex[:12]}",
        name=name,
        description=description,
        platform=Platform(platform),
        gender=Gender(gender) if gender else None,
        age_min=age_min,
        age_max=age_max,
        country=country,
        region=region,
        cohort_type="USER_CUSTOM",
        created_by_user_id=user_id,
    )
    with conn:
        _insert_cohort(conn, cohort, or_ignore=False)
    logger.info(f"Created custom cohort {cohort.cohort_id} ({name}) for {user_id}")
    return cohort


def get_cohort(conn: sqlite3.Connection, cohort_id: str) -> Optional[CohortDefinition]:
    with closing(conn.cursor()) as cursor:
        cursor.execute("SELECT * FROM cohort_definition WHERE cohort_id = ?;", (cohort_id,))
        row = cursor.fetchone()
        return CohortDefinition.from_row(row) if row else None


def list_cohorts(
    conn: sqlite3.Connection,
    cohort_type: Optional[str] = None,
    user_id: Optional[str] = None,
) -> List[CohortDefinition]:
    query = "SELECT * FROM cohort_definition WHERE 1 = 1"
    params: List[Any] = []
    if cohort_type:
        query += " AND cohort_type = ?"
        params.append(cohort_type)
    if user_id:
        query += " AND created_by_user_id = ?"
        params.append(user_id)
    with closing(conn.cursor()) as cursor:
        cursor.execute(query + " ORDER BY name;", params)
        return [CohortDefinition.from_row(row) for row in cursor.fetchall()]


def delete_custom_cohort(conn: sqlite3.Connection, cohort_id: str, user_id: str) -> bool:
    """Delete a user's own custom cohort and its synthetic profile."""
    cohort = get_cohort(conn, cohort_id)
    if cohort is None or cohort.cohort_type != "USER_CUSTOM":
        return False
    if cohort.created_by_user_id != user_id:
        return False
    with conn:
        delete_profile_rows(
            conn, make_profile_id(cohort.platform, cohort.synthetic_external_id)
        )
        with closing(conn.cursor()) as cursor:
            cursor.execute("DELETE FROM cohort_definition WHERE cohort_id = ?;", (cohort_id,))
    return True


def relevant_cohorts_for_profile(
    conn: sqlite3.Connection, profile_id: str
) -> List[CohortDefinition]:
    """
    System cohorts a profile can be compared against: its gender cohort
    plus its age bracket, when both exist.
    """
    row = get_profile(conn, profile_id)
    if row is None:
        raise NotFoundError(f"Profile not found: {profile_id}")

    prefix = f"{row['platform'].lower()}_{row['gender'].lower()}"
    candidates = [prefix]
    age = row["age_at_last_usage"] or row["age_at_upload"]
    if age is not None:
        for age_min, age_max in AGE_BRACKETS:
            if age_min <= age <= age_max:
                candidates.append(f"{prefix}_{age_min}-{age_max}")

    return [c for c in (get_cohort(conn, cid) for cid in candidates) if c is not None]


# =============================================================================
# Population
# =============================================================================


def query_profiles_for_cohort(conn: sqlite3.Connection, cohort: CohortDefinition) -> List[str]:
    """
    Profile ids of real, owned profiles matching the cohort filters.

    Age filters apply to age at last usage; geography filters apply to the
    owning user's location.
    """
    query = """
        SELECT p.profile_id
        FROM dim_profile p
        JOIN dim_user u ON p.user_id = u.user_id
        WHERE p.computed = 0 AND p.platform = ?
    """
    params: List[Any] = [Platform(cohort.platform).value]
    if cohort.gender:
        query += " AND p.gender = ?"
        params.append(Gender(cohort.gender).value)
    if cohort.age_min is not None:
        query += " AND p.age_at_last_usage >= ?"
        params.append(cohort.age_min)
    if cohort.age_max is not None:
        query += " AND p.age_at_last_usage <= ?"
        params.append(cohort.age_max)
    if cohort.country:
        query += " AND u.country = ?"
        params.append(cohort.country)
    if cohort.region:
        query += " AND u.region = ?"
        params.append(cohort.region)

    with closing(conn.cursor()) as cursor:
        cursor.execute(query + " ORDER BY p.profile_id;", params)
        return [row[0] for row in cursor.fetchall()]


def fetch_usage_rows(
    conn: sqlite3.Connection, profile_ids: Sequence[str], batch_size: int
) -> List[Dict[str, Any]]:
    """Fetch usage rows for many profiles, batch_size ids per query."""
    rows: List[Dict[str, Any]] = []
    with closing(conn.cursor()) as cursor:
        for start in range(0, len(profile_ids), batch_size):
            batch = list(profile_ids[start : start + batch_size])
            placeholders = ", ".join("?" for _ in batch)
            cursor.execute(
                f"SELECT * FROM fact_daily_usage WHERE profile_id IN ({placeholders});", batch
            )
            columns = [d[0] for d in cursor.description]
            rows.extend(dict(zip(columns, row)) for row in cursor.fetchall())
    logger.debug(f"Fetched {len(rows)} usage rows for {len(profile_ids)} profiles")
    return rows


# =============================================================================
# Aggregation
# =============================================================================


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def mean_count(values: Iterable[Optional[int]]) -> int:
    present = [v or 0 for v in values]
    return round_half_up(statistics.mean(present)) if present else 0


def median_rate(values: Iterable[Optional[float]]) -> Optional[float]:
    present = [v for v in values if v is not None]
    return statistics.median(present) if present else None


def aggregate_usage_by_date(
    rows: Sequence[Dict[str, Any]], min_samples: int
) -> List[DailyUsageRecord]:
    """
    Collapse member usage rows into one synthetic row per qualifying date.

    Args:
        rows: Usage rows with profile_id, date and the metric columns.
        min_samples: Distinct profiles a date needs to be kept.

    Returns:
        Synthetic DailyUsageRecords sorted by date.
    """
    by_date: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
    for row in rows:
        by_date[row["date"]].append(row)

    records = []
    dropped = 0
    for day in sorted(by_date):
        day_rows = by_date[day]
        if len({r["profile_id"] for r in day_rows}) < min_samples:
            dropped += 1
            continue
        record = DailyUsageRecord(date=day)
        for metric in COUNT_METRICS:
            setattr(record, metric, mean_count(r[metric] for r in day_rows))
        for metric in RATE_METRICS:
            setattr(record, metric, median_rate(r[metric] for r in day_rows))
        records.append(record)

    if dropped:
        logger.debug(f"Dropped {dropped} dates below {min_samples} samples")
    return records


def _synthetic_demographics(
    cohort: CohortDefinition, records: List[DailyUsageRecord], today: date
) -> Demographics:
    if cohort.age_min is not None and cohort.age_max is not None:
        age = (cohort.age_min + cohort.age_max) // 2
    else:
        age = DEFAULT_SYNTHETIC_AGE
    gender = Gender(cohort.gender) if cohort.gender else Gender.OTHER
    first_day = records[0].date if records else None
    last_day = records[-1].date if records else None
    return Demographics(
        birth_date=date(today.year - age, 1, 1).isoformat(),
        gender=gender,
        gender_str=gender.value,
        interested_in=Gender.OTHER,
        gender_filter=Gender.OTHER,
        age_filter_min=18,
        age_filter_max=99,
        age_at_upload=age,
        age_at_last_usage=age,
        bio=f"Synthetic profile representing {cohort.name}",
        country=cohort.country,
        region=cohort.region,
        first_day_on_app=first_day,
        last_day_on_app=last_day,
        days_in_profile_period=len(records),
    )


def _clear_synthetic(conn: sqlite3.Connection, cohort: CohortDefinition) -> None:
    delete_profile_rows(conn, make_profile_id(cohort.platform, cohort.synthetic_external_id))


def _build_synthetic_rows(
    conn: sqlite3.Connection, cohort: CohortDefinition, config: Config
) -> Tuple[List[str], List[DailyUsageRecord]]:
    profile_ids = query_profiles_for_cohort(conn, cohort)
    if len(profile_ids) < config.MIN_COHORT_POPULATION:
        raise InsufficientSampleError(
            f"Only {len(profile_ids)} profiles match; need {config.MIN_COHORT_POPULATION}",
            {"profile_count": len(profile_ids)},
        )

    rows = fetch_usage_rows(conn, profile_ids, config.COHORT_FETCH_BATCH_SIZE)
    records = aggregate_usage_by_date(rows, config.MIN_SAMPLES_PER_DATE)
    if not records:
        raise InsufficientSampleError(
            f"No date has usage from {config.MIN_SAMPLES_PER_DATE} or more profiles",
            {"profile_count": len(profile_ids), "usage_rows": len(rows)},
        )
    return profile_ids, records


def generate_cohort_profile(
    conn: sqlite3.Connection,
    cohort_id: str,
    config: Optional[Config] = None,
    today: Optional[date] = None,
) -> CohortResult:
    """
    Generate (or fully regenerate) a cohort's synthetic profile.

    Args:
        conn: SQLite connection to analysis.db.
        cohort_id: Cohort to generate.
        config: Thresholds (defaults to the global config).
        today: Reference date for the synthetic birth date.

    Returns:
        CohortResult. Guard failures come back as unsuccessful, skipped
        results, and any stale synthetic profile for the cohort is removed.

    Raises:
        NotFoundError: Unknown cohort id.
    """
    config = config or get_config()
    today = today or datetime.now(tz=timezone.utc).date()
    cohort = get_cohort(conn, cohort_id)
    if cohort is None:
        raise NotFoundError(f"Cohort not found: {cohort_id}")

    try:
        profile_ids, records = _build_synthetic_rows(conn, cohort, config)
    except InsufficientSampleError as e:
        logger.warning(f"Skipping cohort {cohort_id}: {e}")
        with conn:
            _clear_synthetic(conn, cohort)
        return CohortResult(
            cohort_id=cohort_id,
            success=False,
            profile_count=e.details.get("profile_count", 0),
            skipped=True,
            reason=e.message,
        )

    with conn:
        _clear_synthetic(conn, cohort)
        profile_id = insert_profile(
            conn,
            cohort.platform,
            cohort.synthetic_external_id,
            None,
            _synthetic_demographics(cohort, records, today),
            computed=True,
        )
        written = upsert_daily_usage(conn, profile_id, records).inserted
        meta = build_profile_meta([vars(r) for r in records], [])
        write_profile_meta(conn, profile_id, meta)
        with closing(conn.cursor()) as cursor:
            cursor.execute(
                """
                UPDATE cohort_definition SET profile_count = ?, last_computed_at = ?
                WHERE cohort_id = ?;
                """,
                (len(profile_ids), _now_iso(), cohort_id),
            )

    logger.info(
        f"Generated cohort {cohort_id}: {written} days from {len(profile_ids)} profiles"
    )
    return CohortResult(
        cohort_id=cohort_id,
        success=True,
        usage_days_written=written,
        profile_count=len(profile_ids),
    )


def run_cohort_batch(
    conn: sqlite3.Connection,
    cohort_ids: Optional[List[str]] = None,
    config: Optional[Config] = None,
    today: Optional[date] = None,
) -> CohortRunSummary:
    """
    Generate every listed cohort (all cohorts by default), one at a time.

    A failing cohort is logged and counted; the rest still run.
    """
    if cohort_ids is None:
        cohort_ids = [c.cohort_id for c in list_cohorts(conn)]

    summary = CohortRunSummary()
    for cohort_id in cohort_ids:
        try:
            result = generate_cohort_profile(conn, cohort_id, config=config, today=today)
        except Exception as e:
            logger.error(f"Cohort {cohort_id} failed: {e}")
            result = CohortResult(cohort_id=cohort_id, success=False, reason=str(e))
            summary.failed += 1
        else:
            if result.success:
                summary.succeeded += 1
            else:
                summary.skipped += 1
        summary.results.append(result)

    with conn:
        update_etl_state(conn, "last_cohort_run", _now_iso())
    logger.info(str(summary).splitlines()[0])
    return summary
