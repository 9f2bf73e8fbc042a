#!/usr/bin/env python3
"""
Main entry point for Swipe Analysis.

Provides a command-line interface for ingesting dating-app exports,
merging accounts, generating cohort profiles and inspecting analysis.db.
"""
from typing import Any, Dict, List, Optional
import argparse
import os
import sys
import logging
from pathlib import Path

from swipe_analysis.config import Config, get_config
from swipe_analysis.database import DatabaseConnection
from swipe_analysis.errors import SwipeAnalysisError
from swipe_analysis.etl.cohort import run_cohort_batch, seed_system_cohorts
from swipe_analysis.etl.identity import Caller, GeoHint
from swipe_analysis.etl.meta import get_profile_meta
from swipe_analysis.etl.normalizers import Platform
from swipe_analysis.etl.pipeline import get_etl_status, merge_accounts, upload_profile
from swipe_analysis.etl.schema import connect, create_schema
from swipe_analysis.etl.validation import validate_analysis_db
from swipe_analysis.logger_config import setup_logging
from swipe_analysis.utils import Colors, format_count, format_rate

logger = logging.getLogger(__name__)


def print_section(title: str) -> None:
    """Print a formatted section title."""
    print(f"\n{Colors.BOLD}{Colors.HEADER}{'=' * 60}{Colors.ENDC}")
    print(f"{Colors.BOLD}{Colors.HEADER}{title}{Colors.ENDC}")
    print(f"{Colors.BOLD}{Colors.HEADER}{'=' * 60}{Colors.ENDC}\n")


def _parse_args(argv: List[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Ingest dating-app exports and build cohort benchmarks in analysis.db."
    )
    parser.add_argument(
        "--db-path",
        default=None,
        help="Path to analysis.db (defaults to $SWIPE_ANALYSIS_DB_PATH or ~/.swipe_analysis/analysis.db).",
    )
    parser.add_argument("--log-level", default=None, help="Logging level (default: $LOG_LEVEL or INFO).")
    parser.add_argument("--log-file", default=None, help="Also log to this rotating file.")
    sub = parser.add_subparsers(dest="command", required=True)

    ingest = sub.add_parser("ingest", help="Create or additively update a profile from an export.")
    ingest.add_argument("--platform", required=True, choices=[p.value for p in Platform])
    ingest.add_argument("--external-id", required=True, help="Platform profile id.")
    ingest.add_argument("--source", required=True, help="Export URL, file:// URL or path.")
    ingest.add_argument("--user-id", required=True, help="Authenticated caller id.")
    ingest.add_argument("--anonymous", action="store_true", help="Caller is an anonymous user.")
    ingest.add_argument("--country", default=None)
    ingest.add_argument("--region", default=None)
    ingest.add_argument("--city", default=None)

    merge = sub.add_parser("merge", help="Merge your current profile into a newer account's export.")
    merge.add_argument("--platform", default=Platform.TINDER.value, choices=[p.value for p in Platform])
    merge.add_argument("--old-id", required=True, help="External id of your current profile.")
    merge.add_argument("--new-id", required=True, help="External id of the newer account.")
    merge.add_argument("--source", required=True, help="Export of the newer account.")
    merge.add_argument("--user-id", required=True)
    merge.add_argument("--confirm", action="store_true", help="Proceed despite a birth-date mismatch.")

    cohorts = sub.add_parser("cohorts", help="Generate synthetic cohort profiles.")
    cohorts.add_argument("--seed", action="store_true", help="Seed the built-in cohorts first.")
    cohorts.add_argument(
        "--cohort-id", action="append", default=None, help="Only this cohort (repeatable)."
    )

    sub.add_parser("validate", help="Run integrity checks on analysis.db.")
    sub.add_parser("status", help="Show ingestion status and row counts.")

    serve = sub.add_parser("serve", help="Run the read-only HTTP API.")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)

    return parser.parse_args(argv)


def print_meta(meta: Optional[Dict[str, Any]]) -> None:
    """Print the headline numbers of a profile rollup."""
    if meta is None:
        return
    print_section("Profile Summary")
    print(f"  Active days   : {format_count(meta['days_active'])} of {meta['days_in_period']}")
    print(f"  Swipes        : {format_count(meta['swipe_likes_total'] + meta['swipe_passes_total'])}")
    print(f"  Like rate     : {format_rate(meta['like_rate'])}")
    print(f"  Match rate    : {format_rate(meta['match_rate'])}")
    print(f"  Conversations : {format_count(meta['conversations_with_messages'])}")


def _cmd_ingest(args: argparse.Namespace, db_path: Path) -> int:
    create_schema(db_path)
    conn = connect(db_path)
    try:
        result = upload_profile(
            conn,
            Platform(args.platform),
            args.external_id,
            args.source,
            Caller(user_id=args.user_id, is_anonymous=args.anonymous),
            geo=GeoHint(country=args.country, region=args.region, city=args.city),
        )
        meta = get_profile_meta(conn, result.profile_id)
    finally:
        conn.close()
    print(f"{Colors.OKGREEN}{result}{Colors.ENDC}")
    print_meta(meta)
    return 0


def _cmd_merge(args: argparse.Namespace, db_path: Path) -> int:
    create_schema(db_path)
    conn = connect(db_path)
    try:
        result = merge_accounts(
            conn,
            args.old_id,
            args.new_id,
            args.source,
            Caller(user_id=args.user_id),
            platform=Platform(args.platform),
            confirm=args.confirm,
        )
        meta = get_profile_meta(conn, result.profile_id)
    finally:
        conn.close()
    print(f"{Colors.OKGREEN}{result}{Colors.ENDC}")
    print_meta(meta)
    return 0


def _cmd_cohorts(args: argparse.Namespace, db_path: Path) -> int:
    create_schema(db_path)
    conn = connect(db_path)
    try:
        if args.seed:
            seed_system_cohorts(conn)
        summary = run_cohort_batch(conn, cohort_ids=args.cohort_id)
    finally:
        conn.close()
    print_section("Cohort Generation")
    print(summary)
    return 1 if summary.failed else 0


def _cmd_validate(db_path: Path) -> int:
    result = validate_analysis_db(db_path)
    print_section("Validation")
    print(result)
    return 0 if result.passed else 1


def _cmd_status(db_path: Path) -> int:
    status = get_etl_status(db_path)
    print_section("Ingestion Status")
    if not status["exists"]:
        print(f"{Colors.WARNING}analysis.db not found at {db_path}{Colors.ENDC}")
        return 1
    for key, value in status.items():
        print(f"  {key:20s}: {value}")

    print_section("Row counts by table")
    with DatabaseConnection(get_config()) as db:
        for table_name, count in db.get_row_counts_by_table():
            print(f"  {table_name:30s}: {format_count(count):>10}")
    return 0


def _cmd_serve(args: argparse.Namespace, db_path: Path) -> int:
    import uvicorn

    # The API resolves its database from the environment
    os.environ[Config.ANALYSIS_DB_ENV_VAR] = str(db_path)
    logger.info(f"Serving {db_path} on {args.host}:{args.port}")
    uvicorn.run("swipe_analysis.api:app", host=args.host, port=args.port)
    return 0


def main(argv: Optional[List[str]] = None):
    """Main function."""
    if argv is None:
        argv = sys.argv[1:]
    args = _parse_args(argv)

    level = getattr(logging, args.log_level.upper(), logging.INFO) if args.log_level else None
    setup_logging(level=level, log_file=args.log_file)

    config = get_config(analysis_db_path=args.db_path)
    config.ensure_analysis_dir()
    db_path = config.analysis_db_path

    try:
        if args.command == "ingest":
            code = _cmd_ingest(args, db_path)
        elif args.command == "merge":
            code = _cmd_merge(args, db_path)
        elif args.command == "cohorts":
            code = _cmd_cohorts(args, db_path)
        elif args.command == "validate":
            code = _cmd_validate(db_path)
        elif args.command == "status":
            code = _cmd_status(db_path)
        else:
            code = _cmd_serve(args, db_path)
    except SwipeAnalysisError as e:
        print(f"{Colors.FAIL}{e.code}: {e.message}{Colors.ENDC}")
        logger.debug("Command failed", exc_info=True)
        sys.exit(1)

    sys.exit(code)


if __name__ == '__main__':
    main()
