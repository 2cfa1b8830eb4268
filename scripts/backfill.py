#!/usr/bin/env python3
"""
Historical backfill from the command line.

Examples:
    python scripts/backfill.py --sport nba --years-back 10
    python scripts/backfill.py --sport nhl --start 2024-01-01 --end 2024-01-31
    python scripts/backfill.py --sport mlb --recompute-only
    python scripts/backfill.py --sport nfl --sync

Runs through the same job ledger as the API, so progress is visible at
/api/jobs while it works.
"""

import sys
import os

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from dotenv import load_dotenv
load_dotenv()

import argparse
import json
import logging

from backend.core.sport_config import SUPPORTED_SPORTS
from backend.services.jobs import run_job_now

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def build_params(args: argparse.Namespace) -> dict:
    params = {"sport": args.sport}
    if args.recompute_only:
        params["recompute_only"] = True
    elif args.years_back:
        params["years_back"] = args.years_back
    elif args.start:
        params["start_date"] = args.start
        if args.end:
            params["end_date"] = args.end
    return params


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Backfill historical head-to-head samples")
    parser.add_argument("--sport", choices=SUPPORTED_SPORTS, help="Default: every sport")
    parser.add_argument("--years-back", type=int, help="Seasons to backfill")
    parser.add_argument("--start", help="First date (YYYY-MM-DD)")
    parser.add_argument("--end", help="Last date (YYYY-MM-DD), default today")
    parser.add_argument("--recompute-only", action="store_true", help="Rebuild stats without fetching")
    parser.add_argument("--sync", action="store_true", help="Repair samples for final games that lack one")
    args = parser.parse_args(argv)

    if args.sync:
        summary = run_job_now("sync_matchup_games", sport=args.sport)
    else:
        if not (args.years_back or args.start or args.recompute_only):
            parser.error("one of --years-back, --start, --recompute-only or --sync is required")
        summary = run_job_now("ingest", **build_params(args))

    if summary is None:
        logger.error("❌ Backfill failed; see job_runs for details")
        return 1

    print(json.dumps(summary, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
