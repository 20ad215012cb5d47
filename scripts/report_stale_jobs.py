#!/usr/bin/env python3
"""
Stale Job Report
Lists generation jobs stuck in "generating" past the maximum age.

Stale jobs are only reported; a late webhook may still complete them. Pass
--fail to time them out explicitly.

Usage:
    python scripts/report_stale_jobs.py                     # Default max age
    python scripts/report_stale_jobs.py --max-age 3600
    python scripts/report_stale_jobs.py --fail              # Time out every stale job
"""

import argparse
import logging
import os
import sys

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.core.config import settings
from app.core.database import SessionLocal, init_db
from app.services.reconciler import GenerationReconciler


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S"
)
logger = logging.getLogger("tunesmith.stale")


def main():
    parser = argparse.ArgumentParser(description="Report generation jobs stuck in generating")
    parser.add_argument(
        "--max-age", "-a",
        type=int,
        default=settings.STALE_JOB_MAX_AGE_SECONDS,
        help=f"Age in seconds after which a generating job is stale (default: {settings.STALE_JOB_MAX_AGE_SECONDS})"
    )
    parser.add_argument(
        "--fail",
        action="store_true",
        help="Move every stale job to failed (reason: timed_out)"
    )

    args = parser.parse_args()

    init_db()
    db = SessionLocal()
    try:
        # Only store operations are used; no provider or ingestion calls
        reconciler = GenerationReconciler(db, provider=None, ingestor=None)
        stale = reconciler.find_stale_jobs(args.max_age)

        if not stale:
            logger.info(f"No jobs generating for longer than {args.max_age}s")
            sys.exit(0)

        logger.warning(f"{len(stale)} stale job(s):")
        for job in stale:
            logger.warning(
                f"  {job.id} owner={job.owner_id} task={job.remote_task_id} created={job.created_at.isoformat()}"
            )

        if args.fail:
            for job in stale:
                result = reconciler.timeout_job(job.id)
                logger.info(f"  {job.id} -> {result.state}")
    finally:
        db.close()

    # Non-zero so cron/monitoring can alert on stale jobs
    sys.exit(0 if args.fail else 1)


if __name__ == "__main__":
    main()
