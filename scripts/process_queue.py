#!/usr/bin/env python3
"""
Drain the sync queues once.

For environments without a standing worker process (cron, one-off runs).
Processes up to --max-jobs waiting jobs and prints one line per job.

Usage:
    python scripts/process_queue.py --max-jobs 20
    python scripts/process_queue.py --max-jobs 5 --platform commerce
"""
import argparse
import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from sync_orchestrator.models.base import init_db
from sync_orchestrator.services.job_types import Platform
from sync_orchestrator.services.orchestrator import get_orchestrator
from sync_orchestrator.utils.logger import log


async def main(max_jobs: int, platform: Platform = None) -> int:
    init_db()
    result = await get_orchestrator().process(max_jobs, platform)

    for job in result["results"]:
        line = f"job {job['id']}: {job['status']}"
        if job.get("error"):
            line += f" ({job['error']})"
        print(line)

    log.info(f"Processed {result['processed']} jobs: {result['summary']}")
    return 1 if result["summary"].get("failed") else 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Process waiting sync jobs once")
    parser.add_argument("--max-jobs", type=int, default=10, help="Maximum jobs to process (default 10)")
    parser.add_argument(
        "--platform",
        choices=[p.value for p in Platform],
        default=None,
        help="Only drain this platform's queue",
    )
    args = parser.parse_args()

    sys.exit(asyncio.run(main(args.max_jobs, Platform(args.platform) if args.platform else None)))
