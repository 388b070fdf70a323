#!/usr/bin/env python3
"""Run upload worker passes outside the web process."""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.config import get_settings
from app.services.pipeline import build_pipeline


async def run(batch_size: int, passes: int, recover: bool) -> int:
    """Run worker passes and return the number of failed jobs."""
    settings = get_settings()
    pipeline = build_pipeline(settings)
    pipeline.worker.batch_size = batch_size
    failed = 0
    try:
        if recover:
            recovered = await pipeline.queue.recover_stale()
            print(f"Recovered {recovered} abandoned job(s)")

        for number in range(1, passes + 1):
            summary = await pipeline.worker.run_once()
            print(
                f"Pass {number}: claimed {summary.claimed}, completed {summary.completed} "
                f"({summary.unverified} unverified), retried {summary.retried}, "
                f"failed {summary.failed}, cancelled {summary.cancelled}"
            )
            failed += summary.failed
            if summary.claimed == 0:
                break
    finally:
        await pipeline.aclose()
    return failed


def main() -> None:
    """Main entry point."""
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Process pending listing upload jobs")
    parser.add_argument(
        "--batch-size",
        type=int,
        default=settings.CRON_BATCH_SIZE,
        help="Jobs claimed per pass",
    )
    parser.add_argument("--passes", type=int, default=1, help="Maximum number of passes")
    parser.add_argument(
        "--recover-stale",
        action="store_true",
        help="Return abandoned processing jobs to pending first",
    )
    args = parser.parse_args()

    logging.basicConfig(level=settings.LOG_LEVEL.upper())
    failed = asyncio.run(run(args.batch_size, args.passes, args.recover_stale))
    sys.exit(1 if failed else 0)


if __name__ == "__main__":
    main()
