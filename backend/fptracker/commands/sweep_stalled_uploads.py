#!/usr/bin/env python3
"""
Resolve upload sessions left in_progress by a crashed worker.

Runs the same sweep as the periodic Celery task, once.

Usage:
    python -m fptracker.commands.sweep_stalled_uploads

    # Show what would be resolved without writing anything
    python -m fptracker.commands.sweep_stalled_uploads --dry-run

    # Only look at one upload, treating 10 idle minutes as stalled
    python -m fptracker.commands.sweep_stalled_uploads --specific a1b2c3 --threshold 600
"""

import argparse
import asyncio
import logging
from typing import Dict, Optional

from fptracker.config import settings
from fptracker.core.ops.stall_sweeper import StallSweeper
from fptracker.core.shared.database_service import database_service

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("fptracker.commands.sweep_stalled_uploads")


async def run(
    threshold_seconds: Optional[int] = None,
    dry_run: bool = False,
    upload_id: Optional[str] = None,
) -> Dict[str, int]:
    try:
        return await StallSweeper(threshold_seconds=threshold_seconds).sweep(dry_run=dry_run, upload_id=upload_id)
    finally:
        await database_service.close()


def main():
    parser = argparse.ArgumentParser(description="Resolve stalled upload sessions")
    parser.add_argument(
        "--threshold",
        type=int,
        default=settings.stall_threshold_seconds,
        help=f"Seconds without progress before a session is stalled (default: {settings.stall_threshold_seconds})",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report what would be resolved without writing",
    )
    parser.add_argument(
        "--specific",
        metavar="UPLOAD_ID",
        default=None,
        help="Only consider the session of this upload id",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    result = asyncio.run(run(args.threshold, dry_run=args.dry_run, upload_id=args.specific))
    prefix = "[DRY RUN] " if args.dry_run else ""
    logger.info(
        f"{prefix}Examined {result['examined']} stalled sessions: "
        f"{result['resolved']} resolved, {result['skipped']} skipped"
    )


if __name__ == "__main__":
    main()
