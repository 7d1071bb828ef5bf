#!/usr/bin/env python3
"""
Delete documents orphaned by a crash between element and job writes.

Finds structural elements that declare a fire-proofing workflow but own no
jobs, and jobs whose structural element no longer exists.

Usage:
    # Sweep everything created in the last 24 hours
    python -m fptracker.commands.sweep_orphans

    # Limit to one project and a wider window
    python -m fptracker.commands.sweep_orphans --project-id <uuid> --hours 72
"""

import argparse
import asyncio
import logging
from datetime import timedelta
from typing import Dict, Optional
from uuid import UUID

from fptracker.config import settings
from fptracker.core.database.base import utcnow
from fptracker.core.ingestion.transaction import cleanup_orphaned_documents
from fptracker.core.shared.database_service import database_service

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("fptracker.commands.sweep_orphans")


async def run(hours: int, project_id: Optional[UUID] = None) -> Dict[str, int]:
    since = utcnow() - timedelta(hours=hours)
    try:
        return await cleanup_orphaned_documents(since, project_id)
    finally:
        await database_service.close()


def main():
    parser = argparse.ArgumentParser(
        description="Delete orphaned structural elements and jobs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--hours",
        type=int,
        default=settings.orphan_sweep_lookback_hours,
        help=f"Only inspect documents created in the last N hours (default: {settings.orphan_sweep_lookback_hours})",
    )
    parser.add_argument("--project-id", type=UUID, default=None, help="Restrict the sweep to one project")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    result = asyncio.run(run(args.hours, args.project_id))
    logger.info(
        f"Removed {result['cleaned_elements']} orphaned elements and {result['cleaned_jobs']} orphaned jobs"
    )


if __name__ == "__main__":
    main()
