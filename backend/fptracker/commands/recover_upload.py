#!/usr/bin/env python3
"""
Recover a single upload session after failed batches.

Actions:
    cleanup       Delete what failed batches still reference and reset them to pending
    retry         Reset failed batches for reprocessing (all, or one with --batch)
    delete-batch  Delete one batch's documents and reset it to pending
    delete        Delete every document the upload created, then the session

Sessions are addressed by upload id.

Usage:
    python -m fptracker.commands.recover_upload cleanup a1b2c3
    python -m fptracker.commands.recover_upload retry a1b2c3 --batch 4
    python -m fptracker.commands.recover_upload delete-batch a1b2c3 2
    python -m fptracker.commands.recover_upload delete a1b2c3
"""

import argparse
import asyncio
import logging
import sys
from typing import Any, Dict, Optional

from fptracker.core.ingestion.errors import IngestionError, NotFoundError
from fptracker.core.ingestion.upload_recovery_service import upload_recovery_service
from fptracker.core.shared.cache_service import cache_service
from fptracker.core.shared.database_service import database_service

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("fptracker.commands.recover_upload")


async def run(action: str, upload_id: str, batch_number: Optional[int] = None) -> Dict[str, Any]:
    service = upload_recovery_service
    service.scheduler.open()
    try:
        upload = await service.repository.get_by_upload_id(upload_id)
        if upload is None:
            raise NotFoundError(f"No upload session for upload {upload_id}")

        if action == "cleanup":
            return await service.cleanup_failed_batches(upload.id)
        if action == "retry":
            if batch_number is not None:
                return await service.retry_batch(upload.id, batch_number)
            return await service.retry_failed_batches(upload.id)
        if action == "delete-batch":
            return await service.delete_batch(upload.id, batch_number)
        if action == "delete":
            return await service.delete_upload_session(upload.id)
        raise ValueError(f"Unknown action: {action}")
    finally:
        await service.scheduler.close()
        await cache_service.close()
        await database_service.close()


def main():
    parser = argparse.ArgumentParser(
        description="Recover an upload session",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    subparsers = parser.add_subparsers(dest="action", required=True)

    cleanup = subparsers.add_parser("cleanup", help="Reset failed batches after deleting their residue")
    cleanup.add_argument("upload_id")

    retry = subparsers.add_parser("retry", help="Reset failed batches for reprocessing")
    retry.add_argument("upload_id")
    retry.add_argument("--batch", type=int, default=None, help="Only retry this batch number")

    delete_batch = subparsers.add_parser("delete-batch", help="Delete one batch's documents")
    delete_batch.add_argument("upload_id")
    delete_batch.add_argument("batch_number", type=int)

    delete = subparsers.add_parser("delete", help="Delete the upload and everything it created")
    delete.add_argument("upload_id")

    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    batch_number = getattr(args, "batch_number", None) or getattr(args, "batch", None)
    try:
        result = asyncio.run(run(args.action, args.upload_id, batch_number))
    except IngestionError as e:
        logger.error(str(e))
        sys.exit(1)
    logger.info(f"{args.action} {args.upload_id}: {result}")


if __name__ == "__main__":
    main()
