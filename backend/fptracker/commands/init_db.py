#!/usr/bin/env python3
"""
Create the fire-proofing tracker tables.

Safe to run repeatedly: existing tables are left untouched. Workers also run
this on startup, so it is mainly needed before the first CLI sweep against a
fresh database.

Usage:
    python -m fptracker.commands.init_db
"""

import argparse
import asyncio
import logging
import sys

from fptracker.core.shared.database_service import database_service

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("fptracker.commands.init_db")


async def init_database() -> None:
    try:
        await database_service.init_db()
        health = await database_service.health_check()
        logger.info(f"Database ready: {health.get('database_type', 'unknown')} ({health['status']})")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        sys.exit(1)
    finally:
        await database_service.close()


def main():
    parser = argparse.ArgumentParser(description="Create the fire-proofing tracker tables")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    asyncio.run(init_database())


if __name__ == "__main__":
    main()
