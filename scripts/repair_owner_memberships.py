#!/usr/bin/env python3
"""Ensure every portfolio creator holds an owner membership.

Safe to run repeatedly and against a live database: portfolios that are
already consistent are left untouched.

Usage:
    python scripts/repair_owner_memberships.py [--database-url URL] [--dry-run]
"""

import argparse
import asyncio
import logging
import os
import sys

from dotenv import load_dotenv

from portfolio_access.database import DatabaseManager
from portfolio_access.maintenance import repair_owner_memberships

# Setup logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

# Load environment variables
load_dotenv()


async def main():
    parser = argparse.ArgumentParser(description="Backfill missing owner memberships for portfolio creators")
    parser.add_argument(
        "--database-url",
        help="Database URL (overrides DATABASE_URL env var)"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report what would be fixed without writing"
    )
    args = parser.parse_args()

    database_url = args.database_url or os.getenv("DATABASE_URL")
    if not database_url:
        logger.error("DATABASE_URL not provided")
        sys.exit(1)

    db = DatabaseManager(database_url)
    try:
        report = await repair_owner_memberships(db, dry_run=args.dry_run)
    except Exception as e:
        logger.error(f"Owner membership repair failed: {e}")
        sys.exit(1)
    finally:
        await db.close()

    print(report.summary())


if __name__ == "__main__":
    asyncio.run(main())
