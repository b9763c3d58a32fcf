#!/usr/bin/env python3
"""Run the portfolio access-control migrations.

This script:
1. Runs Alembic migrations
2. Verifies that the access-control tables and enum types exist
"""

import asyncio
import os
import sys
from pathlib import Path
import argparse
import logging
from dotenv import load_dotenv
import asyncpg
from alembic.config import Config
from alembic import command

from portfolio_access.constants import ACCESS_CONTROL_ENUMS, ACCESS_CONTROL_TABLES

# Setup logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

# Load environment variables
load_dotenv()

ALEMBIC_INI = Path(__file__).parent / "portfolio_access" / "alembic.ini"


def _plain_postgres_url(database_url: str) -> str:
    return database_url.replace("postgresql+asyncpg://", "postgresql://", 1)


def run_alembic_migrations(database_url: str, revision: str = "head"):
    """Run Alembic migrations.

    Args:
        database_url: PostgreSQL connection string
        revision: Target revision (default: head)
    """
    alembic_cfg = Config(str(ALEMBIC_INI))
    alembic_cfg.set_main_option("sqlalchemy.url", _plain_postgres_url(database_url))

    try:
        logger.info(f"Running migrations to revision: {revision}")
        command.upgrade(alembic_cfg, revision)
        logger.info("Alembic migrations completed successfully")
    except Exception as e:
        logger.error(f"Error running Alembic migrations: {e}")
        raise


async def verify_schema(database_url: str) -> bool:
    """Verify that all expected tables and enum types exist.

    Args:
        database_url: PostgreSQL connection string

    Returns:
        bool: True if nothing is missing
    """
    conn = await asyncpg.connect(_plain_postgres_url(database_url))
    missing = 0

    try:
        logger.info("Verifying database schema...")

        for table in ACCESS_CONTROL_TABLES:
            exists = await conn.fetchval("""
                SELECT EXISTS (
                    SELECT 1 FROM information_schema.tables
                    WHERE table_schema = 'public'
                    AND table_name = $1
                )
            """, table)

            if exists:
                logger.info(f"✓ Table exists: {table}")
            else:
                logger.error(f"✗ Table missing: {table}")
                missing += 1

        for type_name, expected_values in ACCESS_CONTROL_ENUMS.items():
            values = await conn.fetchval("""
                SELECT array_agg(e.enumlabel ORDER BY e.enumsortorder)
                FROM pg_type t JOIN pg_enum e ON e.enumtypid = t.oid
                WHERE t.typname = $1
            """, type_name)

            if values is None:
                logger.error(f"✗ Type missing: {type_name}")
                missing += 1
            elif tuple(values) != tuple(expected_values):
                logger.error(f"✗ Type {type_name} has values {list(values)}, expected {list(expected_values)}")
                missing += 1
            else:
                logger.info(f"✓ Type exists: {type_name}")
    finally:
        await conn.close()

    logger.info("Schema verification completed")
    return missing == 0


async def main():
    """Main migration runner."""
    parser = argparse.ArgumentParser(description="Run portfolio access-control migrations")
    parser.add_argument(
        "--database-url",
        help="Database URL (overrides DATABASE_URL env var)"
    )
    parser.add_argument(
        "--revision",
        default="head",
        help="Target revision for Alembic (default: head)"
    )
    parser.add_argument(
        "--verify-only",
        action="store_true",
        help="Only verify schema, don't run migrations"
    )
    args = parser.parse_args()

    database_url = args.database_url or os.getenv("DATABASE_URL")
    if not database_url:
        logger.error("DATABASE_URL not provided")
        sys.exit(1)

    try:
        if not args.verify_only:
            run_alembic_migrations(database_url, args.revision)

        if not await verify_schema(database_url):
            logger.error("Schema verification found missing objects")
            sys.exit(1)

        logger.info("Migration process completed successfully!")

    except Exception as e:
        logger.error(f"Migration process failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
