#!/usr/bin/env python3
"""Seed a demo portfolio with members, a restriction and a pending invitation.

Creates "Oak St Holdings" owned by alice@example.com with two properties,
invites bob@example.com, redeems the invitation, restricts Bob to the first
property, and leaves a pending invitation for carol@example.com.

Usage:
    python scripts/seed_demo_data.py [--database-url URL] [--create-tables]
"""

import argparse
import asyncio
import logging
import os
import sys

from dotenv import load_dotenv

from portfolio_access.database import DatabaseManager
from portfolio_access.invitations import InvitationService
from portfolio_access.membership import MembershipLedger
from portfolio_access.models import Property, User
from portfolio_access.permissions import RestrictedTo
from portfolio_access.schemas import PortfolioRole, PropertyPermission

# Setup logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

# Load environment variables
load_dotenv()


async def seed(db: DatabaseManager):
    async with db.transaction() as session:
        alice = User(email="alice@example.com", display_name="Alice")
        bob = User(email="bob@example.com", display_name="Bob")
        session.add_all([alice, bob])

    ledger = MembershipLedger(db)
    invitations = InvitationService(db, audit=ledger.audit)

    portfolio = await ledger.create_portfolio("Oak St Holdings", alice.id)

    async with db.transaction() as session:
        first = Property(portfolio_id=portfolio.id, name="12 Oak St")
        second = Property(portfolio_id=portfolio.id, name="14 Oak St")
        session.add_all([first, second])

    issued = await invitations.create_invitation(
        portfolio.id, "bob@example.com", PortfolioRole.MEMBER, None, alice.id
    )
    await invitations.redeem_invitation(issued.token, bob.id)
    await ledger.set_property_access(
        portfolio.id, bob.id, RestrictedTo({first.id: {PropertyPermission.VIEW}}), alice.id
    )

    pending = await invitations.create_invitation(
        portfolio.id, "carol@example.com", PortfolioRole.VIEWER, None, alice.id
    )

    logger.info(f"Seeded portfolio {portfolio.id} with properties {first.id}, {second.id}")
    logger.info(f"Pending invitation for carol@example.com: {pending.token}")


async def main():
    parser = argparse.ArgumentParser(description="Seed portfolio access-control demo data")
    parser.add_argument(
        "--database-url",
        help="Database URL (overrides DATABASE_URL env var)"
    )
    parser.add_argument(
        "--create-tables",
        action="store_true",
        help="Create tables from the ORM metadata first (development databases only)"
    )
    args = parser.parse_args()

    database_url = args.database_url or os.getenv("DATABASE_URL")
    if not database_url:
        logger.error("DATABASE_URL not provided")
        sys.exit(1)

    db = DatabaseManager(database_url)
    try:
        if args.create_tables:
            await db.create_all()
        await seed(db)
    except Exception as e:
        logger.error(f"Seeding failed: {e}")
        sys.exit(1)
    finally:
        await db.close()


if __name__ == "__main__":
    asyncio.run(main())
