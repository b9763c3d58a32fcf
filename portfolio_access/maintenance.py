"""Maintenance operations that re-establish ledger invariants.

``repair_owner_memberships`` can be run any number of times: a second run
over a consistent database changes nothing. It is safe to run while the
application is serving traffic; a membership created concurrently is
counted as already present.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .audit import AuditLog
from .database import DatabaseManager
from .exceptions import ConflictError
from .membership import get_membership, insert_membership
from .models import Membership, Portfolio, User
from .schemas import PermissionAuditAction, PermissionAuditEntryCreate, PortfolioRole

logger = logging.getLogger(__name__)


@dataclass
class OwnerRepairReport:
    """Outcome of one repair run, as portfolio ids per category."""

    fixed: List[UUID] = field(default_factory=list)
    already_present: List[UUID] = field(default_factory=list)
    skipped: List[UUID] = field(default_factory=list)
    dry_run: bool = False

    @property
    def total(self) -> int:
        return len(self.fixed) + len(self.already_present) + len(self.skipped)

    def summary(self) -> str:
        prefix = "[dry run] " if self.dry_run else ""
        return (
            f"{prefix}{self.total} portfolio(s): {len(self.fixed)} fixed, "
            f"{len(self.already_present)} already present, {len(self.skipped)} skipped"
        )


async def repair_owner_memberships(
    db: DatabaseManager,
    audit: Optional[AuditLog] = None,
    dry_run: bool = False,
) -> OwnerRepairReport:
    """Give every portfolio creator an owner membership.

    Portfolios without a creator, or whose creator no longer exists, are
    skipped. A creator who already holds any membership is left as is; the
    repair never changes an existing role. Each repaired portfolio is
    committed in its own transaction with a system-initiated role_change
    audit entry.

    Args:
        db: Database manager
        audit: Audit log to write to (defaults to one on the same database)
        dry_run: Report what would be fixed without writing

    Returns:
        OwnerRepairReport: Portfolio ids grouped by outcome
    """
    audit = audit or AuditLog(db)
    report = OwnerRepairReport(dry_run=dry_run)

    async with db.get_session() as session:
        result = await session.execute(
            select(Portfolio.id, Portfolio.name, Portfolio.created_by).order_by(Portfolio.created_at)
        )
        portfolios = result.all()

    logger.info(f"Checking owner memberships for {len(portfolios)} portfolio(s)")

    for portfolio_id, name, creator_id in portfolios:
        if creator_id is None:
            logger.warning(f"Skipping portfolio '{name}' ({portfolio_id}): no creator")
            report.skipped.append(portfolio_id)
            continue

        try:
            async with db.transaction() as session:
                if await get_membership(session, portfolio_id, creator_id) is not None:
                    report.already_present.append(portfolio_id)
                    continue

                if await session.get(User, creator_id) is None:
                    logger.warning(f"Skipping portfolio '{name}' ({portfolio_id}): creator {creator_id} not found")
                    report.skipped.append(portfolio_id)
                    continue

                if dry_run:
                    logger.info(f"Would create owner membership for user {creator_id} in portfolio '{name}'")
                    report.fixed.append(portfolio_id)
                    continue

                await _insert_owner(session, audit, portfolio_id, creator_id)
        except ConflictError:
            # Created concurrently between the check and the insert
            report.already_present.append(portfolio_id)
            continue

        logger.info(f"Created owner membership for user {creator_id} in portfolio '{name}'")
        report.fixed.append(portfolio_id)

    logger.info(report.summary())
    return report


async def _insert_owner(session: AsyncSession, audit: AuditLog, portfolio_id: UUID, user_id: UUID) -> None:
    membership = await insert_membership(
        session,
        Membership(
            user_id=user_id,
            portfolio_id=portfolio_id,
            role=PortfolioRole.OWNER,
            property_access=None,
        ),
    )
    await audit.record(
        PermissionAuditEntryCreate(
            action=PermissionAuditAction.ROLE_CHANGE,
            portfolio_id=portfolio_id,
            user_id=user_id,
            changed_by=None,
            old_value=None,
            new_value=membership.snapshot(),
        ),
        session=session,
    )
