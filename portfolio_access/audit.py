"""Permission audit trail.

Every permission-affecting change is recorded as a PermissionAuditLog row.
Mutating services pass their own session to ``AuditLog.record`` so the entry
is written in the same transaction as the change it describes: if the audit
insert fails, the change is rolled back with it.

The log is append-only. There is no update or delete API, and the ORM
rejects attempts to modify persisted entries (see models.py).
"""

import json
import logging
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .database import DatabaseManager
from .models import PermissionAuditLog
from .schemas import AuditLogFilter, PermissionAuditAction, PermissionAuditEntryCreate

logger = logging.getLogger(__name__)


def serialize_snapshot(value: Optional[Dict[str, Any]]) -> Optional[str]:
    """Serialize an old/new value snapshot deterministically."""
    if value is None:
        return None
    return json.dumps(value, sort_keys=True, default=str)


class AuditLog:
    """Durable, queryable, append-only trail of permission changes."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    async def record(
        self,
        entry: Union[PermissionAuditEntryCreate, Dict[str, Any]],
        *,
        session: Optional[AsyncSession] = None,
    ) -> PermissionAuditLog:
        """Append an entry to the audit trail.

        Args:
            entry: Entry to write
            session: Session of the enclosing mutation. When omitted the entry
                     is written in its own transaction.

        Returns:
            PermissionAuditLog: The flushed row (id populated)

        Raises:
            SQLAlchemyError: If the store is unavailable. Never swallowed.
        """
        if not isinstance(entry, PermissionAuditEntryCreate):
            entry = PermissionAuditEntryCreate.model_validate(entry)

        if session is None:
            async with self.db.transaction() as own_session:
                return await self._write(own_session, entry)
        return await self._write(session, entry)

    async def _write(self, session: AsyncSession, entry: PermissionAuditEntryCreate) -> PermissionAuditLog:
        row = PermissionAuditLog(
            action=entry.action,
            portfolio_id=entry.portfolio_id,
            user_id=entry.user_id,
            changed_by=entry.changed_by,
            old_value=serialize_snapshot(entry.old_value),
            new_value=serialize_snapshot(entry.new_value),
        )
        session.add(row)
        await session.flush()
        logger.info(
            f"Audit: {entry.action.value} portfolio={entry.portfolio_id} "
            f"user={entry.user_id} by={entry.changed_by or 'system'}"
        )
        return row

    async def query(self, criteria: Optional[AuditLogFilter] = None) -> List[PermissionAuditLog]:
        """Return matching entries, newest first.

        Args:
            criteria: Optional user/portfolio/action/date-range criteria.
                      start and end are inclusive.

        Returns:
            List[PermissionAuditLog]: Entries sorted by created_at descending
        """
        criteria = criteria or AuditLogFilter()

        stmt = select(PermissionAuditLog)
        if criteria.user_id is not None:
            stmt = stmt.where(PermissionAuditLog.user_id == criteria.user_id)
        if criteria.portfolio_id is not None:
            stmt = stmt.where(PermissionAuditLog.portfolio_id == criteria.portfolio_id)
        if criteria.action is not None:
            stmt = stmt.where(PermissionAuditLog.action == PermissionAuditAction(criteria.action))
        if criteria.start is not None:
            stmt = stmt.where(PermissionAuditLog.created_at >= criteria.start)
        if criteria.end is not None:
            stmt = stmt.where(PermissionAuditLog.created_at <= criteria.end)

        stmt = stmt.order_by(PermissionAuditLog.created_at.desc(), PermissionAuditLog.id.desc())
        if criteria.limit is not None:
            stmt = stmt.limit(criteria.limit)

        async with self.db.get_session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())
