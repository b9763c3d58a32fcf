"""Membership ledger: the source of truth for who holds which role where.

Every mutation runs in a single transaction that covers the authorization
check, the owner invariant check, the row change and its audit entry. Each
mutation first locks the portfolio row, then reads the rows it changes (and, whenever
an owner could be removed, the portfolio's owner rows) with
``SELECT ... FOR UPDATE``, so concurrent role changes serialize on PostgreSQL
instead of deadlocking.
"""

import logging
from typing import List, Optional, Union
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .audit import AuditLog
from .database import DatabaseManager
from .exceptions import (
    ConflictError,
    ForbiddenError,
    InvariantViolationError,
    MembershipNotFoundError,
    NotFoundError,
)
from .models import Membership, Portfolio
from .permissions import (
    NOT_A_MEMBER,
    NotAMember,
    PropertyAccess,
    can_assign_role,
    can_manage_members,
    can_modify_member,
    coerce_property_access,
    validate_access_within_role,
)
from .schemas import PermissionAuditAction, PermissionAuditEntryCreate, PortfolioRole

logger = logging.getLogger(__name__)


async def get_membership(
    session: AsyncSession,
    portfolio_id: UUID,
    user_id: UUID,
    *,
    for_update: bool = False,
) -> Optional[Membership]:
    """Fetch the membership row for (user, portfolio), optionally locking it."""
    stmt = select(Membership).where(
        Membership.portfolio_id == portfolio_id,
        Membership.user_id == user_id,
    )
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def count_owners(session: AsyncSession, portfolio_id: UUID) -> int:
    """Lock and count the owner rows of a portfolio.

    The count stays valid until the enclosing transaction ends.
    """
    # FOR UPDATE cannot be combined with an aggregate on PostgreSQL
    result = await session.execute(
        select(Membership.id)
        .where(Membership.portfolio_id == portfolio_id, Membership.role == PortfolioRole.OWNER)
        .with_for_update()
    )
    return len(result.all())


async def lock_portfolio(session: AsyncSession, portfolio_id: UUID) -> None:
    """Serialize membership mutations of one portfolio.

    Takes ``FOR NO KEY UPDATE`` on the portfolio row, which does not block
    inserts that merely reference it (invitation redemption). No-op on SQLite.
    """
    await session.execute(
        select(Portfolio.id).where(Portfolio.id == portfolio_id).with_for_update(key_share=True)
    )


async def insert_membership(session: AsyncSession, membership: Membership) -> Membership:
    """Insert a membership, translating a unique-constraint hit into ConflictError."""
    session.add(membership)
    try:
        await session.flush()
    except IntegrityError as exc:
        raise ConflictError(
            f"User {membership.user_id} already has a membership in portfolio {membership.portfolio_id}"
        ) from exc
    return membership


async def require_member_manager(session: AsyncSession, portfolio_id: UUID, acting_user_id: UUID) -> Membership:
    """Return the actor's membership if it may manage members, else raise ForbiddenError."""
    actor = await get_membership(session, portfolio_id, acting_user_id)
    if actor is None or not can_manage_members(actor.role):
        raise ForbiddenError(
            f"User {acting_user_id} must be an owner or admin of portfolio {portfolio_id}"
        )
    return actor


class MembershipLedger:
    """Creates, changes and removes portfolio memberships."""

    def __init__(self, db: DatabaseManager, audit: Optional[AuditLog] = None):
        self.db = db
        self.audit = audit or AuditLog(db)

    # ------------------------------------------------------------------ reads

    async def resolve_role(self, portfolio_id: UUID, user_id: UUID) -> Union[PortfolioRole, NotAMember]:
        """Look up a user's role. Returns NOT_A_MEMBER instead of raising."""
        async with self.db.get_session() as session:
            membership = await get_membership(session, portfolio_id, user_id)
        if membership is None:
            return NOT_A_MEMBER
        return PortfolioRole(membership.role)

    async def get_membership(self, portfolio_id: UUID, user_id: UUID) -> Optional[Membership]:
        async with self.db.get_session() as session:
            return await get_membership(session, portfolio_id, user_id)

    async def list_members(self, portfolio_id: UUID) -> List[Membership]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(Membership)
                .where(Membership.portfolio_id == portfolio_id)
                .order_by(Membership.created_at)
            )
            return list(result.scalars().all())

    # -------------------------------------------------------------- creation

    async def create_portfolio(self, name: str, creator_id: UUID) -> Portfolio:
        """Create a portfolio together with its creator's owner membership."""
        async with self.db.transaction() as session:
            portfolio = Portfolio(name=name, created_by=creator_id)
            session.add(portfolio)
            await session.flush()
            await insert_membership(session, self._owner_row(portfolio.id, creator_id))

        logger.info(f"Created portfolio {portfolio.id} ('{name}') owned by {creator_id}")
        return portfolio

    async def create_owner_membership(self, portfolio_id: UUID, user_id: UUID) -> Membership:
        """Insert the owner membership for a newly created portfolio.

        Only the portfolio's creator can receive it, and only while the
        portfolio has no owner yet.

        Raises:
            NotFoundError: If the portfolio does not exist
            ConflictError: If user_id is not the creator, the portfolio already
                           has an owner, or (user, portfolio) already has a membership
        """
        async with self.db.transaction() as session:
            await lock_portfolio(session, portfolio_id)
            portfolio = await session.get(Portfolio, portfolio_id)
            if portfolio is None:
                raise NotFoundError(f"Portfolio {portfolio_id} not found")
            if portfolio.created_by != user_id:
                raise ConflictError(f"User {user_id} did not create portfolio {portfolio_id}")
            if await get_membership(session, portfolio_id, user_id) is not None:
                raise ConflictError(f"User {user_id} already has a membership in portfolio {portfolio_id}")
            if await count_owners(session, portfolio_id) > 0:
                raise ConflictError(f"Portfolio {portfolio_id} already has an owner")
            membership = await insert_membership(session, self._owner_row(portfolio_id, user_id))

        logger.info(f"Owner membership created for user {user_id} in portfolio {portfolio_id}")
        return membership

    @staticmethod
    def _owner_row(portfolio_id: UUID, user_id: UUID) -> Membership:
        return Membership(
            user_id=user_id,
            portfolio_id=portfolio_id,
            role=PortfolioRole.OWNER,
            property_access=None,
            invited_by=None,
        )

    # ------------------------------------------------------------- mutations

    async def change_role(
        self,
        portfolio_id: UUID,
        target_user_id: UUID,
        new_role: PortfolioRole,
        acting_user_id: UUID,
    ) -> Membership:
        """Change a member's role.

        Raises:
            ForbiddenError: Actor is not owner/admin, is the target, may not
                            touch the target, may not assign new_role, new_role
                            is owner, the target is the creator's owner row, or
                            the target's property restriction exceeds new_role
            MembershipNotFoundError: Target is not a member
            InvariantViolationError: The portfolio would be left without an owner
        """
        new_role = PortfolioRole(new_role)

        async with self.db.transaction() as session:
            await lock_portfolio(session, portfolio_id)
            actor = await require_member_manager(session, portfolio_id, acting_user_id)
            target = await self._require_target(session, portfolio_id, target_user_id)
            current_role = PortfolioRole(target.role)

            if current_role == new_role:
                return target

            if new_role == PortfolioRole.OWNER:
                raise ForbiddenError("The owner role can only be granted by transferring ownership")
            if target_user_id == acting_user_id:
                # A sole owner demoting itself reports the owner invariant first
                if current_role == PortfolioRole.OWNER:
                    await self._ensure_owner_remains(session, portfolio_id)
                raise ForbiddenError("Members cannot change their own role")
            if not can_modify_member(actor.role, current_role):
                raise ForbiddenError(f"A {PortfolioRole(actor.role).value} cannot modify a {current_role.value}")
            if not can_assign_role(actor.role, new_role):
                raise ForbiddenError(f"A {PortfolioRole(actor.role).value} cannot assign the {new_role.value} role")

            if current_role == PortfolioRole.OWNER:
                await self._ensure_not_creator(session, portfolio_id, target)
                await self._ensure_owner_remains(session, portfolio_id)
            validate_access_within_role(new_role, target.access)

            old_value = target.snapshot()
            target.role = new_role
            await session.flush()

            await self.audit.record(
                PermissionAuditEntryCreate(
                    action=PermissionAuditAction.ROLE_CHANGE,
                    portfolio_id=portfolio_id,
                    user_id=target_user_id,
                    changed_by=acting_user_id,
                    old_value=old_value,
                    new_value=target.snapshot(),
                ),
                session=session,
            )

        logger.info(
            f"Role of user {target_user_id} in portfolio {portfolio_id} changed "
            f"{current_role.value} -> {new_role.value} by {acting_user_id}"
        )
        return target

    async def set_property_access(
        self,
        portfolio_id: UUID,
        target_user_id: UUID,
        restriction: Union[None, PropertyAccess, dict],
        acting_user_id: UUID,
    ) -> Membership:
        """Restrict a member to specific properties, or clear the restriction.

        Args:
            restriction: None or UNRESTRICTED for full role-bounded access, or
                         a RestrictedTo / {property_id: [permission, ...]} map

        Raises:
            ForbiddenError: Actor is not owner/admin, is the target, may not
                            touch the target, or the restriction lists
                            permissions beyond the target's role
            MembershipNotFoundError: Target is not a member
        """
        access = coerce_property_access(restriction)

        async with self.db.transaction() as session:
            await lock_portfolio(session, portfolio_id)
            actor = await require_member_manager(session, portfolio_id, acting_user_id)
            target = await self._require_target(session, portfolio_id, target_user_id)

            if target_user_id == acting_user_id:
                raise ForbiddenError("Members cannot change their own property access")
            if not can_modify_member(actor.role, target.role):
                raise ForbiddenError(
                    f"A {PortfolioRole(actor.role).value} cannot modify a {PortfolioRole(target.role).value}"
                )
            validate_access_within_role(target.role, access)

            new_json = access.to_json()
            if target.property_access == new_json:
                return target

            old_value = target.snapshot()
            target.property_access = new_json
            await session.flush()

            # Narrowing and clearing share one action code; the snapshots tell them apart
            await self.audit.record(
                PermissionAuditEntryCreate(
                    action=PermissionAuditAction.ACCESS_REVOKED,
                    portfolio_id=portfolio_id,
                    user_id=target_user_id,
                    changed_by=acting_user_id,
                    old_value=old_value,
                    new_value=target.snapshot(),
                ),
                session=session,
            )

        logger.info(
            f"Property access of user {target_user_id} in portfolio {portfolio_id} "
            f"set to {'unrestricted' if new_json is None else sorted(new_json)} by {acting_user_id}"
        )
        return target

    async def revoke_membership(self, portfolio_id: UUID, target_user_id: UUID, acting_user_id: UUID) -> None:
        """Remove a user from a portfolio.

        Members remove themselves through leave_portfolio.

        Raises:
            ForbiddenError: Actor is not owner/admin, is the target, may not
                            touch the target, or the target is the creator's owner row
            MembershipNotFoundError: Target is not a member
            InvariantViolationError: Target is the sole remaining owner
        """
        async with self.db.transaction() as session:
            await lock_portfolio(session, portfolio_id)
            actor = await require_member_manager(session, portfolio_id, acting_user_id)
            target = await self._require_target(session, portfolio_id, target_user_id)

            if target_user_id == acting_user_id:
                if target.role == PortfolioRole.OWNER:
                    await self._ensure_owner_remains(session, portfolio_id)
                raise ForbiddenError("Use leave_portfolio to remove your own membership")
            if not can_modify_member(actor.role, target.role):
                raise ForbiddenError(
                    f"A {PortfolioRole(actor.role).value} cannot remove a {PortfolioRole(target.role).value}"
                )
            if target.role == PortfolioRole.OWNER:
                await self._ensure_not_creator(session, portfolio_id, target)
                await self._ensure_owner_remains(session, portfolio_id)

            await self._delete_with_audit(session, target, changed_by=acting_user_id)

        logger.info(f"User {target_user_id} removed from portfolio {portfolio_id} by {acting_user_id}")

    async def leave_portfolio(self, portfolio_id: UUID, user_id: UUID) -> None:
        """Remove the caller's own membership.

        Raises:
            ForbiddenError: User is the portfolio's creator
            MembershipNotFoundError: User is not a member
            InvariantViolationError: User is the sole remaining owner
        """
        async with self.db.transaction() as session:
            await lock_portfolio(session, portfolio_id)
            membership = await self._require_target(session, portfolio_id, user_id)
            if membership.role == PortfolioRole.OWNER:
                await self._ensure_owner_remains(session, portfolio_id)
                await self._ensure_not_creator(session, portfolio_id, membership)
            await self._delete_with_audit(session, membership, changed_by=user_id)

        logger.info(f"User {user_id} left portfolio {portfolio_id}")

    async def transfer_ownership(self, portfolio_id: UUID, new_owner_id: UUID, acting_user_id: UUID) -> Membership:
        """Hand ownership to another member; the previous owner becomes admin.

        Raises:
            ForbiddenError: Actor is not the owner
            MembershipNotFoundError: New owner is not a member
            ConflictError: New owner is the actor
        """
        if new_owner_id == acting_user_id:
            raise ConflictError("User already owns the portfolio")

        async with self.db.transaction() as session:
            await lock_portfolio(session, portfolio_id)
            current = await get_membership(session, portfolio_id, acting_user_id, for_update=True)
            if current is None or current.role != PortfolioRole.OWNER:
                raise ForbiddenError(f"Only the owner of portfolio {portfolio_id} can transfer ownership")
            successor = await self._require_target(session, portfolio_id, new_owner_id)

            changes = []
            for membership, role in ((successor, PortfolioRole.OWNER), (current, PortfolioRole.ADMIN)):
                old_value = membership.snapshot()
                membership.role = role
                changes.append((membership, old_value))

            portfolio = await session.get(Portfolio, portfolio_id)
            portfolio.created_by = new_owner_id
            await session.flush()

            for membership, old_value in changes:
                await self.audit.record(
                    PermissionAuditEntryCreate(
                        action=PermissionAuditAction.ROLE_CHANGE,
                        portfolio_id=portfolio_id,
                        user_id=membership.user_id,
                        changed_by=acting_user_id,
                        old_value=old_value,
                        new_value=membership.snapshot(),
                    ),
                    session=session,
                )

        logger.info(f"Ownership of portfolio {portfolio_id} transferred from {acting_user_id} to {new_owner_id}")
        return successor

    # --------------------------------------------------------------- helpers

    async def _require_target(self, session: AsyncSession, portfolio_id: UUID, user_id: UUID) -> Membership:
        target = await get_membership(session, portfolio_id, user_id, for_update=True)
        if target is None:
            raise MembershipNotFoundError(f"User {user_id} is not a member of portfolio {portfolio_id}")
        return target

    async def _ensure_owner_remains(self, session: AsyncSession, portfolio_id: UUID) -> None:
        # Called before removing one owner row from the count
        if await count_owners(session, portfolio_id) <= 1:
            raise InvariantViolationError(f"Portfolio {portfolio_id} must keep at least one owner")

    async def _ensure_not_creator(self, session: AsyncSession, portfolio_id: UUID, membership: Membership) -> None:
        # The creator's owner row only moves through transfer_ownership
        portfolio = await session.get(Portfolio, portfolio_id)
        if portfolio is not None and portfolio.created_by == membership.user_id:
            raise ForbiddenError(
                f"User {membership.user_id} created portfolio {portfolio_id}; use transfer_ownership first"
            )

    async def _delete_with_audit(self, session: AsyncSession, membership: Membership, changed_by: UUID) -> None:
        old_value = membership.snapshot()
        await session.delete(membership)
        await session.flush()
        await self.audit.record(
            PermissionAuditEntryCreate(
                action=PermissionAuditAction.ACCESS_REVOKED,
                portfolio_id=membership.portfolio_id,
                user_id=membership.user_id,
                changed_by=changed_by,
                old_value=old_value,
                new_value=None,
            ),
            session=session,
        )
