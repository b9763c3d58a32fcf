"""Invitation tokens: issue, preview, redeem, revoke and list.

A token leaves ``pending`` exactly once. Every transition away from pending
is a conditional ``UPDATE ... WHERE status = 'pending'``; the row count of
that statement, not a prior read, decides which caller wins a race.

Expiry is evaluated lazily. A pending token read after ``expires_at`` is
flipped to ``expired`` in its own committed write before ExpiredError is
raised, so the flip survives the failed request.
"""

import logging
import os
import secrets
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple, Union
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .audit import AuditLog
from .constants import INVITATION_DEFAULTS
from .database import DatabaseManager
from .exceptions import (
    AlreadyMemberError,
    AlreadyUsedError,
    ConflictError,
    ExpiredError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
)
from .membership import get_membership, insert_membership, require_member_manager
from .models import InvitationToken, Membership, User, ensure_utc, utcnow
from .permissions import PropertyAccess, can_assign_role, coerce_property_access, validate_access_within_role
from .schemas import (
    InvitationIssued,
    InvitationStatus,
    PermissionAuditAction,
    PermissionAuditEntryCreate,
    PortfolioRole,
    normalize_email,
)

logger = logging.getLogger(__name__)


def generate_invitation_token(num_bytes: Optional[int] = None) -> str:
    """Generate a URL-safe, cryptographically random invitation token.

    Args:
        num_bytes: Random bytes to draw (default 32). Values below the
                   128-bit floor are rejected.

    Raises:
        ValueError: If num_bytes is below the minimum
    """
    num_bytes = num_bytes or INVITATION_DEFAULTS["token_bytes"]
    if num_bytes < INVITATION_DEFAULTS["min_token_bytes"]:
        raise ValueError(
            f"Invitation tokens need at least {INVITATION_DEFAULTS['min_token_bytes']} random bytes"
        )
    return secrets.token_urlsafe(num_bytes)


def _default_expiration_days() -> int:
    return int(os.getenv("INVITATION_EXPIRATION_DAYS", str(INVITATION_DEFAULTS["expiration_days"])))


async def _get_token(session: AsyncSession, token: str) -> Optional[InvitationToken]:
    result = await session.execute(select(InvitationToken).where(InvitationToken.token == token))
    return result.scalar_one_or_none()


async def _transition_from_pending(session: AsyncSession, invitation_id: UUID, **values) -> bool:
    """Compare-and-set a pending token to a new state.

    Returns:
        bool: True if this call performed the transition
    """
    result = await session.execute(
        update(InvitationToken)
        .where(InvitationToken.id == invitation_id, InvitationToken.status == InvitationStatus.PENDING)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


class InvitationService:
    """Issues and redeems single-use portfolio invitations."""

    def __init__(
        self,
        db: DatabaseManager,
        audit: Optional[AuditLog] = None,
        expiration_days: Optional[int] = None,
    ):
        self.db = db
        self.audit = audit or AuditLog(db)
        self.expiration_days = expiration_days if expiration_days is not None else _default_expiration_days()
        if self.expiration_days <= 0:
            raise ValueError("Invitation expiration must be at least one day")

    async def create_invitation(
        self,
        portfolio_id: UUID,
        email: str,
        role: PortfolioRole,
        restriction: Union[None, PropertyAccess, Dict],
        acting_user_id: UUID,
    ) -> InvitationIssued:
        """Issue a pending invitation.

        Args:
            portfolio_id: Portfolio the invitee will join
            email: Invitee address (normalized to lower case)
            role: Role granted on redemption
            restriction: Property access granted on redemption, None for unrestricted
            acting_user_id: Inviting user, must be owner or admin

        Returns:
            InvitationIssued: Carries the token, shown to the inviter once

        Raises:
            ForbiddenError: Actor may not invite, may not grant this role, or the
                            restriction lists permissions beyond the role
            AlreadyMemberError: The email belongs to an existing member
            ConflictError: A live pending invitation already exists for the email
        """
        email = normalize_email(email)
        role = PortfolioRole(role)
        access = coerce_property_access(restriction)
        validate_access_within_role(role, access)

        async with self.db.transaction() as session:
            actor = await require_member_manager(session, portfolio_id, acting_user_id)
            if not can_assign_role(actor.role, role):
                raise ForbiddenError(f"A {PortfolioRole(actor.role).value} cannot invite a {role.value}")

            invitee = (
                await session.execute(select(User).where(User.email == email))
            ).scalar_one_or_none()
            if invitee is not None and await get_membership(session, portfolio_id, invitee.id) is not None:
                raise AlreadyMemberError(f"{email} is already a member of portfolio {portfolio_id}")

            now = utcnow()
            existing = await session.execute(
                select(InvitationToken.id).where(
                    InvitationToken.portfolio_id == portfolio_id,
                    InvitationToken.email == email,
                    InvitationToken.status == InvitationStatus.PENDING,
                    InvitationToken.expires_at > now,
                )
            )
            if existing.first() is not None:
                raise ConflictError(f"A pending invitation for {email} already exists")

            invitation = InvitationToken(
                token=generate_invitation_token(),
                portfolio_id=portfolio_id,
                email=email,
                role=role,
                property_access=access.to_json(),
                status=InvitationStatus.PENDING,
                invited_by=acting_user_id,
                expires_at=now + timedelta(days=self.expiration_days),
            )
            session.add(invitation)
            await session.flush()

            await self.audit.record(
                PermissionAuditEntryCreate(
                    action=PermissionAuditAction.INVITATION_SENT,
                    portfolio_id=portfolio_id,
                    user_id=invitee.id if invitee is not None else None,
                    changed_by=acting_user_id,
                    old_value=None,
                    new_value=invitation.snapshot(),
                ),
                session=session,
            )

        logger.info(f"Invitation {invitation.id} for {email} to portfolio {portfolio_id} sent by {acting_user_id}")
        return InvitationIssued(
            token=invitation.token,
            invitation_id=invitation.id,
            portfolio_id=portfolio_id,
            email=email,
            role=role,
            expires_at=ensure_utc(invitation.expires_at),
        )

    async def validate_invitation(self, token: str) -> InvitationToken:
        """Check that a token could be redeemed now, without redeeming it.

        Raises:
            NotFoundError, ExpiredError, AlreadyUsedError
        """
        async with self.db.transaction() as session:
            invitation, expired = await self._load_live(session, token)

        if expired:
            raise ExpiredError(f"Invitation {invitation.id} has expired", status=InvitationStatus.EXPIRED.value)
        return invitation

    async def redeem_invitation(self, token: str, redeeming_user_id: UUID) -> Membership:
        """Consume a token and create the corresponding membership.

        The status transition, the membership insert and the audit entry
        commit together.

        Raises:
            NotFoundError: No such token
            ExpiredError: Token is past expires_at (any stored status)
            AlreadyUsedError: Token is not pending, or a concurrent redemption won
            AlreadyMemberError: Redeeming user already belongs to the portfolio
        """
        async with self.db.transaction() as session:
            invitation, expired = await self._load_live(session, token)
            if not expired:
                membership = await self._accept(session, invitation, redeeming_user_id)

        if expired:
            raise ExpiredError(f"Invitation {invitation.id} has expired", status=InvitationStatus.EXPIRED.value)

        logger.info(
            f"Invitation {invitation.id} accepted by user {redeeming_user_id}; "
            f"joined portfolio {invitation.portfolio_id} as {PortfolioRole(invitation.role).value}"
        )
        return membership

    async def revoke_invitation(self, token: str, acting_user_id: UUID) -> InvitationToken:
        """Revoke a pending invitation.

        Raises:
            NotFoundError: No such token
            ForbiddenError: Actor is not owner/admin of the token's portfolio
            InvalidStateError: Token is not pending (including lazily expired)
        """
        async with self.db.transaction() as session:
            invitation = await _get_token(session, token)
            if invitation is None:
                raise NotFoundError("Invitation not found")
            await require_member_manager(session, invitation.portfolio_id, acting_user_id)

            now = utcnow()
            expired = invitation.status == InvitationStatus.PENDING and invitation.is_expired(now)
            if expired:
                await _transition_from_pending(session, invitation.id, status=InvitationStatus.EXPIRED)
            elif await _transition_from_pending(session, invitation.id, status=InvitationStatus.REVOKED):
                await self.audit.record(
                    PermissionAuditEntryCreate(
                        action=PermissionAuditAction.ACCESS_REVOKED,
                        portfolio_id=invitation.portfolio_id,
                        user_id=None,
                        changed_by=acting_user_id,
                        old_value=invitation.snapshot(),
                        new_value=None,
                    ),
                    session=session,
                )
                await session.refresh(invitation)
            else:
                await session.refresh(invitation)
                status = InvitationStatus(invitation.status).value
                raise InvalidStateError(f"Invitation {invitation.id} is {status} and cannot be revoked", status=status)

        if expired:
            logger.warning(f"Revocation of expired invitation {invitation.id} rejected")
            raise InvalidStateError(
                f"Invitation {invitation.id} has expired and cannot be revoked",
                status=InvitationStatus.EXPIRED.value,
            )

        logger.info(f"Invitation {invitation.id} revoked by {acting_user_id}")
        return invitation

    async def list_pending_for_portfolio(self, portfolio_id: UUID) -> List[InvitationToken]:
        """Return usable invitations, newest first.

        Pending rows whose expiry has passed are filtered out but left untouched.
        """
        async with self.db.get_session() as session:
            result = await session.execute(
                select(InvitationToken)
                .where(
                    InvitationToken.portfolio_id == portfolio_id,
                    InvitationToken.status == InvitationStatus.PENDING,
                    InvitationToken.expires_at > utcnow(),
                )
                .order_by(InvitationToken.created_at.desc())
            )
            return list(result.scalars().all())

    async def _load_live(self, session: AsyncSession, token: str) -> Tuple[InvitationToken, bool]:
        """Look up a token and apply the lazy expiry rule.

        Returns the invitation and whether it is expired. An expired pending
        token is flipped inside the session so the caller's transaction
        commits the flip.
        """
        invitation = await _get_token(session, token)
        if invitation is None:
            raise NotFoundError("Invitation not found")

        # Expiry is checked before status: a stored status never makes a stale token usable
        if invitation.is_expired():
            if invitation.status == InvitationStatus.PENDING:
                await _transition_from_pending(session, invitation.id, status=InvitationStatus.EXPIRED)
                logger.warning(f"Invitation {invitation.id} expired at {invitation.expires_at}; marked expired")
            return invitation, True

        if invitation.status != InvitationStatus.PENDING:
            status = InvitationStatus(invitation.status).value
            logger.warning(f"Invitation {invitation.id} rejected: already {status}")
            raise AlreadyUsedError(f"Invitation {invitation.id} is already {status}", status=status)

        return invitation, False

    async def _accept(self, session: AsyncSession, invitation: InvitationToken, user_id: UUID) -> Membership:
        if await get_membership(session, invitation.portfolio_id, user_id) is not None:
            raise AlreadyMemberError(
                f"User {user_id} is already a member of portfolio {invitation.portfolio_id}",
                status=InvitationStatus.PENDING.value,
            )

        now = utcnow()
        won = await _transition_from_pending(
            session,
            invitation.id,
            status=InvitationStatus.ACCEPTED,
            used_at=now,
            used_by=user_id,
        )
        if not won:
            logger.warning(f"Invitation {invitation.id} was redeemed concurrently")
            raise AlreadyUsedError(
                f"Invitation {invitation.id} is already accepted",
                status=InvitationStatus.ACCEPTED.value,
            )

        membership = Membership(
            user_id=user_id,
            portfolio_id=invitation.portfolio_id,
            role=invitation.role,
            property_access=invitation.property_access,
            invited_by=invitation.invited_by,
            invited_at=invitation.created_at,
            accepted_at=now,
        )
        try:
            await insert_membership(session, membership)
        except ConflictError as exc:
            raise AlreadyMemberError(str(exc), status=InvitationStatus.PENDING.value) from exc

        await self.audit.record(
            PermissionAuditEntryCreate(
                action=PermissionAuditAction.INVITATION_ACCEPTED,
                portfolio_id=invitation.portfolio_id,
                user_id=user_id,
                changed_by=user_id,
                old_value=invitation.snapshot(),
                new_value=membership.snapshot(),
            ),
            session=session,
        )
        return membership
