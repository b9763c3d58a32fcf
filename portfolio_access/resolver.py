"""Read-only authorization queries.

The resolver answers "what may this user do here" for the rest of the system
without exposing membership rows. It never writes and never audits.
"""

import logging
from typing import FrozenSet, Optional, Set
from uuid import UUID

from sqlalchemy import select

from .database import DatabaseManager
from .membership import get_membership
from .models import Property
from .permissions import PermissionContext, RestrictedTo
from .schemas import PortfolioRole, PropertyPermission

logger = logging.getLogger(__name__)


class AccessResolver:
    """Computes effective permissions from membership role and property access."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    async def context_for(self, user_id: UUID, portfolio_id: UUID) -> Optional[PermissionContext]:
        """Fetch a user's role and access once for repeated per-property checks.

        Returns:
            Optional[PermissionContext]: None if the user is not a member
        """
        async with self.db.get_session() as session:
            membership = await get_membership(session, portfolio_id, user_id)
        if membership is None:
            return None
        return PermissionContext(
            user_id=user_id,
            portfolio_id=portfolio_id,
            role=PortfolioRole(membership.role),
            access=membership.access,
        )

    async def accessible_properties(self, user_id: UUID, portfolio_id: UUID) -> Set[UUID]:
        """Property ids the user can reach in a portfolio.

        Non-members get an empty set. Unrestricted members get every property
        currently in the portfolio; restricted members get exactly the keys of
        their restriction map.
        """
        async with self.db.get_session() as session:
            membership = await get_membership(session, portfolio_id, user_id)
            if membership is None:
                return set()

            access = membership.access
            if isinstance(access, RestrictedTo):
                return set(access.property_ids)

            result = await session.execute(select(Property.id).where(Property.portfolio_id == portfolio_id))
            return set(result.scalars().all())

    async def permissions_for(self, user_id: UUID, portfolio_id: UUID, property_id: UUID) -> FrozenSet[PropertyPermission]:
        """Effective permissions of a user on one property.

        Empty if the user is not a member, the property is outside the
        portfolio, or a restriction map omits the property. Otherwise the
        role baseline, intersected with the restriction when one exists.
        """
        async with self.db.get_session() as session:
            membership = await get_membership(session, portfolio_id, user_id)
            if membership is None:
                return frozenset()

            prop = await session.get(Property, property_id)
            if prop is None or prop.portfolio_id != portfolio_id:
                logger.debug(f"Property {property_id} is not part of portfolio {portfolio_id}")
                return frozenset()

        return membership.access.permissions_for(PortfolioRole(membership.role), property_id)

    async def has_permission(
        self,
        user_id: UUID,
        portfolio_id: UUID,
        property_id: UUID,
        permission: PropertyPermission,
    ) -> bool:
        permissions = await self.permissions_for(user_id, portfolio_id, property_id)
        return PropertyPermission(permission) in permissions
