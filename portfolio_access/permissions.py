"""Role and property-permission rules.

This module is the single place that maps roles to permissions. The ledger,
the invitation service and the resolver all consult these tables instead of
comparing role strings themselves.

Property access is an explicit variant:

* ``Unrestricted`` - every property in the portfolio, bounded by the role.
* ``RestrictedTo`` - only the listed property ids, each with its own
  permission subset, still bounded by the role.

The database stores the variant as a nullable JSON column (NULL for
Unrestricted); ``parse_property_access`` and ``to_json`` convert at that
boundary.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional, Union
from uuid import UUID

from .exceptions import ForbiddenError
from .schemas import PortfolioRole, PropertyPermission

ALL_PERMISSIONS: FrozenSet[PropertyPermission] = frozenset(PropertyPermission)

# Baseline (ceiling) permissions per role
ROLE_DEFAULT_PERMISSIONS: Dict[PortfolioRole, FrozenSet[PropertyPermission]] = {
    PortfolioRole.OWNER: ALL_PERMISSIONS,
    PortfolioRole.ADMIN: ALL_PERMISSIONS,
    PortfolioRole.MEMBER: frozenset({PropertyPermission.VIEW, PropertyPermission.EDIT}),
    PortfolioRole.VIEWER: frozenset({PropertyPermission.VIEW}),
}

ROLE_RANK: Dict[PortfolioRole, int] = {
    PortfolioRole.OWNER: 3,
    PortfolioRole.ADMIN: 2,
    PortfolioRole.MEMBER: 1,
    PortfolioRole.VIEWER: 0,
}

# Roles each role may grant through role changes or invitations.
# Nobody grants OWNER here; ownership moves only through a transfer.
ASSIGNABLE_ROLES: Dict[PortfolioRole, FrozenSet[PortfolioRole]] = {
    PortfolioRole.OWNER: frozenset({PortfolioRole.ADMIN, PortfolioRole.MEMBER, PortfolioRole.VIEWER}),
    PortfolioRole.ADMIN: frozenset({PortfolioRole.MEMBER, PortfolioRole.VIEWER}),
    PortfolioRole.MEMBER: frozenset(),
    PortfolioRole.VIEWER: frozenset(),
}

MEMBER_MANAGER_ROLES: FrozenSet[PortfolioRole] = frozenset({PortfolioRole.OWNER, PortfolioRole.ADMIN})


class NotAMember:
    """Sentinel returned by role lookups when no membership exists."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NOT_A_MEMBER"


NOT_A_MEMBER = NotAMember()


def baseline_permissions(role: PortfolioRole) -> FrozenSet[PropertyPermission]:
    """Return the permission ceiling granted by a role."""
    return ROLE_DEFAULT_PERMISSIONS[PortfolioRole(role)]


def role_rank(role: PortfolioRole) -> int:
    return ROLE_RANK[PortfolioRole(role)]


def can_manage_members(role: PortfolioRole) -> bool:
    """Owners and admins may invite, restrict, re-role and remove members."""
    return PortfolioRole(role) in MEMBER_MANAGER_ROLES


def can_assign_role(actor_role: PortfolioRole, new_role: PortfolioRole) -> bool:
    return PortfolioRole(new_role) in ASSIGNABLE_ROLES[PortfolioRole(actor_role)]


def can_modify_member(actor_role: PortfolioRole, target_role: PortfolioRole) -> bool:
    """Check whether the actor may change another member's row.

    Owners may modify anyone (the last-owner invariant is enforced separately).
    Admins may only modify members and viewers.
    """
    actor_role = PortfolioRole(actor_role)
    if actor_role == PortfolioRole.OWNER:
        return True
    if actor_role == PortfolioRole.ADMIN:
        return role_rank(target_role) < role_rank(PortfolioRole.ADMIN)
    return False


@dataclass(frozen=True)
class Unrestricted:
    """Full access to every property in the portfolio, bounded by role."""

    def permissions_for(self, role: PortfolioRole, property_id: UUID) -> FrozenSet[PropertyPermission]:
        return baseline_permissions(role)

    def to_json(self) -> None:
        return None


@dataclass(frozen=True)
class RestrictedTo:
    """Access limited to the listed properties with explicit permissions."""

    grants: Mapping[UUID, FrozenSet[PropertyPermission]] = field(default_factory=dict)

    def __post_init__(self):
        normalized = {
            _as_uuid(property_id): frozenset(PropertyPermission(p) for p in permissions)
            for property_id, permissions in self.grants.items()
        }
        object.__setattr__(self, "grants", normalized)

    @property
    def property_ids(self) -> FrozenSet[UUID]:
        return frozenset(self.grants)

    def permissions_for(self, role: PortfolioRole, property_id: UUID) -> FrozenSet[PropertyPermission]:
        listed = self.grants.get(_as_uuid(property_id))
        if listed is None:
            return frozenset()
        # A restriction narrows the role ceiling, never widens it
        return baseline_permissions(role) & listed

    def to_json(self) -> Dict[str, list]:
        return {
            str(property_id): sorted(p.value for p in permissions)
            for property_id, permissions in sorted(self.grants.items(), key=lambda item: str(item[0]))
        }


PropertyAccess = Union[Unrestricted, RestrictedTo]

UNRESTRICTED = Unrestricted()


def _as_uuid(value: Any) -> UUID:
    if isinstance(value, UUID):
        return value
    return UUID(str(value))


def parse_property_access(raw: Optional[Mapping[Any, Iterable[Any]]]) -> PropertyAccess:
    """Convert the stored JSON form into the access variant.

    Args:
        raw: None, or a mapping of property id to permission names

    Returns:
        UNRESTRICTED for None, otherwise a RestrictedTo (an empty mapping
        restricts the member to no properties at all)

    Raises:
        ValueError: If a key is not a UUID or a permission name is unknown
    """
    if raw is None:
        return UNRESTRICTED
    return RestrictedTo(grants={key: list(value) for key, value in raw.items()})


def coerce_property_access(value: Union[None, PropertyAccess, Mapping[Any, Iterable[Any]]]) -> PropertyAccess:
    """Accept a variant, None, or a plain mapping and return a variant."""
    if isinstance(value, (Unrestricted, RestrictedTo)):
        return value
    return parse_property_access(value)


def validate_access_within_role(role: PortfolioRole, access: PropertyAccess) -> None:
    """Reject a restriction that lists permissions the role does not carry.

    Raises:
        ForbiddenError: If any listed property grants more than the role baseline
    """
    if not isinstance(access, RestrictedTo):
        return
    role = PortfolioRole(role)
    ceiling = baseline_permissions(role)
    for property_id, permissions in access.grants.items():
        excess = permissions - ceiling
        if excess:
            raise ForbiddenError(
                f"A {role.value} cannot hold {sorted(p.value for p in excess)} on property {property_id}"
            )


def effective_permissions(
    role: PortfolioRole,
    access: PropertyAccess,
    property_id: UUID,
) -> FrozenSet[PropertyPermission]:
    """Permissions a member holds on one property."""
    return access.permissions_for(PortfolioRole(role), property_id)


@dataclass(frozen=True)
class PermissionContext:
    """A member's role and access fetched once, answering per-property checks in O(1)."""

    user_id: UUID
    portfolio_id: UUID
    role: PortfolioRole
    access: PropertyAccess = UNRESTRICTED

    @property
    def is_restricted(self) -> bool:
        return isinstance(self.access, RestrictedTo)

    def permissions_for(self, property_id: UUID) -> FrozenSet[PropertyPermission]:
        return effective_permissions(self.role, self.access, property_id)

    def has_permission(self, property_id: UUID, permission: PropertyPermission) -> bool:
        return PropertyPermission(permission) in self.permissions_for(property_id)

    @property
    def can_manage_members(self) -> bool:
        return can_manage_members(self.role)
