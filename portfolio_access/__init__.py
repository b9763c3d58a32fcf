"""Portfolio access control - memberships, invitations, permission resolution and audit."""

__version__ = "0.1.0"

from .constants import (
    INVITATION_DEFAULTS,
    ACCESS_CONTROL_TABLES,
    ACCESS_CONTROL_ENUMS,
    AUDIT_QUERY_MAX_LIMIT,
)

from .exceptions import (
    AccessControlError,
    ForbiddenError,
    ConflictError,
    InvariantViolationError,
    NotFoundError,
    MembershipNotFoundError,
    InvitationError,
    ExpiredError,
    AlreadyUsedError,
    AlreadyMemberError,
    InvalidStateError,
    AuditLogImmutableError,
)

from .schemas import (
    # Enums
    PortfolioRole,
    PropertyPermission,
    InvitationStatus,
    PermissionAuditAction,
    normalize_email,

    # User schemas
    UserBase,
    UserCreate,
    User as UserSchema,

    # Portfolio schemas
    PortfolioBase,
    PortfolioCreate,
    Portfolio as PortfolioSchema,

    # Membership schemas
    MembershipBase,
    MembershipRoleUpdate,
    MembershipAccessUpdate,
    Membership as MembershipSchema,

    # Invitation schemas
    InvitationCreate,
    InvitationIssued,
    InvitationSummary,

    # Audit schemas
    PermissionAuditEntryCreate,
    PermissionAuditEntry,
    AuditLogFilter,
)

from .permissions import (
    ROLE_DEFAULT_PERMISSIONS,
    NOT_A_MEMBER,
    NotAMember,
    Unrestricted,
    RestrictedTo,
    UNRESTRICTED,
    PropertyAccess,
    PermissionContext,
    baseline_permissions,
    effective_permissions,
    validate_access_within_role,
    parse_property_access,
)

from .models import (
    Base,
    User,
    Portfolio,
    Property,
    Membership,
    InvitationToken,
    PermissionAuditLog,
)

from .database import (
    DatabaseManager,
    get_db_manager,
    get_session,
    init_db,
    close_db,
)

from .audit import AuditLog
from .membership import MembershipLedger
from .invitations import InvitationService, generate_invitation_token
from .resolver import AccessResolver
from .maintenance import OwnerRepairReport, repair_owner_memberships

__all__ = [
    # Constants
    "INVITATION_DEFAULTS",
    "ACCESS_CONTROL_TABLES",
    "ACCESS_CONTROL_ENUMS",
    "AUDIT_QUERY_MAX_LIMIT",

    # Exceptions
    "AccessControlError",
    "ForbiddenError",
    "ConflictError",
    "InvariantViolationError",
    "NotFoundError",
    "MembershipNotFoundError",
    "InvitationError",
    "ExpiredError",
    "AlreadyUsedError",
    "AlreadyMemberError",
    "InvalidStateError",
    "AuditLogImmutableError",

    # Enums
    "PortfolioRole",
    "PropertyPermission",
    "InvitationStatus",
    "PermissionAuditAction",
    "normalize_email",

    # Schemas
    "UserBase",
    "UserCreate",
    "UserSchema",
    "PortfolioBase",
    "PortfolioCreate",
    "PortfolioSchema",
    "MembershipBase",
    "MembershipRoleUpdate",
    "MembershipAccessUpdate",
    "MembershipSchema",
    "InvitationCreate",
    "InvitationIssued",
    "InvitationSummary",
    "PermissionAuditEntryCreate",
    "PermissionAuditEntry",
    "AuditLogFilter",

    # Permissions
    "ROLE_DEFAULT_PERMISSIONS",
    "NOT_A_MEMBER",
    "NotAMember",
    "Unrestricted",
    "RestrictedTo",
    "UNRESTRICTED",
    "PropertyAccess",
    "PermissionContext",
    "baseline_permissions",
    "effective_permissions",
    "validate_access_within_role",
    "parse_property_access",

    # Models
    "Base",
    "User",
    "Portfolio",
    "Property",
    "Membership",
    "InvitationToken",
    "PermissionAuditLog",

    # Database
    "DatabaseManager",
    "get_db_manager",
    "get_session",
    "init_db",
    "close_db",

    # Services
    "AuditLog",
    "MembershipLedger",
    "InvitationService",
    "generate_invitation_token",
    "AccessResolver",
    "OwnerRepairReport",
    "repair_owner_memberships",
]
