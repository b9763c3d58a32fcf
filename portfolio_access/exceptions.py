"""Exception taxonomy for portfolio access control.

Every logical failure raised by the ledger, the invitation service and the
audit log derives from AccessControlError. Storage failures are not wrapped;
SQLAlchemy errors propagate to the caller unchanged.
"""

from typing import Optional


class AccessControlError(Exception):
    """Base class for access-control rejections."""


class ForbiddenError(AccessControlError):
    """Actor lacks the role required for the operation."""


class ConflictError(AccessControlError):
    """The record being created already exists."""


class InvariantViolationError(AccessControlError):
    """The operation would leave a portfolio without an owner."""


class NotFoundError(AccessControlError):
    """An invitation token (or other addressed record) does not exist."""


class MembershipNotFoundError(NotFoundError):
    """The target user holds no membership in the portfolio."""


class InvitationError(AccessControlError):
    """Base class for invitation lifecycle violations.

    Args:
        message: Human readable reason
        status: Stored token status at the time of the failure, if known
    """

    def __init__(self, message: str, status: Optional[str] = None):
        super().__init__(message)
        self.status = status


class ExpiredError(InvitationError):
    """The invitation's expiry has passed."""


class AlreadyUsedError(InvitationError):
    """The invitation is no longer pending (accepted, expired or revoked)."""


class AlreadyMemberError(InvitationError):
    """The invited or redeeming user already belongs to the portfolio."""


class InvalidStateError(InvitationError):
    """The requested transition is not allowed from the token's current status."""


class AuditLogImmutableError(AccessControlError):
    """Raised when code attempts to update or delete a persisted audit entry."""
