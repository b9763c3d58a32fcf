"""Pydantic schemas for the portfolio access-control models.

These schemas provide serialization/deserialization and validation for API
requests/responses, and the Python enums that mirror the database enum types.
"""

import json
import re
from typing import Optional, List, Dict, Any
from datetime import datetime
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator
from enum import Enum

from .constants import AUDIT_QUERY_MAX_LIMIT


# Python mirrors of the PostgreSQL enums
class PortfolioRole(str, Enum):
    OWNER = "owner"      # Full control; the creator always holds it
    ADMIN = "admin"      # Manages members and properties
    MEMBER = "member"    # Views and edits properties
    VIEWER = "viewer"    # Read-only


class PropertyPermission(str, Enum):
    VIEW = "view"
    EDIT = "edit"
    MANAGE = "manage"
    DELETE = "delete"


class InvitationStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    EXPIRED = "expired"
    REVOKED = "revoked"


class PermissionAuditAction(str, Enum):
    ROLE_CHANGE = "role_change"
    INVITATION_SENT = "invitation_sent"
    INVITATION_ACCEPTED = "invitation_accepted"
    ACCESS_REVOKED = "access_revoked"


# property id -> granted permissions; None means unrestricted
PropertyAccessMap = Dict[UUID, List[PropertyPermission]]

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_email(value: str) -> str:
    """Lower-case and trim an email address, rejecting obviously invalid input."""
    normalized = value.strip().lower()
    if not _EMAIL_PATTERN.match(normalized):
        raise ValueError(f"Invalid email address: {value!r}")
    return normalized


class TimestampMixin(BaseModel):
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# User schemas
class UserBase(BaseModel):
    email: str
    display_name: Optional[str] = None

    @field_validator('email')
    @classmethod
    def validate_email(cls, v):
        return normalize_email(v)


class UserCreate(UserBase):
    pass


class User(UserBase):
    id: UUID
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# Portfolio schemas
class PortfolioBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)


class PortfolioCreate(PortfolioBase):
    created_by: UUID


class Portfolio(PortfolioBase):
    id: UUID
    created_by: Optional[UUID] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# Membership schemas
class MembershipBase(BaseModel):
    role: PortfolioRole
    property_access: Optional[PropertyAccessMap] = None


class MembershipRoleUpdate(BaseModel):
    role: PortfolioRole


class MembershipAccessUpdate(BaseModel):
    property_access: Optional[PropertyAccessMap] = None


class Membership(MembershipBase, TimestampMixin):
    id: UUID
    user_id: UUID
    portfolio_id: UUID
    invited_by: Optional[UUID] = None
    invited_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


# Invitation schemas
class InvitationCreate(BaseModel):
    portfolio_id: UUID
    email: str
    role: PortfolioRole = PortfolioRole.MEMBER
    property_access: Optional[PropertyAccessMap] = None

    @field_validator('email')
    @classmethod
    def validate_email(cls, v):
        return normalize_email(v)


class InvitationIssued(BaseModel):
    """Returned once to the inviter; the token is the redemption credential."""
    token: str
    invitation_id: UUID
    portfolio_id: UUID
    email: str
    role: PortfolioRole
    expires_at: datetime


class InvitationSummary(BaseModel):
    """Listing view of an invitation. Never carries the token itself."""
    id: UUID
    portfolio_id: UUID
    email: str
    role: PortfolioRole
    property_access: Optional[PropertyAccessMap] = None
    status: InvitationStatus
    invited_by: Optional[UUID] = None
    expires_at: datetime
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


# Audit schemas
class PermissionAuditEntryCreate(BaseModel):
    action: PermissionAuditAction
    portfolio_id: Optional[UUID] = None
    user_id: Optional[UUID] = None       # Subject of the change
    changed_by: Optional[UUID] = None    # None = system-initiated
    old_value: Optional[Dict[str, Any]] = None
    new_value: Optional[Dict[str, Any]] = None


class PermissionAuditEntry(BaseModel):
    id: int
    action: PermissionAuditAction
    portfolio_id: Optional[UUID] = None
    user_id: Optional[UUID] = None
    changed_by: Optional[UUID] = None
    old_value: Optional[Dict[str, Any]] = None
    new_value: Optional[Dict[str, Any]] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @field_validator('old_value', 'new_value', mode='before')
    @classmethod
    def decode_snapshot(cls, v):
        if isinstance(v, str):
            return json.loads(v)
        return v


class AuditLogFilter(BaseModel):
    user_id: Optional[UUID] = None
    portfolio_id: Optional[UUID] = None
    action: Optional[PermissionAuditAction] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    limit: Optional[int] = Field(default=None, ge=1, le=AUDIT_QUERY_MAX_LIMIT)

    @model_validator(mode='after')
    def validate_range(self):
        if self.start is not None and self.end is not None and self.start > self.end:
            raise ValueError("start must not be after end")
        return self
