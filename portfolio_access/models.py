"""SQLAlchemy ORM models for the portfolio access-control schema.

This module defines the tables, relationships and constraints that back
portfolio membership, invitation tokens and the permission audit trail,
plus the identity/portfolio/property tables they reference.
"""

import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import uuid4

from sqlalchemy import (
    Column, Text, DateTime, BigInteger, Integer, Uuid, JSON,
    ForeignKey, UniqueConstraint, CheckConstraint, Index,
    Enum as SQLEnum, event, func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, relationship

from .exceptions import AuditLogImmutableError
from .permissions import PropertyAccess, coerce_property_access, parse_property_access
from .schemas import PortfolioRole, InvitationStatus, PermissionAuditAction

# Create base class for all models
Base = declarative_base()


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from backends that drop tzinfo."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


# Database enum types; values, not member names, are stored
portfolio_role_enum = SQLEnum(PortfolioRole, name='portfolio_role', values_callable=_enum_values)
invitation_status_enum = SQLEnum(InvitationStatus, name='invitation_token_status', values_callable=_enum_values)
audit_action_enum = SQLEnum(PermissionAuditAction, name='permission_audit_action', values_callable=_enum_values)

# NULL (not JSON 'null') marks unrestricted access
PropertyAccessJSON = JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), 'postgresql')


class TimestampMixin:
    """Mixin for created_at and updated_at timestamps."""
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False)


class PropertyAccessMixin:
    """Typed view over the nullable property_access JSON column."""

    @property
    def access(self) -> PropertyAccess:
        return parse_property_access(self.property_access)

    @access.setter
    def access(self, value) -> None:
        self.property_access = coerce_property_access(value).to_json()


# Identity and portfolio tables (owned by collaborating services)
class User(Base):
    """Canonical user records. Created and mutated by the identity service only."""
    __tablename__ = 'users'

    id = Column(Uuid, primary_key=True, default=uuid4)
    email = Column(Text, nullable=False, unique=True)
    display_name = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    # Relationships
    memberships = relationship(
        'Membership', back_populates='user', foreign_keys='Membership.user_id',
        cascade='all, delete-orphan', passive_deletes=True,
    )

    def __repr__(self):
        return f"<User(id={self.id}, email='{self.email}')>"


class Portfolio(Base, TimestampMixin):
    """Named grouping of properties."""
    __tablename__ = 'portfolios'

    id = Column(Uuid, primary_key=True, default=uuid4)
    name = Column(Text, nullable=False)
    created_by = Column(Uuid, ForeignKey('users.id', ondelete='SET NULL'), nullable=True)

    # Relationships
    properties = relationship('Property', back_populates='portfolio', cascade='all, delete-orphan', passive_deletes=True)
    memberships = relationship('Membership', back_populates='portfolio', cascade='all, delete-orphan', passive_deletes=True)
    invitations = relationship('InvitationToken', back_populates='portfolio', cascade='all, delete-orphan', passive_deletes=True)

    __table_args__ = (
        Index('idx_portfolios_created_by', 'created_by'),
    )

    def __repr__(self):
        return f"<Portfolio(id={self.id}, name='{self.name}')>"


class Property(Base, TimestampMixin):
    """A property scoped to exactly one portfolio. Opaque to access control beyond its id."""
    __tablename__ = 'properties'

    id = Column(Uuid, primary_key=True, default=uuid4)
    portfolio_id = Column(Uuid, ForeignKey('portfolios.id', ondelete='CASCADE'), nullable=False)
    name = Column(Text, nullable=False)

    # Relationships
    portfolio = relationship('Portfolio', back_populates='properties')

    __table_args__ = (
        Index('idx_properties_portfolio_id', 'portfolio_id'),
    )


# Access-control core tables
class Membership(Base, TimestampMixin, PropertyAccessMixin):
    """One user's role and optional property restriction in one portfolio."""
    __tablename__ = 'memberships'

    id = Column(Uuid, primary_key=True, default=uuid4)
    user_id = Column(Uuid, ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    portfolio_id = Column(Uuid, ForeignKey('portfolios.id', ondelete='CASCADE'), nullable=False)
    role = Column(portfolio_role_enum, nullable=False, default=PortfolioRole.MEMBER)
    property_access = Column(PropertyAccessJSON, nullable=True)  # NULL = all properties, bounded by role
    invited_by = Column(Uuid, ForeignKey('users.id', ondelete='SET NULL'), nullable=True)
    invited_at = Column(DateTime(timezone=True), nullable=True)
    accepted_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    user = relationship('User', back_populates='memberships', foreign_keys=[user_id])
    portfolio = relationship('Portfolio', back_populates='memberships')

    __table_args__ = (
        UniqueConstraint('user_id', 'portfolio_id', name='uq_memberships_user_portfolio'),
        Index('idx_memberships_portfolio_role', 'portfolio_id', 'role'),
    )

    def snapshot(self) -> Dict[str, Any]:
        """Serializable view used for audit old/new values."""
        return {
            "role": PortfolioRole(self.role).value,
            "property_access": self.property_access,
        }

    def __repr__(self):
        return f"<Membership(user_id={self.user_id}, portfolio_id={self.portfolio_id}, role={self.role})>"


class InvitationToken(Base, TimestampMixin, PropertyAccessMixin):
    """Single-use, time-limited credential granting a role in a portfolio."""
    __tablename__ = 'invitation_tokens'

    id = Column(Uuid, primary_key=True, default=uuid4)
    token = Column(Text, nullable=False, unique=True)  # URL-safe, cryptographically random
    portfolio_id = Column(Uuid, ForeignKey('portfolios.id', ondelete='CASCADE'), nullable=False)
    email = Column(Text, nullable=False)
    role = Column(portfolio_role_enum, nullable=False, default=PortfolioRole.MEMBER)
    property_access = Column(PropertyAccessJSON, nullable=True)
    status = Column(invitation_status_enum, nullable=False, default=InvitationStatus.PENDING)
    invited_by = Column(Uuid, ForeignKey('users.id', ondelete='SET NULL'), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    used_at = Column(DateTime(timezone=True), nullable=True)
    used_by = Column(Uuid, ForeignKey('users.id', ondelete='SET NULL'), nullable=True)

    # Relationships
    portfolio = relationship('Portfolio', back_populates='invitations')

    __table_args__ = (
        # used_by may later be nulled by a user delete, so only used_at is tied to status
        CheckConstraint(
            "(status = 'accepted' AND used_at IS NOT NULL) "
            "OR (status <> 'accepted' AND used_at IS NULL AND used_by IS NULL)",
            name='check_invitation_used_fields',
        ),
        Index('idx_invitation_tokens_portfolio_status', 'portfolio_id', 'status'),
        Index('idx_invitation_tokens_email', 'email'),
        Index('idx_invitation_tokens_expires_at', 'expires_at'),
    )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > ensure_utc(self.expires_at)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "email": self.email,
            "role": PortfolioRole(self.role).value,
            "property_access": self.property_access,
            "token_id": str(self.id),
        }

    def __repr__(self):
        return f"<InvitationToken(id={self.id}, email='{self.email}', status={self.status})>"


class PermissionAuditLog(Base):
    """Append-only record of permission-affecting events.

    Foreign keys degrade to NULL when the referenced user or portfolio is
    deleted so that entries outlive their subjects.
    """
    __tablename__ = 'permission_audit_log'

    id = Column(BigInteger().with_variant(Integer, 'sqlite'), primary_key=True, autoincrement=True)
    user_id = Column(Uuid, ForeignKey('users.id', ondelete='SET NULL'), nullable=True)
    portfolio_id = Column(Uuid, ForeignKey('portfolios.id', ondelete='SET NULL'), nullable=True)
    action = Column(audit_action_enum, nullable=False)
    old_value = Column(Text, nullable=True)   # JSON snapshot
    new_value = Column(Text, nullable=True)   # JSON snapshot
    changed_by = Column(Uuid, ForeignKey('users.id', ondelete='SET NULL'), nullable=True)  # NULL = system
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    __table_args__ = (
        Index('idx_permission_audit_log_portfolio_created', 'portfolio_id', 'created_at'),
        Index('idx_permission_audit_log_user', 'user_id'),
        Index('idx_permission_audit_log_action', 'action'),
    )

    @property
    def old_snapshot(self) -> Optional[Dict[str, Any]]:
        return json.loads(self.old_value) if self.old_value is not None else None

    @property
    def new_snapshot(self) -> Optional[Dict[str, Any]]:
        return json.loads(self.new_value) if self.new_value is not None else None

    def __repr__(self):
        return f"<PermissionAuditLog(id={self.id}, action={self.action}, portfolio_id={self.portfolio_id})>"


@event.listens_for(PermissionAuditLog, 'before_update')
def _reject_audit_update(mapper, connection, target):
    raise AuditLogImmutableError(f"Audit entry {target.id} cannot be modified")


@event.listens_for(PermissionAuditLog, 'before_delete')
def _reject_audit_delete(mapper, connection, target):
    raise AuditLogImmutableError(f"Audit entry {target.id} cannot be deleted")
