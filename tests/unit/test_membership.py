"""Tests for the membership ledger."""
import pytest
from uuid import uuid4

from portfolio_access.exceptions import (
    ConflictError,
    ForbiddenError,
    InvariantViolationError,
    MembershipNotFoundError,
    NotFoundError,
)
from portfolio_access.permissions import NOT_A_MEMBER, RestrictedTo, UNRESTRICTED
from portfolio_access.schemas import (
    AuditLogFilter,
    PermissionAuditAction,
    PortfolioRole,
    PropertyPermission,
)


async def audit_actions(audit_log, portfolio_id):
    entries = await audit_log.query(AuditLogFilter(portfolio_id=portfolio_id))
    return [PermissionAuditAction(e.action) for e in reversed(entries)]


class TestCreation:

    @pytest.mark.asyncio
    async def test_creator_becomes_owner(self, ledger, oak_st, alice):
        assert await ledger.resolve_role(oak_st.id, alice.id) == PortfolioRole.OWNER

        membership = await ledger.get_membership(oak_st.id, alice.id)
        assert membership.access is UNRESTRICTED
        assert membership.invited_by is None

    @pytest.mark.asyncio
    async def test_resolve_role_for_stranger(self, ledger, oak_st, bob):
        assert await ledger.resolve_role(oak_st.id, bob.id) is NOT_A_MEMBER

    @pytest.mark.asyncio
    async def test_create_owner_membership(self, ledger, make_bare_portfolio, bob):
        portfolio = await make_bare_portfolio("Elm St", created_by=bob.id)

        membership = await ledger.create_owner_membership(portfolio.id, bob.id)

        assert membership.role == PortfolioRole.OWNER
        assert await ledger.resolve_role(portfolio.id, bob.id) == PortfolioRole.OWNER

    @pytest.mark.asyncio
    async def test_create_owner_membership_conflict(self, ledger, oak_st, alice):
        with pytest.raises(ConflictError):
            await ledger.create_owner_membership(oak_st.id, alice.id)

    @pytest.mark.asyncio
    async def test_create_owner_membership_only_for_creator(self, ledger, make_bare_portfolio, bob, carol):
        portfolio = await make_bare_portfolio("Elm St", created_by=bob.id)

        with pytest.raises(ConflictError):
            await ledger.create_owner_membership(portfolio.id, carol.id)
        assert await ledger.resolve_role(portfolio.id, carol.id) is NOT_A_MEMBER

    @pytest.mark.asyncio
    async def test_create_owner_membership_rejects_second_owner(self, ledger, oak_st, bob):
        with pytest.raises(ConflictError):
            await ledger.create_owner_membership(oak_st.id, bob.id)
        assert await ledger.resolve_role(oak_st.id, bob.id) is NOT_A_MEMBER

    @pytest.mark.asyncio
    async def test_create_owner_membership_when_another_owner_exists(
        self, ledger, make_bare_portfolio, make_co_owner, alice, bob
    ):
        portfolio = await make_bare_portfolio("Elm St", created_by=alice.id)
        await make_co_owner(portfolio.id, bob)

        with pytest.raises(ConflictError):
            await ledger.create_owner_membership(portfolio.id, alice.id)

    @pytest.mark.asyncio
    async def test_create_owner_membership_unknown_portfolio(self, ledger, alice):
        with pytest.raises(NotFoundError):
            await ledger.create_owner_membership(uuid4(), alice.id)

    @pytest.mark.asyncio
    async def test_list_members(self, ledger, add_member, oak_st, alice, bob):
        await add_member(oak_st.id, bob, PortfolioRole.VIEWER, alice.id)

        members = await ledger.list_members(oak_st.id)

        assert {(m.user_id, PortfolioRole(m.role)) for m in members} == {
            (alice.id, PortfolioRole.OWNER),
            (bob.id, PortfolioRole.VIEWER),
        }


class TestChangeRole:

    @pytest.mark.asyncio
    async def test_owner_promotes_member(self, ledger, audit_log, add_member, oak_st, alice, bob):
        await add_member(oak_st.id, bob, PortfolioRole.MEMBER, alice.id)

        await ledger.change_role(oak_st.id, bob.id, PortfolioRole.ADMIN, alice.id)

        assert await ledger.resolve_role(oak_st.id, bob.id) == PortfolioRole.ADMIN
        [entry] = await audit_log.query(AuditLogFilter(portfolio_id=oak_st.id, action="role_change"))
        assert entry.user_id == bob.id
        assert entry.changed_by == alice.id
        assert entry.old_snapshot["role"] == "member"
        assert entry.new_snapshot["role"] == "admin"

    @pytest.mark.asyncio
    async def test_same_role_is_noop(self, ledger, audit_log, add_member, oak_st, alice, bob):
        await add_member(oak_st.id, bob, PortfolioRole.MEMBER, alice.id)
        before = await audit_actions(audit_log, oak_st.id)

        await ledger.change_role(oak_st.id, bob.id, PortfolioRole.MEMBER, alice.id)

        assert await audit_actions(audit_log, oak_st.id) == before

    @pytest.mark.asyncio
    async def test_sole_owner_cannot_demote_self(self, ledger, audit_log, oak_st, alice):
        with pytest.raises(InvariantViolationError):
            await ledger.change_role(oak_st.id, alice.id, PortfolioRole.MEMBER, alice.id)

        assert await ledger.resolve_role(oak_st.id, alice.id) == PortfolioRole.OWNER
        assert await audit_log.query(AuditLogFilter(portfolio_id=oak_st.id)) == []

    @pytest.mark.asyncio
    async def test_owner_role_not_grantable(self, ledger, add_member, oak_st, alice, bob):
        await add_member(oak_st.id, bob, PortfolioRole.ADMIN, alice.id)

        with pytest.raises(ForbiddenError):
            await ledger.change_role(oak_st.id, bob.id, PortfolioRole.OWNER, alice.id)

    @pytest.mark.asyncio
    async def test_member_cannot_change_roles(self, ledger, add_member, oak_st, alice, bob, carol):
        await add_member(oak_st.id, bob, PortfolioRole.MEMBER, alice.id)
        await add_member(oak_st.id, carol, PortfolioRole.VIEWER, alice.id)

        with pytest.raises(ForbiddenError):
            await ledger.change_role(oak_st.id, carol.id, PortfolioRole.MEMBER, bob.id)

    @pytest.mark.asyncio
    async def test_stranger_cannot_change_roles(self, ledger, oak_st, alice, bob):
        with pytest.raises(ForbiddenError):
            await ledger.change_role(oak_st.id, alice.id, PortfolioRole.VIEWER, bob.id)

    @pytest.mark.asyncio
    async def test_admin_limits(self, ledger, add_member, oak_st, alice, bob, carol):
        await add_member(oak_st.id, bob, PortfolioRole.ADMIN, alice.id)
        await add_member(oak_st.id, carol, PortfolioRole.VIEWER, alice.id)

        await ledger.change_role(oak_st.id, carol.id, PortfolioRole.MEMBER, bob.id)
        assert await ledger.resolve_role(oak_st.id, carol.id) == PortfolioRole.MEMBER

        with pytest.raises(ForbiddenError):
            await ledger.change_role(oak_st.id, carol.id, PortfolioRole.ADMIN, bob.id)
        with pytest.raises(ForbiddenError):
            await ledger.change_role(oak_st.id, alice.id, PortfolioRole.MEMBER, bob.id)

    @pytest.mark.asyncio
    async def test_unknown_target(self, ledger, oak_st, alice, bob):
        with pytest.raises(MembershipNotFoundError):
            await ledger.change_role(oak_st.id, bob.id, PortfolioRole.VIEWER, alice.id)

    @pytest.mark.asyncio
    async def test_admin_cannot_change_own_role(self, ledger, audit_log, add_member, oak_st, alice, bob):
        await add_member(oak_st.id, bob, PortfolioRole.ADMIN, alice.id)
        before = await audit_actions(audit_log, oak_st.id)

        with pytest.raises(ForbiddenError):
            await ledger.change_role(oak_st.id, bob.id, PortfolioRole.MEMBER, bob.id)

        assert await ledger.resolve_role(oak_st.id, bob.id) == PortfolioRole.ADMIN
        assert await audit_actions(audit_log, oak_st.id) == before

    @pytest.mark.asyncio
    async def test_co_owner_cannot_demote_self(self, ledger, make_co_owner, oak_st, alice, bob):
        await make_co_owner(oak_st.id, bob)

        with pytest.raises(ForbiddenError):
            await ledger.change_role(oak_st.id, bob.id, PortfolioRole.ADMIN, bob.id)
        assert await ledger.resolve_role(oak_st.id, bob.id) == PortfolioRole.OWNER

    @pytest.mark.asyncio
    async def test_creator_cannot_be_demoted(self, ledger, make_co_owner, oak_st, alice, bob):
        await make_co_owner(oak_st.id, bob)

        with pytest.raises(ForbiddenError):
            await ledger.change_role(oak_st.id, alice.id, PortfolioRole.VIEWER, bob.id)
        assert await ledger.resolve_role(oak_st.id, alice.id) == PortfolioRole.OWNER

    @pytest.mark.asyncio
    async def test_creator_demotes_co_owner(self, ledger, make_co_owner, oak_st, alice, bob):
        await make_co_owner(oak_st.id, bob)

        await ledger.change_role(oak_st.id, bob.id, PortfolioRole.ADMIN, alice.id)

        assert await ledger.resolve_role(oak_st.id, bob.id) == PortfolioRole.ADMIN

    @pytest.mark.asyncio
    async def test_demotion_blocked_by_wider_restriction(
        self, ledger, audit_log, add_member, oak_st, oak_st_properties, alice, bob
    ):
        p1 = oak_st_properties[0]
        await add_member(oak_st.id, bob, PortfolioRole.MEMBER, alice.id, restriction={p1.id: ["view", "edit"]})
        before = await audit_actions(audit_log, oak_st.id)

        with pytest.raises(ForbiddenError):
            await ledger.change_role(oak_st.id, bob.id, PortfolioRole.VIEWER, alice.id)

        assert await ledger.resolve_role(oak_st.id, bob.id) == PortfolioRole.MEMBER
        assert await audit_actions(audit_log, oak_st.id) == before

        # Narrowing the restriction first makes the demotion valid
        await ledger.set_property_access(oak_st.id, bob.id, {p1.id: ["view"]}, alice.id)
        await ledger.change_role(oak_st.id, bob.id, PortfolioRole.VIEWER, alice.id)
        assert await ledger.resolve_role(oak_st.id, bob.id) == PortfolioRole.VIEWER


class TestPropertyAccess:

    @pytest.mark.asyncio
    async def test_restrict_and_clear(self, ledger, audit_log, add_member, oak_st, oak_st_properties, alice, bob):
        p1 = oak_st_properties[0]
        await add_member(oak_st.id, bob, PortfolioRole.MEMBER, alice.id)

        restriction = RestrictedTo({p1.id: {PropertyPermission.VIEW}})
        membership = await ledger.set_property_access(oak_st.id, bob.id, restriction, alice.id)
        assert membership.access == restriction

        await ledger.set_property_access(oak_st.id, bob.id, None, alice.id)
        assert (await ledger.get_membership(oak_st.id, bob.id)).access is UNRESTRICTED

        entries = await audit_log.query(AuditLogFilter(portfolio_id=oak_st.id, action="access_revoked"))
        cleared, restricted = entries
        assert restricted.old_snapshot["property_access"] is None
        assert restricted.new_snapshot["property_access"] == {str(p1.id): ["view"]}
        assert cleared.new_snapshot["property_access"] is None

    @pytest.mark.asyncio
    async def test_accepts_plain_mapping(self, ledger, add_member, oak_st, oak_st_properties, alice, bob):
        p1 = oak_st_properties[0]
        await add_member(oak_st.id, bob, PortfolioRole.MEMBER, alice.id)

        await ledger.set_property_access(oak_st.id, bob.id, {str(p1.id): ["view", "edit"]}, alice.id)

        membership = await ledger.get_membership(oak_st.id, bob.id)
        assert membership.access.permissions_for(PortfolioRole.MEMBER, p1.id) == {
            PropertyPermission.VIEW, PropertyPermission.EDIT,
        }

    @pytest.mark.asyncio
    async def test_unchanged_access_is_noop(self, ledger, audit_log, add_member, oak_st, alice, bob):
        await add_member(oak_st.id, bob, PortfolioRole.MEMBER, alice.id)

        await ledger.set_property_access(oak_st.id, bob.id, UNRESTRICTED, alice.id)

        assert await audit_log.query(AuditLogFilter(portfolio_id=oak_st.id, action="access_revoked")) == []

    @pytest.mark.asyncio
    async def test_viewer_cannot_restrict(self, ledger, add_member, oak_st, alice, bob):
        await add_member(oak_st.id, bob, PortfolioRole.VIEWER, alice.id)

        with pytest.raises(ForbiddenError):
            await ledger.set_property_access(oak_st.id, alice.id, {}, bob.id)

    @pytest.mark.asyncio
    async def test_owner_cannot_restrict_self(
        self, ledger, resolver, audit_log, add_member, oak_st, oak_st_properties, alice, bob
    ):
        p1, p2 = oak_st_properties
        await add_member(oak_st.id, bob, PortfolioRole.ADMIN, alice.id)
        before = await audit_actions(audit_log, oak_st.id)

        with pytest.raises(ForbiddenError):
            await ledger.set_property_access(oak_st.id, alice.id, {p1.id: ["view"]}, alice.id)

        assert (await ledger.get_membership(oak_st.id, alice.id)).access is UNRESTRICTED
        assert await resolver.permissions_for(alice.id, oak_st.id, p2.id) == set(PropertyPermission)
        assert await audit_actions(audit_log, oak_st.id) == before

    @pytest.mark.asyncio
    async def test_admin_cannot_restrict_self(self, ledger, add_member, oak_st, alice, bob):
        await add_member(oak_st.id, bob, PortfolioRole.ADMIN, alice.id)

        with pytest.raises(ForbiddenError):
            await ledger.set_property_access(oak_st.id, bob.id, {}, bob.id)

    @pytest.mark.asyncio
    async def test_restriction_beyond_role_rejected(
        self, ledger, audit_log, add_member, oak_st, oak_st_properties, alice, bob
    ):
        p1 = oak_st_properties[0]
        await add_member(oak_st.id, bob, PortfolioRole.VIEWER, alice.id)
        before = await audit_actions(audit_log, oak_st.id)

        with pytest.raises(ForbiddenError):
            await ledger.set_property_access(oak_st.id, bob.id, {p1.id: ["view", "edit", "delete"]}, alice.id)

        assert (await ledger.get_membership(oak_st.id, bob.id)).access is UNRESTRICTED
        assert await audit_actions(audit_log, oak_st.id) == before


class TestRevoke:

    @pytest.mark.asyncio
    async def test_owner_removes_member(self, ledger, audit_log, add_member, oak_st, alice, bob):
        await add_member(oak_st.id, bob, PortfolioRole.MEMBER, alice.id)

        await ledger.revoke_membership(oak_st.id, bob.id, alice.id)

        assert await ledger.resolve_role(oak_st.id, bob.id) is NOT_A_MEMBER
        [entry] = await audit_log.query(AuditLogFilter(portfolio_id=oak_st.id, action="access_revoked"))
        assert entry.user_id == bob.id
        assert entry.old_snapshot["role"] == "member"
        assert entry.new_value is None

    @pytest.mark.asyncio
    async def test_sole_owner_cannot_be_removed(self, ledger, oak_st, alice):
        with pytest.raises(InvariantViolationError):
            await ledger.revoke_membership(oak_st.id, alice.id, alice.id)

    @pytest.mark.asyncio
    async def test_admin_cannot_remove_owner(self, ledger, add_member, oak_st, alice, bob):
        await add_member(oak_st.id, bob, PortfolioRole.ADMIN, alice.id)

        with pytest.raises(ForbiddenError):
            await ledger.revoke_membership(oak_st.id, alice.id, bob.id)

    @pytest.mark.asyncio
    async def test_cannot_revoke_self(self, ledger, add_member, oak_st, alice, bob):
        await add_member(oak_st.id, bob, PortfolioRole.ADMIN, alice.id)

        with pytest.raises(ForbiddenError):
            await ledger.revoke_membership(oak_st.id, bob.id, bob.id)
        assert await ledger.resolve_role(oak_st.id, bob.id) == PortfolioRole.ADMIN

    @pytest.mark.asyncio
    async def test_creator_cannot_be_removed(self, ledger, make_co_owner, oak_st, alice, bob):
        await make_co_owner(oak_st.id, bob)

        with pytest.raises(ForbiddenError):
            await ledger.revoke_membership(oak_st.id, alice.id, bob.id)
        assert await ledger.resolve_role(oak_st.id, alice.id) == PortfolioRole.OWNER

    @pytest.mark.asyncio
    async def test_creator_removes_co_owner(self, ledger, make_co_owner, oak_st, alice, bob):
        await make_co_owner(oak_st.id, bob)

        await ledger.revoke_membership(oak_st.id, bob.id, alice.id)

        assert await ledger.resolve_role(oak_st.id, bob.id) is NOT_A_MEMBER


class TestLeave:

    @pytest.mark.asyncio
    async def test_member_leaves(self, ledger, audit_log, add_member, oak_st, alice, bob):
        await add_member(oak_st.id, bob, PortfolioRole.VIEWER, alice.id)

        await ledger.leave_portfolio(oak_st.id, bob.id)

        assert await ledger.resolve_role(oak_st.id, bob.id) is NOT_A_MEMBER
        [entry] = await audit_log.query(AuditLogFilter(portfolio_id=oak_st.id, action="access_revoked"))
        assert entry.changed_by == bob.id

    @pytest.mark.asyncio
    async def test_last_owner_cannot_leave(self, ledger, oak_st, alice):
        with pytest.raises(InvariantViolationError):
            await ledger.leave_portfolio(oak_st.id, alice.id)

    @pytest.mark.asyncio
    async def test_creator_cannot_leave(self, ledger, make_co_owner, oak_st, alice, bob):
        await make_co_owner(oak_st.id, bob)

        with pytest.raises(ForbiddenError):
            await ledger.leave_portfolio(oak_st.id, alice.id)
        assert await ledger.resolve_role(oak_st.id, alice.id) == PortfolioRole.OWNER

    @pytest.mark.asyncio
    async def test_co_owner_leaves(self, ledger, make_co_owner, oak_st, bob):
        await make_co_owner(oak_st.id, bob)

        await ledger.leave_portfolio(oak_st.id, bob.id)

        assert await ledger.resolve_role(oak_st.id, bob.id) is NOT_A_MEMBER

    @pytest.mark.asyncio
    async def test_stranger_cannot_leave(self, ledger, oak_st, bob):
        with pytest.raises(MembershipNotFoundError):
            await ledger.leave_portfolio(oak_st.id, bob.id)


class TestTransferOwnership:

    @pytest.mark.asyncio
    async def test_transfer(self, db, ledger, audit_log, add_member, oak_st, alice, bob):
        from portfolio_access.models import Portfolio

        await add_member(oak_st.id, bob, PortfolioRole.MEMBER, alice.id)

        await ledger.transfer_ownership(oak_st.id, bob.id, alice.id)

        assert await ledger.resolve_role(oak_st.id, bob.id) == PortfolioRole.OWNER
        assert await ledger.resolve_role(oak_st.id, alice.id) == PortfolioRole.ADMIN
        async with db.get_session() as session:
            assert (await session.get(Portfolio, oak_st.id)).created_by == bob.id

        role_changes = await audit_log.query(AuditLogFilter(portfolio_id=oak_st.id, action="role_change"))
        assert {e.user_id for e in role_changes} == {alice.id, bob.id}

    @pytest.mark.asyncio
    async def test_previous_owner_can_then_be_demoted(self, ledger, add_member, oak_st, alice, bob):
        await add_member(oak_st.id, bob, PortfolioRole.MEMBER, alice.id)
        await ledger.transfer_ownership(oak_st.id, bob.id, alice.id)

        await ledger.change_role(oak_st.id, alice.id, PortfolioRole.VIEWER, bob.id)

        assert await ledger.resolve_role(oak_st.id, alice.id) == PortfolioRole.VIEWER

    @pytest.mark.asyncio
    async def test_only_owner_transfers(self, ledger, add_member, oak_st, alice, bob, carol):
        await add_member(oak_st.id, bob, PortfolioRole.ADMIN, alice.id)
        await add_member(oak_st.id, carol, PortfolioRole.MEMBER, alice.id)

        with pytest.raises(ForbiddenError):
            await ledger.transfer_ownership(oak_st.id, carol.id, bob.id)

    @pytest.mark.asyncio
    async def test_target_must_be_member(self, ledger, oak_st, alice, bob):
        with pytest.raises(MembershipNotFoundError):
            await ledger.transfer_ownership(oak_st.id, bob.id, alice.id)

    @pytest.mark.asyncio
    async def test_cannot_transfer_to_self(self, ledger, oak_st, alice):
        with pytest.raises(ConflictError):
            await ledger.transfer_ownership(oak_st.id, alice.id, alice.id)
