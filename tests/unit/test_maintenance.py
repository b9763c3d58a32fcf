"""Tests for the owner-membership repair."""
import pytest

from portfolio_access.maintenance import OwnerRepairReport, repair_owner_memberships
from portfolio_access.models import User
from portfolio_access.permissions import NOT_A_MEMBER
from portfolio_access.schemas import AuditLogFilter, PermissionAuditAction, PortfolioRole


@pytest.mark.asyncio
async def test_repairs_missing_owner(db, ledger, audit_log, make_bare_portfolio, alice):
    portfolio = await make_bare_portfolio("Birch Ln", created_by=alice.id)
    assert await ledger.resolve_role(portfolio.id, alice.id) is NOT_A_MEMBER

    report = await repair_owner_memberships(db, audit=audit_log)

    assert report.fixed == [portfolio.id]
    assert await ledger.resolve_role(portfolio.id, alice.id) == PortfolioRole.OWNER

    [entry] = await audit_log.query(AuditLogFilter(portfolio_id=portfolio.id))
    assert entry.action == PermissionAuditAction.ROLE_CHANGE
    assert entry.changed_by is None
    assert entry.new_snapshot == {"role": "owner", "property_access": None}


@pytest.mark.asyncio
async def test_is_idempotent(db, audit_log, make_bare_portfolio, alice):
    await make_bare_portfolio("Birch Ln", created_by=alice.id)

    first = await repair_owner_memberships(db, audit=audit_log)
    second = await repair_owner_memberships(db, audit=audit_log)

    assert len(first.fixed) == 1
    assert second.fixed == []
    assert second.already_present == first.fixed
    assert len(await audit_log.query()) == 1


@pytest.mark.asyncio
async def test_consistent_portfolio_untouched(db, audit_log, oak_st):
    report = await repair_owner_memberships(db, audit=audit_log)

    assert report.already_present == [oak_st.id]
    assert report.fixed == []


@pytest.mark.asyncio
async def test_existing_role_not_overwritten(db, ledger, audit_log, add_member, oak_st, alice, bob):
    from portfolio_access.models import Portfolio

    # Bob is recorded as creator but only holds a viewer membership
    await add_member(oak_st.id, bob, PortfolioRole.VIEWER, alice.id)
    async with db.transaction() as session:
        (await session.get(Portfolio, oak_st.id)).created_by = bob.id

    report = await repair_owner_memberships(db, audit=audit_log)

    assert report.already_present == [oak_st.id]
    assert await ledger.resolve_role(oak_st.id, bob.id) == PortfolioRole.VIEWER


@pytest.mark.asyncio
async def test_skips_missing_creator(db, audit_log, make_bare_portfolio, make_user):
    orphan = await make_bare_portfolio("No Creator")
    ghost = await make_user("ghost@example.com")
    deleted = await make_bare_portfolio("Deleted Creator", created_by=ghost.id)
    async with db.transaction() as session:
        await session.delete(await session.get(User, ghost.id))

    report = await repair_owner_memberships(db, audit=audit_log)

    # Deleting the user nulls created_by, so both land in skipped
    assert set(report.skipped) == {orphan.id, deleted.id}
    assert report.fixed == []
    assert await audit_log.query() == []


@pytest.mark.asyncio
async def test_dry_run_writes_nothing(db, ledger, audit_log, make_bare_portfolio, alice):
    portfolio = await make_bare_portfolio("Birch Ln", created_by=alice.id)

    report = await repair_owner_memberships(db, audit=audit_log, dry_run=True)

    assert report.fixed == [portfolio.id]
    assert report.summary().startswith("[dry run]")
    assert await ledger.resolve_role(portfolio.id, alice.id) is NOT_A_MEMBER
    assert await audit_log.query() == []


def test_report_summary():
    report = OwnerRepairReport(fixed=["a"], already_present=["b", "c"], skipped=[])
    assert report.total == 3
    assert report.summary() == "3 portfolio(s): 1 fixed, 2 already present, 0 skipped"
