"""Smoke tests for the public import surface of portfolio_access."""

import importlib


def test_top_level_imports_available():
    module = importlib.import_module("portfolio_access")

    # Services used by application code
    assert hasattr(module, "MembershipLedger"), "MembershipLedger should be exported"
    assert hasattr(module, "InvitationService"), "InvitationService should be exported"
    assert hasattr(module, "AccessResolver"), "AccessResolver should be exported"
    assert hasattr(module, "AuditLog"), "AuditLog should be exported"
    assert hasattr(module, "repair_owner_memberships"), "Owner repair should be callable from application code"

    # Declarative base should be discoverable for migration scripts
    assert hasattr(module, "Base")


def test_schema_exports_do_not_shadow_models():
    module = importlib.import_module("portfolio_access")

    assert module.Membership is not module.MembershipSchema
    assert module.Membership.__tablename__ == "memberships"
    assert "model_config" in vars(module.MembershipSchema)


def test_all_names_resolve():
    module = importlib.import_module("portfolio_access")

    missing = [name for name in module.__all__ if not hasattr(module, name)]
    assert missing == []
