"""Tests for override, department-grant and role mutations (and their audit entries)."""
from __future__ import annotations

from unittest.mock import patch

import pytest

from permission_engine.errors import (
    AlreadyGranted,
    AuditWriteFailed,
    CatalogError,
    IdentityNotFound,
    NotFound,
    UnknownPermission,
)
from permission_engine.types import GrantOptions, PermissionSource, PermissionStatus


def test_grant_records_override_and_audit_entry(engine):
    record = engine.resolver.grant_permission(
        "u-emp", "reports.read", GrantOptions(reason="monthly close", performed_by="u-mgr", session_id="s1")
    )

    assert record.status == PermissionStatus.ACTIVE
    assert record.granted is True

    (entry,) = engine.get_audit_trail("u-emp")
    assert entry.action == "permission.grant"
    assert entry.resource == "reports.read"
    assert entry.performed_by == "u-mgr"
    assert entry.session_id == "s1"
    assert entry.metadata["reason"] == "monthly close"
    assert "PCI-10.2.2" in entry.requirement_tags
    assert entry.sequence == 1


def test_denial_is_audited_as_deny(engine):
    engine.resolver.grant_permission("u-emp", "orders.create", GrantOptions(granted=False, performed_by="u-mgr"))

    (entry,) = engine.get_audit_trail("u-emp")
    assert entry.action == "permission.deny"
    assert entry.requires_review is True


def test_duplicate_grant_is_rejected(engine):
    engine.resolver.grant_permission("u-emp", "reports.read")

    with pytest.raises(AlreadyGranted):
        engine.resolver.grant_permission("u-emp", "reports.read")
    # A denial for the same code and scope collides too.
    with pytest.raises(AlreadyGranted):
        engine.resolver.grant_permission("u-emp", "reports.read", GrantOptions(granted=False))


def test_grant_validates_code_and_user(engine):
    with pytest.raises(UnknownPermission):
        engine.resolver.grant_permission("u-emp", "rockets.launch")
    with pytest.raises(IdentityNotFound):
        engine.resolver.grant_permission("nobody", "reports.read")


def test_revoke_without_active_record(engine):
    with pytest.raises(NotFound):
        engine.resolver.revoke_permission("u-emp", "reports.read")


def test_revoke_marks_record_and_requires_review(engine):
    engine.resolver.grant_permission("u-emp", "reports.read")
    (revoked,) = engine.resolver.revoke_permission(
        "u-emp", "reports.read", GrantOptions(performed_by="u-mgr", reason="left project")
    )

    assert revoked.status == PermissionStatus.REVOKED
    latest = engine.get_audit_trail("u-emp")[0]
    assert latest.action == "permission.revoke"
    assert latest.requires_review is True
    assert latest.metadata["revoked_records"] == 1


def test_pending_grant_needs_approval(engine):
    record = engine.resolver.grant_permission("u-emp", "reports.read", GrantOptions(requires_approval=True))

    assert record.status == PermissionStatus.PENDING
    assert "reports.read" not in engine.resolve_effective("u-emp")
    # A pending record blocks a second request for the same code.
    with pytest.raises(AlreadyGranted):
        engine.resolver.grant_permission("u-emp", "reports.read")

    approved = engine.resolver.approve_permission("u-emp", "reports.read", approved_by="u-mgr", reason="ok")
    assert approved.status == PermissionStatus.ACTIVE
    assert "reports.read" in engine.resolve_effective("u-emp")

    with pytest.raises(NotFound):
        engine.resolver.approve_permission("u-emp", "reports.read", approved_by="u-mgr")


def test_failed_audit_write_rolls_back_the_grant(engine):
    with patch.object(engine.audit, "append", side_effect=AuditWriteFailed("disk full")):
        with pytest.raises(AuditWriteFailed):
            engine.resolver.grant_permission("u-emp", "reports.read")

    assert engine.store.get_user_permission_records("u-emp") == []
    assert "reports.read" not in engine.resolve_effective("u-emp")


def test_failed_audit_write_rolls_back_the_revoke(engine):
    engine.resolver.grant_permission("u-emp", "reports.read")

    with patch.object(engine.audit, "append", side_effect=AuditWriteFailed("disk full")):
        with pytest.raises(AuditWriteFailed):
            engine.resolver.revoke_permission("u-emp", "reports.read")

    (record,) = engine.store.get_user_permission_records("u-emp")
    assert record.status == PermissionStatus.ACTIVE


def test_template_assignment_grants_role_codes_once(engine):
    granted = engine.resolver.assign_permission_template("u-legacy", "manager")

    assert sorted(r.permission_code for r in granted) == ["orders.approve", "orders.create", "orders.read"]
    assert all(r.source == PermissionSource.TEMPLATE for r in granted)
    assert engine.resolver.assign_permission_template("u-legacy", "manager") == []

    summary = engine.resolver.get_user_permission_summary("u-legacy")
    assert summary.by_source == {"template": 3}
    assert "orders.approve" in summary.effective


def test_template_for_unknown_role(engine):
    with pytest.raises(NotFound):
        engine.resolver.assign_permission_template("u-legacy", "astronaut")


def test_user_permission_summary(engine):
    engine.resolver.grant_permission("u-emp", "orders.create", GrantOptions(granted=False))
    engine.resolver.grant_permission("u-emp", "reports.read", GrantOptions(requires_approval=True))
    engine.resolver.grant_permission("u-emp", "payments.refund", GrantOptions(conditions={"maxAmount": 10}))
    engine.resolver.grant_permission("u-emp", "users.manage")
    engine.resolver.revoke_permission("u-emp", "users.manage")

    summary = engine.resolver.get_user_permission_summary("u-emp")

    assert summary.role == "employee"
    assert summary.department_id == "sales"
    assert summary.effective == ("clients.read", "orders.read")
    assert summary.denied == ("orders.create",)
    assert summary.pending == ("reports.read",)
    assert summary.conditional == ("payments.refund",)
    assert summary.revoked == 1
    assert summary.universal is False


def test_permission_hierarchy_groups_by_category_and_resource(engine):
    hierarchy = engine.resolver.get_permission_hierarchy()

    assert set(hierarchy) == {"sales", "finance", "admin"}
    assert {d.code for d in hierarchy["sales"]["orders"]} == {
        "orders.read",
        "orders.create",
        "orders.approve",
        "orders.*",
    }
    (export,) = [d for d in hierarchy["finance"]["reports"] if d.code == "reports.export"]
    assert export.implies == frozenset({"reports.read"})
    (read,) = [d for d in hierarchy["finance"]["reports"] if d.code == "reports.read"]
    assert read.implied_by == frozenset({"reports.export"})


# ---- Department grants and roles ----------------------------------------------------


def test_department_denial_removes_role_like_grant(engine):
    engine.resolver.set_department_grant("sales", "clients.read", granted=False, performed_by="u-root")

    assert engine.resolve_effective("u-emp") == frozenset({"orders.read", "orders.create"})


def test_department_grant_changes_are_audited_under_the_actor(engine):
    engine.resolver.set_department_grant(
        "finance",
        "reports.export",
        applies_to_employees=False,
        performed_by="u-root",
        reason="audit season",
        audit_metadata={"business_justification": "SOX walkthrough"},
    )

    (entry,) = engine.get_audit_trail("u-root")
    assert entry.action == "department.grant.set"
    assert entry.resource == "department:finance/reports.export"
    assert entry.metadata["applies_to_employees"] is False
    assert entry.metadata["business_justification"] == "SOX walkthrough"
    assert entry.requires_review is True


def test_remove_missing_department_grant(engine):
    with pytest.raises(NotFound):
        engine.resolver.remove_department_grant("sales", "payments.refund")


def test_deactivating_a_role(engine):
    engine.resolver.update_role("employee", is_active=False, performed_by="u-root", reason="reorg")

    assert engine.resolve_effective("u-emp") == frozenset({"clients.read"})
    (entry,) = engine.get_audit_trail("u-root")
    assert entry.action == "role.update"
    assert entry.severity == "high"


def test_update_role_rejects_inheritance_cycle(engine):
    with pytest.raises(CatalogError):
        engine.resolver.update_role("employee", inherited_roles=["manager"])


def test_update_role_validation(engine):
    with pytest.raises(UnknownPermission):
        engine.resolver.update_role("employee", permissions=["orders.read", "rockets.launch"])
    with pytest.raises(NotFound):
        engine.resolver.update_role("astronaut", permissions=["orders.read"])
    with pytest.raises(NotFound):
        engine.resolver.update_role("employee", inherited_roles=["astronaut"])
