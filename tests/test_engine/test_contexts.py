"""Tests for context discovery, per-session switching and temporary elevation."""
from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import delete

from permission_engine.engine.contexts import MembershipValidator, ValidationOutcome
from permission_engine.engine.facade import build_engine
from permission_engine.errors import (
    ContextExpired,
    ContextNotFound,
    IdentityNotFound,
    UnknownPermission,
    ValidationFailed,
)
from permission_engine.models import ProjectAssignmentRow
from permission_engine.types import ContextType, GrantOptions


class RejectingValidator:
    def __init__(self, reason="outside business hours"):
        self.reason = reason
        self.seen = []

    def validate(self, user_id, context):
        self.seen.append(context.id)
        return ValidationOutcome(False, self.reason)


@pytest.fixture
def member_of_two(engine, add_membership, add_project, clock):
    add_membership("u-emp", "finance", tier="employee", name="Finance")
    add_project("u-emp", "apollo", ["orders.read", "reports.export"], name="Apollo", expires_at=clock.now + timedelta(days=1))
    return engine


def test_available_contexts_default_first(member_of_two):
    contexts = member_of_two.available_contexts("u-emp")

    assert [c.id for c in contexts] == ["dept_sales", "dept_finance", "project_apollo"]
    default = contexts[0]
    assert default.is_default
    assert default.type is ContextType.DEPARTMENT
    assert default.permissions == frozenset({"clients.read"})
    assert default.requires_validation

    finance = contexts[1]
    assert finance.display_name == "Finance"
    assert finance.permissions == frozenset({"reports.read"})

    project = contexts[2]
    assert project.type is ContextType.PROJECT
    assert project.permissions == frozenset({"orders.read", "reports.export"})


def test_department_context_follows_member_tier(engine):
    (sales,) = engine.available_contexts("u-mgr")
    assert sales.permissions == frozenset({"clients.read", "clients.update"})
    assert sales.metadata["tier"] == "manager"


def test_expired_project_is_not_offered(engine, add_project, clock):
    add_project("u-emp", "old", ["orders.read"], expires_at=clock.now - timedelta(hours=1))

    assert "project_old" not in [c.id for c in engine.available_contexts("u-emp")]
    with pytest.raises(ContextExpired):
        engine.switch_to("u-emp", "s1", "project_old")


def test_unknown_context(engine):
    with pytest.raises(ContextNotFound):
        engine.switch_to("u-emp", "s1", "dept_hr")


def test_unknown_user_has_no_contexts(engine):
    with pytest.raises(IdentityNotFound):
        engine.available_contexts("nobody")


def test_switch_records_previous_context_and_audits(member_of_two):
    first = member_of_two.switch_to("u-emp", "s1", "dept_sales")
    second = member_of_two.switch_to("u-emp", "s1", "project_apollo")

    assert first.success and first.previous_context_id is None
    assert second.previous_context_id == "dept_sales"
    assert second.context.id == "project_apollo"
    assert {"orders.read", "reports.export"} <= second.effective_permissions

    switches = member_of_two.get_audit_trail("u-emp")
    assert [e.resource for e in switches if e.action == "context.switch"] == ["project_apollo", "dept_sales"]
    assert switches[0].metadata["previous_context"] == "dept_sales"
    assert switches[0].metadata["context_type"] == "project"


def test_sessions_do_not_share_active_context(member_of_two):
    member_of_two.switch_to("u-emp", "laptop", "dept_sales")
    member_of_two.switch_to("u-emp", "phone", "project_apollo")

    assert member_of_two.contexts.current_context("u-emp", "laptop").id == "dept_sales"
    assert member_of_two.contexts.current_context("u-emp", "phone").id == "project_apollo"
    assert member_of_two.contexts.current_context("u-emp", "tablet") is None


def test_permission_in_context_is_intersection(member_of_two):
    member_of_two.switch_to("u-emp", "s1", "dept_sales")

    assert member_of_two.has_permission_in_context("u-emp", "s1", "clients.read")
    # Held through the role, but not listed by the department context.
    assert not member_of_two.has_permission_in_context("u-emp", "s1", "orders.read")

    member_of_two.switch_to("u-emp", "s1", "project_apollo")
    assert member_of_two.has_permission_in_context("u-emp", "s1", "orders.read")
    # Listed by the project, but the user does not hold it.
    assert not member_of_two.has_permission_in_context("u-emp", "s1", "reports.export")


def test_no_active_context_means_no_permission(engine):
    assert engine.has_permission_in_context("u-emp", "fresh-session", "orders.read") is False
    assert engine.has_permission_in_context("nobody", "fresh-session", "orders.read") is False


def test_denial_applies_inside_context(member_of_two):
    member_of_two.resolver.grant_permission("u-emp", "orders.read", GrantOptions(granted=False, reason="fraud hold"))
    member_of_two.switch_to("u-emp", "s1", "project_apollo")

    assert not member_of_two.has_permission_in_context("u-emp", "s1", "orders.read")


def test_universal_user_is_still_bounded_by_context(engine, add_project):
    add_project("u-root", "ops", ["users.manage"])
    engine.switch_to("u-root", "s1", "project_ops")

    assert engine.has_permission_in_context("u-root", "s1", "users.manage")
    assert not engine.has_permission_in_context("u-root", "s1", "orders.read")


def test_validation_failure_is_audited_and_raised(seeded, settings, clock):
    validator = RejectingValidator()
    engine = build_engine(settings, seeded, validator=validator, clock=clock, initialize=False)

    with pytest.raises(ValidationFailed) as excinfo:
        engine.switch_to("u-emp", "s1", "dept_sales")

    assert excinfo.value.reason == "outside business hours"
    assert validator.seen == ["dept_sales"]
    (entry,) = engine.get_audit_trail("u-emp")
    assert entry.action == "context.switch"
    assert entry.result.value == "DENIED"
    assert engine.contexts.current_context("u-emp", "s1") is None


def test_default_validator_rejects_lost_project_assignment(engine, add_project, session_factory):
    add_project("u-emp", "apollo", ["orders.read"])
    (project,) = [c for c in engine.available_contexts("u-emp") if c.id == "project_apollo"]

    with session_factory() as db:
        db.execute(delete(ProjectAssignmentRow))
        db.commit()

    outcome = MembershipValidator(engine.store, engine.identities).validate("u-emp", project)
    assert not outcome.valid
    assert "apollo" in outcome.reason


# ---- Temporary elevation ------------------------------------------------------------


def test_elevation_creates_temporary_context(engine, clock):
    context = engine.contexts.elevate(
        "u-emp", "yearend", ["reports.export"], timedelta(hours=2), granted_by="u-mgr", reason="year end close"
    )

    assert context.id == "temp_yearend"
    assert context.type is ContextType.TEMPORARY
    assert context.expires_at == clock.now + timedelta(hours=2)
    assert not context.requires_validation
    assert "temp_yearend" in [c.id for c in engine.available_contexts("u-emp")]

    (entry,) = engine.get_audit_trail("u-emp")
    assert entry.action == "context.elevate"
    assert entry.performed_by == "u-mgr"
    assert entry.severity == "high"
    assert entry.requires_review


def test_temporary_context_grants_its_own_codes(engine):
    engine.contexts.elevate("u-emp", "yearend", ["reports.export"], timedelta(hours=2), granted_by="u-mgr", reason="close")
    engine.switch_to("u-emp", "s1", "temp_yearend")

    assert engine.has_permission_in_context("u-emp", "s1", "reports.export")
    assert not engine.has_permission_in_context("u-emp", "s1", "users.manage")


def test_temporary_context_skips_validation(seeded, settings, clock):
    engine = build_engine(settings, seeded, validator=RejectingValidator(), clock=clock, initialize=False)
    engine.contexts.elevate("u-emp", "oncall", ["orders.approve"], timedelta(hours=1), granted_by="u-mgr", reason="pager")

    result = engine.switch_to("u-emp", "s1", "temp_oncall")
    assert result.success


def test_elevations_with_same_name_merge_and_live_until_latest(engine, clock):
    engine.contexts.elevate("u-emp", "audit", ["reports.export"], timedelta(hours=4), granted_by="u-mgr", reason="a")
    context = engine.contexts.elevate("u-emp", "audit", ["reports.read"], timedelta(hours=1), granted_by="u-mgr", reason="b")

    assert context.permissions == frozenset({"reports.export", "reports.read"})
    assert context.expires_at == clock.now + timedelta(hours=4)

    clock.advance(hours=2)
    (live,) = [c for c in engine.available_contexts("u-emp") if c.id == "temp_audit"]
    assert live.permissions == frozenset({"reports.export"})


def test_extended_temporary_context_can_be_switched_to(engine, clock):
    engine.contexts.elevate("u-emp", "audit", ["reports.read"], timedelta(hours=1), granted_by="u-mgr", reason="a")
    clock.advance(minutes=30)
    extended = engine.contexts.elevate("u-emp", "audit", ["reports.read"], timedelta(hours=2), granted_by="u-mgr", reason="b")
    assert extended.expires_at == clock.now + timedelta(hours=2)

    clock.advance(minutes=45)
    assert "temp_audit" in [c.id for c in engine.available_contexts("u-emp")]

    result = engine.switch_to("u-emp", "s1", "temp_audit")
    assert result.context.id == "temp_audit"
    assert engine.has_permission_in_context("u-emp", "s1", "reports.read")


def test_elevation_arguments_are_validated(engine):
    with pytest.raises(ValidationFailed):
        engine.contexts.elevate("u-emp", "x", [], timedelta(hours=1), granted_by="u-mgr", reason="r")
    with pytest.raises(ValidationFailed):
        engine.contexts.elevate("u-emp", "x", ["reports.read"], timedelta(hours=25), granted_by="u-mgr", reason="r")
    with pytest.raises(ValidationFailed):
        engine.contexts.elevate("u-emp", "x", ["reports.read"], timedelta(0), granted_by="u-mgr", reason="r")
    with pytest.raises(UnknownPermission):
        engine.contexts.elevate("u-emp", "x", ["rockets.launch"], timedelta(hours=1), granted_by="u-mgr", reason="r")
    with pytest.raises(IdentityNotFound):
        engine.contexts.elevate("nobody", "x", ["reports.read"], timedelta(hours=1), granted_by="u-mgr", reason="r")


def test_expired_temporary_context_is_dropped_from_session(engine, clock):
    engine.contexts.elevate("u-emp", "yearend", ["reports.export"], timedelta(hours=2), granted_by="u-mgr", reason="close")
    engine.switch_to("u-emp", "s1", "temp_yearend")

    clock.advance(hours=3)

    assert engine.contexts.current_context("u-emp", "s1") is None
    assert not engine.has_permission_in_context("u-emp", "s1", "reports.export")
    with pytest.raises(ContextExpired):
        engine.switch_to("u-emp", "s2", "temp_yearend")


def test_sweep_deactivates_elevations_and_clears_sessions(engine, clock):
    engine.contexts.elevate("u-emp", "yearend", ["reports.export"], timedelta(hours=2), granted_by="u-mgr", reason="close")
    engine.switch_to("u-emp", "s1", "temp_yearend")
    engine.switch_to("u-emp", "s2", "dept_sales")

    clock.advance(hours=3)
    assert engine.contexts.sweep_expired() == 1

    assert engine.store.get_active_context_id("u-emp", "s1") is None
    assert engine.store.get_active_context_id("u-emp", "s2") == "dept_sales"
    latest = engine.get_audit_trail("u-emp")[0]
    assert latest.action == "context.expire"
    assert latest.performed_by == "system"
    assert latest.metadata["sessions_cleared"] == 1
    assert engine.verify_chain("u-emp")

    assert engine.contexts.sweep_expired() == 0


def test_sweep_keeps_session_while_a_same_name_elevation_lives(engine, clock):
    engine.contexts.elevate("u-emp", "audit", ["reports.read"], timedelta(hours=1), granted_by="u-mgr", reason="a")
    engine.contexts.elevate("u-emp", "audit", ["reports.export"], timedelta(hours=5), granted_by="u-mgr", reason="b")
    engine.switch_to("u-emp", "s1", "temp_audit")

    clock.advance(hours=2)
    assert engine.contexts.sweep_expired() == 1
    assert engine.store.get_active_context_id("u-emp", "s1") == "temp_audit"
