"""Tests for compliance frameworks and report generation."""
from __future__ import annotations

import logging

import pytest
from sqlalchemy import update

from permission_engine.audit.encryption import FieldEncryptor
from permission_engine.audit.frameworks import FRAMEWORKS, classify, get_framework, missing_fields
from permission_engine.audit.recorder import AuditRecorder
from permission_engine.errors import ChainIntegrityViolation, UnknownFramework
from permission_engine.models import AuditEntryRow
from permission_engine.types import AuditEntry, AuditFilter, AuditResult, GrantOptions


@pytest.fixture
def recorder(session_factory, clock):
    return AuditRecorder(session_factory, clock=clock)


def _change(user_id="u1", framework=None, **kwargs):
    kwargs.setdefault("resource", "orders.read")
    return AuditEntry(
        user_id=user_id, action="permission.grant", result=AuditResult.SUCCESS, framework=framework, **kwargs
    )


def test_framework_registry():
    assert set(FRAMEWORKS) == {"PCI_DSS", "SOX", "GDPR"}
    assert get_framework("SOX").retention_days == 7 * 365
    assert get_framework("PCI_DSS").tags_for("permission.check") == ("PCI-10.2.1",)
    assert get_framework("GDPR").tags_for("role.update") == ("GDPR-30",)
    assert get_framework("GDPR").requirement("GDPR-32").required_fields == ("user_id", "result", "timestamp")
    with pytest.raises(UnknownFramework):
        get_framework("HIPAA")


def test_classification():
    assert classify("permission.check").severity == "low"
    assert classify("context.elevate").requires_review
    assert classify("role.update").severity == "high"


def test_missing_fields_looks_in_metadata():
    entry = _change(performed_by="admin", metadata={"reason": "onboarding"})
    assert missing_fields(entry, ("user_id", "performed_by", "reason", "business_justification")) == [
        "business_justification"
    ]


def test_empty_report_is_compliant(recorder):
    report = recorder.generate_compliance_report()

    assert report.total_entries == 0
    assert all(r.percentage == 100.0 and r.passed for r in report.requirements)
    assert report.status == "compliant"
    assert report.passed


def test_report_percentages_per_requirement(recorder):
    recorder.record(AuditEntry(user_id="u1", action="permission.check", result=AuditResult.SUCCESS, resource="a"))
    recorder.record(_change(performed_by="admin", metadata={"reason": "onboarding"}))
    recorder.record(_change(resource="orders.create"))

    report = recorder.generate_compliance_report("PCI_DSS")
    by_tag = {r.tag: r for r in report.requirements}

    access = by_tag["PCI-10.2.1"]
    assert (access.total, access.compliant, access.percentage, access.passed) == (1, 1, 100.0, True)

    changes = by_tag["PCI-10.2.2"]
    assert (changes.total, changes.compliant, changes.percentage, changes.passed) == (2, 1, 50.0, False)
    assert changes.missing_fields == {"performed_by": 1, "reason": 1}

    assert report.status == "non-compliant"
    assert not report.passed
    assert report.total_entries == 3
    assert report.by_action == {"permission.check": 1, "permission.grant": 2}
    assert report.verified_users == ("u1",)


def test_report_only_counts_its_framework(recorder):
    recorder.record(_change(framework="SOX", performed_by="cfo", metadata={"business_justification": "audit prep"}))
    recorder.record(_change())

    report = recorder.generate_compliance_report("SOX")

    assert report.total_entries == 1
    (access, elevation) = report.requirements
    assert access.tag == "SOX-404-ACCESS" and access.passed and access.total == 1
    assert elevation.total == 0 and elevation.percentage == 100.0


def test_gdpr_requires_legal_basis(recorder):
    recorder.record(_change(framework="GDPR", metadata={"legal_basis": "contract"}))
    recorder.record(_change(framework="GDPR"))

    (record_keeping, _) = recorder.generate_compliance_report("GDPR").requirements
    assert record_keeping.percentage == 50.0
    assert record_keeping.missing_fields == {"legal_basis": 1}


def test_many_high_severity_entries_require_review(recorder):
    for i in range(11):
        recorder.record(
            AuditEntry(
                user_id="admin",
                action="role.update",
                result=AuditResult.SUCCESS,
                resource=f"role:r{i}",
                performed_by="admin",
                metadata={"reason": "restructure"},
            )
        )

    report = recorder.generate_compliance_report()
    assert report.passed
    assert report.status == "requires-review"


def test_critical_entry_makes_report_non_compliant(recorder):
    recorder.record(
        AuditEntry(user_id="u1", action="permission.check", result=AuditResult.DENIED, resource="a", severity="critical")
    )

    report = recorder.generate_compliance_report()
    assert report.passed
    assert report.status == "non-compliant"


def test_encrypted_fields_still_count_as_present(session_factory, clock):
    recorder = AuditRecorder(
        session_factory, encryptor=FieldEncryptor("ab" * 32), encrypted_fields=("reason",), clock=clock
    )
    recorder.record(_change(performed_by="admin", metadata={"reason": "onboarding"}))

    changes = recorder.generate_compliance_report().requirements[1]
    assert changes.passed


def test_tampered_chain_halts_the_report(recorder, session_factory, caplog):
    recorder.record(_change(performed_by="admin", metadata={"reason": "a"}))
    recorder.record(_change(performed_by="admin", metadata={"reason": "b"}))
    recorder.record(_change("u2", performed_by="admin", metadata={"reason": "c"}))

    with session_factory() as db:
        db.execute(
            update(AuditEntryRow)
            .where(AuditEntryRow.user_id == "u1", AuditEntryRow.sequence == 1)
            .values(performed_by="someone-else")
        )
        db.commit()

    with caplog.at_level(logging.CRITICAL):
        with pytest.raises(ChainIntegrityViolation) as excinfo:
            recorder.generate_compliance_report()

    assert excinfo.value.user_id == "u1"
    assert excinfo.value.sequence == 1
    assert "tampering" in caplog.text


def test_report_for_one_user_only_verifies_that_user(recorder, session_factory):
    recorder.record(_change("u1", performed_by="admin", metadata={"reason": "a"}))
    recorder.record(_change("u2", performed_by="admin", metadata={"reason": "b"}))
    with session_factory() as db:
        db.execute(update(AuditEntryRow).where(AuditEntryRow.user_id == "u2").values(resource="forged"))
        db.commit()

    report = recorder.generate_compliance_report(audit_filter=AuditFilter(user_id="u1", limit=None))
    assert report.verified_users == ("u1",)
    assert report.total_entries == 1


def test_engine_mutations_carry_compliance_fields(engine):
    engine.resolver.grant_permission(
        "u-emp",
        "reports.read",
        GrantOptions(
            performed_by="u-mgr",
            reason="month end",
            audit_metadata={"business_justification": "close books", "legal_basis": "contract"},
        ),
    )

    report = engine.generate_compliance_report("PCI_DSS")
    changes = {r.tag: r for r in report.requirements}["PCI-10.2.2"]
    assert changes.total == 1 and changes.passed
