"""
Audit event classification and compliance frameworks.

Each recorded action gets a severity and a review flag; each framework lists
requirements (tagged), the actions a requirement covers and the fields an entry
must carry to count as compliant with it. Required fields are looked up on the
entry first and then in its metadata.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Mapping

from permission_engine.errors import UnknownFramework
from permission_engine.types import AuditEntry


class AuditAction(str, Enum):
    PERMISSION_GRANT = "permission.grant"
    PERMISSION_DENY = "permission.deny"
    PERMISSION_REVOKE = "permission.revoke"
    PERMISSION_APPROVE = "permission.approve"
    PERMISSION_CHECK = "permission.check"
    CONTEXT_SWITCH = "context.switch"
    CONTEXT_ELEVATE = "context.elevate"
    CONTEXT_EXPIRE = "context.expire"
    DEPARTMENT_GRANT_SET = "department.grant.set"
    DEPARTMENT_GRANT_REMOVE = "department.grant.remove"
    ROLE_UPDATE = "role.update"
    DELEGATION_CREATE = "delegation.create"
    DELEGATION_APPROVE = "delegation.approve"
    DELEGATION_REVOKE = "delegation.revoke"
    DELEGATION_EXPIRE = "delegation.expire"


@dataclass(frozen=True)
class EventType:
    severity: str
    category: str
    requires_review: bool


EVENT_TYPES: Mapping[str, EventType] = {
    AuditAction.PERMISSION_GRANT.value: EventType("medium", "permission_change", False),
    AuditAction.PERMISSION_DENY.value: EventType("medium", "override", True),
    AuditAction.PERMISSION_REVOKE.value: EventType("medium", "permission_change", True),
    AuditAction.PERMISSION_APPROVE.value: EventType("medium", "permission_change", False),
    AuditAction.PERMISSION_CHECK.value: EventType("low", "access", False),
    AuditAction.CONTEXT_SWITCH.value: EventType("low", "context", False),
    AuditAction.CONTEXT_ELEVATE.value: EventType("high", "elevation", True),
    AuditAction.CONTEXT_EXPIRE.value: EventType("low", "automated", False),
    AuditAction.DEPARTMENT_GRANT_SET.value: EventType("medium", "department", True),
    AuditAction.DEPARTMENT_GRANT_REMOVE.value: EventType("medium", "department", True),
    AuditAction.ROLE_UPDATE.value: EventType("high", "role_change", True),
    AuditAction.DELEGATION_CREATE.value: EventType("high", "delegation", True),
    AuditAction.DELEGATION_APPROVE.value: EventType("medium", "delegation", False),
    AuditAction.DELEGATION_REVOKE.value: EventType("medium", "delegation", True),
    AuditAction.DELEGATION_EXPIRE.value: EventType("low", "automated", False),
}

# Unknown actions are treated as noteworthy rather than ignored.
_UNCLASSIFIED = EventType("medium", "other", True)

SEVERITIES = ("low", "medium", "high", "critical")


def classify(action: str) -> EventType:
    return EVENT_TYPES.get(action, _UNCLASSIFIED)


_ACCESS_CHANGES = frozenset(
    {
        AuditAction.PERMISSION_GRANT.value,
        AuditAction.PERMISSION_DENY.value,
        AuditAction.PERMISSION_REVOKE.value,
        AuditAction.PERMISSION_APPROVE.value,
        AuditAction.DEPARTMENT_GRANT_SET.value,
        AuditAction.DEPARTMENT_GRANT_REMOVE.value,
        AuditAction.ROLE_UPDATE.value,
        AuditAction.DELEGATION_APPROVE.value,
        AuditAction.DELEGATION_REVOKE.value,
    }
)
_ACCESS_DECISIONS = frozenset({AuditAction.PERMISSION_CHECK.value, AuditAction.CONTEXT_SWITCH.value})
_ELEVATIONS = frozenset({AuditAction.CONTEXT_ELEVATE.value, AuditAction.DELEGATION_CREATE.value})


@dataclass(frozen=True)
class Requirement:
    tag: str
    description: str
    # None covers every action.
    actions: frozenset[str] | None
    required_fields: tuple[str, ...]

    def covers(self, action: str) -> bool:
        return self.actions is None or action in self.actions


@dataclass(frozen=True)
class ComplianceFramework:
    name: str
    title: str
    version: str
    retention_days: int
    requirements: tuple[Requirement, ...]
    encryption_required: bool = True

    def tags_for(self, action: str) -> tuple[str, ...]:
        return tuple(r.tag for r in self.requirements if r.covers(action))

    def requirement(self, tag: str) -> Requirement | None:
        for requirement in self.requirements:
            if requirement.tag == tag:
                return requirement
        return None


FRAMEWORKS: Mapping[str, ComplianceFramework] = {
    "PCI_DSS": ComplianceFramework(
        name="PCI_DSS",
        title="PCI DSS Level 1",
        version="4.0",
        retention_days=365,
        requirements=(
            Requirement(
                tag="PCI-10.2.1",
                description="Individual user access decisions are logged",
                actions=_ACCESS_DECISIONS,
                required_fields=("user_id", "action", "timestamp", "result"),
            ),
            Requirement(
                tag="PCI-10.2.2",
                description="Changes to access rights are logged with actor and reason",
                actions=_ACCESS_CHANGES | _ELEVATIONS,
                required_fields=("user_id", "resource", "action", "timestamp", "performed_by", "reason"),
            ),
        ),
    ),
    "SOX": ComplianceFramework(
        name="SOX",
        title="Sarbanes-Oxley Act",
        version="2002",
        retention_days=7 * 365,
        requirements=(
            Requirement(
                tag="SOX-404-ACCESS",
                description="Access changes carry a business justification",
                actions=_ACCESS_CHANGES,
                required_fields=("user_id", "resource", "action", "timestamp", "performed_by", "business_justification"),
            ),
            Requirement(
                tag="SOX-404-ELEVATION",
                description="Privilege elevations are attributed and justified",
                actions=_ELEVATIONS,
                required_fields=("user_id", "performed_by", "reason"),
            ),
        ),
    ),
    "GDPR": ComplianceFramework(
        name="GDPR",
        title="General Data Protection Regulation",
        version="2018",
        retention_days=6 * 365,
        requirements=(
            Requirement(
                tag="GDPR-30",
                description="Records of processing state a legal basis",
                actions=None,
                required_fields=("user_id", "action", "timestamp", "legal_basis"),
            ),
            Requirement(
                tag="GDPR-32",
                description="Access control decisions are recorded",
                actions=_ACCESS_DECISIONS,
                required_fields=("user_id", "result", "timestamp"),
            ),
        ),
    ),
}


def get_framework(name: str) -> ComplianceFramework:
    framework = FRAMEWORKS.get(name)
    if framework is None:
        raise UnknownFramework(f"unknown compliance framework: {name!r}")
    return framework


def missing_fields(entry: AuditEntry, required: tuple[str, ...]) -> list[str]:
    """Required fields that are absent (or empty) on the entry and in its metadata."""

    missing: list[str] = []
    for name in required:
        value = getattr(entry, name, None)
        if value in (None, "", [], {}):
            value = entry.metadata.get(name)
        if value in (None, "", [], {}):
            missing.append(name)
    return missing
