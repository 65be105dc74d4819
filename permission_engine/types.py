"""
Domain types shared by the store, the resolver, the context switcher and the
audit recorder.

All of them are frozen dataclasses: the ORM rows in `permission_engine.models`
are converted to these at the store boundary so nothing above the store ever
holds a live SQLAlchemy object.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Union


def utcnow() -> datetime:
    """Naive UTC timestamp (SQLite drops tzinfo, so everything stays naive)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class PermissionStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    REVOKED = "revoked"
    # Delegated records whose delegation lapsed.
    EXPIRED = "expired"


class PermissionSource(str, Enum):
    MANUAL = "manual"
    TEMPLATE = "template"
    DELEGATION = "delegation"


class ContextType(str, Enum):
    DEPARTMENT = "department"
    PROJECT = "project"
    TEMPORARY = "temporary"


class AuditResult(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    DENIED = "DENIED"


# ---- Catalog ------------------------------------------------------------------------


@dataclass(frozen=True)
class PermissionDefinition:
    code: str
    category: str
    resource: str
    action: str
    implies: frozenset[str] = frozenset()
    implied_by: frozenset[str] = frozenset()
    is_active: bool = True
    description: str | None = None

    @property
    def is_wildcard(self) -> bool:
        return self.code.endswith("*")


@dataclass(frozen=True)
class RoleDefinition:
    code: str
    permissions: frozenset[str]
    inherited_roles: tuple[str, ...] = ()
    is_active: bool = True
    level: int = 0
    is_universal: bool = False


@dataclass(frozen=True)
class DepartmentGrant:
    department_id: str
    permission_code: str
    applies_to_employees: bool = True
    applies_to_managers: bool = True
    granted: bool = True


@dataclass(frozen=True)
class UserPermission:
    """Individual override: `granted=False` is an explicit denial."""

    id: int
    user_id: str
    permission_code: str
    granted: bool
    status: PermissionStatus
    source: PermissionSource = PermissionSource.MANUAL
    context: str | None = None
    conditions: Mapping[str, Any] = field(default_factory=dict)
    expires_at: datetime | None = None
    reason: str | None = None

    @property
    def is_conditional(self) -> bool:
        return bool(self.conditions)


# ---- Identity and memberships -------------------------------------------------------


@dataclass(frozen=True)
class Identity:
    """What the identity source knows about a user."""

    user_id: str
    role: str
    department_id: str | None
    employee_tier: str | None
    active: bool = True
    locked: bool = False


@dataclass(frozen=True)
class DepartmentMembership:
    user_id: str
    department_id: str
    tier: str
    department_name: str | None = None
    active: bool = True


@dataclass(frozen=True)
class ProjectAssignment:
    user_id: str
    project_id: str
    permissions: frozenset[str]
    project_name: str | None = None
    role: str | None = None
    expires_at: datetime | None = None
    active: bool = True


@dataclass(frozen=True)
class TemporaryElevation:
    id: int
    user_id: str
    context_name: str
    permission_code: str
    expires_at: datetime
    granted_by: str | None = None
    reason: str | None = None
    active: bool = True


# ---- Request context ----------------------------------------------------------------


_RECOGNIZED_CONTEXT_KEYS = {
    "amount": "amount",
    "location": "location",
    "departmentId": "department_id",
    "department_id": "department_id",
    "timestamp": "timestamp",
}


@dataclass(frozen=True)
class RequestContext:
    """
    Per-request facts supplied by the calling middleware.

    Only the recognized fields are interpreted by the engine; anything else is
    carried in `extra` untouched.
    """

    amount: float | None = None
    location: str | None = None
    department_id: str | None = None
    timestamp: datetime | None = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any] | None) -> RequestContext:
        if not raw:
            return cls()
        known: dict[str, Any] = {}
        extra: dict[str, Any] = {}
        for key, value in raw.items():
            target = _RECOGNIZED_CONTEXT_KEYS.get(key)
            if target is None:
                extra[key] = value
            else:
                known[target] = value
        if known.get("amount") is not None:
            known["amount"] = float(known["amount"])
        if known.get("department_id") is not None:
            known["department_id"] = str(known["department_id"])
        return cls(extra=extra, **known)

    def signature_fields(self) -> dict[str, Any]:
        """Fields that take part in the cache key (timestamp excluded)."""
        return {
            "amount": self.amount,
            "location": self.location,
            "department_id": self.department_id,
            "extra": dict(self.extra),
        }


ContextLike = Union[RequestContext, Mapping[str, Any], None]


def as_request_context(context: ContextLike) -> RequestContext:
    if isinstance(context, RequestContext):
        return context
    return RequestContext.from_mapping(context)


# ---- Resolution artifacts -----------------------------------------------------------


@dataclass(frozen=True)
class EffectivePermissionSet:
    user_id: str
    context_signature: str
    codes: frozenset[str]
    denied: frozenset[str]
    resolved_at: datetime
    universal: bool = False
    # Conditional overrides are evaluated per check, against the live request context.
    conditional: tuple[UserPermission, ...] = ()


@dataclass(frozen=True)
class GrantOptions:
    source: PermissionSource = PermissionSource.MANUAL
    context: str | None = None
    conditions: Mapping[str, Any] = field(default_factory=dict)
    expires_at: datetime | None = None
    requires_approval: bool = False
    reason: str | None = None
    performed_by: str | None = None
    session_id: str | None = None
    granted: bool = True
    # Extra audit fields, e.g. business_justification or legal_basis.
    audit_metadata: Mapping[str, Any] = field(default_factory=dict)


# ---- Contexts -----------------------------------------------------------------------


@dataclass(frozen=True)
class PermissionContext:
    id: str
    type: ContextType
    permissions: frozenset[str]
    display_name: str
    is_default: bool = False
    requires_validation: bool = False
    expires_at: datetime | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


@dataclass(frozen=True)
class SwitchResult:
    success: bool
    user_id: str
    session_id: str
    context: PermissionContext
    previous_context_id: str | None
    effective_permissions: frozenset[str]
    switched_at: datetime


# ---- Delegation ---------------------------------------------------------------------


class DelegationType(str, Enum):
    TEMPORARY = "temporary"
    PROJECT = "project"
    EMERGENCY = "emergency"
    COVERAGE = "coverage"


class DelegationStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    REVOKED = "revoked"
    EXPIRED = "expired"


@dataclass(frozen=True)
class Delegation:
    """Permissions a manager lent to an employee until `expires_at`."""

    id: int
    manager_id: str
    employee_id: str
    delegation_type: DelegationType
    permissions: tuple[str, ...]
    status: DelegationStatus
    expires_at: datetime
    created_at: datetime
    reason: str | None = None
    approved_by: str | None = None
    revoked_by: str | None = None
    revoked_reason: str | None = None

    @property
    def is_live(self) -> bool:
        return self.status in (DelegationStatus.PENDING, DelegationStatus.ACTIVE)


# ---- Audit --------------------------------------------------------------------------


@dataclass(frozen=True)
class AuditEntry:
    user_id: str
    action: str
    result: AuditResult
    resource: str | None = None
    session_id: str | None = None
    performed_by: str | None = None
    timestamp: datetime | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    framework: str | None = None
    severity: str | None = None
    requires_review: bool = False
    requirement_tags: tuple[str, ...] = ()
    encrypted_fields: tuple[str, ...] = ()
    sequence: int | None = None
    previous_hash: str | None = None
    hash: str | None = None
    id: int | None = None
    archived: bool = False

    def hash_payload(self) -> dict[str, Any]:
        """Fields covered by the chain hash (everything except the hashes and row id)."""
        return {
            "user_id": self.user_id,
            "session_id": self.session_id,
            "action": self.action,
            "resource": self.resource,
            "performed_by": self.performed_by,
            "result": self.result.value,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "metadata": dict(self.metadata),
            "framework": self.framework,
            "severity": self.severity,
            "requires_review": self.requires_review,
            "requirement_tags": list(self.requirement_tags),
            "encrypted_fields": list(self.encrypted_fields),
            "sequence": self.sequence,
        }


@dataclass(frozen=True)
class AuditFilter:
    start: datetime | None = None
    end: datetime | None = None
    action: str | None = None
    result: AuditResult | None = None
    user_id: str | None = None
    include_archived: bool = False
    limit: int | None = 1000
