"""
Working contexts and per-session context switching.

A user can act within one of several contexts: each department they belong
to (`dept_<id>`), each project they are assigned to (`project_<id>`) and each
named temporary elevation (`temp_<name>`). Every session has its own active
context, stored per (user, session).

Inside a context a permission holds only if the context lists it AND the
user actually has it; a temporary context grants its own listed codes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, Protocol

from permission_engine.audit.frameworks import AuditAction
from permission_engine.audit.recorder import AuditRecorder
from permission_engine.engine.matching import matches_any
from permission_engine.engine.resolver import PermissionResolver
from permission_engine.errors import (
    ContextExpired,
    ContextNotFound,
    IdentityNotFound,
    PermissionEngineError,
    UnknownPermission,
    ValidationFailed,
)
from permission_engine.models import TemporaryElevationRow
from permission_engine.store import IdentitySource, PermissionStore, PermissionWriter
from permission_engine.types import (
    AuditEntry,
    AuditResult,
    ContextType,
    DepartmentMembership,
    Identity,
    PermissionContext,
    RequestContext,
    SwitchResult,
    utcnow,
)

logger = logging.getLogger(__name__)

DEPARTMENT_PREFIX = "dept_"
PROJECT_PREFIX = "project_"
TEMPORARY_PREFIX = "temp_"


@dataclass(frozen=True)
class ValidationOutcome:
    valid: bool
    reason: str | None = None


class ContextValidator(Protocol):
    def validate(self, user_id: str, context: PermissionContext) -> ValidationOutcome: ...


class MembershipValidator:
    """Default validator: the user must still belong to the department / project / elevation."""

    def __init__(self, store: PermissionStore, identities: IdentitySource) -> None:
        self._store = store
        self._identities = identities

    def validate(self, user_id: str, context: PermissionContext) -> ValidationOutcome:
        if context.type is ContextType.DEPARTMENT:
            department_id = str(context.metadata.get("department_id"))
            identity = self._identities.get_identity(user_id)
            primary = identity is not None and identity.department_id == department_id
            if not primary and self._store.get_department_membership(user_id, department_id) is None:
                return ValidationOutcome(False, f"user is no longer a member of department {department_id}")
        elif context.type is ContextType.PROJECT:
            project_id = str(context.metadata.get("project_id"))
            if not any(a.project_id == project_id for a in self._store.get_project_assignments(user_id)):
                return ValidationOutcome(False, f"user is no longer assigned to project {project_id}")
        elif context.type is ContextType.TEMPORARY:
            name = context.metadata.get("context_name")
            if not any(e.context_name == name for e in self._store.get_temporary_elevations(user_id)):
                return ValidationOutcome(False, f"temporary access {name} is no longer active")
        return ValidationOutcome(True)


class ContextSwitcher:
    def __init__(
        self,
        store: PermissionStore,
        identities: IdentitySource,
        writer: PermissionWriter,
        resolver: PermissionResolver,
        audit: AuditRecorder,
        *,
        validator: ContextValidator | None = None,
        manager_tiers: Iterable[str] = ("manager", "director"),
        max_elevation_hours: int = 24,
        audit_checks: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._identities = identities
        self._writer = writer
        self._resolver = resolver
        self._audit = audit
        self._validator = validator or MembershipValidator(store, identities)
        self._manager_tiers = frozenset(manager_tiers)
        self._max_elevation = timedelta(hours=max_elevation_hours)
        self._audit_checks = audit_checks
        self._clock = clock

    # ---- Discovery ------------------------------------------------------------------

    def available_contexts(self, user_id: str) -> list[PermissionContext]:
        """Contexts the user may switch to right now; the default context comes first."""

        now = self._clock()
        return [c for c in self._contexts(user_id) if not c.is_expired(now)]

    def _contexts(self, user_id: str, include_expired: bool = False) -> list[PermissionContext]:
        identity = self._identities.get_identity(user_id)
        if identity is None:
            raise IdentityNotFound(f"unknown user {user_id!r}")

        contexts = self._department_contexts(identity)
        contexts.extend(self._project_contexts(user_id, include_expired))
        contexts.extend(self._temporary_contexts(user_id, include_expired))
        contexts.sort(key=lambda c: not c.is_default)
        return contexts

    def _department_contexts(self, identity: Identity) -> list[PermissionContext]:
        memberships = self._store.get_department_memberships(identity.user_id)
        if identity.department_id and not any(m.department_id == identity.department_id for m in memberships):
            memberships.insert(
                0,
                DepartmentMembership(
                    user_id=identity.user_id,
                    department_id=identity.department_id,
                    tier=identity.employee_tier or "employee",
                ),
            )

        contexts: list[PermissionContext] = []
        for membership in memberships:
            is_manager = membership.tier in self._manager_tiers
            permissions = frozenset(
                grant.permission_code
                for grant in self._store.get_department_grants(membership.department_id)
                if grant.granted and (grant.applies_to_managers if is_manager else grant.applies_to_employees)
            )
            contexts.append(
                PermissionContext(
                    id=f"{DEPARTMENT_PREFIX}{membership.department_id}",
                    type=ContextType.DEPARTMENT,
                    permissions=permissions,
                    display_name=membership.department_name or membership.department_id,
                    is_default=membership.department_id == identity.department_id,
                    requires_validation=True,
                    metadata={"department_id": membership.department_id, "tier": membership.tier},
                )
            )
        return contexts

    def _project_contexts(self, user_id: str, include_expired: bool) -> list[PermissionContext]:
        return [
            PermissionContext(
                id=f"{PROJECT_PREFIX}{assignment.project_id}",
                type=ContextType.PROJECT,
                permissions=assignment.permissions,
                display_name=assignment.project_name or assignment.project_id,
                requires_validation=True,
                expires_at=assignment.expires_at,
                metadata={"project_id": assignment.project_id, "role": assignment.role},
            )
            for assignment in self._store.get_project_assignments(user_id, include_expired=include_expired)
        ]

    def _temporary_contexts(self, user_id: str, include_expired: bool) -> list[PermissionContext]:
        # Elevations sharing a name form one context that lives as long as its latest member.
        groups: dict[str, tuple[set[str], datetime, str | None]] = {}
        for elevation in self._store.get_temporary_elevations(user_id, include_expired=include_expired):
            codes, expires_at, granted_by = groups.get(elevation.context_name, (set(), elevation.expires_at, None))
            codes.add(elevation.permission_code)
            groups[elevation.context_name] = (
                codes,
                max(expires_at, elevation.expires_at),
                granted_by or elevation.granted_by,
            )

        return [
            PermissionContext(
                id=f"{TEMPORARY_PREFIX}{name}",
                type=ContextType.TEMPORARY,
                permissions=frozenset(codes),
                display_name=name,
                requires_validation=False,
                expires_at=expires_at,
                metadata={"context_name": name, "granted_by": granted_by},
            )
            for name, (codes, expires_at, granted_by) in groups.items()
        ]

    # ---- Switching ------------------------------------------------------------------

    def switch_to(self, user_id: str, session_id: str, context_id: str) -> SwitchResult:
        now = self._clock()
        target = next((c for c in self.available_contexts(user_id) if c.id == context_id), None)
        if target is None:
            lapsed = next((c for c in self._contexts(user_id, include_expired=True) if c.id == context_id), None)
            if lapsed is None:
                raise ContextNotFound(f"context {context_id!r} is not available to user {user_id!r}")
            raise ContextExpired(f"context {context_id!r} expired at {lapsed.expires_at}")

        if target.requires_validation:
            outcome = self._validator.validate(user_id, target)
            if not outcome.valid:
                reason = outcome.reason or "context validation failed"
                self._audit.record(
                    AuditEntry(
                        user_id=user_id,
                        action=AuditAction.CONTEXT_SWITCH.value,
                        result=AuditResult.DENIED,
                        resource=context_id,
                        session_id=session_id,
                        performed_by=user_id,
                        metadata={"new_context": context_id, "reason": reason},
                    )
                )
                logger.info("Context switch rejected user_id=%s context=%s reason=%s", user_id, context_id, reason)
                raise ValidationFailed(reason)

        effective = self._resolver.resolve_effective(user_id, self._request_context(target))

        with self._audit.locked(user_id):
            with self._writer.transaction("switch_context") as db:
                previous = self._writer.set_session_context(db, user_id, session_id, target.id, now)
                self._audit.append(
                    db,
                    AuditEntry(
                        user_id=user_id,
                        action=AuditAction.CONTEXT_SWITCH.value,
                        result=AuditResult.SUCCESS,
                        resource=target.id,
                        session_id=session_id,
                        performed_by=user_id,
                        metadata={
                            "previous_context": previous,
                            "new_context": target.id,
                            "context_type": target.type.value,
                            "permission_count": len(target.permissions),
                        },
                    ),
                )

        logger.info("Context switched user_id=%s session_id=%s from=%s to=%s", user_id, session_id, previous, target.id)
        return SwitchResult(
            success=True,
            user_id=user_id,
            session_id=session_id,
            context=target,
            previous_context_id=previous,
            effective_permissions=target.permissions | effective,
            switched_at=now,
        )

    def current_context(self, user_id: str, session_id: str) -> PermissionContext | None:
        """The session's active context, or None when unset, expired or no longer available."""

        context_id = self._store.get_active_context_id(user_id, session_id)
        if context_id is None:
            return None
        return next((c for c in self.available_contexts(user_id) if c.id == context_id), None)

    def has_permission_in_context(self, user_id: str, session_id: str, code: str) -> bool:
        """
        Least-privilege check against the session's active context. Never
        raises; no active context means no permission.
        """

        context_id: str | None = None
        try:
            context = self.current_context(user_id, session_id)
            if context is None:
                allowed, reason = False, "no active context"
            else:
                context_id = context.id
                allowed, reason = self._decide_in_context(user_id, context, code)
        except PermissionEngineError as exc:
            logger.error(
                "Context check failed closed user_id=%s session_id=%s code=%s error=%s",
                user_id,
                session_id,
                code,
                type(exc).__name__,
            )
            allowed, reason = False, type(exc).__name__

        logger.debug("Context check user_id=%s context=%s code=%s allowed=%s", user_id, context_id, code, allowed)
        if not self._audit_checks:
            return allowed
        try:
            self._audit.record(
                AuditEntry(
                    user_id=user_id,
                    action=AuditAction.PERMISSION_CHECK.value,
                    result=AuditResult.SUCCESS if allowed else AuditResult.DENIED,
                    resource=code,
                    session_id=session_id,
                    metadata={"decision": reason, "context": context_id},
                )
            )
        except PermissionEngineError as exc:
            logger.error("Context check denied: audit write failed user_id=%s error=%s", user_id, type(exc).__name__)
            return False
        return allowed

    def _decide_in_context(self, user_id: str, context: PermissionContext, code: str) -> tuple[bool, str]:
        if not matches_any(context.permissions, code):
            return False, "not listed by context"

        effective = self._resolver.resolve_effective_set(user_id, self._request_context(context))
        if effective.universal:
            return True, "universal role"
        if matches_any(effective.denied, code):
            return False, "explicit denial"
        if matches_any(effective.codes, code):
            return True, "granted"
        if context.type is ContextType.TEMPORARY:
            return True, "temporary context"
        return False, "not granted"

    def _request_context(self, context: PermissionContext) -> RequestContext:
        if context.type is ContextType.DEPARTMENT:
            return RequestContext(department_id=str(context.metadata["department_id"]))
        return RequestContext()

    # ---- Temporary elevation --------------------------------------------------------

    def elevate(
        self,
        user_id: str,
        context_name: str,
        permissions: Iterable[str],
        duration: timedelta,
        *,
        granted_by: str,
        reason: str,
        session_id: str | None = None,
    ) -> PermissionContext:
        """Create (or extend) the temporary context `temp_<context_name>`."""

        codes = sorted(set(permissions))
        if not codes:
            raise ValidationFailed("an elevation needs at least one permission")
        if duration <= timedelta(0) or duration > self._max_elevation:
            raise ValidationFailed(f"elevation duration must be within {self._max_elevation}")
        if self._identities.get_identity(user_id) is None:
            raise IdentityNotFound(f"unknown user {user_id!r}")
        known = self._store.get_permission_definitions(codes)
        unknown = [c for c in codes if c not in known or not known[c].is_active]
        if unknown:
            raise UnknownPermission(f"unknown or inactive permissions: {unknown}")

        now = self._clock()
        expires_at = now + duration
        with self._audit.locked(user_id):
            with self._writer.transaction("elevate") as db:
                self._writer.add_elevations(
                    db,
                    [
                        TemporaryElevationRow(
                            user_id=user_id,
                            context_name=context_name,
                            permission_code=code,
                            expires_at=expires_at,
                            granted_by=granted_by,
                            reason=reason,
                            created_at=now,
                        )
                        for code in codes
                    ],
                )
                self._audit.append(
                    db,
                    AuditEntry(
                        user_id=user_id,
                        action=AuditAction.CONTEXT_ELEVATE.value,
                        result=AuditResult.SUCCESS,
                        resource=f"{TEMPORARY_PREFIX}{context_name}",
                        session_id=session_id,
                        performed_by=granted_by,
                        metadata={
                            "permissions": codes,
                            "expires_at": expires_at.isoformat(),
                            "duration_seconds": int(duration.total_seconds()),
                            "reason": reason,
                        },
                    ),
                )

        logger.info(
            "Temporary elevation user_id=%s context=%s permissions=%d expires_at=%s granted_by=%s",
            user_id,
            context_name,
            len(codes),
            expires_at.isoformat(),
            granted_by,
        )
        context_id = f"{TEMPORARY_PREFIX}{context_name}"
        return next(c for c in self._temporary_contexts(user_id, include_expired=False) if c.id == context_id)

    def sweep_expired(self) -> int:
        """
        Deactivate expired elevations and clear sessions still pointing at a
        temporary context that no longer has any live elevation. Returns the
        number of elevations deactivated.
        """

        now = self._clock()
        total = 0
        for user_id in self._store.get_users_with_expired_elevations():
            with self._audit.locked(user_id):
                with self._writer.transaction("sweep_expired") as db:
                    rows = self._writer.deactivate_expired_elevations(db, now, user_id=user_id)
                    if not rows:
                        continue
                    names = {row.context_name for row in rows}
                    dead = {
                        f"{TEMPORARY_PREFIX}{name}"
                        for name in names
                        if not self._writer.has_active_elevation(db, user_id, name, now)
                    }
                    cleared = self._writer.clear_session_contexts(db, {user_id: dead}) if dead else 0
                    self._audit.append(
                        db,
                        AuditEntry(
                            user_id=user_id,
                            action=AuditAction.CONTEXT_EXPIRE.value,
                            result=AuditResult.SUCCESS,
                            resource=",".join(sorted(f"{TEMPORARY_PREFIX}{name}" for name in names)),
                            performed_by="system",
                            metadata={"elevations": len(rows), "sessions_cleared": cleared},
                        ),
                    )
                    total += len(rows)

        if total:
            logger.info("Expired elevations swept count=%d", total)
        return total
