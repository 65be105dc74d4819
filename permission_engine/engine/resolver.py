"""
Permission resolver: merges role, department and user-override sources into an
effective permission set, answers single-permission checks and owns the cache.

Resolution order for `resolve_effective(user, context)`:

1. role permissions, unioned with inherited roles (depth-first, cycle-safe,
   inactive roles skipped);
2. department grants for the user's primary department, filtered by tier
   (`manager_tiers` count as managers, everyone else as employees);
3. unconditional user overrides: grants add, denials remove (a denial always
   wins, regardless of record order);
4. dependency expansion, after which denied codes (and everything a wildcard
   denial covers) are removed again.

Conditional overrides are not folded into the set; they are evaluated on each
check against the request context.

Every mutation commits its audit entry in the same transaction and then
invalidates the affected cache entries.
"""

from __future__ import annotations

import hashlib
import logging
from collections import Counter
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Mapping

from permission_engine.audit.frameworks import AuditAction
from permission_engine.audit.hashing import canonical_serialize
from permission_engine.audit.recorder import AuditRecorder
from permission_engine.engine.cache import PermissionCache
from permission_engine.engine.conditions import ConditionEvaluator
from permission_engine.engine.dependencies import DependencyResolver
from permission_engine.engine.matching import code_matches, matches_any
from permission_engine.errors import (
    AlreadyGranted,
    CatalogError,
    IdentityNotFound,
    NotFound,
    PermissionEngineError,
    UnknownPermission,
)
from permission_engine.models import UserPermissionRow
from permission_engine.store import IdentitySource, PermissionStore, PermissionWriter
from permission_engine.store.permission_store import role_from_row, user_permission_from_row
from permission_engine.types import (
    AuditEntry,
    AuditResult,
    ContextLike,
    DepartmentGrant,
    EffectivePermissionSet,
    GrantOptions,
    Identity,
    PermissionDefinition,
    PermissionSource,
    PermissionStatus,
    RequestContext,
    RoleDefinition,
    UserPermission,
    as_request_context,
    utcnow,
)

logger = logging.getLogger(__name__)


def context_signature(context: RequestContext) -> str:
    """Stable cache-key component for a request context (timestamp excluded)."""

    return hashlib.sha256(canonical_serialize(context.signature_fields()).encode("utf-8")).hexdigest()[:32]


def context_scope(context: RequestContext) -> str | None:
    """`UserPermission.context` value the request context selects, if any."""

    if context.department_id is None:
        return None
    return f"department:{context.department_id}"


@dataclass(frozen=True)
class PermissionSummary:
    user_id: str
    role: str
    department_id: str | None
    employee_tier: str | None
    effective: tuple[str, ...]
    universal: bool
    by_source: Mapping[str, int] = field(default_factory=dict)
    denied: tuple[str, ...] = ()
    pending: tuple[str, ...] = ()
    conditional: tuple[str, ...] = ()
    revoked: int = 0


class PermissionResolver:
    def __init__(
        self,
        store: PermissionStore,
        identities: IdentitySource,
        writer: PermissionWriter,
        audit: AuditRecorder,
        *,
        cache: PermissionCache[EffectivePermissionSet] | None = None,
        dependency_resolver: DependencyResolver | None = None,
        evaluator: ConditionEvaluator | None = None,
        manager_tiers: Iterable[str] = ("manager", "director"),
        audit_checks: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._identities = identities
        self._writer = writer
        self._audit = audit
        self._cache: PermissionCache[EffectivePermissionSet] = cache or PermissionCache()
        self._dependencies = dependency_resolver or DependencyResolver(store.get_permission_definitions)
        self._evaluator = evaluator or ConditionEvaluator()
        self._manager_tiers = frozenset(manager_tiers)
        self._audit_checks = audit_checks
        self._clock = clock

    @property
    def cache(self) -> PermissionCache[EffectivePermissionSet]:
        return self._cache

    # ---- Resolution -----------------------------------------------------------------

    def resolve_effective(self, user_id: str, context: ContextLike = None) -> frozenset[str]:
        return self.resolve_effective_set(user_id, context).codes

    def resolve_effective_set(self, user_id: str, context: ContextLike = None) -> EffectivePermissionSet:
        ctx = as_request_context(context)
        signature = context_signature(ctx)
        key = (user_id, signature)

        cached = self._cache.get(key)
        if cached is not None:
            return cached

        # Read the generation before touching the store: an invalidation that
        # lands while we compute makes this result unstorable.
        generation = self._cache.generation(user_id)
        result, ttl = self._compute(user_id, ctx, signature)
        self._cache.set(key, result, ttl=ttl, generation=generation)
        return result

    def _compute(self, user_id: str, ctx: RequestContext, signature: str) -> tuple[EffectivePermissionSet, float]:
        now = self._clock()
        identity = self._identity(user_id)

        if not identity.active or identity.locked:
            logger.warning(
                "Resolving for unusable identity user_id=%s active=%s locked=%s", user_id, identity.active, identity.locked
            )
            empty = EffectivePermissionSet(
                user_id=user_id, context_signature=signature, codes=frozenset(), denied=frozenset(), resolved_at=now
            )
            return empty, self._cache.default_ttl

        granted, universal = self._role_permissions(identity.role)

        if identity.department_id:
            for grant in self._store.get_department_grants(identity.department_id):
                if not self._grant_applies(grant, identity.employee_tier):
                    continue
                if grant.granted:
                    granted.add(grant.permission_code)
                else:
                    granted = {c for c in granted if not code_matches(grant.permission_code, c)}

        records = self._store.get_user_permissions(user_id, context_scope(ctx))
        denied: set[str] = set()
        conditional: list[UserPermission] = []
        for record in records:
            if record.is_conditional:
                conditional.append(record)
            elif record.granted:
                granted.add(record.permission_code)
            else:
                denied.add(record.permission_code)

        granted = {c for c in granted if not matches_any(denied, c)}
        codes = {c for c in self._dependencies.expand(granted) if not matches_any(denied, c)}

        ttl = float(self._cache.default_ttl)
        for record in records:
            if record.expires_at is not None:
                ttl = min(ttl, (record.expires_at - now).total_seconds())

        logger.debug("Resolved user_id=%s context=%s codes=%d denied=%d", user_id, signature, len(codes), len(denied))
        effective = EffectivePermissionSet(
            user_id=user_id,
            context_signature=signature,
            codes=frozenset(codes),
            denied=frozenset(denied),
            resolved_at=now,
            universal=universal,
            conditional=tuple(conditional),
        )
        return effective, ttl

    def _identity(self, user_id: str) -> Identity:
        identity = self._identities.get_identity(user_id)
        if identity is None:
            raise IdentityNotFound(f"unknown user {user_id!r}")
        return identity

    def _role_permissions(self, role_code: str) -> tuple[set[str], bool]:
        """Union of a role's permissions with its ancestors'; (codes, universal)."""

        codes: set[str] = set()
        universal = False
        visited: set[str] = set()
        stack = [role_code]

        while stack:
            code = stack.pop()
            if code in visited:
                continue
            visited.add(code)
            role = self._store.get_role(code)
            if role is None:
                logger.warning("Role not found while resolving inheritance role=%s", code)
                continue
            if not role.is_active:
                continue
            codes |= role.permissions
            universal = universal or role.is_universal
            # Preserve declared order for the depth-first walk.
            stack.extend(reversed(role.inherited_roles))

        return codes, universal

    def _grant_applies(self, grant: DepartmentGrant, tier: str | None) -> bool:
        if tier in self._manager_tiers:
            return grant.applies_to_managers
        return grant.applies_to_employees

    # ---- Checks ---------------------------------------------------------------------

    def has_permission(
        self, user_id: str, code: str, context: ContextLike = None, *, session_id: str | None = None
    ) -> bool:
        """Single-permission check. Never raises; every failure is a denial."""

        ctx = as_request_context(context)
        signature = context_signature(ctx)
        try:
            effective = self.resolve_effective_set(user_id, ctx)
            allowed, reason = self._decide(effective, code, ctx)
        except IdentityNotFound:
            logger.warning("Permission check for unknown user user_id=%s code=%s", user_id, code)
            allowed, reason = False, "unknown user"
        except PermissionEngineError as exc:
            logger.error(
                "Permission check failed closed user_id=%s code=%s context=%s error=%s",
                user_id,
                code,
                signature,
                type(exc).__name__,
            )
            allowed, reason = False, type(exc).__name__

        logger.debug("Permission check user_id=%s code=%s allowed=%s reason=%s", user_id, code, allowed, reason)
        if self._audit_checks:
            return self._record_check(user_id, code, allowed, reason, signature, session_id)
        return allowed

    def _decide(self, effective: EffectivePermissionSet, code: str, ctx: RequestContext) -> tuple[bool, str]:
        if effective.universal:
            return True, "universal role"
        if matches_any(effective.denied, code):
            return False, "explicit denial"

        conditional = [r for r in effective.conditional if code_matches(r.permission_code, code)]
        if any(not r.granted and self._evaluator.matches(r.conditions, ctx) for r in conditional):
            return False, "conditional denial"

        if matches_any(effective.codes, code):
            return True, "granted"
        if any(r.granted and self._evaluator.matches(r.conditions, ctx) for r in conditional):
            return True, "conditional grant"
        return False, "not granted"

    def check_contextual(self, user_id: str, code: str, context: ContextLike = None) -> bool:
        """
        Evaluate only the user's conditional overrides for `code`.

        A matching conditional denial wins; otherwise any matching conditional
        grant allows. Fails closed on store errors.
        """

        ctx = as_request_context(context)
        scope = context_scope(ctx)
        try:
            records = [
                r for r in self._store.get_conditional_permissions(user_id, code) if r.context in (None, scope)
            ]
        except PermissionEngineError as exc:
            logger.error(
                "Conditional check failed closed user_id=%s code=%s context=%s error=%s",
                user_id,
                code,
                context_signature(ctx),
                type(exc).__name__,
            )
            return False

        if any(not r.granted and self._evaluator.matches(r.conditions, ctx) for r in records):
            return False
        return any(r.granted and self._evaluator.matches(r.conditions, ctx) for r in records)

    def _record_check(
        self, user_id: str, code: str, allowed: bool, reason: str, signature: str, session_id: str | None
    ) -> bool:
        entry = AuditEntry(
            user_id=user_id,
            action=AuditAction.PERMISSION_CHECK.value,
            result=AuditResult.SUCCESS if allowed else AuditResult.DENIED,
            resource=code,
            session_id=session_id,
            metadata={"decision": reason, "context_signature": signature},
        )
        try:
            self._audit.record(entry)
        except PermissionEngineError as exc:
            # An unrecorded decision is not a decision.
            logger.error("Check denied: audit write failed user_id=%s code=%s error=%s", user_id, code, type(exc).__name__)
            return False
        return allowed

    # ---- User overrides -------------------------------------------------------------

    def grant_permission(self, user_id: str, code: str, options: GrantOptions | None = None) -> UserPermission:
        """
        Create an override for (user, code). `options.granted=False` records an
        explicit denial; `options.requires_approval` creates it as pending.
        """

        options = options or GrantOptions()
        self._require_definition(code)
        self._identity(user_id)

        status = PermissionStatus.PENDING if options.requires_approval else PermissionStatus.ACTIVE
        action = AuditAction.PERMISSION_GRANT if options.granted else AuditAction.PERMISSION_DENY

        with self._audit.locked(user_id):
            with self._writer.transaction("grant_permission") as db:
                existing = [
                    row
                    for row in self._writer.find_user_permissions(
                        db, user_id, code, (PermissionStatus.ACTIVE, PermissionStatus.PENDING)
                    )
                    if row.context == options.context
                ]
                if existing:
                    raise AlreadyGranted(f"{code!r} already {existing[0].status} for user {user_id!r}")

                row = self._writer.add_user_permission(
                    db,
                    UserPermissionRow(
                        user_id=user_id,
                        permission_code=code,
                        granted=options.granted,
                        context=options.context,
                        conditions=dict(options.conditions),
                        expires_at=options.expires_at,
                        status=status.value,
                        source=options.source.value,
                        reason=options.reason,
                        created_by=options.performed_by,
                    ),
                )
                self._audit.append(
                    db,
                    self._mutation_entry(
                        user_id,
                        action,
                        code,
                        options,
                        status=status.value,
                        source=options.source.value,
                        granted=options.granted,
                        context=options.context,
                        conditions=dict(options.conditions) or None,
                        expires_at=options.expires_at.isoformat() if options.expires_at else None,
                    ),
                )
                record = user_permission_from_row(row)

        self.invalidate_cache(user_id)
        logger.info(
            "Permission %s user_id=%s code=%s status=%s source=%s",
            "granted" if options.granted else "denied",
            user_id,
            code,
            status.value,
            options.source.value,
        )
        return record

    def revoke_permission(self, user_id: str, code: str, options: GrantOptions | None = None) -> list[UserPermission]:
        """Revoke the active override(s) for (user, code) in `options.context`."""

        options = options or GrantOptions()
        now = self._clock()

        with self._audit.locked(user_id):
            with self._writer.transaction("revoke_permission") as db:
                rows = [
                    row
                    for row in self._writer.find_user_permissions(db, user_id, code, (PermissionStatus.ACTIVE,))
                    if row.context == options.context
                ]
                if not rows:
                    raise NotFound(f"no active {code!r} record for user {user_id!r}")
                for row in rows:
                    row.status = PermissionStatus.REVOKED.value
                    row.revoked_by = options.performed_by
                    row.revoked_at = now
                    row.revoked_reason = options.reason
                db.flush()
                self._audit.append(
                    db,
                    self._mutation_entry(
                        user_id,
                        AuditAction.PERMISSION_REVOKE,
                        code,
                        options,
                        revoked_records=len(rows),
                        context=options.context,
                    ),
                )
                records = [user_permission_from_row(row) for row in rows]

        self.invalidate_cache(user_id)
        logger.info("Permission revoked user_id=%s code=%s records=%d", user_id, code, len(records))
        return records

    def approve_permission(
        self,
        user_id: str,
        code: str,
        approved_by: str,
        *,
        context: str | None = None,
        reason: str | None = None,
        session_id: str | None = None,
    ) -> UserPermission:
        """Move the pending override for (user, code) to active."""

        now = self._clock()
        options = GrantOptions(context=context, performed_by=approved_by, reason=reason, session_id=session_id)

        with self._audit.locked(user_id):
            with self._writer.transaction("approve_permission") as db:
                rows = [
                    row
                    for row in self._writer.find_user_permissions(db, user_id, code, (PermissionStatus.PENDING,))
                    if row.context == context
                ]
                if not rows:
                    raise NotFound(f"no pending {code!r} record for user {user_id!r}")
                row = rows[0]
                row.status = PermissionStatus.ACTIVE.value
                row.approved_by = approved_by
                row.approved_at = now
                db.flush()
                self._audit.append(
                    db, self._mutation_entry(user_id, AuditAction.PERMISSION_APPROVE, code, options, granted=row.granted)
                )
                record = user_permission_from_row(row)

        self.invalidate_cache(user_id)
        logger.info("Permission approved user_id=%s code=%s approved_by=%s", user_id, code, approved_by)
        return record

    def assign_permission_template(
        self, user_id: str, role_code: str, options: GrantOptions | None = None
    ) -> list[UserPermission]:
        """
        Grant every permission of `role_code` (inherited roles included) as
        individual `template` overrides; codes already granted are skipped.
        """

        role = self._store.get_role(role_code)
        if role is None:
            raise NotFound(f"role {role_code!r} not found")

        codes, _ = self._role_permissions(role_code)
        options = replace(options or GrantOptions(), source=PermissionSource.TEMPLATE, granted=True)
        granted: list[UserPermission] = []
        for code in sorted(codes):
            try:
                granted.append(self.grant_permission(user_id, code, options))
            except AlreadyGranted:
                logger.debug("Template skip user_id=%s code=%s already granted", user_id, code)
        logger.info("Template applied user_id=%s role=%s granted=%d", user_id, role_code, len(granted))
        return granted

    def _mutation_entry(
        self, user_id: str, action: AuditAction, resource: str, options: GrantOptions, **details: Any
    ) -> AuditEntry:
        metadata: dict[str, Any] = {k: v for k, v in details.items() if v is not None}
        if options.reason is not None:
            metadata["reason"] = options.reason
        metadata.update(options.audit_metadata)
        return AuditEntry(
            user_id=user_id,
            action=action.value,
            result=AuditResult.SUCCESS,
            resource=resource,
            session_id=options.session_id,
            performed_by=options.performed_by,
            metadata=metadata,
        )

    def _require_definition(self, code: str) -> PermissionDefinition:
        definition = self._store.get_permission_definitions([code]).get(code)
        if definition is None or not definition.is_active:
            raise UnknownPermission(f"unknown or inactive permission {code!r}")
        return definition

    # ---- Department grants and roles ------------------------------------------------

    def set_department_grant(
        self,
        department_id: str,
        code: str,
        *,
        applies_to_employees: bool = True,
        applies_to_managers: bool = True,
        granted: bool = True,
        performed_by: str | None = None,
        reason: str | None = None,
        audit_metadata: Mapping[str, Any] | None = None,
    ) -> DepartmentGrant:
        self._require_definition(code)
        actor = performed_by or "system"
        options = GrantOptions(performed_by=performed_by, reason=reason, audit_metadata=dict(audit_metadata or {}))

        with self._audit.locked(actor):
            with self._writer.transaction("set_department_grant") as db:
                row = self._writer.upsert_department_grant(
                    db,
                    department_id,
                    code,
                    applies_to_employees=applies_to_employees,
                    applies_to_managers=applies_to_managers,
                    granted=granted,
                )
                self._audit.append(
                    db,
                    self._mutation_entry(
                        actor,
                        AuditAction.DEPARTMENT_GRANT_SET,
                        f"department:{department_id}/{code}",
                        options,
                        department_id=department_id,
                        applies_to_employees=applies_to_employees,
                        applies_to_managers=applies_to_managers,
                        granted=granted,
                    ),
                )
                grant = DepartmentGrant(
                    department_id=row.department_id,
                    permission_code=row.permission_code,
                    applies_to_employees=row.applies_to_employees,
                    applies_to_managers=row.applies_to_managers,
                    granted=row.granted,
                )

        self.invalidate_all()
        logger.info("Department grant set department_id=%s code=%s granted=%s", department_id, code, granted)
        return grant

    def remove_department_grant(
        self,
        department_id: str,
        code: str,
        *,
        performed_by: str | None = None,
        reason: str | None = None,
        audit_metadata: Mapping[str, Any] | None = None,
    ) -> None:
        actor = performed_by or "system"
        options = GrantOptions(performed_by=performed_by, reason=reason, audit_metadata=dict(audit_metadata or {}))

        with self._audit.locked(actor):
            with self._writer.transaction("remove_department_grant") as db:
                if not self._writer.delete_department_grant(db, department_id, code):
                    raise NotFound(f"no {code!r} grant for department {department_id!r}")
                self._audit.append(
                    db,
                    self._mutation_entry(
                        actor,
                        AuditAction.DEPARTMENT_GRANT_REMOVE,
                        f"department:{department_id}/{code}",
                        options,
                        department_id=department_id,
                    ),
                )

        self.invalidate_all()
        logger.info("Department grant removed department_id=%s code=%s", department_id, code)

    def update_role(
        self,
        code: str,
        *,
        permissions: Iterable[str] | None = None,
        inherited_roles: Sequence[str] | None = None,
        is_active: bool | None = None,
        performed_by: str | None = None,
        reason: str | None = None,
        audit_metadata: Mapping[str, Any] | None = None,
    ) -> RoleDefinition:
        """Change a role's permissions, parents or active flag; affects every holder."""

        if self._store.get_role(code) is None:
            raise NotFound(f"role {code!r} not found")

        new_permissions = sorted(set(permissions)) if permissions is not None else None
        if new_permissions:
            known = self._store.get_permission_definitions(new_permissions)
            unknown = [c for c in new_permissions if c not in known]
            if unknown:
                raise UnknownPermission(f"role {code!r} references unknown permissions: {unknown}")

        new_parents = list(inherited_roles) if inherited_roles is not None else None
        if new_parents is not None:
            self._check_inheritance(code, new_parents)

        actor = performed_by or "system"
        options = GrantOptions(performed_by=performed_by, reason=reason, audit_metadata=dict(audit_metadata or {}))

        with self._audit.locked(actor):
            with self._writer.transaction("update_role") as db:
                row = self._writer.get_role_row(db, code)
                if row is None:
                    raise NotFound(f"role {code!r} not found")
                before = role_from_row(row)
                if new_permissions is not None:
                    row.permissions = new_permissions
                if new_parents is not None:
                    row.inherited_roles = new_parents
                if is_active is not None:
                    row.is_active = is_active
                db.flush()
                after = role_from_row(row)
                self._audit.append(
                    db,
                    self._mutation_entry(
                        actor,
                        AuditAction.ROLE_UPDATE,
                        f"role:{code}",
                        options,
                        added=sorted(after.permissions - before.permissions) or None,
                        removed=sorted(before.permissions - after.permissions) or None,
                        inherited_roles=list(after.inherited_roles),
                        is_active=after.is_active,
                    ),
                )

        self.invalidate_all()
        logger.info("Role updated role=%s permissions=%d active=%s", code, len(after.permissions), after.is_active)
        return after

    def _check_inheritance(self, code: str, parents: Sequence[str]) -> None:
        visited: set[str] = set()
        stack = list(parents)
        while stack:
            current = stack.pop()
            if current == code:
                raise CatalogError(f"role {code!r} would inherit from itself")
            if current in visited:
                continue
            visited.add(current)
            role = self._store.get_role(current)
            if role is None:
                raise NotFound(f"role {current!r} not found")
            stack.extend(role.inherited_roles)

    # ---- Cache ----------------------------------------------------------------------

    def invalidate_cache(self, user_id: str) -> int:
        removed = self._cache.invalidate_prefix(user_id)
        logger.debug("Cache invalidated user_id=%s entries=%d", user_id, removed)
        return removed

    def invalidate_all(self) -> None:
        self._cache.clear()
        logger.debug("Cache cleared")

    # ---- Admin views ----------------------------------------------------------------

    def get_user_permission_summary(self, user_id: str) -> PermissionSummary:
        identity = self._identity(user_id)
        effective = self.resolve_effective_set(user_id)
        records = self._store.get_user_permission_records(user_id)

        active = [r for r in records if r.status == PermissionStatus.ACTIVE]
        return PermissionSummary(
            user_id=user_id,
            role=identity.role,
            department_id=identity.department_id,
            employee_tier=identity.employee_tier,
            effective=tuple(sorted(effective.codes)),
            universal=effective.universal,
            by_source=dict(Counter(r.source.value for r in active if r.granted)),
            denied=tuple(sorted({r.permission_code for r in active if not r.granted})),
            pending=tuple(sorted(r.permission_code for r in records if r.status == PermissionStatus.PENDING)),
            conditional=tuple(sorted({r.permission_code for r in active if r.is_conditional})),
            revoked=sum(1 for r in records if r.status == PermissionStatus.REVOKED),
        )

    def get_permission_hierarchy(self) -> dict[str, dict[str, list[PermissionDefinition]]]:
        """Active definitions grouped as category -> resource -> definitions."""

        hierarchy: dict[str, dict[str, list[PermissionDefinition]]] = {}
        for definition in self._store.get_all_permission_definitions():
            if not definition.is_active:
                continue
            hierarchy.setdefault(definition.category, {}).setdefault(definition.resource, []).append(definition)
        return hierarchy
