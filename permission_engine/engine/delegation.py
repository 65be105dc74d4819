"""
Manager-to-employee permission delegation.

A manager lends some of the permissions they hold to an employee of their own
department for a bounded time. Each delegated code becomes a `delegation`
user-permission record carrying the delegation's expiry, so it stops granting
on its own once the delegation lapses; `expire_delegations` only does the
bookkeeping.

Delegation types carry their own limits:

- temporary: up to 24 hours, effective immediately
- project: up to 30 days, needs approval
- emergency: up to 4 hours, effective immediately
- coverage: up to 7 days, needs approval
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable

from permission_engine.audit.frameworks import AuditAction
from permission_engine.audit.recorder import AuditRecorder
from permission_engine.engine.matching import matches_any
from permission_engine.engine.resolver import PermissionResolver
from permission_engine.errors import (
    DelegationRejected,
    IdentityNotFound,
    NotFound,
    UnknownPermission,
)
from permission_engine.models import DelegationRow
from permission_engine.store import IdentitySource, PermissionStore, PermissionWriter
from permission_engine.store.permission_store import delegation_from_row
from permission_engine.types import (
    AuditEntry,
    AuditResult,
    Delegation,
    DelegationStatus,
    DelegationType,
    Identity,
    PermissionStatus,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DelegationPolicy:
    max_duration: timedelta
    requires_approval: bool
    max_active: int


DELEGATION_POLICIES: dict[DelegationType, DelegationPolicy] = {
    DelegationType.TEMPORARY: DelegationPolicy(timedelta(hours=24), False, 10),
    DelegationType.PROJECT: DelegationPolicy(timedelta(days=30), True, 5),
    DelegationType.EMERGENCY: DelegationPolicy(timedelta(hours=4), False, 3),
    DelegationType.COVERAGE: DelegationPolicy(timedelta(days=7), True, 3),
}


class DelegationService:
    def __init__(
        self,
        store: PermissionStore,
        identities: IdentitySource,
        writer: PermissionWriter,
        resolver: PermissionResolver,
        audit: AuditRecorder,
        *,
        manager_tiers: Iterable[str] = ("manager", "director"),
        non_delegable: Iterable[str] = ("users.*", "roles.*", "audit.*"),
        admin_permission: str = "users.manage",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._identities = identities
        self._writer = writer
        self._resolver = resolver
        self._audit = audit
        self._manager_tiers = frozenset(manager_tiers)
        self._non_delegable = frozenset(non_delegable)
        self._admin_permission = admin_permission
        self._clock = clock

    # ---- Create ---------------------------------------------------------------------

    def delegate_permissions(
        self,
        manager_id: str,
        employee_id: str,
        permissions: Iterable[str],
        *,
        delegation_type: DelegationType | str = DelegationType.TEMPORARY,
        duration: timedelta | None = None,
        reason: str | None = None,
        session_id: str | None = None,
    ) -> Delegation:
        """
        Lend `permissions` from `manager_id` to `employee_id`.

        `duration` defaults to the type's maximum and is capped by it. Types
        that need approval are created pending and grant nothing until
        `approve_delegation`.
        """

        try:
            kind = DelegationType(delegation_type)
        except ValueError:
            raise DelegationRejected(f"unknown delegation type {delegation_type!r}") from None
        policy = DELEGATION_POLICIES[kind]

        codes = sorted(set(permissions))
        if not codes:
            raise DelegationRejected("a delegation needs at least one permission")
        if manager_id == employee_id:
            raise DelegationRejected("a user cannot delegate to themselves")
        if duration is not None and duration <= timedelta(0):
            raise DelegationRejected("delegation duration must be positive")
        duration = min(duration or policy.max_duration, policy.max_duration)

        manager = self._usable_identity(manager_id)
        employee = self._usable_identity(employee_id)
        if manager.employee_tier not in self._manager_tiers:
            raise DelegationRejected(f"user {manager_id!r} is not a manager")
        if not self._departments(manager) & self._departments(employee):
            raise DelegationRejected(f"user {employee_id!r} is not in a department managed by {manager_id!r}")
        if self._level(manager) <= self._level(employee):
            raise DelegationRejected("manager must have a higher role level than the employee")

        known = self._store.get_permission_definitions(codes)
        unknown = [c for c in codes if c not in known or not known[c].is_active]
        if unknown:
            raise UnknownPermission(f"unknown or inactive permissions: {unknown}")
        blocked = [c for c in codes if matches_any(self._non_delegable, c)]
        if blocked:
            raise DelegationRejected(f"permissions cannot be delegated: {blocked}")
        missing = [c for c in codes if not self._holds(manager_id, c)]
        if missing:
            raise DelegationRejected(f"manager does not hold: {missing}")

        if self._store.count_live_delegations(manager_id, kind) >= policy.max_active:
            raise DelegationRejected(f"manager already has {policy.max_active} live {kind.value} delegations")

        now = self._clock()
        expires_at = now + duration
        status = DelegationStatus.PENDING if policy.requires_approval else DelegationStatus.ACTIVE
        with self._audit.locked(employee_id):
            with self._writer.transaction("delegate_permissions") as db:
                row = self._writer.add_delegation(
                    db,
                    DelegationRow(
                        manager_id=manager_id,
                        employee_id=employee_id,
                        delegation_type=kind.value,
                        permissions=codes,
                        status=status.value,
                        reason=reason,
                        expires_at=expires_at,
                        created_at=now,
                    ),
                    codes,
                    PermissionStatus(status.value),
                )
                self._audit.append(
                    db,
                    self._entry(
                        row,
                        AuditAction.DELEGATION_CREATE,
                        performed_by=manager_id,
                        session_id=session_id,
                        reason=reason,
                        permissions=codes,
                        status=status.value,
                        duration_seconds=int(duration.total_seconds()),
                    ),
                )
                delegation = delegation_from_row(row)

        self._resolver.invalidate_cache(employee_id)
        logger.info(
            "Permissions delegated id=%s manager_id=%s employee_id=%s type=%s permissions=%d status=%s expires_at=%s",
            delegation.id,
            manager_id,
            employee_id,
            kind.value,
            len(codes),
            status.value,
            expires_at.isoformat(),
        )
        return delegation

    # ---- Approve / revoke / expire --------------------------------------------------

    def approve_delegation(
        self, delegation_id: int, approved_by: str, *, reason: str | None = None, session_id: str | None = None
    ) -> Delegation:
        delegation = self._store.get_delegation(delegation_id)
        if delegation is None or delegation.status is not DelegationStatus.PENDING:
            raise NotFound(f"no pending delegation {delegation_id}")
        if approved_by == delegation.manager_id:
            raise DelegationRejected("a delegation cannot be approved by the manager who created it")
        if not self._outranks(approved_by, delegation.manager_id):
            raise DelegationRejected(f"user {approved_by!r} may not approve delegation {delegation_id}")

        now = self._clock()
        with self._audit.locked(delegation.employee_id):
            with self._writer.transaction("approve_delegation") as db:
                row = self._writer.get_delegation_row(db, delegation_id)
                if row is None or row.status != DelegationStatus.PENDING.value:
                    raise NotFound(f"no pending delegation {delegation_id}")
                row.status = DelegationStatus.ACTIVE.value
                row.approved_by = approved_by
                row.approved_at = now
                self._writer.set_delegated_permission_status(
                    db, delegation_id, PermissionStatus.ACTIVE, changed_by=approved_by, changed_at=now
                )
                self._audit.append(
                    db,
                    self._entry(
                        row, AuditAction.DELEGATION_APPROVE, performed_by=approved_by, session_id=session_id, reason=reason
                    ),
                )
                delegation = delegation_from_row(row)

        self._resolver.invalidate_cache(delegation.employee_id)
        logger.info("Delegation approved id=%s approved_by=%s", delegation_id, approved_by)
        return delegation

    def revoke_delegation(
        self, delegation_id: int, revoked_by: str, reason: str, *, session_id: str | None = None
    ) -> Delegation:
        """Withdraw a pending or active delegation; its records stop granting at once."""

        delegation = self._store.get_delegation(delegation_id)
        if delegation is None or not delegation.is_live:
            raise NotFound(f"no live delegation {delegation_id}")
        if revoked_by != delegation.manager_id and not self._outranks(revoked_by, delegation.manager_id):
            raise DelegationRejected(f"user {revoked_by!r} may not revoke delegation {delegation_id}")

        now = self._clock()
        with self._audit.locked(delegation.employee_id):
            with self._writer.transaction("revoke_delegation") as db:
                row = self._writer.get_delegation_row(db, delegation_id)
                if row is None or row.status not in (DelegationStatus.PENDING.value, DelegationStatus.ACTIVE.value):
                    raise NotFound(f"no live delegation {delegation_id}")
                row.status = DelegationStatus.REVOKED.value
                row.revoked_by = revoked_by
                row.revoked_at = now
                row.revoked_reason = reason
                revoked = self._writer.set_delegated_permission_status(
                    db, delegation_id, PermissionStatus.REVOKED, changed_by=revoked_by, changed_at=now, reason=reason
                )
                self._audit.append(
                    db,
                    self._entry(
                        row,
                        AuditAction.DELEGATION_REVOKE,
                        performed_by=revoked_by,
                        session_id=session_id,
                        reason=reason,
                        revoked_records=revoked,
                    ),
                )
                delegation = delegation_from_row(row)

        self._resolver.invalidate_cache(delegation.employee_id)
        logger.info("Delegation revoked id=%s revoked_by=%s records=%d", delegation_id, revoked_by, revoked)
        return delegation

    def expire_delegations(self) -> int:
        """Mark lapsed delegations (and their records) expired; returns how many were expired."""

        total = 0
        for due in self._store.get_due_delegations():
            with self._audit.locked(due.employee_id):
                with self._writer.transaction("expire_delegations") as db:
                    row = self._writer.get_delegation_row(db, due.id)
                    if row is None or row.status not in (DelegationStatus.PENDING.value, DelegationStatus.ACTIVE.value):
                        continue
                    previous = row.status
                    row.status = DelegationStatus.EXPIRED.value
                    expired = self._writer.set_delegated_permission_status(db, due.id, PermissionStatus.EXPIRED)
                    self._audit.append(
                        db,
                        self._entry(
                            row,
                            AuditAction.DELEGATION_EXPIRE,
                            performed_by="system",
                            previous_status=previous,
                            expired_records=expired,
                        ),
                    )
            self._resolver.invalidate_cache(due.employee_id)
            total += 1

        if total:
            logger.info("Expired delegations swept count=%d", total)
        return total

    # ---- Queries --------------------------------------------------------------------

    def get_delegations(
        self,
        *,
        manager_id: str | None = None,
        employee_id: str | None = None,
        statuses: Iterable[DelegationStatus] | None = None,
    ) -> list[Delegation]:
        return self._store.get_delegations(manager_id=manager_id, employee_id=employee_id, statuses=statuses)

    # ---- Helpers --------------------------------------------------------------------

    def _usable_identity(self, user_id: str) -> Identity:
        identity = self._identities.get_identity(user_id)
        if identity is None:
            raise IdentityNotFound(f"unknown user {user_id!r}")
        if not identity.active or identity.locked:
            raise DelegationRejected(f"user {user_id!r} is inactive or locked")
        return identity

    def _departments(self, identity: Identity) -> set[str]:
        departments = {m.department_id for m in self._store.get_department_memberships(identity.user_id)}
        if identity.department_id:
            departments.add(identity.department_id)
        return departments

    def _level(self, identity: Identity) -> int:
        role = self._store.get_role(identity.role)
        return role.level if role is not None else 0

    def _holds(self, user_id: str, code: str) -> bool:
        # Conditional grants are never lent: they hold only per request.
        effective = self._resolver.resolve_effective_set(user_id)
        if matches_any(effective.denied, code):
            return False
        return effective.universal or matches_any(effective.codes, code)

    def _outranks(self, user_id: str, manager_id: str) -> bool:
        """Admins may act on any delegation; otherwise a strictly higher role level is needed."""

        actor = self._identities.get_identity(user_id)
        if actor is None or not actor.active or actor.locked:
            return False
        if self._holds(user_id, self._admin_permission):
            return True
        manager = self._identities.get_identity(manager_id)
        return manager is not None and self._level(actor) > self._level(manager)

    def _entry(
        self,
        row: DelegationRow,
        action: AuditAction,
        *,
        performed_by: str,
        session_id: str | None = None,
        reason: str | None = None,
        **details,
    ) -> AuditEntry:
        metadata = {
            "delegation_id": row.id,
            "manager_id": row.manager_id,
            "delegation_type": row.delegation_type,
            "expires_at": row.expires_at.isoformat(),
            **{k: v for k, v in details.items() if v is not None},
        }
        if reason is not None:
            metadata["reason"] = reason
        return AuditEntry(
            user_id=row.employee_id,
            action=action.value,
            result=AuditResult.SUCCESS,
            resource=f"delegation:{row.id}",
            session_id=session_id,
            performed_by=performed_by,
            metadata=metadata,
        )
