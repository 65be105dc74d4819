"""
Read-only accessor over the persisted permission collections.

Every call opens its own short-lived `Session` from the injected
`sessionmaker`, so one store instance can be shared by any number of request
threads. Lookups that match nothing return empty collections; any SQLAlchemy
failure (including a driver timeout) is surfaced as `StoreUnavailable`, which
callers on the authorization path treat as a denial.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Callable

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from permission_engine.engine.matching import code_matches
from permission_engine.errors import StoreUnavailable
from permission_engine.models import (
    DelegationRow,
    DepartmentGrantRow,
    DepartmentMembershipRow,
    PermissionDefinitionRow,
    ProjectAssignmentRow,
    RoleRow,
    SessionContextRow,
    TemporaryElevationRow,
    UserPermissionRow,
)
from permission_engine.types import (
    Delegation,
    DelegationStatus,
    DelegationType,
    DepartmentGrant,
    DepartmentMembership,
    PermissionDefinition,
    PermissionSource,
    PermissionStatus,
    ProjectAssignment,
    RoleDefinition,
    TemporaryElevation,
    UserPermission,
    utcnow,
)

logger = logging.getLogger(__name__)


# ---- Row -> domain conversion -------------------------------------------------------


def role_from_row(row: RoleRow) -> RoleDefinition:
    return RoleDefinition(
        code=row.code,
        permissions=frozenset(row.permissions or ()),
        inherited_roles=tuple(row.inherited_roles or ()),
        is_active=row.is_active,
        level=row.level,
        is_universal=row.is_universal,
    )


def definition_from_row(row: PermissionDefinitionRow, implied_by: Iterable[str] = ()) -> PermissionDefinition:
    return PermissionDefinition(
        code=row.code,
        category=row.category,
        resource=row.resource,
        action=row.action,
        implies=frozenset(row.implies or ()),
        implied_by=frozenset(implied_by),
        is_active=row.is_active,
        description=row.description,
    )


def user_permission_from_row(row: UserPermissionRow) -> UserPermission:
    return UserPermission(
        id=row.id,
        user_id=row.user_id,
        permission_code=row.permission_code,
        granted=row.granted,
        status=PermissionStatus(row.status),
        source=PermissionSource(row.source),
        context=row.context,
        conditions=dict(row.conditions or {}),
        expires_at=row.expires_at,
        reason=row.reason,
    )


def elevation_from_row(row: TemporaryElevationRow) -> TemporaryElevation:
    return TemporaryElevation(
        id=row.id,
        user_id=row.user_id,
        context_name=row.context_name,
        permission_code=row.permission_code,
        expires_at=row.expires_at,
        granted_by=row.granted_by,
        reason=row.reason,
        active=row.active,
    )


def delegation_from_row(row: DelegationRow) -> Delegation:
    return Delegation(
        id=row.id,
        manager_id=row.manager_id,
        employee_id=row.employee_id,
        delegation_type=DelegationType(row.delegation_type),
        permissions=tuple(row.permissions or ()),
        status=DelegationStatus(row.status),
        expires_at=row.expires_at,
        created_at=row.created_at,
        reason=row.reason,
        approved_by=row.approved_by,
        revoked_by=row.revoked_by,
        revoked_reason=row.revoked_reason,
    )


_LIVE_DELEGATION_STATUSES = (DelegationStatus.PENDING.value, DelegationStatus.ACTIVE.value)


def _not_expired(column, now: datetime):
    return or_(column.is_(None), column > now)


# ---- Store --------------------------------------------------------------------------


class PermissionStore:
    """
    Read-only façade over Role, DepartmentGrant, UserPermission and
    PermissionDefinition (plus the membership collections used for contexts).
    """

    def __init__(self, session_factory: sessionmaker[Session], clock: Callable[[], datetime] = utcnow) -> None:
        self._session_factory = session_factory
        self._clock = clock

    @contextmanager
    def _reading(self, operation: str) -> Iterator[Session]:
        try:
            with self._session_factory() as db:
                yield db
        except SQLAlchemyError as exc:
            logger.error("Permission store read failed operation=%s error=%s", operation, type(exc).__name__)
            raise StoreUnavailable(f"permission store unavailable during {operation}") from exc

    # ---- The four core collections --------------------------------------------------

    def get_role(self, code: str) -> RoleDefinition | None:
        with self._reading("get_role") as db:
            row = db.scalars(select(RoleRow).where(RoleRow.code == code)).first()
            return role_from_row(row) if row is not None else None

    def get_department_grants(self, department_id: str) -> list[DepartmentGrant]:
        with self._reading("get_department_grants") as db:
            rows = db.scalars(
                select(DepartmentGrantRow)
                .where(DepartmentGrantRow.department_id == department_id)
                .order_by(DepartmentGrantRow.id)
            ).all()
            return [
                DepartmentGrant(
                    department_id=row.department_id,
                    permission_code=row.permission_code,
                    applies_to_employees=row.applies_to_employees,
                    applies_to_managers=row.applies_to_managers,
                    granted=row.granted,
                )
                for row in rows
            ]

    def get_user_permissions(self, user_id: str, context_scope: str | None = None) -> list[UserPermission]:
        """
        Active, non-expired overrides for a user.

        With `context_scope` (e.g. ``department:7``) only unscoped records and
        records for exactly that scope are returned; without it only unscoped
        records apply.
        """

        now = self._clock()
        stmt = select(UserPermissionRow).where(
            UserPermissionRow.user_id == user_id,
            UserPermissionRow.status == PermissionStatus.ACTIVE.value,
            _not_expired(UserPermissionRow.expires_at, now),
        )
        if context_scope:
            stmt = stmt.where(or_(UserPermissionRow.context.is_(None), UserPermissionRow.context == context_scope))
        else:
            stmt = stmt.where(UserPermissionRow.context.is_(None))

        with self._reading("get_user_permissions") as db:
            rows = db.scalars(stmt.order_by(UserPermissionRow.id)).all()
            return [user_permission_from_row(row) for row in rows]

    def get_permission_definitions(self, codes: Iterable[str]) -> dict[str, PermissionDefinition]:
        wanted = sorted(set(codes))
        if not wanted:
            return {}
        with self._reading("get_permission_definitions") as db:
            rows = db.scalars(select(PermissionDefinitionRow).where(PermissionDefinitionRow.code.in_(wanted))).all()
            return {row.code: definition_from_row(row) for row in rows}

    # ---- Extra reads ----------------------------------------------------------------

    def get_all_permission_definitions(self) -> list[PermissionDefinition]:
        with self._reading("get_all_permission_definitions") as db:
            rows = db.scalars(
                select(PermissionDefinitionRow).order_by(
                    PermissionDefinitionRow.category,
                    PermissionDefinitionRow.resource,
                    PermissionDefinitionRow.action,
                )
            ).all()
            implied_by: dict[str, set[str]] = {}
            for row in rows:
                for target in row.implies or ():
                    implied_by.setdefault(target, set()).add(row.code)
            return [definition_from_row(row, implied_by.get(row.code, ())) for row in rows]

    def get_conditional_permissions(self, user_id: str, code: str | None = None) -> list[UserPermission]:
        """
        Active, non-expired overrides that carry conditions. With `code`, only
        records whose (possibly wildcard) code covers it.
        """

        now = self._clock()
        with self._reading("get_conditional_permissions") as db:
            rows = db.scalars(
                select(UserPermissionRow)
                .where(
                    UserPermissionRow.user_id == user_id,
                    UserPermissionRow.status == PermissionStatus.ACTIVE.value,
                    _not_expired(UserPermissionRow.expires_at, now),
                )
                .order_by(UserPermissionRow.id)
            ).all()
            return [
                user_permission_from_row(row)
                for row in rows
                if row.conditions and (code is None or code_matches(row.permission_code, code))
            ]

    def get_user_permission_records(
        self,
        user_id: str,
        code: str | None = None,
        statuses: Iterable[PermissionStatus] | None = None,
    ) -> list[UserPermission]:
        stmt = select(UserPermissionRow).where(UserPermissionRow.user_id == user_id)
        if code is not None:
            stmt = stmt.where(UserPermissionRow.permission_code == code)
        if statuses is not None:
            stmt = stmt.where(UserPermissionRow.status.in_([s.value for s in statuses]))
        with self._reading("get_user_permission_records") as db:
            return [user_permission_from_row(row) for row in db.scalars(stmt.order_by(UserPermissionRow.id)).all()]

    def get_department_membership(self, user_id: str, department_id: str) -> DepartmentMembership | None:
        with self._reading("get_department_membership") as db:
            row = db.scalars(
                select(DepartmentMembershipRow).where(
                    DepartmentMembershipRow.user_id == user_id,
                    DepartmentMembershipRow.department_id == department_id,
                    DepartmentMembershipRow.active.is_(True),
                )
            ).first()
            return _membership_from_row(row) if row is not None else None

    def get_department_memberships(self, user_id: str) -> list[DepartmentMembership]:
        with self._reading("get_department_memberships") as db:
            rows = db.scalars(
                select(DepartmentMembershipRow)
                .where(DepartmentMembershipRow.user_id == user_id, DepartmentMembershipRow.active.is_(True))
                .order_by(DepartmentMembershipRow.id)
            ).all()
            return [_membership_from_row(row) for row in rows]

    def get_project_assignments(self, user_id: str, include_expired: bool = False) -> list[ProjectAssignment]:
        stmt = select(ProjectAssignmentRow).where(
            ProjectAssignmentRow.user_id == user_id,
            ProjectAssignmentRow.active.is_(True),
        )
        if not include_expired:
            stmt = stmt.where(_not_expired(ProjectAssignmentRow.expires_at, self._clock()))
        with self._reading("get_project_assignments") as db:
            rows = db.scalars(stmt.order_by(ProjectAssignmentRow.id)).all()
            return [
                ProjectAssignment(
                    user_id=row.user_id,
                    project_id=row.project_id,
                    permissions=frozenset(row.permissions or ()),
                    project_name=row.project_name,
                    role=row.role,
                    expires_at=row.expires_at,
                    active=row.active,
                )
                for row in rows
            ]

    def get_temporary_elevations(self, user_id: str, include_expired: bool = False) -> list[TemporaryElevation]:
        """Active elevations; expired ones are included only on request (they are never granted)."""

        stmt = select(TemporaryElevationRow).where(
            TemporaryElevationRow.user_id == user_id,
            TemporaryElevationRow.active.is_(True),
        )
        if not include_expired:
            stmt = stmt.where(TemporaryElevationRow.expires_at > self._clock())
        with self._reading("get_temporary_elevations") as db:
            rows = db.scalars(stmt.order_by(TemporaryElevationRow.id)).all()
            return [elevation_from_row(row) for row in rows]

    def get_users_with_expired_elevations(self) -> list[str]:
        with self._reading("get_users_with_expired_elevations") as db:
            rows = db.scalars(
                select(TemporaryElevationRow.user_id)
                .where(TemporaryElevationRow.active.is_(True), TemporaryElevationRow.expires_at <= self._clock())
                .distinct()
                .order_by(TemporaryElevationRow.user_id)
            ).all()
            return list(rows)

    # ---- Delegations ----------------------------------------------------------------

    def get_delegation(self, delegation_id: int) -> Delegation | None:
        with self._reading("get_delegation") as db:
            row = db.get(DelegationRow, delegation_id)
            return delegation_from_row(row) if row is not None else None

    def get_delegations(
        self,
        *,
        manager_id: str | None = None,
        employee_id: str | None = None,
        statuses: Iterable[DelegationStatus] | None = None,
    ) -> list[Delegation]:
        stmt = select(DelegationRow)
        if manager_id is not None:
            stmt = stmt.where(DelegationRow.manager_id == manager_id)
        if employee_id is not None:
            stmt = stmt.where(DelegationRow.employee_id == employee_id)
        if statuses is not None:
            stmt = stmt.where(DelegationRow.status.in_([s.value for s in statuses]))
        with self._reading("get_delegations") as db:
            rows = db.scalars(stmt.order_by(DelegationRow.created_at.desc(), DelegationRow.id.desc())).all()
            return [delegation_from_row(row) for row in rows]

    def count_live_delegations(self, manager_id: str, delegation_type: DelegationType) -> int:
        """Pending or active delegations of one type a manager has outstanding."""

        with self._reading("count_live_delegations") as db:
            rows = db.scalars(
                select(DelegationRow.id).where(
                    DelegationRow.manager_id == manager_id,
                    DelegationRow.delegation_type == delegation_type.value,
                    DelegationRow.status.in_(_LIVE_DELEGATION_STATUSES),
                    DelegationRow.expires_at > self._clock(),
                )
            ).all()
            return len(rows)

    def get_due_delegations(self) -> list[Delegation]:
        """Pending or active delegations whose expiry has passed."""

        with self._reading("get_due_delegations") as db:
            rows = db.scalars(
                select(DelegationRow)
                .where(DelegationRow.status.in_(_LIVE_DELEGATION_STATUSES), DelegationRow.expires_at <= self._clock())
                .order_by(DelegationRow.id)
            ).all()
            return [delegation_from_row(row) for row in rows]

    def get_active_context_id(self, user_id: str, session_id: str) -> str | None:
        with self._reading("get_active_context_id") as db:
            return db.scalars(
                select(SessionContextRow.context_id).where(
                    SessionContextRow.user_id == user_id,
                    SessionContextRow.session_id == session_id,
                )
            ).first()


def _membership_from_row(row: DepartmentMembershipRow) -> DepartmentMembership:
    return DepartmentMembership(
        user_id=row.user_id,
        department_id=row.department_id,
        tier=row.tier,
        department_name=row.department_name,
        active=row.active,
    )
