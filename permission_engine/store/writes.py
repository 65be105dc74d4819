"""
Write side of the store.

Mutations run inside `PermissionWriter.transaction()`, which yields a single
`Session` and commits on exit. Callers append their audit entry to the same
session so the mutation and its audit record commit (or roll back) together.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from permission_engine.errors import StoreUnavailable
from permission_engine.models import (
    DelegationRow,
    DepartmentGrantRow,
    RoleRow,
    SessionContextRow,
    TemporaryElevationRow,
    UserPermissionRow,
)
from permission_engine.types import PermissionSource, PermissionStatus

logger = logging.getLogger(__name__)


class PermissionWriter:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    @contextmanager
    def transaction(self, operation: str) -> Iterator[Session]:
        try:
            with self._session_factory() as db:
                with db.begin():
                    yield db
        except SQLAlchemyError as exc:
            logger.error("Permission store write failed operation=%s error=%s", operation, type(exc).__name__)
            raise StoreUnavailable(f"permission store unavailable during {operation}") from exc

    # ---- User permissions -----------------------------------------------------------

    def find_user_permissions(
        self,
        db: Session,
        user_id: str,
        code: str,
        statuses: tuple[PermissionStatus, ...],
    ) -> list[UserPermissionRow]:
        return list(
            db.scalars(
                select(UserPermissionRow).where(
                    UserPermissionRow.user_id == user_id,
                    UserPermissionRow.permission_code == code,
                    UserPermissionRow.status.in_([s.value for s in statuses]),
                )
            ).all()
        )

    def add_user_permission(self, db: Session, row: UserPermissionRow) -> UserPermissionRow:
        db.add(row)
        db.flush()
        return row

    # ---- Department grants and roles ------------------------------------------------

    def upsert_department_grant(
        self,
        db: Session,
        department_id: str,
        code: str,
        *,
        applies_to_employees: bool,
        applies_to_managers: bool,
        granted: bool,
    ) -> DepartmentGrantRow:
        row = db.scalars(
            select(DepartmentGrantRow).where(
                DepartmentGrantRow.department_id == department_id,
                DepartmentGrantRow.permission_code == code,
            )
        ).first()
        if row is None:
            row = DepartmentGrantRow(department_id=department_id, permission_code=code)
        row.applies_to_employees = applies_to_employees
        row.applies_to_managers = applies_to_managers
        row.granted = granted
        db.add(row)
        db.flush()
        return row

    def delete_department_grant(self, db: Session, department_id: str, code: str) -> bool:
        row = db.scalars(
            select(DepartmentGrantRow).where(
                DepartmentGrantRow.department_id == department_id,
                DepartmentGrantRow.permission_code == code,
            )
        ).first()
        if row is None:
            return False
        db.delete(row)
        db.flush()
        return True

    def get_role_row(self, db: Session, code: str) -> RoleRow | None:
        return db.scalars(select(RoleRow).where(RoleRow.code == code)).first()

    # ---- Contexts -------------------------------------------------------------------

    def get_session_context(self, db: Session, user_id: str, session_id: str) -> SessionContextRow | None:
        return db.scalars(
            select(SessionContextRow).where(
                SessionContextRow.user_id == user_id,
                SessionContextRow.session_id == session_id,
            )
        ).first()

    def set_session_context(
        self,
        db: Session,
        user_id: str,
        session_id: str,
        context_id: str,
        switched_at: datetime,
    ) -> str | None:
        """Record the active context; returns the previously active context id."""

        row = self.get_session_context(db, user_id, session_id)
        previous = row.context_id if row is not None else None
        if row is None:
            row = SessionContextRow(user_id=user_id, session_id=session_id)
        row.previous_context_id = previous
        row.context_id = context_id
        row.switched_at = switched_at
        db.add(row)
        db.flush()
        return previous

    def clear_session_contexts(self, db: Session, context_ids_by_user: dict[str, set[str]]) -> int:
        cleared = 0
        for user_id, context_ids in context_ids_by_user.items():
            rows = db.scalars(
                select(SessionContextRow).where(
                    SessionContextRow.user_id == user_id,
                    SessionContextRow.context_id.in_(sorted(context_ids)),
                )
            ).all()
            for row in rows:
                db.delete(row)
                cleared += 1
        db.flush()
        return cleared

    def add_elevations(self, db: Session, rows: list[TemporaryElevationRow]) -> None:
        db.add_all(rows)
        db.flush()

    def deactivate_expired_elevations(
        self, db: Session, now: datetime, user_id: str | None = None
    ) -> list[TemporaryElevationRow]:
        stmt = select(TemporaryElevationRow).where(
            TemporaryElevationRow.active.is_(True),
            TemporaryElevationRow.expires_at <= now,
        )
        if user_id is not None:
            stmt = stmt.where(TemporaryElevationRow.user_id == user_id)
        rows = list(db.scalars(stmt).all())
        for row in rows:
            row.active = False
        db.flush()
        return rows

    def has_active_elevation(self, db: Session, user_id: str, context_name: str, now: datetime) -> bool:
        return (
            db.scalars(
                select(TemporaryElevationRow.id).where(
                    TemporaryElevationRow.user_id == user_id,
                    TemporaryElevationRow.context_name == context_name,
                    TemporaryElevationRow.active.is_(True),
                    TemporaryElevationRow.expires_at > now,
                )
            ).first()
            is not None
        )

    # ---- Delegations ----------------------------------------------------------------

    def add_delegation(
        self, db: Session, row: DelegationRow, codes: list[str], status: PermissionStatus
    ) -> DelegationRow:
        """Persist a delegation together with one user-permission record per code."""

        db.add(row)
        db.flush()
        db.add_all(
            UserPermissionRow(
                user_id=row.employee_id,
                permission_code=code,
                granted=True,
                expires_at=row.expires_at,
                status=status.value,
                source=PermissionSource.DELEGATION.value,
                delegation_id=row.id,
                reason=row.reason,
                created_by=row.manager_id,
            )
            for code in codes
        )
        db.flush()
        return row

    def get_delegation_row(self, db: Session, delegation_id: int) -> DelegationRow | None:
        return db.get(DelegationRow, delegation_id)

    def set_delegated_permission_status(
        self,
        db: Session,
        delegation_id: int,
        status: PermissionStatus,
        *,
        changed_by: str | None = None,
        changed_at: datetime | None = None,
        reason: str | None = None,
    ) -> int:
        """Move every live record created by a delegation to `status`; returns how many changed."""

        rows = db.scalars(
            select(UserPermissionRow).where(
                UserPermissionRow.delegation_id == delegation_id,
                UserPermissionRow.status.in_([PermissionStatus.PENDING.value, PermissionStatus.ACTIVE.value]),
            )
        ).all()
        for row in rows:
            row.status = status.value
            if status is PermissionStatus.ACTIVE:
                row.approved_by = changed_by
                row.approved_at = changed_at
            elif status is PermissionStatus.REVOKED:
                row.revoked_by = changed_by
                row.revoked_at = changed_at
                row.revoked_reason = reason
        db.flush()
        return len(rows)
