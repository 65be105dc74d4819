from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from permission_engine.db.base import Base
from permission_engine.types import utcnow


class PermissionDefinitionRow(Base):
    __tablename__ = "permission_definitions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    code: Mapped[str] = mapped_column(String(150), unique=True, nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False, default="general")
    resource: Mapped[str] = mapped_column(String(100), nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Codes this permission implies (dependency edges).
    implies: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class RoleRow(Base):
    __tablename__ = "roles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    permissions: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    inherited_roles: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    level: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_universal: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class DepartmentGrantRow(Base):
    __tablename__ = "department_grants"
    __table_args__ = (UniqueConstraint("department_id", "permission_code"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    department_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    permission_code: Mapped[str] = mapped_column(ForeignKey("permission_definitions.code"), nullable=False)

    applies_to_employees: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    applies_to_managers: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    granted: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class UserPermissionRow(Base):
    __tablename__ = "user_permissions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    permission_code: Mapped[str] = mapped_column(ForeignKey("permission_definitions.code"), nullable=False, index=True)

    # false = explicit denial
    granted: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    context: Mapped[str | None] = mapped_column(String(150), nullable=True)
    conditions: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)

    status: Mapped[str] = mapped_column(String(20), default="active", nullable=False, index=True)
    source: Mapped[str] = mapped_column(String(20), default="manual", nullable=False)
    delegation_id: Mapped[int | None] = mapped_column(
        ForeignKey("permission_delegations.id"), nullable=True, index=True
    )
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    approved_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    revoked_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    revoked_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
