from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from permission_engine.db.base import Base


class _AuditColumns:
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    session_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource: Mapped[str | None] = mapped_column(String(150), nullable=True)
    performed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    result: Mapped[str] = mapped_column(String(10), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)

    framework: Mapped[str | None] = mapped_column(String(20), nullable=True)
    severity: Mapped[str | None] = mapped_column(String(10), nullable=True)
    requires_review: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    reviewed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    requirement_tags: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)

    encrypted_fields: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    entry_metadata: Mapped[dict] = mapped_column("metadata", JSON, default=dict, nullable=False)

    previous_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    hash: Mapped[str] = mapped_column(String(128), nullable=False)


class AuditEntryRow(_AuditColumns, Base):
    """Append-only: rows are never updated, only moved to the archive table."""

    __tablename__ = "audit_entries"
    __table_args__ = (UniqueConstraint("user_id", "sequence", name="uq_audit_entries_user_sequence"),)


class ArchivedAuditEntryRow(_AuditColumns, Base):
    __tablename__ = "archived_audit_entries"
    __table_args__ = (UniqueConstraint("user_id", "sequence", name="uq_archived_audit_entries_user_sequence"),)

    archived_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
