"""Identity source: who a user is (role, primary department, tier, status)."""

from __future__ import annotations

import logging
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from permission_engine.errors import StoreUnavailable
from permission_engine.models import UserIdentityRow
from permission_engine.types import Identity

logger = logging.getLogger(__name__)


class IdentitySource(Protocol):
    def get_identity(self, user_id: str) -> Identity | None: ...


class SqlIdentitySource:
    """Identity lookups against the local `user_identities` projection."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def get_identity(self, user_id: str) -> Identity | None:
        try:
            with self._session_factory() as db:
                row = db.scalars(select(UserIdentityRow).where(UserIdentityRow.user_id == user_id)).first()
        except SQLAlchemyError as exc:
            logger.error("Identity lookup failed user_id=%s error=%s", user_id, type(exc).__name__)
            raise StoreUnavailable("identity source unavailable") from exc

        if row is None:
            return None
        return Identity(
            user_id=row.user_id,
            role=row.role_code,
            department_id=row.department_id,
            employee_tier=row.employee_tier,
            active=row.active,
            locked=row.locked,
        )
