from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from permission_engine.catalog import Catalog, load_catalog
from permission_engine.db.base import Base
from permission_engine.models import DepartmentGrantRow, PermissionDefinitionRow, RoleRow

logger = logging.getLogger(__name__)


def init_db(session_factory: sessionmaker[Session], catalog_path: Path | None = None) -> None:
    """
    Create tables and, when a catalog file is given and the database has no
    permission definitions yet, seed it from the catalog.
    """

    engine = session_factory.kw["bind"]
    Base.metadata.create_all(bind=engine)

    if catalog_path is None or not catalog_path.exists():
        return

    with session_factory() as db:
        if _has_catalog(db):
            return
        write_catalog(db, load_catalog(catalog_path))
        db.commit()


def _has_catalog(db: Session) -> bool:
    return db.execute(select(PermissionDefinitionRow.id).limit(1)).first() is not None


def write_catalog(db: Session, catalog: Catalog) -> None:
    """Upsert every catalog entry (matched by code / department+permission)."""

    existing_perms = {row.code: row for row in db.scalars(select(PermissionDefinitionRow))}
    for definition in catalog.permissions.values():
        row = existing_perms.get(definition.code) or PermissionDefinitionRow(code=definition.code)
        row.category = definition.category
        row.resource = definition.resource
        row.action = definition.action
        row.description = definition.description
        row.implies = sorted(definition.implies)
        row.is_active = definition.is_active
        db.add(row)
    db.flush()

    existing_roles = {row.code: row for row in db.scalars(select(RoleRow))}
    for role in catalog.roles.values():
        row = existing_roles.get(role.code) or RoleRow(code=role.code)
        row.permissions = sorted(role.permissions)
        row.inherited_roles = list(role.inherited_roles)
        row.level = role.level
        row.is_universal = role.is_universal
        row.is_active = role.is_active
        db.add(row)

    existing_grants = {(row.department_id, row.permission_code): row for row in db.scalars(select(DepartmentGrantRow))}
    for grant in catalog.department_grants:
        row = existing_grants.get((grant.department_id, grant.permission_code)) or DepartmentGrantRow(
            department_id=grant.department_id,
            permission_code=grant.permission_code,
        )
        row.applies_to_employees = grant.applies_to_employees
        row.applies_to_managers = grant.applies_to_managers
        row.granted = grant.granted
        db.add(row)
    db.flush()

    logger.info(
        "Catalog written permissions=%d roles=%d department_grants=%d",
        len(catalog.permissions),
        len(catalog.roles),
        len(catalog.department_grants),
    )
