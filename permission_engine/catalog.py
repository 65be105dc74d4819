"""
Permission catalog YAML loader.

The catalog describes the administrator-owned part of the permission model:
permission definitions (with their `implies` edges), roles (with ordered
inheritance) and department grants. It is validated once and then written to
the database by `permission_engine.db.init_db`.

Expected shape (simplified):

    permissions:
      orders.read:
        category: sales
        resource: orders
        action: read
      orders.manage:
        category: sales
        resource: orders
        action: manage
        implies: [orders.read, orders.create]

    roles:
      employee:
        level: 10
        permissions: [orders.read]
      superadmin:
        level: 100
        universal: true
        inherits: [employee]

    department_grants:
      - department: sales
        permission: clients.read
        employees: true
        managers: true
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import BaseModel, Field, ValidationError

from permission_engine.errors import CatalogError
from permission_engine.types import DepartmentGrant, PermissionDefinition, RoleDefinition

logger = logging.getLogger(__name__)


class PermissionEntry(BaseModel):
    category: str = "general"
    resource: str | None = None
    action: str | None = None
    description: str | None = None
    implies: list[str] = Field(default_factory=list)
    active: bool = True


class RoleEntry(BaseModel):
    level: int = 0
    permissions: list[str] = Field(default_factory=list)
    inherits: list[str] = Field(default_factory=list)
    universal: bool = False
    active: bool = True
    description: str | None = None


class DepartmentGrantEntry(BaseModel):
    department: str
    permission: str
    employees: bool = True
    managers: bool = True
    granted: bool = True


class CatalogModel(BaseModel):
    permissions: dict[str, PermissionEntry] = Field(default_factory=dict)
    roles: dict[str, RoleEntry] = Field(default_factory=dict)
    department_grants: list[DepartmentGrantEntry] = Field(default_factory=list)


@dataclass(frozen=True)
class Catalog:
    """Fully-validated catalog."""

    permissions: Mapping[str, PermissionDefinition]
    roles: Mapping[str, RoleDefinition]
    department_grants: tuple[DepartmentGrant, ...]


def _split_code(code: str) -> tuple[str, str]:
    # "orders.create" -> ("orders", "create"); "orders.*" -> ("orders", "*")
    resource, _, action = code.rpartition(".")
    return (resource or code), (action or "*")


def parse_catalog(raw: Mapping[str, Any]) -> Catalog:
    try:
        model = CatalogModel.model_validate(raw)
    except ValidationError as exc:
        raise CatalogError(f"invalid permission catalog: {exc}") from exc

    # implied_by is the reverse of implies; computed here so the catalog stays the single source.
    implied_by: dict[str, set[str]] = {}
    for code, entry in model.permissions.items():
        for target in entry.implies:
            implied_by.setdefault(target, set()).add(code)

    permissions: dict[str, PermissionDefinition] = {}
    for code, entry in model.permissions.items():
        unknown = set(entry.implies).difference(model.permissions.keys())
        if unknown:
            raise CatalogError(f"permission {code!r} implies unknown permissions: {sorted(unknown)}")
        default_resource, default_action = _split_code(code)
        permissions[code] = PermissionDefinition(
            code=code,
            category=entry.category,
            resource=entry.resource or default_resource,
            action=entry.action or default_action,
            implies=frozenset(entry.implies),
            implied_by=frozenset(implied_by.get(code, ())),
            is_active=entry.active,
            description=entry.description,
        )

    roles: dict[str, RoleDefinition] = {}
    for code, entry in model.roles.items():
        unknown = set(entry.permissions).difference(permissions.keys())
        if unknown:
            raise CatalogError(f"role {code!r} references unknown permissions: {sorted(unknown)}")
        roles[code] = RoleDefinition(
            code=code,
            permissions=frozenset(entry.permissions),
            inherited_roles=tuple(entry.inherits),
            is_active=entry.active,
            level=entry.level,
            is_universal=entry.universal,
        )

    for role in roles.values():
        for parent in role.inherited_roles:
            if parent not in roles:
                raise CatalogError(f"role {role.code!r} inherits unknown role {parent!r}")
    _check_role_cycles(roles)

    grants: list[DepartmentGrant] = []
    for entry in model.department_grants:
        if entry.permission not in permissions:
            raise CatalogError(
                f"department grant for {entry.department!r} references unknown permission {entry.permission!r}"
            )
        grants.append(
            DepartmentGrant(
                department_id=entry.department,
                permission_code=entry.permission,
                applies_to_employees=entry.employees,
                applies_to_managers=entry.managers,
                granted=entry.granted,
            )
        )

    return Catalog(permissions=permissions, roles=roles, department_grants=tuple(grants))


def _check_role_cycles(roles: Mapping[str, RoleDefinition]) -> None:
    """Detect cycles in role inheritance and raise CatalogError if found."""

    done: set[str] = set()
    visiting: set[str] = set()

    def dfs(code: str) -> None:
        if code in done:
            return
        if code in visiting:
            raise CatalogError(f"cycle detected in role inheritance at {code!r}")
        visiting.add(code)
        for parent in roles[code].inherited_roles:
            dfs(parent)
        visiting.remove(code)
        done.add(code)

    for code in roles:
        dfs(code)


def load_catalog(path: Path) -> Catalog:
    """Load and validate the catalog YAML from disk."""

    raw_text = path.read_text(encoding="utf-8")
    raw = yaml.safe_load(raw_text) or {}
    if not isinstance(raw, dict):
        raise CatalogError(f"catalog must be a mapping: {path}")
    catalog = parse_catalog(raw)
    logger.info(
        "Loaded permission catalog path=%s permissions=%d roles=%d department_grants=%d",
        path,
        len(catalog.permissions),
        len(catalog.roles),
        len(catalog.department_grants),
    )
    return catalog
