"""ORM models; importing this package registers every table on `Base.metadata`."""

from .audit import ArchivedAuditEntryRow, AuditEntryRow
from .catalog import DepartmentGrantRow, PermissionDefinitionRow, RoleRow, UserPermissionRow
from .delegation import DelegationRow
from .identity import (
    DepartmentMembershipRow,
    ProjectAssignmentRow,
    SessionContextRow,
    TemporaryElevationRow,
    UserIdentityRow,
)

__all__ = [
    "ArchivedAuditEntryRow",
    "AuditEntryRow",
    "DelegationRow",
    "DepartmentGrantRow",
    "DepartmentMembershipRow",
    "PermissionDefinitionRow",
    "ProjectAssignmentRow",
    "RoleRow",
    "SessionContextRow",
    "TemporaryElevationRow",
    "UserIdentityRow",
    "UserPermissionRow",
]
