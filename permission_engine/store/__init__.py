from .identity import IdentitySource, SqlIdentitySource
from .permission_store import PermissionStore
from .writes import PermissionWriter

__all__ = ["IdentitySource", "PermissionStore", "PermissionWriter", "SqlIdentitySource"]
