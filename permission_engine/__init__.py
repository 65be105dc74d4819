"""Dynamic permission resolution, context switching and hash-chained audit trail."""

from permission_engine.engine.facade import PermissionEngine, build_engine
from permission_engine.errors import PermissionEngineError
from permission_engine.types import GrantOptions, RequestContext

__all__ = ["GrantOptions", "PermissionEngine", "PermissionEngineError", "RequestContext", "build_engine"]
