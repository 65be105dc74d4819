"""Domain errors raised by the permission engine."""

from __future__ import annotations


class PermissionEngineError(Exception):
    """Base class for every error raised by this package."""


class StoreUnavailable(PermissionEngineError):
    """Persistence or transport failure while reading or writing permission data."""


class IdentityNotFound(PermissionEngineError):
    """The identity source has no record for the requested user."""


class UnknownPermission(PermissionEngineError):
    """A permission code is not in the catalog (or is inactive)."""


class AlreadyGranted(PermissionEngineError):
    """An active or pending grant already exists for (user, permission)."""


class NotFound(PermissionEngineError):
    """No record in the required state exists for the requested operation."""


class ValidationFailed(PermissionEngineError):
    """A context switch was rejected by the context validator."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class ContextNotFound(PermissionEngineError):
    """The requested context is not available to the user."""


class ContextExpired(PermissionEngineError):
    """The requested context exists but its expiry has passed."""


class AuditWriteFailed(PermissionEngineError):
    """An audit entry could not be persisted; the originating operation is failed."""


class ChainIntegrityViolation(PermissionEngineError):
    """Audit chain verification detected a tampered or missing entry."""

    def __init__(self, user_id: str, sequence: int | None, reason: str) -> None:
        self.user_id = user_id
        self.sequence = sequence
        self.reason = reason
        super().__init__(f"audit chain broken for user {user_id!r} at sequence {sequence}: {reason}")


class UnknownFramework(PermissionEngineError):
    """Compliance framework name is not registered."""


class CatalogError(PermissionEngineError, ValueError):
    """Raised when the permission catalog YAML is invalid."""


class DelegationRejected(PermissionEngineError):
    """A delegation request broke a delegation rule (scope, holder, limits or approver)."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)
