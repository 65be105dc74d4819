"""
`PermissionEngine`: the in-process surface callers use.

Wires store, resolver, context switcher, delegations and audit recorder from
`Settings`; every collaborator can be replaced through `build_engine` keyword
arguments.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.orm import Session, sessionmaker

from permission_engine.audit.encryption import FieldEncryptor
from permission_engine.audit.hashing import HashFunction, sha256_hex
from permission_engine.audit.recorder import AuditRecorder, AuditStatistics, ChainVerification, ComplianceReport
from permission_engine.db.init_db import init_db
from permission_engine.db.session import session_factory_from_settings
from permission_engine.engine.cache import PermissionCache
from permission_engine.engine.conditions import ConditionEvaluator
from permission_engine.engine.contexts import ContextSwitcher, ContextValidator
from permission_engine.engine.delegation import DelegationService
from permission_engine.engine.dependencies import DependencyResolver
from permission_engine.engine.resolver import PermissionResolver
from permission_engine.logging_config import configure_engine_logging
from permission_engine.settings import Settings, get_settings
from permission_engine.store import IdentitySource, PermissionStore, PermissionWriter, SqlIdentitySource
from permission_engine.types import (
    AuditEntry,
    AuditFilter,
    ContextLike,
    Delegation,
    DelegationType,
    PermissionContext,
    SwitchResult,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass
class PermissionEngine:
    settings: Settings
    store: PermissionStore
    writer: PermissionWriter
    identities: IdentitySource
    resolver: PermissionResolver
    contexts: ContextSwitcher
    delegations: DelegationService
    audit: AuditRecorder

    # ---- Checks ---------------------------------------------------------------------

    def has_permission(
        self, user_id: str, code: str, context: ContextLike = None, *, session_id: str | None = None
    ) -> bool:
        return self.resolver.has_permission(user_id, code, context, session_id=session_id)

    def resolve_effective(self, user_id: str, context: ContextLike = None) -> frozenset[str]:
        return self.resolver.resolve_effective(user_id, context)

    # ---- Contexts -------------------------------------------------------------------

    def available_contexts(self, user_id: str) -> list[PermissionContext]:
        return self.contexts.available_contexts(user_id)

    def switch_to(self, user_id: str, session_id: str, context_id: str) -> SwitchResult:
        return self.contexts.switch_to(user_id, session_id, context_id)

    def has_permission_in_context(self, user_id: str, session_id: str, code: str) -> bool:
        return self.contexts.has_permission_in_context(user_id, session_id, code)

    # ---- Delegation -----------------------------------------------------------------

    def delegate_permissions(
        self,
        manager_id: str,
        employee_id: str,
        permissions: list[str],
        *,
        delegation_type: DelegationType | str = DelegationType.TEMPORARY,
        duration: timedelta | None = None,
        reason: str | None = None,
    ) -> Delegation:
        return self.delegations.delegate_permissions(
            manager_id, employee_id, permissions, delegation_type=delegation_type, duration=duration, reason=reason
        )

    def revoke_delegation(self, delegation_id: int, revoked_by: str, reason: str) -> Delegation:
        return self.delegations.revoke_delegation(delegation_id, revoked_by, reason)

    # ---- Audit ----------------------------------------------------------------------

    def get_audit_trail(self, user_id: str, audit_filter: AuditFilter | None = None) -> list[AuditEntry]:
        return self.audit.get_audit_trail(user_id, audit_filter)

    def get_audit_statistics(self, user_id: str | None = None, audit_filter: AuditFilter | None = None) -> AuditStatistics:
        return self.audit.get_audit_statistics(user_id, audit_filter)

    def generate_compliance_report(
        self, framework: str | None = None, audit_filter: AuditFilter | None = None
    ) -> ComplianceReport:
        return self.audit.generate_compliance_report(framework, audit_filter)

    def verify_chain(self, user_id: str) -> ChainVerification:
        return self.audit.verify_chain(user_id)


def build_engine(
    settings: Settings | None = None,
    session_factory: sessionmaker[Session] | None = None,
    *,
    identities: IdentitySource | None = None,
    validator: ContextValidator | None = None,
    hash_fn: HashFunction = sha256_hex,
    clock: Callable[[], datetime] = utcnow,
    condition_clock: Callable[[], datetime] | None = None,
    initialize: bool = True,
) -> PermissionEngine:
    """
    Assemble an engine.

    With `initialize=True` tables are created and, on an empty database, the
    permission catalog from `settings.catalog_path` is loaded.
    """

    settings = settings or get_settings()
    configure_engine_logging(settings.log_level)
    session_factory = session_factory or session_factory_from_settings(settings)
    if initialize:
        init_db(session_factory, settings.resolved_catalog_path())

    encryptor = FieldEncryptor(settings.audit_encryption_key) if settings.audit_encryption_key else None
    if encryptor is None and settings.audit_encrypted_fields:
        logger.warning("No audit encryption key configured; sensitive audit fields are stored in clear text")

    store = PermissionStore(session_factory, clock=clock)
    writer = PermissionWriter(session_factory)
    identities = identities or SqlIdentitySource(session_factory)
    audit = AuditRecorder(
        session_factory,
        hash_fn=hash_fn,
        encryptor=encryptor,
        encrypted_fields=settings.audit_encrypted_fields,
        default_framework=settings.default_framework,
        min_retention_days=settings.min_retention_days,
        clock=clock,
    )
    resolver = PermissionResolver(
        store,
        identities,
        writer,
        audit,
        cache=PermissionCache(default_ttl_seconds=settings.cache_ttl_seconds),
        dependency_resolver=DependencyResolver(store.get_permission_definitions),
        evaluator=ConditionEvaluator(condition_clock) if condition_clock else ConditionEvaluator(),
        manager_tiers=settings.manager_tiers,
        audit_checks=settings.audit_checks,
        clock=clock,
    )
    contexts = ContextSwitcher(
        store,
        identities,
        writer,
        resolver,
        audit,
        validator=validator,
        manager_tiers=settings.manager_tiers,
        max_elevation_hours=settings.max_elevation_hours,
        audit_checks=settings.audit_checks,
        clock=clock,
    )
    delegations = DelegationService(
        store,
        identities,
        writer,
        resolver,
        audit,
        manager_tiers=settings.manager_tiers,
        non_delegable=settings.non_delegable_permissions,
        admin_permission=settings.delegation_admin_permission,
        clock=clock,
    )

    logger.info(
        "Permission engine ready cache_ttl=%ss manager_tiers=%s framework=%s audit_checks=%s",
        settings.cache_ttl_seconds,
        ",".join(settings.manager_tiers),
        settings.default_framework,
        settings.audit_checks,
    )
    return PermissionEngine(
        settings=settings,
        store=store,
        writer=writer,
        identities=identities,
        resolver=resolver,
        contexts=contexts,
        delegations=delegations,
        audit=audit,
    )
