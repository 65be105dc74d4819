"""
Hash-chained, append-only audit trail.

Every entry is stamped with the next per-user `sequence`, the previous entry's
hash and its own hash over the stored (already encrypted) fields. Writes for
one user are serialized with a per-user lock; the `(user_id, sequence)` unique
constraint rejects a fork written by another process.

Mutations append their entry inside their own transaction:

    with recorder.locked(user_id):
        with writer.transaction("grant_permission") as db:
            ...  # mutate
            recorder.append(db, entry)

so a failed audit write rolls the mutation back.

Retention moves old entries to `archived_audit_entries`; verification and
reporting read across both tables.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Mapping

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from permission_engine.audit.encryption import FieldEncryptor
from permission_engine.audit.frameworks import SEVERITIES, classify, get_framework, missing_fields
from permission_engine.audit.hashing import GENESIS_HASH, HashFunction, compute_entry_hash, json_safe, sha256_hex
from permission_engine.errors import AuditWriteFailed, ChainIntegrityViolation, StoreUnavailable
from permission_engine.models import ArchivedAuditEntryRow, AuditEntryRow
from permission_engine.types import AuditEntry, AuditFilter, AuditResult, utcnow

logger = logging.getLogger(__name__)


# ---- Results ------------------------------------------------------------------------


@dataclass(frozen=True)
class ChainVerification:
    """Outcome of `verify_chain`; truthy when the chain is intact."""

    user_id: str
    valid: bool
    entries_checked: int
    broken_at: int | None = None
    reason: str | None = None

    def __bool__(self) -> bool:
        return self.valid


@dataclass(frozen=True)
class RequirementResult:
    tag: str
    description: str
    total: int
    compliant: int
    percentage: float
    passed: bool
    missing_fields: Mapping[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class ComplianceReport:
    framework: str
    title: str
    version: str
    generated_at: datetime
    total_entries: int
    requirements: tuple[RequirementResult, ...]
    by_action: Mapping[str, int]
    by_severity: Mapping[str, int]
    by_user: Mapping[str, int]
    status: str
    verified_users: tuple[str, ...]

    @property
    def passed(self) -> bool:
        return all(r.passed for r in self.requirements)


@dataclass(frozen=True)
class AuditStatistics:
    total_events: int
    by_severity: Mapping[str, int]
    by_action: Mapping[str, int]
    by_result: Mapping[str, int]
    pending_reviews: int
    compliance_score: int
    generated_at: datetime


# ---- Row conversion -----------------------------------------------------------------


def entry_from_row(row: AuditEntryRow | ArchivedAuditEntryRow, archived: bool = False) -> AuditEntry:
    return AuditEntry(
        id=row.id,
        user_id=row.user_id,
        session_id=row.session_id,
        action=row.action,
        resource=row.resource,
        performed_by=row.performed_by,
        result=AuditResult(row.result),
        timestamp=row.timestamp,
        metadata=dict(row.entry_metadata or {}),
        framework=row.framework,
        severity=row.severity,
        requires_review=row.requires_review,
        requirement_tags=tuple(row.requirement_tags or ()),
        encrypted_fields=tuple(row.encrypted_fields or ()),
        sequence=row.sequence,
        previous_hash=row.previous_hash,
        hash=row.hash,
        archived=archived,
    )


@dataclass
class _UserLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    holders: int = 0


def _to_naive_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


class AuditRecorder:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        hash_fn: HashFunction = sha256_hex,
        encryptor: FieldEncryptor | None = None,
        encrypted_fields: Sequence[str] = (),
        default_framework: str = "PCI_DSS",
        min_retention_days: int = 365,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        get_framework(default_framework)
        self._session_factory = session_factory
        self._hash_fn = hash_fn
        self._encryptor = encryptor
        self._encrypted_fields = tuple(encrypted_fields)
        self._default_framework = default_framework
        self._min_retention_days = min_retention_days
        self._clock = clock

        self._locks: dict[str, _UserLock] = {}
        self._locks_guard = threading.Lock()

    # ---- Writing --------------------------------------------------------------------

    @contextmanager
    def locked(self, user_id: str) -> Iterator[None]:
        """Hold the per-user audit lock (chain appends for one user are strictly ordered)."""

        with self._locks_guard:
            slot = self._locks.get(user_id)
            if slot is None:
                slot = self._locks[user_id] = _UserLock()
            slot.holders += 1
        try:
            with slot.lock:
                yield
        finally:
            # The entry lives only while someone holds or waits for it.
            with self._locks_guard:
                slot.holders -= 1
                if slot.holders == 0:
                    del self._locks[user_id]

    @property
    def tracked_locks(self) -> int:
        with self._locks_guard:
            return len(self._locks)

    def append(self, db: Session, entry: AuditEntry) -> AuditEntry:
        """
        Append `entry` inside the caller's transaction.

        The caller must hold `locked(entry.user_id)` until the transaction
        commits. Any failure is raised as `AuditWriteFailed` so the caller's
        transaction rolls back.
        """

        prepared = self._prepare(entry)
        try:
            sequence, previous_hash = self._chain_head(db, prepared.user_id)
            stamped = replace(prepared, sequence=sequence + 1, previous_hash=previous_hash)
            digest = compute_entry_hash(stamped, previous_hash, self._hash_fn)
            row = AuditEntryRow(
                user_id=stamped.user_id,
                sequence=stamped.sequence,
                session_id=stamped.session_id,
                action=stamped.action,
                resource=stamped.resource,
                performed_by=stamped.performed_by,
                result=stamped.result.value,
                timestamp=stamped.timestamp,
                framework=stamped.framework,
                severity=stamped.severity,
                requires_review=stamped.requires_review,
                requirement_tags=list(stamped.requirement_tags),
                encrypted_fields=list(stamped.encrypted_fields),
                entry_metadata=dict(stamped.metadata),
                previous_hash=previous_hash,
                hash=digest,
            )
            db.add(row)
            db.flush()
        except SQLAlchemyError as exc:
            logger.error(
                "Audit write failed user_id=%s action=%s error=%s", entry.user_id, entry.action, type(exc).__name__
            )
            raise AuditWriteFailed(f"audit write failed for user {entry.user_id!r}") from exc

        logger.debug("Audit entry appended user_id=%s sequence=%d action=%s", stamped.user_id, stamped.sequence, stamped.action)
        return replace(stamped, hash=digest, id=row.id)

    def record(self, entry: AuditEntry) -> AuditEntry:
        """Append `entry` in its own transaction and return the stored entry."""

        with self.locked(entry.user_id):
            try:
                with self._session_factory() as db:
                    with db.begin():
                        return self.append(db, entry)
            except SQLAlchemyError as exc:
                logger.error("Audit commit failed user_id=%s error=%s", entry.user_id, type(exc).__name__)
                raise AuditWriteFailed(f"audit write failed for user {entry.user_id!r}") from exc

    def mark_reviewed(self, entry_id: int) -> bool:
        """Flag a review-required entry as reviewed (`reviewed` is outside the chain hash)."""

        with self._writing("mark_reviewed") as db:
            result = db.execute(
                update(AuditEntryRow)
                .where(AuditEntryRow.id == entry_id, AuditEntryRow.requires_review.is_(True))
                .values(reviewed=True)
            )
            return result.rowcount > 0

    def _prepare(self, entry: AuditEntry) -> AuditEntry:
        framework = get_framework(entry.framework or self._default_framework)
        event = classify(entry.action)

        metadata = json_safe(entry.metadata)
        encrypted: tuple[str, ...] = ()
        if self._encryptor is not None and self._encrypted_fields:
            metadata, encrypted = self._encryptor.encrypt_fields(metadata, self._encrypted_fields)

        return replace(
            entry,
            timestamp=_to_naive_utc(entry.timestamp or self._clock()),
            metadata=metadata,
            framework=framework.name,
            severity=entry.severity or event.severity,
            requires_review=entry.requires_review or event.requires_review,
            requirement_tags=entry.requirement_tags or framework.tags_for(entry.action),
            encrypted_fields=encrypted,
            sequence=None,
            previous_hash=None,
            hash=None,
            id=None,
            archived=False,
        )

    def _chain_head(self, db: Session, user_id: str) -> tuple[int, str]:
        """(last sequence, last hash) across active and archived entries."""

        for model in (AuditEntryRow, ArchivedAuditEntryRow):
            row = db.execute(
                select(model.sequence, model.hash)
                .where(model.user_id == user_id)
                .order_by(model.sequence.desc())
                .limit(1)
            ).first()
            if row is not None:
                return row.sequence, row.hash
        return 0, GENESIS_HASH

    # ---- Verification ---------------------------------------------------------------

    def verify_chain(self, user_id: str) -> ChainVerification:
        """
        Recompute the user's chain from genesis.

        A self-hash mismatch is reported at that entry. A successor whose
        `previous_hash` no longer matches is reported at the predecessor: that
        is the entry whose content changed after its successor was written.
        """

        entries = self._load_chain(user_id)
        expected_previous = GENESIS_HASH
        expected_sequence = 1

        for index, entry in enumerate(entries):
            if entry.sequence != expected_sequence:
                return self._broken(user_id, index, expected_sequence, "sequence gap")
            if compute_entry_hash(entry, entry.previous_hash or "", self._hash_fn) != entry.hash:
                return self._broken(user_id, index, entry.sequence, "entry hash mismatch")
            if entry.previous_hash != expected_previous:
                at = entry.sequence - 1 if index > 0 else entry.sequence
                return self._broken(user_id, index, at, "previous hash mismatch")
            expected_previous = entry.hash or ""
            expected_sequence += 1

        return ChainVerification(user_id=user_id, valid=True, entries_checked=len(entries))

    def _broken(self, user_id: str, checked: int, sequence: int, reason: str) -> ChainVerification:
        logger.warning("Audit chain divergence user_id=%s sequence=%d reason=%s", user_id, sequence, reason)
        return ChainVerification(
            user_id=user_id, valid=False, entries_checked=checked, broken_at=sequence, reason=reason
        )

    def _load_chain(self, user_id: str) -> list[AuditEntry]:
        with self._reading("verify_chain") as db:
            archived = db.scalars(
                select(ArchivedAuditEntryRow).where(ArchivedAuditEntryRow.user_id == user_id)
            ).all()
            active = db.scalars(select(AuditEntryRow).where(AuditEntryRow.user_id == user_id)).all()
            entries = [entry_from_row(r, archived=True) for r in archived] + [entry_from_row(r) for r in active]
        entries.sort(key=lambda e: e.sequence or 0)
        return entries

    # ---- Retention ------------------------------------------------------------------

    def apply_retention_policy(self, framework: str | None = None) -> int:
        """
        Move entries of `framework` older than its retention window (never less
        than `min_retention_days`) into the archive table. Returns the number moved.
        """

        profile = get_framework(framework or self._default_framework)
        days = max(profile.retention_days, self._min_retention_days)
        now = self._clock()
        cutoff = now - timedelta(days=days)

        with self._writing("apply_retention_policy") as db:
            rows = db.scalars(
                select(AuditEntryRow)
                .where(AuditEntryRow.framework == profile.name, AuditEntryRow.timestamp < cutoff)
                .order_by(AuditEntryRow.user_id, AuditEntryRow.sequence)
            ).all()
            for row in rows:
                db.add(
                    ArchivedAuditEntryRow(
                        user_id=row.user_id,
                        sequence=row.sequence,
                        session_id=row.session_id,
                        action=row.action,
                        resource=row.resource,
                        performed_by=row.performed_by,
                        result=row.result,
                        timestamp=row.timestamp,
                        framework=row.framework,
                        severity=row.severity,
                        requires_review=row.requires_review,
                        reviewed=row.reviewed,
                        requirement_tags=list(row.requirement_tags or ()),
                        encrypted_fields=list(row.encrypted_fields or ()),
                        entry_metadata=dict(row.entry_metadata or {}),
                        previous_hash=row.previous_hash,
                        hash=row.hash,
                        archived_at=now,
                    )
                )
            moved_ids = [row.id for row in rows]
            if moved_ids:
                db.flush()
                db.execute(delete(AuditEntryRow).where(AuditEntryRow.id.in_(moved_ids)))

        logger.info("Audit retention applied framework=%s retention_days=%d archived=%d", profile.name, days, len(moved_ids))
        return len(moved_ids)

    # ---- Queries --------------------------------------------------------------------

    def get_audit_trail(self, user_id: str, audit_filter: AuditFilter | None = None) -> list[AuditEntry]:
        """Newest first; encrypted fields are decrypted when a key is configured."""

        audit_filter = replace(audit_filter or AuditFilter(), user_id=user_id)
        return [self._decrypted(e) for e in self._query(audit_filter)]

    def get_audit_statistics(self, user_id: str | None = None, audit_filter: AuditFilter | None = None) -> AuditStatistics:
        audit_filter = audit_filter or AuditFilter(limit=None)
        if user_id is not None:
            audit_filter = replace(audit_filter, user_id=user_id)
        entries, reviewed = self._query_with_review_state(audit_filter)

        by_severity = {severity: 0 for severity in SEVERITIES}
        by_severity.update(Counter(e.severity or "medium" for e in entries))
        pending = sum(1 for e in entries if e.requires_review and not reviewed.get(e.id, False))
        score = max(0, 100 - by_severity["critical"] * 20 - by_severity["high"] * 5 - pending * 2)

        return AuditStatistics(
            total_events=len(entries),
            by_severity=by_severity,
            by_action=dict(Counter(e.action for e in entries)),
            by_result=dict(Counter(e.result.value for e in entries)),
            pending_reviews=pending,
            compliance_score=score,
            generated_at=self._clock(),
        )

    def generate_compliance_report(
        self, framework: str | None = None, audit_filter: AuditFilter | None = None
    ) -> ComplianceReport:
        """
        Per-requirement pass/fail and percentage for `framework`.

        Every chain the report touches is verified first; a broken chain halts
        the report with `ChainIntegrityViolation`.
        """

        profile = get_framework(framework or self._default_framework)
        audit_filter = audit_filter or AuditFilter(limit=None, include_archived=True)
        entries = [e for e in self._query(audit_filter) if e.framework == profile.name]

        users = sorted({e.user_id for e in entries} | ({audit_filter.user_id} if audit_filter.user_id else set()))
        for user_id in users:
            verification = self.verify_chain(user_id)
            if not verification:
                logger.critical(
                    "Audit chain tampering detected user_id=%s sequence=%s reason=%s framework=%s",
                    user_id,
                    verification.broken_at,
                    verification.reason,
                    profile.name,
                )
                raise ChainIntegrityViolation(user_id, verification.broken_at, verification.reason or "chain broken")

        results: list[RequirementResult] = []
        for requirement in profile.requirements:
            tagged = [e for e in entries if requirement.tag in e.requirement_tags]
            gaps: Counter[str] = Counter()
            compliant = 0
            for entry in tagged:
                missing = missing_fields(entry, requirement.required_fields)
                if missing:
                    gaps.update(missing)
                else:
                    compliant += 1
            percentage = round(compliant / len(tagged) * 100, 2) if tagged else 100.0
            results.append(
                RequirementResult(
                    tag=requirement.tag,
                    description=requirement.description,
                    total=len(tagged),
                    compliant=compliant,
                    percentage=percentage,
                    passed=compliant == len(tagged),
                    missing_fields=dict(gaps),
                )
            )

        by_severity = Counter(e.severity or "medium" for e in entries)
        if not all(r.passed for r in results) or by_severity.get("critical", 0) > 0:
            status = "non-compliant"
        elif by_severity.get("high", 0) > 10:
            status = "requires-review"
        else:
            status = "compliant"

        logger.info("Compliance report generated framework=%s entries=%d status=%s", profile.name, len(entries), status)
        return ComplianceReport(
            framework=profile.name,
            title=profile.title,
            version=profile.version,
            generated_at=self._clock(),
            total_entries=len(entries),
            requirements=tuple(results),
            by_action=dict(Counter(e.action for e in entries)),
            by_severity=dict(by_severity),
            by_user=dict(Counter(e.user_id for e in entries)),
            status=status,
            verified_users=tuple(users),
        )

    def _query(self, audit_filter: AuditFilter) -> list[AuditEntry]:
        return self._query_with_review_state(audit_filter)[0]

    def _query_with_review_state(self, audit_filter: AuditFilter) -> tuple[list[AuditEntry], dict[int, bool]]:
        models: list[tuple[type, bool]] = [(AuditEntryRow, False)]
        if audit_filter.include_archived:
            models.append((ArchivedAuditEntryRow, True))

        entries: list[AuditEntry] = []
        reviewed: dict[int, bool] = {}
        with self._reading("audit_query") as db:
            for model, archived in models:
                stmt = select(model)
                if audit_filter.user_id is not None:
                    stmt = stmt.where(model.user_id == audit_filter.user_id)
                if audit_filter.start is not None:
                    stmt = stmt.where(model.timestamp >= audit_filter.start)
                if audit_filter.end is not None:
                    stmt = stmt.where(model.timestamp <= audit_filter.end)
                if audit_filter.action is not None:
                    stmt = stmt.where(model.action == audit_filter.action)
                if audit_filter.result is not None:
                    stmt = stmt.where(model.result == audit_filter.result.value)
                for row in db.scalars(stmt).all():
                    entries.append(entry_from_row(row, archived=archived))
                    if not archived:
                        reviewed[row.id] = row.reviewed

        entries.sort(key=lambda e: (e.timestamp or datetime.min, e.sequence or 0), reverse=True)
        if audit_filter.limit is not None:
            entries = entries[: audit_filter.limit]
        return entries, reviewed

    def _decrypted(self, entry: AuditEntry) -> AuditEntry:
        if not entry.encrypted_fields or self._encryptor is None:
            return entry
        return replace(entry, metadata=self._encryptor.decrypt_fields(entry.metadata, entry.encrypted_fields))

    def count(self, user_id: str) -> int:
        with self._reading("audit_count") as db:
            active = db.scalar(select(func.count()).select_from(AuditEntryRow).where(AuditEntryRow.user_id == user_id))
            archived = db.scalar(
                select(func.count()).select_from(ArchivedAuditEntryRow).where(ArchivedAuditEntryRow.user_id == user_id)
            )
        return int(active or 0) + int(archived or 0)

    # ---- Sessions -------------------------------------------------------------------

    @contextmanager
    def _reading(self, operation: str) -> Iterator[Session]:
        try:
            with self._session_factory() as db:
                yield db
        except SQLAlchemyError as exc:
            logger.error("Audit store read failed operation=%s error=%s", operation, type(exc).__name__)
            raise StoreUnavailable(f"audit store unavailable during {operation}") from exc

    @contextmanager
    def _writing(self, operation: str) -> Iterator[Session]:
        try:
            with self._session_factory() as db:
                with db.begin():
                    yield db
        except SQLAlchemyError as exc:
            logger.error("Audit store write failed operation=%s error=%s", operation, type(exc).__name__)
            raise StoreUnavailable(f"audit store unavailable during {operation}") from exc
