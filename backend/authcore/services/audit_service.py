"""Hash-chained, signed audit ledger."""

from __future__ import annotations

import hmac
import json
import logging
import re
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from authcore.config import settings
from authcore.core.metrics import AUDIT_APPENDS
from authcore.core.security import Signer, get_signer, naive_utc, utcnow
from authcore.models.audit import AuditRecord
from authcore.schemas.audit import (
    AuditEventCreate,
    ChainError,
    ChainVerification,
    ComplianceReport,
    RecordVerification,
)

logger = logging.getLogger(__name__)

# previous_hash of the first record in every scope
SENTINEL_HASH = "0" * 64

REDACTED = "[REDACTED]"

SEVERITY_BY_ACTION = {
    "delete_user": "critical",
    "update_permissions": "critical",
    "update_role": "critical",
    "bulk_delete": "critical",
    "token_reuse_detected": "critical",
    "delete": "high",
    "export_data": "high",
    "bulk_export": "high",
    "update": "medium",
    "create_payment": "medium",
    "all_refresh_tokens_revoked": "medium",
}
SECURITY_SEVERITIES = ("high", "critical")

_SENSITIVE_KEYS = {
    "password",
    "password_hash",
    "old_password",
    "new_password",
    "token",
    "secret",
    "client_secret",
    "api_key",
    "apikey",
    "card_number",
    "cvv",
    "authorization",
}
_SENSITIVE_SUFFIXES = ("_token", "_secret", "_password", "_api_key")
_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def _format_timestamp(value: datetime) -> str:
    return naive_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _is_sensitive_key(key: str) -> bool:
    normalized = _CAMEL_BOUNDARY.sub("_", str(key)).replace("-", "_").lower()
    return normalized in _SENSITIVE_KEYS or normalized.endswith(_SENSITIVE_SUFFIXES)


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: REDACTED if _is_sensitive_key(key) else _redact(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [_redact(item) for item in value]
    return value


class AuditLedger:
    """Append and verify tamper-evident audit records.

    Each record's hash covers its stable fields plus the previous record's hash
    in the same tenant scope, and the hash is signed with the injected Signer.
    Appends to one scope are serialized in-process by a per-scope lock and
    across processes by the unique (scope_key, chain_sequence) constraint: an
    append computed from a stale chain head fails to commit and is retried.
    """

    def __init__(
        self,
        signer: Signer,
        *,
        algorithm: Optional[str] = None,
        version: Optional[str] = None,
        max_retries: Optional[int] = None,
        batch_size: Optional[int] = None,
    ) -> None:
        self._signer = signer
        self.algorithm = algorithm or settings.AUDIT_HASH_ALGORITHM
        self.version = version or settings.AUDIT_INTEGRITY_VERSION
        self._max_retries = max(1, max_retries or settings.AUDIT_APPEND_MAX_RETRIES)
        self._batch_size = max(1, batch_size or settings.VERIFY_BATCH_SIZE)
        # scope_key -> [lock, holders and waiters]; entries go away when unused
        self._locks: Dict[str, List[Any]] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _scope_lock(self, scope_key: str) -> Iterator[None]:
        with self._locks_guard:
            entry = self._locks.setdefault(scope_key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[scope_key]

    # Event normalization

    @staticmethod
    def severity_for(action: str, override: Optional[str] = None) -> str:
        if override:
            return override
        return SEVERITY_BY_ACTION.get(action, "low")

    @staticmethod
    def sanitize_details(details: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Redact sensitive keys and coerce values to their stored JSON form

        The hash is computed over exactly what the JSON column stores, so
        values such as datetimes are converted to strings up front.
        """
        if not details:
            return {}
        try:
            normalized = json.loads(json.dumps(details, default=str, ensure_ascii=False))
        except ValueError:
            logger.warning("Audit details not serializable; storing a placeholder")
            return {"unserializable_details": True}
        return _redact(normalized)

    # Integrity computation

    @staticmethod
    def canonical_payload(record: AuditRecord, previous_hash: str) -> str:
        """Deterministic serialization of a record's stable fields."""
        fields = {
            "action": record.action,
            "actor_id": record.actor_id,
            "entity_type": record.entity_type,
            "entity_id": record.entity_id,
            "tenant_id": record.tenant_id,
            "severity": record.severity,
            "timestamp": _format_timestamp(record.timestamp),
            "details": record.details or {},
            "previous_hash": previous_hash,
        }
        return json.dumps(fields, sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    def compute_hash(self, record: AuditRecord, previous_hash: str) -> str:
        return self._signer.hash(self.canonical_payload(record, previous_hash))

    def _seal(self, record: AuditRecord, previous_hash: str, sequence: int) -> None:
        record_hash = self.compute_hash(record, previous_hash)
        record.signature = self._signer.sign(record_hash)
        record.hash = record_hash
        record.previous_hash = previous_hash
        record.chain_sequence = sequence
        record.algorithm = self.algorithm
        record.integrity_version = self.version

    @staticmethod
    def _chain_head(db: Session, scope_key: str) -> Tuple[int, str, Optional[datetime]]:
        """Sequence, hash and timestamp of the newest chained record in a scope."""
        head = (
            db.query(AuditRecord.chain_sequence, AuditRecord.hash, AuditRecord.timestamp)
            .filter(AuditRecord.scope_key == scope_key, AuditRecord.chain_sequence.isnot(None))
            .order_by(AuditRecord.chain_sequence.desc())
            .first()
        )
        if head is None:
            return 0, SENTINEL_HASH, None
        return head.chain_sequence, head.hash, naive_utc(head.timestamp)

    @staticmethod
    def _chain_timestamp(requested: Optional[datetime], head_timestamp: Optional[datetime]) -> datetime:
        """
        Timestamp for a record appended after the current head

        Chain order and timestamp order must agree, so a timestamp earlier
        than the head's (a backdated event, or clock skew between writers)
        is raised to the head's. Equal timestamps are ordered by id. Caller
        timestamps in the future are capped at the current time.
        """
        now = utcnow()
        timestamp = min(naive_utc(requested) or now, now)
        if head_timestamp is not None and timestamp < head_timestamp:
            logger.warning(
                "Audit timestamp %s precedes chain head %s; using the head's timestamp",
                timestamp.isoformat(),
                head_timestamp.isoformat(),
            )
            return head_timestamp
        return timestamp

    # Append

    def append(self, db: Session, event: AuditEventCreate) -> Optional[AuditRecord]:
        """
        Append one event to its tenant's chain

        Commits the session. Never raises for storage or integrity failures:
        the event is written without integrity data if it cannot be chained,
        and None is returned if it cannot be written at all.

        Args:
            db: Database session
            event: Event description

        Returns:
            The stored record, or None
        """
        tenant_id = event.tenant_id or None
        scope_key = AuditRecord.scope_for(tenant_id)
        fields = {
            "action": event.action,
            "actor_id": event.actor_id,
            "entity_type": event.entity_type,
            "entity_id": event.entity_id,
            "tenant_id": tenant_id,
            "scope_key": scope_key,
            "severity": self.severity_for(event.action, event.severity),
            "details": self.sanitize_details(event.details),
        }

        with self._scope_lock(scope_key):
            for attempt in range(1, self._max_retries + 1):
                try:
                    sequence, previous_hash, head_timestamp = self._chain_head(db, scope_key)
                except SQLAlchemyError as exc:
                    db.rollback()
                    logger.error("Audit append failed reading chain head for scope %s: %s", scope_key, exc)
                    AUDIT_APPENDS.labels("failed").inc()
                    return None

                fields["timestamp"] = self._chain_timestamp(event.timestamp, head_timestamp)
                record = AuditRecord(**fields)
                try:
                    self._seal(record, previous_hash, sequence + 1)
                except Exception as exc:
                    logger.exception("Audit integrity computation failed for action %s: %s", event.action, exc)
                    return self._write_degraded(db, fields)

                db.add(record)
                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    logger.warning(
                        "Audit chain head moved for scope %s, retrying append (attempt %d)",
                        scope_key,
                        attempt,
                    )
                    continue
                except SQLAlchemyError as exc:
                    db.rollback()
                    logger.error("Audit append failed for action %s: %s", event.action, exc)
                    AUDIT_APPENDS.labels("failed").inc()
                    return None

                db.refresh(record)
                AUDIT_APPENDS.labels("chained").inc()
                return record

            logger.error(
                "Audit chain for scope %s still contended after %d attempts",
                scope_key,
                self._max_retries,
            )
            return self._write_degraded(db, fields)

    def _write_degraded(self, db: Session, fields: Dict[str, Any]) -> Optional[AuditRecord]:
        """Persist the event without integrity fields rather than lose it."""
        record = AuditRecord(**fields)
        db.add(record)
        try:
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Audit event %s lost: %s", fields.get("action"), exc)
            AUDIT_APPENDS.labels("failed").inc()
            return None
        db.refresh(record)
        logger.error(
            "Audit record %s written WITHOUT integrity data (action=%s, scope=%s)",
            record.id,
            record.action,
            record.scope_key,
        )
        AUDIT_APPENDS.labels("degraded").inc()
        return record

    def log_event(
        self,
        db: Session,
        *,
        action: str,
        actor_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[str] = None,
    ) -> Optional[AuditRecord]:
        return self.append(
            db,
            AuditEventCreate(
                action=action,
                actor_id=actor_id,
                entity_type=entity_type,
                entity_id=entity_id,
                tenant_id=tenant_id,
                details=details or {},
                severity=severity,
            ),
        )

    def log_bulk(self, db: Session, events: List[Any]) -> Optional[List[Optional[AuditRecord]]]:
        """Append several events in order; None if any entry is malformed."""
        try:
            parsed = [
                event if isinstance(event, AuditEventCreate) else AuditEventCreate.model_validate(event)
                for event in events
            ]
        except PydanticValidationError as exc:
            logger.error("AuditLedger.log_bulk failed: %s", exc)
            return None
        return [self.append(db, event) for event in parsed]

    # Verification

    def verify_record(self, record: AuditRecord) -> RecordVerification:
        if not record.has_integrity or record.previous_hash is None:
            return RecordVerification(valid=False, reason="no_integrity_data")

        expected = self.compute_hash(record, record.previous_hash)
        if not hmac.compare_digest(expected, record.hash):
            return RecordVerification(valid=False, reason="hash_mismatch")

        if not self._signer.verify(record.hash, record.signature):
            return RecordVerification(valid=False, reason="signature_invalid")

        return RecordVerification(valid=True, reason="valid")

    def _seed_previous_hash(self, db: Session, scope_key: str, start: Optional[datetime]) -> str:
        if start is None:
            return SENTINEL_HASH
        prior = (
            db.query(AuditRecord.hash)
            .filter(
                AuditRecord.scope_key == scope_key,
                AuditRecord.hash.isnot(None),
                AuditRecord.timestamp < start,
            )
            .order_by(AuditRecord.timestamp.desc(), AuditRecord.id.desc())
            .first()
        )
        return prior.hash if prior else SENTINEL_HASH

    def iter_scope(
        self,
        db: Session,
        scope_key: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        batch_size: Optional[int] = None,
    ) -> Iterator[AuditRecord]:
        """Stream a scope's records in (timestamp, id) order, one keyset page at a time."""
        size = max(1, batch_size or self._batch_size)
        base = db.query(AuditRecord).filter(AuditRecord.scope_key == scope_key)
        if start is not None:
            base = base.filter(AuditRecord.timestamp >= start)
        if end is not None:
            base = base.filter(AuditRecord.timestamp < end)

        last: Optional[Tuple[datetime, int]] = None
        while True:
            query = base
            if last is not None:
                query = query.filter(
                    or_(
                        AuditRecord.timestamp > last[0],
                        and_(AuditRecord.timestamp == last[0], AuditRecord.id > last[1]),
                    )
                )
            page = query.order_by(AuditRecord.timestamp.asc(), AuditRecord.id.asc()).limit(size).all()
            if not page:
                return
            for record in page:
                yield record
            last = (page[-1].timestamp, page[-1].id)
            if len(page) < size:
                return

    def verify_chain(
        self,
        db: Session,
        tenant_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        batch_size: Optional[int] = None,
    ) -> ChainVerification:
        """
        Verify every record of a scope and the links between them

        Scanning never stops at the first problem; every break is reported.
        Records without integrity data are reported and skipped for linkage.
        """
        scope_key = AuditRecord.scope_for(tenant_id)
        start = naive_utc(start)
        end = naive_utc(end)
        expected_previous = self._seed_previous_hash(db, scope_key, start)

        errors: List[ChainError] = []
        total = 0
        verified = 0
        for index, record in enumerate(self.iter_scope(db, scope_key, start, end, batch_size)):
            total += 1
            result = self.verify_record(record)
            if result.reason == "no_integrity_data":
                errors.append(ChainError(index=index, record_id=record.id, error=result.reason))
                continue

            if result.valid:
                verified += 1
            else:
                errors.append(ChainError(index=index, record_id=record.id, error=result.reason))

            if record.previous_hash != expected_previous:
                errors.append(
                    ChainError(
                        index=index,
                        record_id=record.id,
                        error="chain_broken",
                        expected=expected_previous,
                        actual=record.previous_hash,
                    )
                )
            expected_previous = record.hash

        if errors:
            logger.warning(
                "Audit chain verification for scope %s found %d problem(s) in %d record(s)",
                scope_key,
                len(errors),
                total,
            )

        return ChainVerification(
            valid=not errors,
            scope=tenant_id,
            total_records=total,
            verified_records=verified,
            errors=errors,
        )

    def generate_compliance_report(
        self,
        db: Session,
        tenant_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        batch_size: Optional[int] = None,
    ) -> ComplianceReport:
        verification = self.verify_chain(db, tenant_id, start, end, batch_size)
        total = verification.total_records
        missing = sum(1 for error in verification.errors if error.error == "no_integrity_data")
        with_integrity = total - missing
        coverage = round(with_integrity / total * 100, 2) if total else 100.0

        return ComplianceReport(
            scope=tenant_id,
            start=start,
            end=end,
            generated_at=utcnow(),
            total_records=total,
            records_with_integrity=with_integrity,
            coverage_percent=coverage,
            tamper_evident=verification.valid and with_integrity == total,
            verification=verification,
        )

    # Queries

    @staticmethod
    def get_audit_trail(db: Session, entity_type: str, entity_id: str, limit: int = 100) -> List[AuditRecord]:
        return (
            db.query(AuditRecord)
            .filter(AuditRecord.entity_type == entity_type, AuditRecord.entity_id == entity_id)
            .order_by(AuditRecord.timestamp.desc(), AuditRecord.id.desc())
            .limit(limit)
            .all()
        )

    @staticmethod
    def get_user_activity(
        db: Session,
        actor_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditRecord]:
        query = db.query(AuditRecord).filter(AuditRecord.actor_id == actor_id)
        if start is not None:
            query = query.filter(AuditRecord.timestamp >= naive_utc(start))
        if end is not None:
            query = query.filter(AuditRecord.timestamp < naive_utc(end))
        return query.order_by(AuditRecord.timestamp.desc(), AuditRecord.id.desc()).limit(limit).all()

    @staticmethod
    def get_security_events(
        db: Session,
        tenant_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditRecord]:
        query = db.query(AuditRecord).filter(AuditRecord.severity.in_(SECURITY_SEVERITIES))
        if tenant_id:
            query = query.filter(AuditRecord.tenant_id == tenant_id)
        if start is not None:
            query = query.filter(AuditRecord.timestamp >= naive_utc(start))
        if end is not None:
            query = query.filter(AuditRecord.timestamp < naive_utc(end))
        return query.order_by(AuditRecord.timestamp.desc(), AuditRecord.id.desc()).limit(limit).all()


audit_ledger = AuditLedger(get_signer())
