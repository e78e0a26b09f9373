"""Audit ledger routes"""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from authcore.api.deps import require_internal_caller
from authcore.core.database import get_db
from authcore.core.exceptions import DatabaseError, ResourceNotFoundError
from authcore.models.audit import AuditRecord
from authcore.schemas.audit import (
    AuditEventCreate,
    AuditRecordResponse,
    ChainVerification,
    ComplianceReport,
    RecordVerification,
)
from authcore.services.audit_service import audit_ledger

router = APIRouter(dependencies=[Depends(require_internal_caller)])


@router.post("/events", response_model=AuditRecordResponse, status_code=status.HTTP_201_CREATED)
def append_event(event: AuditEventCreate, db: Session = Depends(get_db)):
    """Append one event to its tenant's hash chain."""
    record = audit_ledger.append(db, event)
    if record is None:
        raise DatabaseError("Audit event could not be stored")
    return AuditRecordResponse.model_validate(record)


@router.get("/records", response_model=List[AuditRecordResponse])
def list_records(
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    actor_id: Optional[str] = None,
    limit: int = 100,
    db: Session = Depends(get_db),
):
    """List recent audit records for an entity or an actor."""
    limit = max(1, min(limit, 500))
    if entity_type and entity_id:
        records = audit_ledger.get_audit_trail(db, entity_type, entity_id, limit=limit)
    elif actor_id:
        records = audit_ledger.get_user_activity(db, actor_id, limit=limit)
    else:
        records = (
            db.query(AuditRecord)
            .order_by(AuditRecord.timestamp.desc(), AuditRecord.id.desc())
            .limit(limit)
            .all()
        )
    return [AuditRecordResponse.model_validate(record) for record in records]


@router.get("/security-events", response_model=List[AuditRecordResponse])
def list_security_events(
    tenant_id: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = 100,
    db: Session = Depends(get_db),
):
    records = audit_ledger.get_security_events(db, tenant_id, start, end, limit=max(1, min(limit, 500)))
    return [AuditRecordResponse.model_validate(record) for record in records]


@router.get("/records/{record_id}/verify", response_model=RecordVerification)
def verify_record(record_id: int, db: Session = Depends(get_db)):
    record = db.query(AuditRecord).filter(AuditRecord.id == record_id).first()
    if record is None:
        raise ResourceNotFoundError("Audit record")
    return audit_ledger.verify_record(record)


@router.get("/verify-chain", response_model=ChainVerification)
def verify_chain(
    tenant_id: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    db: Session = Depends(get_db),
):
    """Verify every record and link of one tenant scope in [start, end)."""
    return audit_ledger.verify_chain(db, tenant_id, start, end)


@router.get("/compliance-report", response_model=ComplianceReport)
def compliance_report(
    tenant_id: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    db: Session = Depends(get_db),
):
    """Integrity coverage and chain verification for one tenant scope."""
    return audit_ledger.generate_compliance_report(db, tenant_id, start, end)
