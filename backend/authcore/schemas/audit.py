"""Audit ledger schemas."""

from datetime import datetime
from typing import Optional, Dict, Any, List

from pydantic import BaseModel, ConfigDict, Field


class AuditEventCreate(BaseModel):
    """Flat event description accepted by the ledger"""
    action: str = Field(..., min_length=1, max_length=64)
    actor_id: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    tenant_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    severity: Optional[str] = Field(None, pattern=r"^(low|medium|high|critical)$")
    timestamp: Optional[datetime] = None


class AuditRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    action: str
    actor_id: Optional[str]
    entity_type: Optional[str]
    entity_id: Optional[str]
    tenant_id: Optional[str]
    severity: str
    timestamp: datetime
    details: Optional[Dict[str, Any]] = None
    integrity: Optional[Dict[str, Any]] = None


class RecordVerification(BaseModel):
    valid: bool
    reason: str  # valid | no_integrity_data | hash_mismatch | signature_invalid


class ChainError(BaseModel):
    index: int
    record_id: int
    error: str  # chain_broken | hash_mismatch | signature_invalid | no_integrity_data
    expected: Optional[str] = None
    actual: Optional[str] = None


class ChainVerification(BaseModel):
    valid: bool
    scope: Optional[str] = None
    total_records: int = 0
    verified_records: int = 0
    errors: List[ChainError] = Field(default_factory=list)


class ComplianceReport(BaseModel):
    scope: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    generated_at: datetime
    total_records: int
    records_with_integrity: int
    coverage_percent: float
    tamper_evident: bool
    verification: ChainVerification
