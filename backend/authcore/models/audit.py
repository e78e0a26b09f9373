"""Hash-chained audit record model."""

from sqlalchemy import Column, Integer, String, DateTime, JSON, Index, UniqueConstraint

from authcore.core.database import Base


class AuditRecord(Base):
    """Append-only audit record.

    ``scope_key`` is the tenant id, or GLOBAL_SCOPE for tenant-less events.
    ``chain_sequence`` numbers chained records within a scope; the unique
    constraint on (scope_key, chain_sequence) rejects a second append that was
    computed from the same predecessor. Degraded rows carry no integrity data
    and no sequence.
    """

    __tablename__ = "audit_records"

    GLOBAL_SCOPE = "__global__"

    id = Column(Integer, primary_key=True, index=True)
    action = Column(String(64), nullable=False, index=True)
    actor_id = Column(String(128), nullable=True, index=True)
    entity_type = Column(String(64), nullable=True, index=True)
    entity_id = Column(String(128), nullable=True, index=True)
    tenant_id = Column(String(128), nullable=True)
    scope_key = Column(String(128), nullable=False)
    severity = Column(String(16), nullable=False, default="low")
    timestamp = Column(DateTime(timezone=True), nullable=False)
    details = Column(JSON, nullable=True)

    # Integrity block
    chain_sequence = Column(Integer, nullable=True)
    previous_hash = Column(String(128), nullable=True)
    hash = Column(String(128), nullable=True)
    signature = Column(String(128), nullable=True)
    algorithm = Column(String(16), nullable=True)
    integrity_version = Column(String(16), nullable=True)

    __table_args__ = (
        UniqueConstraint("scope_key", "chain_sequence", name="uq_audit_records_scope_sequence"),
        Index("idx_audit_records_scope_timestamp", "scope_key", "timestamp"),
        Index("idx_audit_records_entity", "entity_type", "entity_id"),
    )

    @classmethod
    def scope_for(cls, tenant_id):
        return tenant_id if tenant_id else cls.GLOBAL_SCOPE

    @property
    def has_integrity(self) -> bool:
        return bool(self.hash and self.signature)

    @property
    def integrity(self):
        if not self.has_integrity:
            return None
        return {
            "previous_hash": self.previous_hash,
            "hash": self.hash,
            "signature": self.signature,
            "algorithm": self.algorithm,
            "version": self.integrity_version,
        }

    def __repr__(self):
        return f"<AuditRecord(id={self.id}, action='{self.action}', scope='{self.scope_key}')>"
