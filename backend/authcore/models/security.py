"""Security-related persistence models."""

from enum import Enum

from sqlalchemy import Column, Integer, String, Boolean, DateTime, JSON, Index

from authcore.core.database import Base


class RevocationReason(str, Enum):
    """Why a refresh token stopped being usable"""
    LOGOUT = "logout"
    REFRESH = "refresh"
    REUSE_DETECTED = "reuse_detected"
    SECURITY = "security"
    EXPIRED_CLEANUP = "expired_cleanup"


# Reasons an operator or client may record directly. The others are set by
# rotation, reuse detection and cleanup, and change how a token is classified.
MANUAL_REVOCATION_REASONS = (RevocationReason.LOGOUT, RevocationReason.SECURITY)


class RefreshToken(Base):
    """Refresh token record for rotation/revocation.

    Only the SHA-256 of the bearer secret is stored. Every record descended
    from one issuance shares ``family``; ``rotated_from_id`` points at the
    immediate predecessor and is unique, so a record has at most one successor.
    """

    __tablename__ = "refresh_tokens"

    id = Column(Integer, primary_key=True, index=True)
    token_hash = Column(String(64), unique=True, nullable=False, index=True)
    owner_id = Column(String(128), nullable=False, index=True)
    tenant_id = Column(String(128), nullable=True, index=True)
    family = Column(String(64), nullable=False, index=True)
    # Plain column: retention deletes of the predecessor never rewrite it.
    rotated_from_id = Column(Integer, nullable=True, unique=True)
    issued_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    revoked = Column(Boolean, default=False, nullable=False)
    revoked_reason = Column(String(32), nullable=True)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    device_info = Column(JSON, nullable=True)

    __table_args__ = (
        Index("idx_refresh_tokens_owner_revoked", "owner_id", "revoked"),
        Index("idx_refresh_tokens_family_revoked", "family", "revoked"),
    )

    def __repr__(self):
        return (
            f"<RefreshToken(id={self.id}, owner_id='{self.owner_id}', "
            f"family='{self.family}', revoked={self.revoked})>"
        )
