"""Database models"""

from authcore.models.security import MANUAL_REVOCATION_REASONS, RefreshToken, RevocationReason
from authcore.models.audit import AuditRecord

__all__ = ["MANUAL_REVOCATION_REASONS", "RefreshToken", "RevocationReason", "AuditRecord"]
